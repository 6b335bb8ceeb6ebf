from pydantic import BaseModel, Field

from loanflow.schemas.identity import IdentityOut


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=256)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: IdentityOut
