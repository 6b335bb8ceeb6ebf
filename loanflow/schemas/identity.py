from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    CLIENT = "client"
    KAM = "kam"
    CREDIT_TEAM = "credit_team"
    NBFC = "nbfc"

    @classmethod
    def parse(cls, value: "Role | str | None") -> "Role | None":
        if value is None:
            return None
        if isinstance(value, Role):
            return value
        return cls._value2member_map_.get(str(value).strip().lower())


class Identity(BaseModel):
    """Authenticated caller as resolved from the access token."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    role: Role
    name: str | None = None
    client_id: str | None = None
    kam_id: str | None = None
    nbfc_id: str | None = None

    @property
    def scope_id(self) -> str | None:
        if self.role == Role.CLIENT:
            return self.client_id
        if self.role == Role.KAM:
            return self.kam_id
        if self.role == Role.NBFC:
            return self.nbfc_id
        return None


class IdentityOut(BaseModel):
    user_id: str
    email: str
    role: Role
    name: str | None = None
    client_id: str | None = None
    kam_id: str | None = None
    nbfc_id: str | None = None
