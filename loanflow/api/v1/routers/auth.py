from fastapi import APIRouter, Depends, Request

from loanflow.api import deps
from loanflow.core.limiter import limiter
from loanflow.core.settings import settings
from loanflow.schemas.audit import AuditActionType
from loanflow.schemas.auth import LoginRequest, TokenResponse
from loanflow.schemas.identity import Identity, IdentityOut
from loanflow.services.audit import AuditTrailRecorder
from loanflow.services.errors import AuthenticationFailed
from loanflow.services.identity import AuthService
from loanflow.utils import check_lockout, register_login_attempt

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
@limiter.limit(lambda: f"{settings.rate_limit_per_minute}/minute")
async def login(
    credentials: LoginRequest,
    request: Request,
    auth_service: AuthService = Depends(deps.get_auth_service),
    recorder: AuditTrailRecorder = Depends(deps.get_recorder),
) -> TokenResponse:
    await check_lockout(credentials.email)
    try:
        identity = await auth_service.authenticate(credentials.email, credentials.password)
    except AuthenticationFailed:
        await register_login_attempt(credentials.email, success=False)
        raise
    await register_login_attempt(credentials.email, success=True)
    await recorder.record(
        {
            "performed_by": identity.email,
            "action_type": AuditActionType.LOGIN.value,
            "description": f"{identity.role.value} signed in",
            "target_entity": "user",
            "related_user_id": identity.user_id,
            "metadata": {"ip": request.client.host if request.client else "unknown"},
        }
    )
    return TokenResponse(
        access_token=auth_service.issue_token(identity),
        user=IdentityOut(**identity.model_dump()),
    )


@router.get("/me", response_model=IdentityOut)
async def read_me(identity: Identity = Depends(deps.get_current_identity)) -> IdentityOut:
    return IdentityOut(**identity.model_dump())
