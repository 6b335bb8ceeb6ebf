from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from loanflow.core.context import set_actor
from loanflow.schemas.identity import Identity, Role
from loanflow.services.audit import AuditTrailRecorder
from loanflow.services.capabilities import Capability, capability_for
from loanflow.services.identity import AuthService, IdentityVerifier
from loanflow.services.lifecycle import LifecycleOrchestrator
from loanflow.services.queries import QueryThreadEngine
from loanflow.services.record_store import RecordStore

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")


def get_record_store(request: Request) -> RecordStore:
    return request.app.state.record_store


def get_recorder(request: Request) -> AuditTrailRecorder:
    return request.app.state.recorder


def get_query_engine(request: Request) -> QueryThreadEngine:
    return request.app.state.query_engine


def get_orchestrator(request: Request) -> LifecycleOrchestrator:
    return request.app.state.orchestrator


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_identity_verifier(request: Request) -> IdentityVerifier:
    return request.app.state.identity_verifier


async def get_current_identity(
    token: str = Depends(oauth2_scheme),
    verifier: IdentityVerifier = Depends(get_identity_verifier),
) -> Identity:
    try:
        identity = verifier.verify(token)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc) or "Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    set_actor(identity.email)
    return identity


async def get_capability(identity: Identity = Depends(get_current_identity)) -> Capability:
    return capability_for(identity)


def require_roles(*roles: Role):
    """Reject callers whose role is not listed before the handler runs."""
    allowed = frozenset(roles)

    async def dependency(capability: Capability = Depends(get_capability)) -> Capability:
        if capability.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role {capability.role.value} cannot perform this action",
            )
        return capability

    return dependency
