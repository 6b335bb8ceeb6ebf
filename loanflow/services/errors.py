from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar


@dataclass(frozen=True)
class LifecycleError(ValueError):
    """Deterministic, caller-facing failure of a lifecycle operation.

    Never retried by the service layer; the HTTP layer maps ``status_code``
    and ``code`` onto the error envelope.
    """

    message: str
    code: str = "lifecycle_error"
    details: dict = field(default_factory=dict)

    status_code: ClassVar[int] = 400

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class InvalidTransition(LifecycleError):
    code: str = "invalid_transition"


@dataclass(frozen=True)
class NotFound(LifecycleError):
    code: str = "not_found"

    status_code: ClassVar[int] = 404


@dataclass(frozen=True)
class PermissionDenied(LifecycleError):
    code: str = "permission_denied"

    status_code: ClassVar[int] = 403


@dataclass(frozen=True)
class ValidationFailed(LifecycleError):
    code: str = "validation_failed"


@dataclass(frozen=True)
class AuthenticationFailed(LifecycleError):
    code: str = "authentication_failed"

    status_code: ClassVar[int] = 401
