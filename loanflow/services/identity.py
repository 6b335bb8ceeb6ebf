from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from loanflow.core.security import create_access_token, decode_token, verify_password
from loanflow.schemas.identity import Identity, Role
from loanflow.services.access_filter import match_ids
from loanflow.services.errors import AuthenticationFailed
from loanflow.services.record_store import (
    TABLE_CLIENTS,
    TABLE_CREDIT_TEAM_USERS,
    TABLE_KAM_USERS,
    TABLE_NBFC_PARTNERS,
    TABLE_USER_ACCOUNTS,
    Record,
    RecordStore,
)

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
_FAKE_HASH = "$2b$12$EixZaYVK1fsbw1ZfbX3OXePaWxn96p36WQoeG6Lruj3vjPGga31lW"


class IdentityVerifier(Protocol):
    def verify(self, credential: str) -> Identity: ...


@dataclass
class CachedRecords:
    data: list[Record] = field(default_factory=list)
    fetched_at: float | None = None


class UserAccountCache:
    """TTL cache over the ``User Accounts`` table.

    Owned by the application and handed to whoever needs account rows; call
    :meth:`invalidate` after writing to the table.
    """

    def __init__(
        self,
        store: RecordStore,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.entry = CachedRecords()

    def is_fresh(self) -> bool:
        if self.entry.fetched_at is None:
            return False
        return self.clock() - self.entry.fetched_at < self.ttl_seconds

    async def get(self) -> list[Record]:
        if self.is_fresh():
            return self.entry.data
        rows = await self.store.list(TABLE_USER_ACCOUNTS)
        self.entry = CachedRecords(data=rows, fetched_at=self.clock())
        return rows

    def invalidate(self) -> None:
        self.entry = CachedRecords()


def _first(row: Record, *fields: str) -> Any:
    for name in fields:
        value = row.get(name)
        if value:
            return value
    return None


async def _find_by_email(store: RecordStore, table: str, email: str, *fields: str) -> Record | None:
    for row in await store.list(table):
        if match_ids(_first(row, *fields), email):
            return row
    return None


async def _client_claims(store: RecordStore, email: str) -> dict[str, Any]:
    row = await _find_by_email(
        store, TABLE_CLIENTS, email, "Contact Email / Phone", "Contact Email/Phone", "Contact Email", "Email"
    )
    if row is None:
        return {}
    return {"client_id": row.get("id"), "name": _first(row, "Client Name", "Name")}


async def _kam_claims(store: RecordStore, email: str) -> dict[str, Any]:
    row = await _find_by_email(store, TABLE_KAM_USERS, email, "Email")
    if row is None:
        return {}
    return {"kam_id": row.get("id"), "name": row.get("Name")}


async def _credit_claims(store: RecordStore, email: str) -> dict[str, Any]:
    row = await _find_by_email(store, TABLE_CREDIT_TEAM_USERS, email, "Email")
    if row is None:
        return {}
    return {"name": row.get("Name")}


async def _nbfc_claims(store: RecordStore, email: str) -> dict[str, Any]:
    row = await _find_by_email(
        store, TABLE_NBFC_PARTNERS, email, "Contact Email/Phone", "Contact Email / Phone", "Email"
    )
    if row is None:
        return {}
    return {"nbfc_id": row.get("id"), "name": _first(row, "Lender Name", "Name")}


_CLAIM_RESOLVERS: dict[Role, Callable[[RecordStore, str], Awaitable[dict[str, Any]]]] = {
    Role.CLIENT: _client_claims,
    Role.KAM: _kam_claims,
    Role.CREDIT_TEAM: _credit_claims,
    Role.NBFC: _nbfc_claims,
}


class AuthService:
    def __init__(self, store: RecordStore, accounts: UserAccountCache) -> None:
        self.store = store
        self.accounts = accounts

    async def _find_account(self, email: str) -> Record | None:
        for row in await self.accounts.get():
            if match_ids(row.get("Username"), email):
                return row
        return None

    async def authenticate(self, email: str, password: str) -> Identity:
        account = await self._find_account(email)
        if account is None:
            verify_password(password, _FAKE_HASH)
            raise AuthenticationFailed(message=INVALID_CREDENTIALS)
        if not verify_password(password, str(account.get("Password") or "")):
            raise AuthenticationFailed(message=INVALID_CREDENTIALS)
        if str(account.get("Account Status") or "").strip().lower() != "active":
            raise AuthenticationFailed(message="Account is not active", code="account_inactive")
        role = Role.parse(account.get("Role"))
        if role is None:
            logger.warning("Account has unknown role", extra={"account_id": account.get("id")})
            raise AuthenticationFailed(message=INVALID_CREDENTIALS)

        username = str(account.get("Username")).strip()
        claims = await _CLAIM_RESOLVERS[role](self.store, username)
        return Identity(
            user_id=str(account.get("id")),
            email=username,
            role=role,
            **{key: value for key, value in claims.items() if value},
        )

    def issue_token(self, identity: Identity) -> str:
        return create_access_token(
            identity.user_id,
            claims={
                "email": identity.email,
                "role": identity.role.value,
                "name": identity.name,
                "clientId": identity.client_id,
                "kamId": identity.kam_id,
                "nbfcId": identity.nbfc_id,
            },
        )


class TokenIdentityVerifier:
    def verify(self, credential: str) -> Identity:
        payload = decode_token(credential, expected_type="access")
        role = Role.parse(payload.get("role"))
        if not payload.get("sub") or not payload.get("email") or role is None:
            raise ValueError("Invalid token")
        return Identity(
            user_id=str(payload["sub"]),
            email=str(payload["email"]),
            role=role,
            name=payload.get("name"),
            client_id=payload.get("clientId"),
            kam_id=payload.get("kamId"),
            nbfc_id=payload.get("nbfcId"),
        )
