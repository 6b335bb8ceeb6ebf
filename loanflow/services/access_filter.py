"""Record visibility per caller.

Visibility is resolved once per request into an :class:`AccessScope` (the only
step that reads the record store, for the KAM -> managed clients join), then
applied to any number of rows without further I/O. Unknown roles resolve to an
empty scope.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Sequence

from loanflow.schemas.audit import AdminActivityEntry, FileAuditEntry
from loanflow.schemas.identity import Identity, Role
from loanflow.schemas.loan import LoanApplication
from loanflow.services.record_store import TABLE_CLIENTS, TABLE_KAM_USERS, RecordStore

logger = logging.getLogger(__name__)

_COLLECTION_TYPES = (list, tuple, set, frozenset)


def match_ids(value: Any, candidate: Any) -> bool:
    """Exact or case-insensitive id equality; never substring or prefix.

    Either side may be a collection of linked ids, in which case any member
    matching is enough. Empty values never match.
    """
    if not value or not candidate:
        return False
    if isinstance(value, _COLLECTION_TYPES):
        return any(match_ids(item, candidate) for item in value)
    if isinstance(candidate, _COLLECTION_TYPES):
        return any(match_ids(value, item) for item in candidate)
    left = str(value).strip()
    right = str(candidate).strip()
    if not left or not right:
        return False
    return left == right or left.casefold() == right.casefold()


@dataclass(frozen=True, slots=True)
class AccessScope:
    """Which loan files a caller may see.

    ``field`` names the :class:`LoanApplication` attribute compared against
    ``ids``; ``unrestricted`` short-circuits for the credit team.
    """

    role: Role | None
    field: str | None = None
    ids: tuple[str, ...] = ()
    unrestricted: bool = False

    def allows(self, application: LoanApplication) -> bool:
        if self.unrestricted:
            return True
        if not self.field or not self.ids:
            return False
        return match_ids(self.ids, getattr(application, self.field, None))


EMPTY_SCOPE = AccessScope(role=None)


async def resolve_kam_keys(store: RecordStore, identity: Identity) -> list[str]:
    """Ids a client's ``Assigned KAM`` may hold for this KAM.

    Precedence: the KAM Users record id first, then the business ``KAM ID``.
    The directory row is located by record id, falling back to e-mail.
    """
    keys: list[str] = []
    if identity.kam_id:
        keys.append(identity.kam_id)
    kam_rows = await store.list(TABLE_KAM_USERS)
    row = next((r for r in kam_rows if match_ids(r.get("id"), identity.kam_id)), None)
    if row is None:
        row = next((r for r in kam_rows if match_ids(r.get("Email"), identity.email)), None)
    if row is not None:
        for key in (row.get("id"), row.get("KAM ID")):
            if key and str(key) not in keys:
                keys.append(str(key))
    return keys


async def get_kam_managed_client_ids(store: RecordStore, kam_keys: Sequence[str]) -> set[str]:
    if not kam_keys:
        return set()
    managed: set[str] = set()
    for client in await store.list(TABLE_CLIENTS):
        if not match_ids(client.get("Assigned KAM"), list(kam_keys)):
            continue
        for key in (client.get("id"), client.get("Client ID")):
            if key:
                managed.add(str(key))
    return managed


async def _client_scope(store: RecordStore, identity: Identity) -> AccessScope:
    ids = (identity.client_id,) if identity.client_id else ()
    return AccessScope(role=Role.CLIENT, field="client_ids", ids=ids)


async def _kam_scope(store: RecordStore, identity: Identity) -> AccessScope:
    keys = await resolve_kam_keys(store, identity)
    managed = await get_kam_managed_client_ids(store, keys)
    logger.debug("Resolved KAM scope", extra={"kam_keys": keys, "managed_clients": len(managed)})
    return AccessScope(role=Role.KAM, field="client_ids", ids=tuple(sorted(managed)))


async def _credit_scope(store: RecordStore, identity: Identity) -> AccessScope:
    return AccessScope(role=Role.CREDIT_TEAM, unrestricted=True)


async def _nbfc_scope(store: RecordStore, identity: Identity) -> AccessScope:
    ids = (identity.nbfc_id,) if identity.nbfc_id else ()
    return AccessScope(role=Role.NBFC, field="assigned_nbfc_ids", ids=ids)


_SCOPE_BUILDERS: dict[Role, Callable[[RecordStore, Identity], Awaitable[AccessScope]]] = {
    Role.CLIENT: _client_scope,
    Role.KAM: _kam_scope,
    Role.CREDIT_TEAM: _credit_scope,
    Role.NBFC: _nbfc_scope,
}


async def build_access_scope(store: RecordStore, identity: Identity | None) -> AccessScope:
    role = Role.parse(getattr(identity, "role", None))
    builder = _SCOPE_BUILDERS.get(role) if role else None
    if builder is None or identity is None:
        return EMPTY_SCOPE
    return await builder(store, identity)


def filter_loan_applications(
    applications: Iterable[LoanApplication], scope: AccessScope
) -> list[LoanApplication]:
    return [application for application in applications if scope.allows(application)]


def can_access_application(application: LoanApplication, scope: AccessScope) -> bool:
    return scope.allows(application)


def _file_keys(applications: Iterable[LoanApplication]) -> list[str]:
    keys: list[str] = []
    for application in applications:
        keys.append(application.id)
        if application.file_id:
            keys.append(application.file_id)
    return keys


def filter_file_audit_log(
    entries: Iterable[FileAuditEntry],
    scope: AccessScope,
    visible_applications: Iterable[LoanApplication],
) -> list[FileAuditEntry]:
    if scope.unrestricted:
        return list(entries)
    keys = _file_keys(visible_applications)
    return [entry for entry in entries if match_ids(keys, entry.file_id)]


def filter_admin_activity_log(
    entries: Iterable[AdminActivityEntry],
    scope: AccessScope,
    visible_applications: Iterable[LoanApplication],
    identity: Identity | None,
) -> list[AdminActivityEntry]:
    if scope.unrestricted:
        return list(entries)
    if scope.role is None or identity is None:
        return []
    keys = _file_keys(visible_applications)
    return [
        entry
        for entry in entries
        if match_ids(keys, entry.related_file_id) or match_ids(identity.email, entry.performed_by)
    ]
