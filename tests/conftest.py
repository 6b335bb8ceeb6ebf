"""Global test fixtures and shared test infrastructure.

Provides:
- Environment variable defaults (must be set before any app import)
- FakeRecordStore: in-memory tables matching the RecordStore protocol
- RecordingNotifier capturing notifications
- Identity factories and seeded directory rows
- Shared pytest fixtures for the service graph and API dependency overrides
"""

from __future__ import annotations

import os

# Environment defaults: must be set before importing the app, which triggers
# pydantic Settings validation on import.
os.environ.setdefault("SECRET_KEY", "test-secret-key-boot")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("RECORD_STORE_BASE_URL", "http://record-store.test/webhook")

from typing import Any, Mapping

import pytest
from slowapi import Limiter
from slowapi.util import get_remote_address

from loanflow.api import deps
from loanflow.events import configure_services
from loanflow.main import app
from loanflow.schemas.identity import Identity, Role
from loanflow.services.audit import AuditTrailRecorder
from loanflow.services.capabilities import Capability, capability_for
from loanflow.services.lifecycle import LifecycleOrchestrator
from loanflow.services.queries import QueryThreadEngine
from loanflow.services.record_store import (
    TABLE_CLIENTS,
    TABLE_CREDIT_TEAM_USERS,
    TABLE_FORM_LINKS,
    TABLE_KAM_USERS,
    TABLE_LOAN_APPLICATIONS,
    TABLE_NBFC_PARTNERS,
    Record,
    RecordStoreError,
    matches_filter,
)


# ---------------------------------------------------------------------------
# FakeRecordStore: mimics the RecordStore protocol in memory
# ---------------------------------------------------------------------------


class FakeRecordStore:
    """Tables keyed by record id; upserts merge into the existing row.

    ``fail_tables`` makes every call touching those tables raise
    :class:`RecordStoreError`; ``fail_writes`` only fails upserts.
    ``upserts`` logs each write as ``(table, record)``.
    """

    def __init__(self, tables: Mapping[str, list[Record]] | None = None) -> None:
        self.tables: dict[str, dict[str, Record]] = {}
        self.fail_tables: set[str] = set()
        self.fail_writes: set[str] = set()
        self.upserts: list[tuple[str, Record]] = []
        for table, rows in (tables or {}).items():
            for row in rows:
                self.tables.setdefault(table, {})[str(row["id"])] = dict(row)

    def _check(self, table: str) -> None:
        if table in self.fail_tables:
            raise RecordStoreError(table, "simulated outage", 503)

    async def get(self, table: str, record_id: str) -> Record | None:
        self._check(table)
        row = self.tables.get(table, {}).get(str(record_id))
        return dict(row) if row is not None else None

    async def list(self, table: str, filter: Mapping[str, Any] | None = None) -> list[Record]:
        self._check(table)
        return [dict(row) for row in self.tables.get(table, {}).values() if matches_filter(row, filter)]

    async def upsert(self, table: str, record: Record) -> Record:
        self._check(table)
        if table in self.fail_writes:
            raise RecordStoreError(table, "simulated write failure", 500)
        if not record.get("id"):
            raise RecordStoreError(table, "record id is required for upsert")
        existing = self.tables.setdefault(table, {}).get(str(record["id"]), {})
        merged = {**existing, **record}
        self.tables[table][str(record["id"])] = merged
        self.upserts.append((table, dict(record)))
        return dict(merged)

    def rows(self, table: str) -> list[Record]:
        return list(self.tables.get(table, {}).values())

    def writes_to(self, table: str) -> list[Record]:
        return [record for name, record in self.upserts if name == table]


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.fail = fail

    async def notify(self, role: Role | str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("notifier down")
        self.sent.append((role.value if isinstance(role, Role) else str(role), payload))


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

CLIENT_ID = "rec-client-1"
OTHER_CLIENT_ID = "rec-client-2"
KAM_ID = "rec-kam-1"
NBFC_ID = "rec-nbfc-1"


def make_identity(role: Role = Role.CLIENT, **overrides: Any) -> Identity:
    defaults: dict[Role, dict[str, Any]] = {
        Role.CLIENT: {"user_id": "ua-client", "email": "client@acme.test", "client_id": CLIENT_ID},
        Role.KAM: {"user_id": "ua-kam", "email": "kam@lender.test", "kam_id": KAM_ID},
        Role.CREDIT_TEAM: {"user_id": "ua-credit", "email": "credit@lender.test"},
        Role.NBFC: {"user_id": "ua-nbfc", "email": "nbfc@partner.test", "nbfc_id": NBFC_ID},
    }
    data = {**defaults[role], "role": role, **overrides}
    return Identity(**data)


def make_capability(role: Role = Role.CLIENT, **overrides: Any) -> Capability:
    return capability_for(make_identity(role, **overrides))


def make_application(record_id: str = "rec-app-1", **fields: Any) -> Record:
    row = {
        "id": record_id,
        "File ID": "SF0001",
        "Client": CLIENT_ID,
        "Applicant Name": "Acme Traders",
        "Loan Product": "Working Capital",
        "Requested Loan Amount": "500000",
        "Assigned KAM": KAM_ID,
        "Status": "draft",
        "Form Data": "{}",
        "Creation Date": "2026-01-01T00:00:00+00:00",
    }
    row.update(fields)
    return row


def directory_tables() -> dict[str, list[Record]]:
    return {
        TABLE_CLIENTS: [
            {
                "id": CLIENT_ID,
                "Client ID": "CL001",
                "Client Name": "Acme Traders",
                "Contact Email / Phone": "client@acme.test",
                "Assigned KAM": KAM_ID,
            },
            {
                "id": OTHER_CLIENT_ID,
                "Client ID": "CL002",
                "Client Name": "Globex",
                "Contact Email / Phone": "ops@globex.test",
                "Assigned KAM": "rec-kam-2",
            },
        ],
        TABLE_KAM_USERS: [
            {"id": KAM_ID, "KAM ID": "KAM001", "Name": "Kavya", "Email": "kam@lender.test"},
            {"id": "rec-kam-2", "KAM ID": "KAM002", "Name": "Rohan", "Email": "rohan@lender.test"},
        ],
        TABLE_CREDIT_TEAM_USERS: [
            {"id": "rec-credit-1", "Name": "Chitra", "Email": "credit@lender.test"},
        ],
        TABLE_NBFC_PARTNERS: [
            {"id": NBFC_ID, "Lender Name": "Northwind Finance", "Contact Email/Phone": "nbfc@partner.test"},
        ],
        TABLE_FORM_LINKS: [
            {"id": "rec-form-1", "Client": CLIENT_ID, "Version": "2026-01-01T00:00:00Z"},
            {"id": "rec-form-2", "Client": CLIENT_ID, "Version": "2026-02-01T00:00:00Z"},
        ],
    }


# ---------------------------------------------------------------------------
# Shared pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _disable_rate_limiter():
    """Replace Redis-backed limiter with in-memory limiter for all tests.

    Route decorators hold the module-level limiter, so it is switched off too.
    """
    original = app.state.limiter
    app.state.limiter = Limiter(
        key_func=get_remote_address,
        storage_uri="memory://",
    )
    original.enabled = False
    yield
    original.enabled = True
    app.state.limiter = original


@pytest.fixture
def store() -> FakeRecordStore:
    return FakeRecordStore(directory_tables())


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def recorder(store) -> AuditTrailRecorder:
    return AuditTrailRecorder(store)


@pytest.fixture
def engine(store, notifier) -> QueryThreadEngine:
    return QueryThreadEngine(store, notifier)


@pytest.fixture
def orchestrator(store, recorder, engine, notifier) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(store, recorder, engine, notifier)


@pytest.fixture
def seeded_application(store) -> Record:
    row = make_application()
    store.tables.setdefault(TABLE_LOAN_APPLICATIONS, {})[row["id"]] = row
    return row


@pytest.fixture
def app_services(store, notifier):
    """Wire the fake store into ``app.state`` and let tests pick the caller."""
    configure_services(app, store, notifier)

    def act_as(identity: Identity | None) -> None:
        if identity is None:
            app.dependency_overrides.pop(deps.get_current_identity, None)
            return

        async def _get_identity():
            return identity

        app.dependency_overrides[deps.get_current_identity] = _get_identity

    yield act_as

    app.dependency_overrides.clear()
    for name in (
        "record_store",
        "notifier",
        "recorder",
        "query_engine",
        "user_accounts",
        "auth_service",
        "identity_verifier",
        "orchestrator",
    ):
        if hasattr(app.state, name):
            delattr(app.state, name)
