import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from loanflow.api.v1.routers import auth as auth_router
from loanflow.core.security import get_password_hash
from loanflow.main import app
from loanflow.services.record_store import TABLE_ADMIN_ACTIVITY_LOG, TABLE_USER_ACCOUNTS

client = TestClient(app)


@pytest.fixture
def attempts(monkeypatch):
    calls: list[tuple[str, bool]] = []

    async def _check_lockout(identifier):
        return None

    async def _register(identifier, success):
        calls.append((identifier, success))

    monkeypatch.setattr(auth_router, "check_lockout", _check_lockout)
    monkeypatch.setattr(auth_router, "register_login_attempt", _register)
    return calls


@pytest.fixture
def accounts(store):
    store.tables[TABLE_USER_ACCOUNTS] = {
        "ua-client": {
            "id": "ua-client",
            "Username": "client@acme.test",
            "Password": get_password_hash("Sup3r-secret"),
            "Role": "client",
            "Account Status": "Active",
        },
    }
    return store


def test_login_issues_token_usable_on_me(app_services, accounts, attempts):
    response = client.post("/api/v1/auth/login", json={"email": "client@acme.test", "password": "Sup3r-secret"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["token_type"] == "bearer"
    assert data["user"]["client_id"] == "rec-client-1"
    assert attempts == [("client@acme.test", True)]

    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {data['access_token']}"})
    assert me.status_code == 200
    assert me.json()["data"]["role"] == "client"
    assert me.json()["data"]["email"] == "client@acme.test"


def test_login_is_recorded_in_admin_activity(app_services, accounts, attempts):
    client.post("/api/v1/auth/login", json={"email": "client@acme.test", "password": "Sup3r-secret"})
    rows = accounts.rows(TABLE_ADMIN_ACTIVITY_LOG)
    assert len(rows) == 1
    assert rows[0]["Action Type"] == "login"
    assert rows[0]["Performed By"] == "client@acme.test"


def test_wrong_password_counts_as_failed_attempt(app_services, accounts, attempts):
    response = client.post("/api/v1/auth/login", json={"email": "client@acme.test", "password": "nope"})
    assert response.status_code == 401
    assert response.json()["code"] == "authentication_failed"
    assert attempts == [("client@acme.test", False)]


def test_locked_out_caller_is_rejected(app_services, accounts, monkeypatch):
    async def _locked(identifier):
        raise HTTPException(status_code=429, detail="Too many login attempts; try later")

    monkeypatch.setattr(auth_router, "check_lockout", _locked)
    response = client.post("/api/v1/auth/login", json={"email": "client@acme.test", "password": "Sup3r-secret"})
    assert response.status_code == 429
    assert response.json()["code"] == "rate_limited"


def test_garbage_token_is_unauthorized(app_services):
    response = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"
