import pytest
from fastapi.testclient import TestClient

from conftest import NBFC_ID, OTHER_CLIENT_ID, make_application, make_identity

from loanflow.main import app
from loanflow.schemas.identity import Role
from loanflow.services.record_store import TABLE_FILE_AUDIT_LOG, TABLE_LOAN_APPLICATIONS

client = TestClient(app)

BASE = "/api/v1/loan-applications"


@pytest.fixture
def seeded(store):
    store.tables[TABLE_LOAN_APPLICATIONS] = {
        "rec-app-1": make_application("rec-app-1"),
        "rec-app-2": make_application("rec-app-2", **{"File ID": "SF0002", "Client": OTHER_CLIENT_ID}),
    }
    return store


def test_requires_bearer_token(app_services):
    response = client.get(BASE)
    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "unauthorized"


def test_client_creates_draft(app_services, store):
    app_services(make_identity(Role.CLIENT))
    response = client.post(
        BASE,
        json={"applicant_name": "Acme Traders", "loan_product": "Term Loan", "requested_loan_amount": "250000"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["code"] == "created"
    data = body["data"]
    assert data["status"] == "draft"
    assert data["file_id"].startswith("SF")
    assert data["client_id"] == "rec-client-1"
    assert data["id"] in store.tables[TABLE_LOAN_APPLICATIONS]


def test_kam_cannot_create(app_services):
    app_services(make_identity(Role.KAM))
    response = client.post(BASE, json={"loan_product": "Term Loan"})
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_list_is_scoped_to_caller(app_services, seeded):
    app_services(make_identity(Role.CLIENT))
    data = client.get(BASE).json()["data"]
    assert data["total"] == 1
    assert data["items"][0]["id"] == "rec-app-1"

    app_services(make_identity(Role.CREDIT_TEAM))
    assert client.get(BASE).json()["data"]["total"] == 2

    app_services(make_identity(Role.NBFC))
    assert client.get(BASE).json()["data"]["total"] == 0


def test_list_filters_by_status(app_services, seeded):
    seeded.tables[TABLE_LOAN_APPLICATIONS]["rec-app-2"]["Status"] = "approved"
    app_services(make_identity(Role.CREDIT_TEAM))
    data = client.get(BASE, params={"status": "approved"}).json()["data"]
    assert [item["id"] for item in data["items"]] == ["rec-app-2"]


def test_foreign_file_is_forbidden(app_services, seeded):
    app_services(make_identity(Role.CLIENT))
    response = client.get(f"{BASE}/rec-app-2")
    assert response.status_code == 403
    assert response.json()["code"] == "permission_denied"


def test_missing_file_is_404(app_services, seeded):
    app_services(make_identity(Role.CREDIT_TEAM))
    response = client.get(f"{BASE}/rec-nope")
    assert response.status_code == 404
    assert response.json()["message"] == "Loan application not found"


def test_submit_and_history(app_services, seeded):
    app_services(make_identity(Role.CLIENT))
    response = client.post(f"{BASE}/rec-app-1/submit")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "under_kam_review"

    history = client.get(f"{BASE}/rec-app-1/status-history").json()["data"]
    assert history == [
        {
            "from_status": "draft",
            "to_status": "under_kam_review",
            "changed_by": "client@acme.test",
            "timestamp": history[0]["timestamp"],
            "reason": None,
        }
    ]


def test_allowed_transitions(app_services, seeded):
    app_services(make_identity(Role.CLIENT))
    data = client.get(f"{BASE}/rec-app-1/allowed-transitions").json()["data"]
    assert data == {"current_status": "draft", "allowed": ["under_kam_review", "withdrawn"]}


def test_invalid_transition_envelope(app_services, seeded):
    app_services(make_identity(Role.CLIENT))
    response = client.post(f"{BASE}/rec-app-1/transition", json={"status": "approved"})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "invalid_transition"
    assert body["details"]["allowed"] == ["under_kam_review", "withdrawn"]
    assert body["data"] is None


def test_reject_requires_reason(app_services, seeded):
    seeded.tables[TABLE_LOAN_APPLICATIONS]["rec-app-1"]["Status"] = "pending_credit_review"
    app_services(make_identity(Role.CREDIT_TEAM))
    response = client.post(f"{BASE}/rec-app-1/reject", json={"reason": ""})
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


def test_kam_query_with_client(app_services, seeded):
    seeded.tables[TABLE_LOAN_APPLICATIONS]["rec-app-1"]["Status"] = "under_kam_review"
    app_services(make_identity(Role.KAM))
    response = client.post(f"{BASE}/rec-app-1/query-with-client", json={"message": "Send ITR for FY25"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["application"]["status"] == "query_with_client"
    assert data["query"]["message"] == "Send ITR for FY25"
    assert data["query"]["target_role"] == "client"


def test_nbfc_decision_endpoint(app_services, seeded):
    row = seeded.tables[TABLE_LOAN_APPLICATIONS]["rec-app-1"]
    row.update({"Status": "sent_to_nbfc", "Assigned NBFC": NBFC_ID})
    app_services(make_identity(Role.NBFC))
    response = client.post(
        f"{BASE}/rec-app-1/nbfc-decision",
        json={"decision": "Needs Clarification", "remarks": "Share collateral valuation"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["lender_decision_status"] == "Needs Clarification"
    assert data["status"] == "sent_to_nbfc"


def test_record_store_outage_maps_to_502(app_services, seeded):
    seeded.fail_tables.add(TABLE_LOAN_APPLICATIONS)
    app_services(make_identity(Role.CREDIT_TEAM))
    response = client.get(BASE)
    assert response.status_code == 502
    assert response.json()["code"] == "record_store_unavailable"


def test_file_audit_log_endpoint(app_services, seeded):
    app_services(make_identity(Role.CLIENT))
    client.post(f"{BASE}/rec-app-1/submit")
    data = client.get(f"{BASE}/rec-app-1/audit-log").json()["data"]
    assert data["total"] == 1
    assert data["items"][0]["action_type"] == "status_change"
    assert data["items"][0]["resolved"] is False


def test_visible_file_log_excludes_other_files(app_services, seeded):
    seeded.tables[TABLE_FILE_AUDIT_LOG] = {
        "LOG-1": {"id": "LOG-1", "File": "SF0001", "Action/Event Type": "status_change", "Timestamp": "2026-01-02"},
        "LOG-2": {"id": "LOG-2", "File": "SF0002", "Action/Event Type": "status_change", "Timestamp": "2026-01-03"},
    }
    app_services(make_identity(Role.CLIENT))
    data = client.get("/api/v1/audit/file-log").json()["data"]
    assert [item["id"] for item in data["items"]] == ["LOG-1"]
