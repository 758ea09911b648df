"""
HTTP surface: status code mapping and caller identity
"""
import pytest
from fastapi.testclient import TestClient

from app.core.dependencies import get_signature_service
from app.main import app
from app.utils.datetime_helpers import utcnow

from conftest import SIGNATURE_PAYLOAD

BASE = "/api/signatures"


def _headers(user_id):
    return {"X-User-Id": user_id, "User-Agent": "contract-portal/2.1"}


@pytest.fixture
def client(service):
    app.dependency_overrides[get_signature_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def workflow(client):
    response = client.post(
        f"{BASE}/documents/doc-active/requests",
        json={
            "title": "Please sign the MSA",
            "signers": [{"user_id": "u-alice"}, {"email": "bob@acme-legal.com", "name": "Bob"}],
        },
        headers=_headers("u-owner")
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _request_id(workflow, order):
    return next(s["id"] for s in workflow["signers"] if s["signature_order"] == order)


def _sign(client, request_id, user_id, signature=SIGNATURE_PAYLOAD):
    return client.post(
        f"{BASE}/{request_id}/sign",
        json={"signature_data": {"signature": signature, "timestamp": utcnow().isoformat() + "Z"}},
        headers=_headers(user_id)
    )


def test_missing_caller_identity(client):
    response = client.get(f"{BASE}/workflows/anything")
    assert response.status_code == 401


def test_create_workflow(workflow):
    assert workflow["status"] == "PENDING"
    assert workflow["requested_by"] == "u-owner"
    assert [s["signer_id"] for s in workflow["signers"]] == ["u-alice", "u-bob"]


def test_create_on_draft_document(client):
    response = client.post(
        f"{BASE}/documents/doc-draft/requests",
        json={"title": "Sign", "signers": [{"user_id": "u-alice"}]},
        headers=_headers("u-owner")
    )
    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "DocumentInDraft"


def test_create_without_access(client):
    response = client.post(
        f"{BASE}/documents/doc-active/requests",
        json={"title": "Sign", "signers": [{"user_id": "u-alice"}]},
        headers=_headers("u-carol")
    )
    assert response.status_code == 403


def test_duplicate_order_rejected(client):
    response = client.post(
        f"{BASE}/documents/doc-active/requests",
        json={"title": "Sign", "signers": [{"user_id": "u-alice", "order": 2}, {"user_id": "u-bob", "order": 2}]},
        headers=_headers("u-owner")
    )
    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "INVALID_INPUT"


def test_get_workflow(client, workflow):
    response = client.get(f"{BASE}/workflows/{workflow['workflow_id']}", headers=_headers("u-owner"))
    assert response.status_code == 200
    assert response.json()["data"]["workflow_id"] == workflow["workflow_id"]


def test_unknown_workflow(client, seed):
    response = client.get(f"{BASE}/workflows/workflow_missing", headers=_headers("u-owner"))
    assert response.status_code == 404
    assert response.json()["detail"]["reason"] == "WorkflowNotFound"


def test_sign_records_request_context(client, db, workflow):
    request_id = _request_id(workflow, 1)

    response = _sign(client, request_id, "u-alice")

    assert response.status_code == 200, response.text
    body = response.json()["data"]
    assert body["signature"]["status"] == "SIGNED"
    assert body["workflow"]["status"] == "IN_PROGRESS"
    assert body["workflow_completed"] is False

    audit = client.get(f"{BASE}/{request_id}/audit-trail", headers=_headers("u-owner")).json()["data"]
    signed = next(e for e in audit["events"] if e["event"] == "SIGNED")
    assert signed["user_agent"] == "contract-portal/2.1"
    assert signed["ip_address"] == "testclient"


def test_sign_as_wrong_user(client, workflow):
    response = _sign(client, _request_id(workflow, 1), "u-bob")
    assert response.status_code == 403


def test_sign_twice(client, workflow):
    request_id = _request_id(workflow, 1)
    _sign(client, request_id, "u-alice")

    response = _sign(client, request_id, "u-alice")

    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "AlreadySigned"


def test_invalid_signature_payload(client, workflow):
    response = _sign(client, _request_id(workflow, 1), "u-alice", signature="not base64!")
    assert response.status_code == 400


def test_full_workflow_over_http(client, workflow):
    _sign(client, _request_id(workflow, 1), "u-alice")
    response = _sign(client, _request_id(workflow, 2), "u-bob")

    assert response.json()["data"]["workflow_completed"] is True

    validation = client.get(f"{BASE}/{_request_id(workflow, 2)}/validate", headers=_headers("u-bob"))
    assert validation.status_code == 200
    assert validation.json()["data"]["is_valid"] is True

    trail = client.get(f"{BASE}/{_request_id(workflow, 2)}/audit-trail", headers=_headers("u-owner"))
    checks = trail.json()["data"]["compliance_checks"]
    assert checks == {
        "legal_validity": True,
        "technical_compliance": True,
        "audit_trail_complete": True,
        "timestamp_verified": True,
    }


def test_validate_unsigned(client, workflow):
    response = client.get(f"{BASE}/{_request_id(workflow, 1)}/validate", headers=_headers("u-alice"))
    assert response.status_code == 409


def test_cancel_after_signature(client, workflow):
    _sign(client, _request_id(workflow, 1), "u-alice")

    response = client.post(
        f"{BASE}/{_request_id(workflow, 2)}/cancel",
        json={"reason": "Changed terms"},
        headers=_headers("u-owner")
    )

    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "WorkflowHasSignatures"


def test_cancel(client, workflow):
    response = client.post(
        f"{BASE}/{_request_id(workflow, 1)}/cancel",
        json={"reason": "Changed terms"},
        headers=_headers("u-owner")
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "CANCELLED"


def test_notarize(client, workflow):
    _sign(client, _request_id(workflow, 1), "u-alice")

    response = client.post(
        f"{BASE}/{_request_id(workflow, 1)}/notarize",
        json={
            "notary_seal": "c2VhbA==",
            "notary_commission": {
                "commission_number": "NC-2231",
                "expiration_date": "2099-12-31",
                "jurisdiction": "New York",
            },
        },
        headers=_headers("u-notary")
    )

    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data["notarization"]["notary_id"] == "u-notary"
    assert data["signature"]["workflow_status"] == "COMPLETED"


def test_notarize_expired_commission(client, workflow):
    response = client.post(
        f"{BASE}/{_request_id(workflow, 1)}/notarize",
        json={
            "notary_seal": "c2VhbA==",
            "notary_commission": {
                "commission_number": "NC-2231",
                "expiration_date": "2001-01-01",
                "jurisdiction": "New York",
            },
        },
        headers=_headers("u-notary")
    )
    assert response.status_code == 403
