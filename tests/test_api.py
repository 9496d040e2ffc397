from __future__ import annotations

import base64

import pytest
from fastapi.testclient import TestClient

from policyquorum.api import app_from_settings, create_app
from policyquorum.codec.envelope import EnvelopePolicy
from policyquorum.config import Settings
from policyquorum.resolver import CommittedPolicyResolver

ADMIN = {"X-User-Id": "admin-1", "X-User-Email": "admin@example.com", "X-User-Role": "admin"}
ALICE = {"X-User-Id": "alice", "X-User-Email": "alice@example.com", "X-User-Role": "admin"}
BOB = {"X-User-Id": "bob", "X-User-Role": "admin"}
VIEWER = {"X-User-Id": "viewer", "X-User-Role": "user"}


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture
def client(manager, store) -> TestClient:
    return TestClient(create_app(manager, CommittedPolicyResolver(store)))


def _create(client: TestClient, request: bytes, threshold: int = 2) -> dict:
    response = client.post(
        "/api/admin/ssh-policies/pending",
        json={"policy_request": _b64(request), "role_id": "ssh:root", "threshold": threshold},
        headers=ADMIN,
    )
    assert response.status_code == 200, response.text
    return response.json()["policy"]


def test_healthz(client: TestClient) -> None:
    assert client.get("/healthz").json() == {"status": "ok"}


def test_admin_routes_require_identity(client: TestClient) -> None:
    assert client.get("/api/admin/ssh-policies/pending").status_code == 401
    assert client.get("/api/admin/ssh-policies/pending", headers=VIEWER).status_code == 403


def test_create_and_fetch_pending(client: TestClient, make_request) -> None:
    request = make_request()
    policy = _create(client, request)

    assert policy["status"] == "pending"
    assert policy["requested_by"] == "admin-1"
    assert policy["requested_by_email"] == "admin@example.com"
    assert base64.b64decode(policy["policy_request_data"]) == request

    listed = client.get("/api/admin/ssh-policies/pending", headers=ADMIN).json()["policies"]
    assert [p["id"] for p in listed] == [policy["id"]]

    detail = client.get(f"/api/admin/ssh-policies/pending/{policy['id']}", headers=ADMIN).json()
    assert detail["policy"]["id"] == policy["id"]
    assert detail["decisions"] == []


def test_create_rejects_bad_base64_and_bad_request(client: TestClient) -> None:
    bad_b64 = client.post(
        "/api/admin/ssh-policies/pending",
        json={"policy_request": "not base64!", "role_id": "ssh:root"},
        headers=ADMIN,
    )
    assert bad_b64.status_code == 400
    assert bad_b64.json()["code"] == "malformed_request"

    garbage = client.post(
        "/api/admin/ssh-policies/pending",
        json={"policy_request": _b64(b"garbage"), "role_id": "ssh:root"},
        headers=ADMIN,
    )
    assert garbage.status_code == 400


def test_full_approval_flow(client: TestClient, make_request) -> None:
    policy = _create(client, make_request())

    first = client.post(
        "/api/admin/ssh-policies/pending/approve",
        json={"policy_request": _b64(make_request("ssh:root", "alice"))},
        headers=ALICE,
    )
    assert first.status_code == 200
    assert first.json()["result"]["status"] == "pending"

    second = client.post(
        f"/api/admin/ssh-policies/pending/{policy['id']}/vote",
        json={"approve": True, "policy_request": _b64(make_request("ssh:root", "alice", "bob"))},
        headers=BOB,
    )
    assert second.json()["result"]["status"] == "approved"
    assert second.json()["result"]["approval_count"] == 2

    committed = client.post(
        f"/api/admin/ssh-policies/pending/{policy['id']}/commit",
        json={"signature": _b64(b"quorum-signature")},
        headers=ADMIN,
    )
    assert committed.status_code == 200
    body = committed.json()
    assert body["policy"]["status"] == "committed"
    assert body["warnings"] == []

    served = client.get("/api/ssh-policies/for-ssh-user/root", headers=VIEWER)
    assert served.status_code == 200
    assert served.json()["role_id"] == "ssh:root"
    published = EnvelopePolicy.from_bytes(base64.b64decode(served.json()["policy_data"]))
    assert published.signature == b"quorum-signature"

    by_role = client.get("/api/ssh-policies/committed/ssh:root", headers=VIEWER)
    assert by_role.json()["policy_data"] == served.json()["policy_data"]


def test_reject_by_signed_request(client: TestClient, make_request) -> None:
    request = make_request()
    policy = _create(client, request)

    response = client.post(
        "/api/admin/ssh-policies/pending/approve",
        json={"policy_request": _b64(make_request("ssh:root", "bob")), "rejected": True},
        headers=BOB,
    )

    assert response.status_code == 200
    result = response.json()["result"]
    assert result["policy_id"] == policy["id"]
    assert result["approved"] is False
    assert result["rejection_count"] == 1
    detail = client.get(f"/api/admin/ssh-policies/pending/{policy['id']}", headers=ADMIN).json()
    assert base64.b64decode(detail["policy"]["policy_request_data"]) == request


def test_vote_after_commit_is_conflict_with_state(client: TestClient, make_request) -> None:
    policy = _create(client, make_request(), threshold=1)
    client.post(f"/api/admin/ssh-policies/pending/{policy['id']}/commit", headers=ADMIN)

    response = client.post(f"/api/admin/ssh-policies/pending/{policy['id']}/reject", headers=BOB)

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "invalid_state"
    assert body["status"] == "committed"
    assert body["approval_count"] == 0
    assert body["threshold"] == 1


def test_commit_without_body_reports_warnings(client: TestClient, make_request) -> None:
    policy = _create(client, make_request(), threshold=1)

    response = client.post(f"/api/admin/ssh-policies/pending/{policy['id']}/commit", headers=ADMIN)

    assert response.status_code == 200
    assert set(response.json()["warnings"]) == {"COMMIT_BELOW_THRESHOLD", "SIGNATURE_MISSING_AT_COMMIT"}


def test_duplicate_vote_and_missing_decision(client: TestClient, make_request) -> None:
    policy = _create(client, make_request())
    url = f"/api/admin/ssh-policies/pending/{policy['id']}"

    assert client.post(f"{url}/reject", headers=BOB).status_code == 200
    duplicate = client.post(f"{url}/reject", headers=BOB)
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "duplicate_vote"

    no_decision = client.post(f"{url}/revoke", headers=ALICE)
    assert no_decision.status_code == 409
    assert no_decision.json()["code"] == "no_decision"

    revoked = client.post(f"{url}/revoke", headers=BOB)
    assert revoked.status_code == 200
    assert revoked.json()["result"]["rejection_count"] == 0


def test_approval_vote_requires_request(client: TestClient, make_request) -> None:
    policy = _create(client, make_request())

    response = client.post(
        f"/api/admin/ssh-policies/pending/{policy['id']}/vote",
        json={"approve": True},
        headers=ALICE,
    )

    assert response.status_code == 400


def test_cancel_and_unknown_policy(client: TestClient, make_request) -> None:
    policy = _create(client, make_request())

    cancelled = client.post(f"/api/admin/ssh-policies/pending/{policy['id']}/cancel", headers=ADMIN)
    assert cancelled.json()["policy"]["status"] == "cancelled"

    assert client.get("/api/admin/ssh-policies/pending/missing", headers=ADMIN).status_code == 404
    assert client.post("/api/admin/ssh-policies/pending/missing/cancel", headers=ADMIN).status_code == 404


def test_status_filter(client: TestClient, make_request) -> None:
    keep = _create(client, make_request())
    drop = _create(client, make_request(params={"n": 2}))
    client.post(f"/api/admin/ssh-policies/pending/{drop['id']}/cancel", headers=ADMIN)

    response = client.get("/api/admin/ssh-policies/pending?status=pending", headers=ADMIN)

    assert [p["id"] for p in response.json()["policies"]] == [keep["id"]]


def test_logs_are_paged(client: TestClient, make_request) -> None:
    policy = _create(client, make_request())
    client.post(f"/api/admin/ssh-policies/pending/{policy['id']}/reject", headers=BOB)
    client.post(f"/api/admin/ssh-policies/pending/{policy['id']}/cancel", headers=ADMIN)

    logs = client.get("/api/admin/ssh-policies/logs?limit=2", headers=ADMIN).json()["logs"]
    assert [entry["event"] for entry in logs] == ["cancelled", "rejected"]

    rest = client.get("/api/admin/ssh-policies/logs?limit=2&offset=2", headers=ADMIN).json()["logs"]
    assert [entry["event"] for entry in rest] == ["created"]

    assert client.get("/api/admin/ssh-policies/logs?limit=0", headers=ADMIN).status_code == 422


def test_committed_lookup_requires_identity_and_policy(client: TestClient) -> None:
    assert client.get("/api/ssh-policies/committed/ssh:root").status_code == 401

    missing = client.get("/api/ssh-policies/for-ssh-user/root", headers=VIEWER)
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"


def test_app_from_settings(tmp_path, make_request) -> None:
    app = app_from_settings(Settings(db_path=tmp_path / "api.db", default_threshold=2))
    client = TestClient(app)

    policy = _create(client, make_request(), threshold=2)

    assert policy["threshold"] == 2
    assert (tmp_path / "api.db").exists()
