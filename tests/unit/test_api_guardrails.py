"""API guardrails: identity, role checks and error mapping over the REST surface."""

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from reviewdesk.api import app
from reviewdesk.auth import reload_api_key_cache
from reviewdesk.config import settings


@pytest.fixture()
def _api_env(tmp_path: Path):
    original_data_dir = settings.data_dir
    original_require = settings.security.require_api_key
    original_keys = settings.security.api_keys_json

    settings.data_dir = tmp_path
    settings.security.require_api_key = False
    settings.security.api_keys_json = ""
    reload_api_key_cache()

    try:
        yield TestClient(app)
    finally:
        settings.data_dir = original_data_dir
        settings.security.require_api_key = original_require
        settings.security.api_keys_json = original_keys
        reload_api_key_cache()


def _as(user_id: str) -> dict[str, str]:
    return {"X-Actor-Id": user_id}


def _register(client: TestClient, email: str, role: str, actor: str | None = None) -> str:
    r = client.post("/api/users", json={"email": email, "role": role}, headers=_as(actor) if actor else {})
    assert r.status_code == 200, r.text
    return r.json()["user_id"]


def test_health(_api_env):
    r = _api_env.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_user_registration_rules(_api_env):
    client = _api_env
    admin = _register(client, "editor@journal.example", "Admin")

    # Once an admin exists, privileged roles need an admin caller.
    r = client.post("/api/users", json={"email": "rev@uni.example", "role": "Peer Reviewer"})
    assert r.status_code == 401
    author = _register(client, "author@uni.example", "Researcher")
    r = client.post(
        "/api/users", json={"email": "rev@uni.example", "role": "Peer Reviewer"}, headers=_as(author)
    )
    assert r.status_code == 403
    _register(client, "rev@uni.example", "Peer Reviewer", actor=admin)

    r = client.post("/api/users", json={"email": "author@uni.example"})
    assert r.status_code == 409

    assert client.get(f"/api/users/{admin}", headers=_as(author)).status_code == 403
    assert client.get(f"/api/users/{author}", headers=_as(author)).status_code == 200
    assert client.get("/api/reviewers", headers=_as(author)).status_code == 403
    assert len(client.get("/api/reviewers", headers=_as(admin)).json()) == 1


def test_manuscript_access_and_workflow(_api_env):
    client = _api_env
    admin = _register(client, "editor@journal.example", "Admin")
    author = _register(client, "author@uni.example", "Researcher")
    stranger = _register(client, "other@uni.example", "Researcher")
    reviewer = _register(client, "rev@uni.example", "Peer Reviewer", actor=admin)

    r = client.post("/api/manuscripts", json={"title": "Coastal Erosion Models"}, headers=_as(author))
    assert r.status_code == 200, r.text
    manuscript_id = r.json()["manuscript_id"]
    assert r.json()["status"] == "Pending"

    assert client.get(f"/api/manuscripts/{manuscript_id}", headers=_as("ghost")).status_code == 401
    assert client.get(f"/api/manuscripts/{manuscript_id}").status_code == 401
    assert client.get(f"/api/manuscripts/{manuscript_id}", headers=_as(stranger)).status_code == 404

    r = client.post(
        f"/api/manuscripts/{manuscript_id}/status",
        json={"status": "Assigning Peer Reviewer"},
        headers=_as(author),
    )
    assert r.status_code == 403
    assert r.json()["detail"]["error"] == "permission_denied"
    r = client.post(
        f"/api/manuscripts/{manuscript_id}/reviewers", json={"reviewer_id": reviewer}, headers=_as(admin)
    )
    assert r.status_code == 409

    r = client.post(
        f"/api/manuscripts/{manuscript_id}/status",
        json={"status": "Assigning Peer Reviewer"},
        headers=_as(admin),
    )
    assert r.status_code == 200
    assert r.json()["status"] == "Assigning Peer Reviewer"

    r = client.post(
        f"/api/manuscripts/{manuscript_id}/reviewers", json={"reviewer_id": reviewer}, headers=_as(admin)
    )
    assert r.status_code == 200
    assert r.json()["status"] == "Peer Reviewer Assigned"
    pending = client.get("/api/invitations", headers=_as(reviewer)).json()
    assert [m["manuscript_id"] for m in pending] == [manuscript_id]

    r = client.post(
        f"/api/manuscripts/{manuscript_id}/status", json={"status": "Rejected"}, headers=_as(admin)
    )
    assert r.status_code == 409

    r = client.post(f"/api/manuscripts/{manuscript_id}/invitation", json={"accept": True}, headers=_as(reviewer))
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "Peer Reviewer Reviewing"
    assert [v["reviewer_id"] for v in body["visible_reviewers"]] == [reviewer]
    assert body["active_deadline"] is not None
    assert body["deadline_urgency"] == "plenty"
    assert client.get("/api/invitations", headers=_as(reviewer)).json() == []
    history = client.get(
        f"/api/users/{reviewer}/activity", params={"action": "invitation_accepted"}, headers=_as(reviewer)
    ).json()
    assert [e["target_id"] for e in history] == [manuscript_id]
    assert client.get(f"/api/users/{reviewer}/activity", headers=_as(author)).status_code == 403

    r = client.post(
        f"/api/manuscripts/{manuscript_id}/decision", json={"decision": "perhaps"}, headers=_as(reviewer)
    )
    assert r.status_code == 409

    r = client.get(f"/api/manuscripts/{manuscript_id}", headers=_as(author))
    assert r.status_code == 200
    assert r.json()["visible_reviewers"] == []
    assert client.get(f"/api/manuscripts/{manuscript_id}/reviews", headers=_as(author)).json() == []

    listing = client.get("/api/manuscripts", headers=_as(stranger)).json()
    assert listing["items"] == []
    listing = client.get("/api/manuscripts", headers=_as(reviewer)).json()
    assert [m["manuscript_id"] for m in listing["items"]] == [manuscript_id]

    inbox = client.get("/api/notifications", headers=_as(reviewer)).json()
    assert inbox
    r = client.post(f"/api/notifications/{inbox[0]['notification_id']}/read", headers=_as(author))
    assert r.status_code == 404

    activity = client.get(f"/api/manuscripts/{manuscript_id}/activity", headers=_as(admin)).json()
    assert {"manuscript_created", "reviewer_assigned", "invitation_accepted"} <= {e["action"] for e in activity}


def test_deadline_settings_are_admin_editable(_api_env):
    client = _api_env
    admin = _register(client, "editor@journal.example", "Admin")
    author = _register(client, "author@uni.example", "Researcher")

    payload = {
        "invitation_days": 5,
        "review_days": 21,
        "re_review_days": 3,
        "revision_days": 10,
        "finalization_days": 4,
    }
    assert client.put("/api/deadline-settings", json=payload, headers=_as(author)).status_code == 403
    assert client.put("/api/deadline-settings", json=payload, headers=_as(admin)).status_code == 200
    assert client.get("/api/deadline-settings", headers=_as(author)).json() == payload


def test_api_keys_when_required(_api_env):
    client = _api_env
    admin = _register(client, "editor@journal.example", "Admin")

    settings.security.require_api_key = True
    settings.security.api_keys_json = json.dumps([{"key": "editor-key-12345678", "user_id": admin}])
    reload_api_key_cache()

    assert client.get(f"/api/users/{admin}").status_code == 401
    assert client.get(f"/api/users/{admin}", headers=_as(admin)).status_code == 401
    assert client.get(f"/api/users/{admin}", headers={"X-API-Key": "wrong-key-12345678"}).status_code == 401
    r = client.get(f"/api/users/{admin}", headers={"X-API-Key": "editor-key-12345678"})
    assert r.status_code == 200
    assert r.json()["role"] == "Admin"
