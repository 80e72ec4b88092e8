"""Functional tests for the crosswire REST API."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from crosswire.adapters.base import FetchResult
from crosswire.engine import SyncEngine
from crosswire.events import drain, subscribe_events, unsubscribe_events
from crosswire.sync_state import begin_sync
from crosswire.web import api
from crosswire.web.api import get_engine
from crosswire.web.app import create_app
from tests.factories import gmail_contact, message, slack_contact


@pytest.fixture
def engine(db, config, cache, credentials, fake_adapter):
    alice = gmail_contact("alice@acme.com", "Alice Smith")
    window = FetchResult(
        contacts=[alice],
        messages=[message("g1", alice, thread_id="t1", content="Lunch?")],
        next_cursor="100",
    )
    eng = SyncEngine(
        db,
        config,
        adapters={"gmail": fake_adapter("gmail", [window]), "slack": fake_adapter("slack")},
        cache=cache,
    )
    yield eng
    eng.close()


@pytest.fixture
def client(engine, monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    app = create_app()
    app.dependency_overrides[get_engine] = lambda: engine
    with TestClient(app) as c:
        yield c


def _flag_someone(engine):
    """Sync alice, then offer an ambiguous slack contact."""
    engine.sync_user("u1", ["gmail"])
    result = engine.process_contact("u1", "slack", slack_contact("U9", "Alice Smith"))
    return result.pending_id


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_trigger_sync(client, db):
    resp = client.post("/api/sync/u1", params={"platforms": ["gmail"]})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success"
    assert body["platforms"]["gmail"]["created"] == 1
    assert body["platforms"]["gmail"]["cursor"] == "100"


def test_trigger_sync_in_progress_is_409(client, db):
    begin_sync(db, "u1", "gmail")
    resp = client.post("/api/sync/u1", params={"platforms": ["gmail"]})
    assert resp.status_code == 409
    assert resp.json()["detail"]["kind"] == "sync_in_progress"


def test_scheduled_sync_skips_when_fresh(client):
    assert client.post("/api/sync/u1").json()["reason"] == "initial sync"
    body = client.post("/api/sync/u1").json()
    assert body["status"] == "skipped"


def test_status(client):
    body = client.get("/api/sync/u1/status").json()
    assert body["recommendation"]["reason"] == "initial sync"
    assert {p["platform"] for p in body["platforms"]} == {"gmail", "slack"}


def test_webhook_before_initial_sync(client):
    resp = client.post("/api/webhook/gmail/u1", json={"cursor": "50"})
    assert resp.status_code == 200
    assert resp.json()["reason"] == "initial sync required"


def test_pending_decision_flow(client, engine):
    pending_id = _flag_someone(engine)

    listed = client.get("/api/users/u1/pending").json()
    assert [p["id"] for p in listed] == [pending_id]
    target = listed[0]["candidate_contact_id"]

    url = f"/api/users/u1/pending/{pending_id}/decision"
    assert client.post(url, json={"decision": "approve_merge"}).status_code == 400

    resp = client.post(url, json={"decision": "approve_merge", "target_id": target})
    assert resp.status_code == 200
    assert resp.json()["status"] == "approved_merge"
    assert resp.json()["contact_id"] == target

    replay = client.post(url, json={"decision": "approve_merge", "target_id": target})
    assert replay.status_code == 200
    assert replay.json()["replayed"] is True

    conflict = client.post(url, json={"decision": "reject"})
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["kind"] == "conflicting_decision"


def test_decision_on_unknown_pending_is_404(client):
    resp = client.post("/api/users/u1/pending/nope/decision", json={"decision": "reject"})
    assert resp.status_code == 404


def test_invalid_decision_is_422(client):
    resp = client.post("/api/users/u1/pending/x/decision", json={"decision": "maybe"})
    assert resp.status_code == 422


def test_threads(client):
    client.post("/api/sync/u1", params={"platforms": ["gmail"]})
    body = client.get("/api/users/u1/threads").json()
    assert body["total"] == 1
    assert body["threads"][0]["content"] == "Lunch?"
    assert body["threads"][0]["display_name"] == "Alice Smith"


def test_contact_lookup(client):
    client.post("/api/sync/u1", params={"platforms": ["gmail"]})
    contacts = client.get("/api/users/u1/contacts").json()
    assert [c["full_name"] for c in contacts] == ["Alice Smith"]

    contact = client.get(f"/api/users/u1/contacts/{contacts[0]['id']}").json()
    assert contact["identities"]["gmail"]["platform_contact_id"] == "alice@acme.com"

    missing = client.get("/api/users/u1/contacts/nope")
    assert missing.status_code == 404
    assert missing.json()["detail"]["kind"] == "contact_not_found"


def test_manual_import_links_second_platform(client):
    client.post("/api/sync/u1", params={"platforms": ["gmail"]})
    record = {"platform": "slack", "id": "U1", "name": "alice", "real_name": "Alice Smith",
              "email": "Alice@Acme.com"}

    body = client.post("/api/users/u1/contacts/import", json=record).json()
    assert body["action"] == "auto_merged"

    contact = client.get(f"/api/users/u1/contacts/{body['contact_id']}").json()
    assert set(contact["identities"]) == {"gmail", "slack"}
    assert contact["identities"]["slack"]["handle"] == "alice"

    again = client.post("/api/users/u1/contacts/import", json=record).json()
    assert again["action"] == "definitive_link_exists"
    assert again["contact_id"] == body["contact_id"]


def test_find_matches_is_read_only(client):
    client.post("/api/sync/u1", params={"platforms": ["gmail"]})
    matches = client.post(
        "/api/users/u1/contacts/find-matches", json={"platform": "gmail", "email": "alice@acme.com"}
    ).json()
    assert matches[0]["score"] == 100
    assert matches[0]["reason"] == "email_exact_match"
    assert len(client.get("/api/users/u1/contacts").json()) == 1


def test_import_rejects_malformed_records(client):
    resp = client.post("/api/users/u1/contacts/import", json={"platform": "teams", "id": "T1"})
    assert resp.status_code == 422
    assert resp.json()["detail"]["kind"] == "invalid_record"

    resp = client.post("/api/users/u1/contacts/import", json={"platform": "gmail", "email": "nobody"})
    assert resp.status_code == 422



def test_blacklist_endpoints(client, engine):
    pending_id = _flag_someone(engine)
    client.post(f"/api/users/u1/pending/{pending_id}/decision", json={"decision": "reject"})

    entries = client.get("/api/users/u1/blacklist").json()
    assert len(entries) == 1
    entry_id = entries[0]["id"]

    assert client.delete(f"/api/users/u1/blacklist/{entry_id}").status_code == 200
    assert client.delete(f"/api/users/u1/blacklist/{entry_id}").status_code == 404


def test_admin_reset_and_stuck(client, db):
    begin_sync(db, "u1", "gmail")
    body = client.post("/api/admin/sync-state/u1/gmail/reset").json()
    assert body["is_currently_syncing"] is False
    assert body["cursor"] is None
    assert client.get("/api/admin/sync-state/stuck").json() == []


def test_sync_publishes_events(engine):
    queue = subscribe_events()
    try:
        engine.sync_user("u1", ["gmail"])
        events = drain(queue)
    finally:
        unsubscribe_events(queue)
    assert [e["type"] for e in events] == ["sync_started", "sync_completed"]
    assert events[1]["messages"] == 1


def test_requests_share_one_annotation_queue(monkeypatch, config):
    built = []
    monkeypatch.setattr(api, "_annotator", None)
    monkeypatch.setattr(api, "build_annotation_queue", lambda cfg: built.append(cfg) or object())

    first = api.shared_annotator(config)
    assert api.shared_annotator(config) is first
    assert len(built) == 1
