"""Shared test fixtures."""

from __future__ import annotations

from datetime import timedelta

import pytest

from crosswire.adapters.base import FetchResult
from crosswire.config import Config
from crosswire.credentials import save_credential
from crosswire.database import get_db, init_db, to_iso, utcnow
from crosswire.models import Credential
from crosswire.threads import ThreadViewCache


@pytest.fixture
def db():
    """In-memory SQLite database with schema initialized."""
    conn = get_db(db_path=":memory:")
    init_db(conn)
    yield conn
    conn.close()


@pytest.fixture
def config():
    cfg = Config()
    cfg.sync.fetch_timeout_seconds = 5
    return cfg


@pytest.fixture
def cache():
    return ThreadViewCache()


@pytest.fixture
def credentials(db):
    """Valid gmail and slack credentials for user u1."""
    save_credential(db, Credential(
        user_id="u1",
        platform="gmail",
        access_token="gmail-token",
        refresh_token="gmail-refresh",
        expires_at=to_iso(utcnow() + timedelta(hours=1)),
        metadata={"email": "me@example.com"},
    ))
    save_credential(db, Credential(
        user_id="u1",
        platform="slack",
        access_token="xoxp-token",
        metadata={"slack_user_id": "UME"},
    ))


class FakeAdapter:
    """Scripted fetch adapter: returns queued results or raises queued errors."""

    def __init__(self, platform: str, results=None):
        self.platform = platform
        self.results = list(results or [])
        self.calls: list[tuple[str, str | None, str | None]] = []

    def fetch_since(self, user_id, cursor, credential):
        self.calls.append((user_id, cursor, credential.access_token))
        if not self.results:
            return FetchResult()
        outcome = self.results.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome()
        return outcome


@pytest.fixture
def fake_adapter():
    return FakeAdapter
