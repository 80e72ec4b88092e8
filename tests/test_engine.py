"""Tests for the sync engine: scheduling, per-platform failures, webhooks."""

import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from crosswire.adapters.base import FetchResult
from crosswire.approvals import list_pending
from crosswire.contacts import list_contacts
from crosswire.credentials import StoredCredentialProvider, get_credential, save_credential
from crosswire.database import to_iso, utcnow
from crosswire.engine import INITIAL_SYNC_REQUIRED, UP_TO_DATE, SyncEngine, overall_status
from crosswire.errors import CredentialExpired, NotAuthenticated, RateLimited
from crosswire.models import Credential, Decision, PlatformReport, SyncStatus
from crosswire.scheduler import FRESH, INITIAL
from crosswire.sync_state import begin_sync, get_state
from tests.factories import gmail_contact, message, slack_contact

ALICE_GMAIL = gmail_contact("alice@acme.com", "Alice Smith")
ALICE_SLACK = slack_contact("U1", "Alice Smith", email="alice@acme.com", handle="alice")


def _gmail_window(cursor="1000"):
    return FetchResult(
        contacts=[ALICE_GMAIL],
        messages=[message("g1", ALICE_GMAIL, ts="2024-01-15T09:00:00+00:00", thread_id="gt1", content="Pricing?")],
        next_cursor=cursor,
    )


def _slack_window(cursor="1705312800.000100"):
    return FetchResult(
        contacts=[ALICE_SLACK],
        messages=[message("D1-1705312800.000100", ALICE_SLACK, ts="2024-01-15T10:00:00+00:00",
                          thread_id="D1-1705312800.000100", content="ping")],
        next_cursor=cursor,
    )


@pytest.fixture
def make_engine(db, config, cache, fake_adapter):
    engines = []

    def build(gmail=(), slack=(), refreshers=None, annotator=None):
        adapters = {"gmail": fake_adapter("gmail", gmail), "slack": fake_adapter("slack", slack)}
        engine = SyncEngine(
            db,
            config,
            adapters=adapters,
            credentials=StoredCredentialProvider(db, refreshers),
            annotator=annotator,
            cache=cache,
        )
        engines.append(engine)
        return engine

    yield build
    for engine in engines:
        engine.close()


def _expire_gmail(db):
    save_credential(db, Credential(
        user_id="u1",
        platform="gmail",
        access_token="stale-token",
        refresh_token="gmail-refresh",
        expires_at=to_iso(utcnow() - timedelta(minutes=5)),
    ))


def test_overall_status():
    ok, bad = PlatformReport("a"), PlatformReport("b", ok=False)
    assert overall_status({"a": ok}) == SyncStatus.SUCCESS
    assert overall_status({"a": ok, "b": bad}) == SyncStatus.PARTIAL
    assert overall_status({"b": bad}) == SyncStatus.FAILED


def test_fresh_user_initial_sync_unifies_across_platforms(db, credentials, make_engine):
    engine = make_engine(gmail=[_gmail_window()], slack=[_slack_window()])

    report = engine.sync_user("u1")

    assert report.status == SyncStatus.SUCCESS
    assert report.reason == INITIAL
    assert report.platforms["gmail"].created == 1
    assert report.platforms["slack"].merged == 1
    contacts = list_contacts(db, "u1")
    assert len(contacts) == 1
    assert set(contacts[0].identities) == {"gmail", "slack"}

    threads = list(engine.thread_view("u1"))
    assert [t.content for t in threads] == ["ping", "Pricing?"]
    assert all(t.display_name == "Alice Smith" for t in threads)

    assert get_state(db, "u1", "gmail").cursor == "1000"
    assert get_state(db, "u1", "slack").cursor == "1705312800.000100"
    assert get_state(db, "u1", "gmail").initial_sync_complete


def test_fresh_data_is_not_resynced(db, credentials, make_engine):
    engine = make_engine(gmail=[_gmail_window()], slack=[_slack_window()])
    engine.sync_user("u1")

    report = engine.sync_user("u1")
    assert report.status == SyncStatus.SKIPPED
    assert report.reason == FRESH
    assert len(engine.adapters["gmail"].calls) == 1


def test_incremental_sync_passes_stored_cursor(db, credentials, make_engine):
    engine = make_engine(gmail=[_gmail_window("1000"), FetchResult()])
    engine.sync_user("u1", ["gmail"])
    engine.sync_user("u1", ["gmail"])

    assert [c[1] for c in engine.adapters["gmail"].calls] == [None, "1000"]
    # Empty window keeps the cursor
    assert get_state(db, "u1", "gmail").cursor == "1000"


def test_resync_is_idempotent(db, credentials, make_engine):
    engine = make_engine(gmail=[_gmail_window(), _gmail_window()])
    engine.sync_user("u1", ["gmail"])
    report = engine.sync_user("u1", ["gmail"])

    assert report.platforms["gmail"].linked == 1
    assert len(list_contacts(db, "u1")) == 1
    assert engine.status("u1")["stats"]["messages"] == 1


def test_expired_credential_without_refresh_gives_partial(db, credentials, make_engine):
    _expire_gmail(db)
    engine = make_engine(gmail=[_gmail_window()], slack=[_slack_window()])

    report = engine.sync_user("u1", ["gmail", "slack"])

    assert report.status == SyncStatus.PARTIAL
    gmail = report.platforms["gmail"]
    assert not gmail.ok
    assert gmail.error_kind == "not_authenticated"
    assert report.platforms["slack"].ok
    state = get_state(db, "u1", "gmail")
    assert state.cursor is None
    assert not state.is_currently_syncing
    assert state.last_error_kind == "not_authenticated"
    assert engine.adapters["gmail"].calls == []


def test_expired_credential_is_refreshed_once(db, credentials, make_engine):
    _expire_gmail(db)

    def refresher(cred):
        return Credential(
            user_id=cred.user_id,
            platform=cred.platform,
            access_token="fresh-token",
            refresh_token=cred.refresh_token,
            expires_at=to_iso(utcnow() + timedelta(hours=1)),
        )

    engine = make_engine(gmail=[_gmail_window()], refreshers={"gmail": refresher})
    report = engine.sync_user("u1", ["gmail"])

    assert report.status == SyncStatus.SUCCESS
    assert engine.adapters["gmail"].calls[0][2] == "fresh-token"
    assert get_credential(db, "u1", "gmail").access_token == "fresh-token"


def test_token_rejected_mid_fetch_triggers_refresh(db, credentials, make_engine):
    refresher = MagicMock(side_effect=lambda cred: Credential(
        user_id=cred.user_id, platform=cred.platform, access_token="new", refresh_token="r",
    ))
    engine = make_engine(
        gmail=[CredentialExpired("401"), _gmail_window()], refreshers={"gmail": refresher}
    )
    report = engine.sync_user("u1", ["gmail"])

    assert report.status == SyncStatus.SUCCESS
    assert refresher.call_count == 1
    assert [c[2] for c in engine.adapters["gmail"].calls] == ["gmail-token", "new"]


def test_refresh_failure_is_not_authenticated(db, credentials, make_engine):
    _expire_gmail(db)

    def refresher(cred):
        raise RuntimeError("invalid_grant")

    engine = make_engine(gmail=[_gmail_window()], refreshers={"gmail": refresher})
    report = engine.sync_user("u1", ["gmail"])

    assert report.status == SyncStatus.FAILED
    assert report.platforms["gmail"].error_kind == NotAuthenticated.kind
    assert "invalid_grant" in report.platforms["gmail"].errors[0]


def test_rate_limit_is_reported_with_retry_after(db, credentials, make_engine):
    engine = make_engine(slack=[RateLimited("slow down", retry_after=30)])
    report = engine.sync_user("u1", ["slack"])

    slack = report.platforms["slack"]
    assert slack.error_kind == "rate_limited"
    assert slack.retry_after == 30
    assert get_state(db, "u1", "slack").last_error_kind == "rate_limited"


def test_fetch_timeout_is_transient_and_releases_flag(db, config, credentials, make_engine):
    config.sync.fetch_timeout_seconds = 0.05

    def slow():
        time.sleep(0.5)
        return _slack_window()

    engine = make_engine(slack=[slow])
    report = engine.sync_user("u1", ["slack"])

    assert report.platforms["slack"].error_kind == "transient_fetch_failure"
    state = get_state(db, "u1", "slack")
    assert not state.is_currently_syncing
    assert state.cursor is None


def test_unexpected_adapter_error_is_contained(db, credentials, make_engine):
    engine = make_engine(gmail=[ValueError("bad payload")], slack=[_slack_window()])
    report = engine.sync_user("u1", ["gmail", "slack"])

    assert report.status == SyncStatus.PARTIAL
    assert report.platforms["gmail"].error_kind == "internal_error"
    assert not get_state(db, "u1", "gmail").is_currently_syncing


def test_concurrent_run_is_rejected_without_touching_state(db, credentials, make_engine):
    begin_sync(db, "u1", "gmail")
    engine = make_engine(gmail=[_gmail_window()])

    report = engine.sync_user("u1", ["gmail"])

    assert report.platforms["gmail"].error_kind == "sync_in_progress"
    assert get_state(db, "u1", "gmail").is_currently_syncing
    assert engine.adapters["gmail"].calls == []


def test_unknown_platform(db, credentials, make_engine):
    engine = make_engine()
    report = engine.sync_user("u1", ["teams"])
    assert report.platforms["teams"].error_kind == "unknown_platform"


def test_bot_messages_are_dropped(db, credentials, make_engine):
    bot = slack_contact("B1", "Deploy Notifier", is_bot=True)
    window = FetchResult(contacts=[bot], messages=[message("D2-1.0", bot)], next_cursor="1.0")
    engine = make_engine(slack=[window])

    report = engine.sync_user("u1", ["slack"])

    assert report.platforms["slack"].filtered == 1
    assert report.platforms["slack"].messages == 0
    assert engine.status("u1")["stats"]["messages"] == 0


def test_flagged_sender_messages_are_held_then_imported(db, credentials, make_engine):
    hank_gmail = gmail_contact("hank@acme.com", "Hank Moody")
    hank_slack = slack_contact("U8", "Hank Moody")
    held = FetchResult(
        contacts=[hank_slack],
        messages=[message("D8-1.0", hank_slack, content="you around?")],
        next_cursor="1.0",
    )
    engine = make_engine(
        gmail=[FetchResult(contacts=[hank_gmail], next_cursor="10")],
        slack=[held, held],
    )
    engine.sync_user("u1", ["gmail"])
    report = engine.sync_user("u1", ["slack"])
    assert report.platforms["slack"].flagged == 1

    pending = list_pending(db, "u1")
    assert len(pending) == 1
    assert pending[0].message_count == 1
    assert pending[0].preview_content == "you around?"
    assert engine.status("u1")["stats"]["unlinked_messages"] == 1

    # Re-ingesting the same window does not double count
    engine.sync_user("u1", ["slack"])
    assert list_pending(db, "u1")[0].message_count == 1

    target = list_contacts(db, "u1")[0].id
    result = engine.decide_pending("u1", pending[0].id, Decision.approve_merge(target))
    assert result.messages_imported == 1
    threads = list(engine.thread_view("u1"))
    assert threads[0].display_name == "Hank Moody"
    assert engine.status("u1")["stats"]["unlinked_messages"] == 0


def test_webhook_requires_initial_sync(db, credentials, make_engine):
    engine = make_engine(gmail=[_gmail_window()])
    report = engine.handle_webhook("u1", "gmail", "5000")
    assert report.status == SyncStatus.SKIPPED
    assert report.reason == INITIAL_SYNC_REQUIRED
    assert engine.adapters["gmail"].calls == []


def test_webhook_fetches_delta_since_cursor(db, credentials, make_engine):
    delta = FetchResult(
        contacts=[ALICE_GMAIL],
        messages=[message("g2", ALICE_GMAIL, ts="2024-01-16T09:00:00+00:00", thread_id="gt1")],
        next_cursor="1100",
    )
    engine = make_engine(gmail=[_gmail_window("1000"), delta])
    engine.sync_user("u1", ["gmail"])

    assert engine.handle_webhook("u1", "gmail", "1000").reason == UP_TO_DATE
    assert engine.handle_webhook("u1", "gmail", "900").reason == UP_TO_DATE

    report = engine.handle_webhook("u1", "gmail", "1100")
    assert report.status == SyncStatus.SUCCESS
    assert engine.adapters["gmail"].calls[-1][1] == "1000"
    assert get_state(db, "u1", "gmail").cursor == "1100"
    assert list(engine.thread_view("u1"))[0].thread_count == 2


def test_new_messages_queue_annotations(db, credentials, make_engine):
    annotator = MagicMock()
    engine = make_engine(gmail=[_gmail_window()], annotator=annotator)
    engine.sync_user("u1", ["gmail"])
    annotator.submit.assert_called_once_with("u1", "gt1")


def test_shared_annotator_outlives_engine(db, config):
    annotator = MagicMock()
    engine = SyncEngine.from_config(config, db, annotator=annotator)
    engine.close(wait=True)
    annotator.shutdown.assert_not_called()


def test_owned_annotator_drains_on_close(db, config, cache):
    annotator = MagicMock()
    engine = SyncEngine(db, config, adapters={}, annotator=annotator, cache=cache)
    engine.close(wait=True)
    annotator.shutdown.assert_called_once_with(wait=True)


def test_status_reports_state_without_fetching(db, credentials, make_engine):
    engine = make_engine(gmail=[_gmail_window()])
    engine.sync_user("u1", ["gmail"])

    info = engine.status("u1")
    by_platform = {p["platform"]: p for p in info["platforms"]}
    assert by_platform["gmail"]["cursor"] == "1000"
    assert by_platform["gmail"]["credential_valid"]
    assert by_platform["slack"]["last_success_at"] is None
    assert info["recommendation"]["should_sync"]
    assert info["stats"]["contacts"] == 1
    assert len(engine.adapters["gmail"].calls) == 1


def test_reset_sync_state_makes_next_sync_initial(db, credentials, make_engine):
    engine = make_engine(gmail=[_gmail_window(), _gmail_window()])
    engine.sync_user("u1", ["gmail"])
    engine.reset_sync_state("u1", "gmail")
    engine.sync_user("u1", ["gmail"])
    assert [c[1] for c in engine.adapters["gmail"].calls] == [None, None]
