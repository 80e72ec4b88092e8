"""Tests for message upserts, threading and the thread view cache."""

from crosswire.contacts import add_identity, create_contact
from crosswire.database import transaction
from crosswire.messages import list_messages, message_stats, upsert_message, upsert_thread_summary
from crosswire.threads import (
    UNKNOWN,
    ThreadView,
    ThreadViewCache,
    build_threads,
    display_name,
    parse_actual_sender,
)
from crosswire import threads
from crosswire.adapters.records import SlackContactRecord, SlackMessageRecord
from tests.factories import gmail_contact, message


def _contact(db, email, name):
    c = gmail_contact(email, name)
    with transaction(db):
        contact_id = create_contact(db, "u1", c)
        add_identity(db, "u1", contact_id, "gmail", c)
    return contact_id, c


def _store(db, msg, contact_id, platform="gmail"):
    with transaction(db):
        return upsert_message(db, "u1", platform, msg, contact_id)


def test_parse_actual_sender():
    assert parse_actual_sender('"Sarah Chen" <sarah@acme.com>') == ("Sarah Chen", "sarah@acme.com")
    assert parse_actual_sender("<ops@acme.com>") == ("ops@acme.com", "ops@acme.com")
    assert parse_actual_sender("plain@acme.com") == ("plain@acme.com", "plain@acme.com")
    assert parse_actual_sender("") is None
    assert parse_actual_sender(None) is None


def test_display_name():
    assert display_name(None, None, ("X", "x@a.com")) == UNKNOWN
    assert display_name("Alice", "alice@a.com", None) == "Alice"
    assert display_name("Alice", "alice@a.com", ("Alice S", "ALICE@a.com")) == "Alice"
    assert display_name("Alice", "alice@a.com", ("Bob", "bob@a.com")) == "Bob (via Alice)"
    assert display_name("Alice", None, ("alice", "alice")) == "Alice"
    assert display_name("Alice", None, ("Bob", "Bob")) == "Bob (via Alice)"


def test_upsert_is_idempotent_by_natural_key(db):
    cid, c = _contact(db, "alice@acme.com", "Alice")
    assert _store(db, message("g1", c, content="v1"), cid)
    assert not _store(db, message("g1", c, content="v2"), cid)

    rows = list_messages(db, "u1")
    assert len(rows) == 1
    assert rows[0]["content"] == "v2"
    # Same id on another platform is a different message
    assert _store(db, message("g1", c), cid, platform="slack")


def test_upsert_keeps_existing_contact_link(db):
    cid, c = _contact(db, "alice@acme.com", "Alice")
    _store(db, message("g1", c), cid)
    _store(db, message("g1", c), None)
    assert list_messages(db, "u1")[0]["contact_id"] == cid


def test_messages_group_into_threads(db):
    cid, c = _contact(db, "alice@acme.com", "Alice")
    _store(db, message("a1", c, ts="2024-01-01T09:00:00+00:00", thread_id="t1", content="first"), cid)
    _store(db, message("a2", c, ts="2024-01-01T11:00:00+00:00", thread_id="t1", content="latest"), cid)
    _store(db, message("b1", c, ts="2024-01-01T10:00:00+00:00", content="solo"), cid)

    threads = build_threads(list_messages(db, "u1"))

    assert [t.thread_id for t in threads] == ["t1", "b1"]
    t1 = threads[0]
    assert t1.thread_count == 2
    assert t1.content == "latest"
    assert [m["platform_message_id"] for m in t1.thread_messages] == ["a2", "a1"]
    assert t1.display_name == "Alice"
    assert threads[1].thread_count == 1


def test_summary_overrides_displayed_content(db):
    cid, c = _contact(db, "alice@acme.com", "Alice")
    _store(db, message("a1", c, ts="2024-01-01T09:00:00+00:00", thread_id="t1", content="hi"), cid)
    _store(db, message("a2", c, ts="2024-01-01T10:00:00+00:00", thread_id="t1", content="hello"), cid)
    with transaction(db):
        upsert_thread_summary(
            db, "u1", "gmail", "t1", "Alice asked about pricing.",
            {"key_topics": ["pricing"], "action_items": ["send quote"]},
            timestamp="2024-01-02T00:00:00+00:00",
            contact_id=cid,
        )

    threads = build_threads(list_messages(db, "u1"))
    assert len(threads) == 1
    t = threads[0]
    assert t.content == "Alice asked about pricing."
    assert t.summary == "Alice asked about pricing."
    assert t.key_points == ["pricing"]
    assert t.action_items == ["send quote"]
    assert t.urgency == "low"
    assert t.thread_count == 2
    # Representative message is still the newest raw message
    assert t.timestamp == "2024-01-01T10:00:00+00:00"


def test_summary_replaced_on_resummarize(db):
    cid, c = _contact(db, "alice@acme.com", "Alice")
    _store(db, message("a1", c, thread_id="t1"), cid)
    for text in ("old summary", "new summary"):
        with transaction(db):
            upsert_thread_summary(db, "u1", "gmail", "t1", text, {}, timestamp="2024-02-01T00:00:00+00:00")
    stats = message_stats(db, "u1")
    assert stats["thread_summaries"] == 1
    assert build_threads(list_messages(db, "u1"))[0].content == "new summary"


def test_forwarded_sender_shows_via_contact(db):
    cid, c = _contact(db, "alice@acme.com", "Alice")
    _store(db, message("a1", c, from_header="Bob Jones <bob@other.com>"), cid)
    t = build_threads(list_messages(db, "u1"))[0]
    assert t.display_name == "Bob Jones (via Alice)"
    assert t.actual_sender == "bob@other.com"


def test_unlinked_message_is_unknown(db):
    _store(db, message("x1", None), None)
    assert build_threads(list_messages(db, "u1"))[0].display_name == UNKNOWN


def test_thread_building_is_deterministic(db):
    cid, c = _contact(db, "alice@acme.com", "Alice")
    for i in range(5):
        _store(db, message(f"m{i}", c, ts="2024-01-01T00:00:00+00:00", thread_id="same"), cid)
    first = [t.to_dict() for t in build_threads(list_messages(db, "u1"))]
    second = [t.to_dict() for t in build_threads(list_messages(db, "u1"))]
    assert first == second


def test_thread_view_uses_cache_until_invalidated(db):
    cid, c = _contact(db, "alice@acme.com", "Alice")
    _store(db, message("a1", c), cid)
    cache = ThreadViewCache()
    view = ThreadView(db, "u1", cache)

    assert len(list(view)) == 1
    _store(db, message("a2", c, ts="2024-01-16T00:00:00+00:00"), cid)
    # Restartable, and served from cache
    assert len(list(view)) == 1
    assert cache.stats()["hits"] == 1

    cache.invalidate("u1")
    assert len(list(view)) == 2


def _slack_dm(db, member: SlackContactRecord, ts: str):
    record = SlackMessageRecord(ts=ts, channel="D1", channel_type="im", user=member.id,
                                text="coffee?", counterpart=member)
    normalized = record.normalize()
    with transaction(db):
        contact_id = create_contact(db, "u1", normalized.contact)
        add_identity(db, "u1", contact_id, "slack", normalized.contact)
        upsert_message(db, "u1", "slack", normalized, contact_id)
    return build_threads(list_messages(db, "u1"))[0]


def test_slack_dm_is_shown_under_its_sender(db):
    member = SlackContactRecord(id="U1", name="jane", real_name="Jane Doe", email="jane@x.com")
    thread = _slack_dm(db, member, "1700000001.000100")
    assert thread.display_name == "Jane Doe"
    assert thread.actual_sender == "jane@x.com"


def test_slack_dm_without_email_is_shown_under_its_sender(db):
    member = SlackContactRecord(id="U2", name="sam", real_name="Sam Lee")
    thread = _slack_dm(db, member, "1700000002.000100")
    assert thread.display_name == "Sam Lee"
    assert thread.actual_sender is None


def test_recompute_racing_invalidation_is_not_cached(db, monkeypatch):
    cid, c = _contact(db, "alice@acme.com", "Alice")
    _store(db, message("a1", c, thread_id="t1"), cid)
    cache = ThreadViewCache()
    view = ThreadView(db, "u1", cache)

    real_list = threads.list_messages

    def list_then_sync(conn, user_id):
        rows = real_list(conn, user_id)
        # A sync commits a new thread and invalidates while this read is in flight
        _store(db, message("a2", c, ts="2024-01-16T00:00:00+00:00", thread_id="t2"), cid)
        cache.invalidate(user_id)
        return rows

    monkeypatch.setattr(threads, "list_messages", list_then_sync)
    assert len(list(view)) == 1
    monkeypatch.setattr(threads, "list_messages", real_list)

    assert cache.get("u1") is None
    assert cache.stats()["stale_puts"] == 1
    assert len(list(view)) == 2


def test_global_invalidation_refuses_older_put():
    cache = ThreadViewCache()
    generation = cache.generation("u1")
    cache.invalidate()
    assert cache.put("u1", [], generation) is False
    assert cache.put("u1", [], cache.generation("u1")) is True
