"""Tests for pending approvals, held messages and the sender blacklist."""

import pytest

from crosswire.approvals import (
    add_blacklist,
    create_pending,
    decide,
    get_pending,
    hold_message,
    is_blacklisted,
    list_blacklist,
    list_pending,
    remove_blacklist,
)
from crosswire.contacts import add_identity, create_contact, find_identity, get_contact, list_contacts
from crosswire.database import transaction
from crosswire.errors import ConflictingDecision, ContactNotFound, PendingNotFound
from crosswire.messages import list_messages, upsert_message
from crosswire.models import Decision, PendingStatus
from tests.factories import gmail_contact, message, slack_contact


def _open(db, platform, contact):
    with transaction(db):
        return create_pending(db, "u1", platform, contact)


def _hold(db, platform, contact, msg):
    with transaction(db):
        upsert_message(db, "u1", platform, msg, None)
        return hold_message(db, "u1", platform, contact, msg)


@pytest.fixture
def alice(db):
    contact = gmail_contact("alice@acme.com", "Alice Smith")
    with transaction(db):
        contact_id = create_contact(db, "u1", contact)
        add_identity(db, "u1", contact_id, "gmail", contact)
    return contact_id


def test_hold_message_tracks_count_dates_and_preview(db):
    sender = slack_contact("U1", "Alice Smith")
    pid = _hold(db, "slack", sender, message("m2", sender, ts="2024-01-02T00:00:00+00:00", content="second"))
    assert _hold(db, "slack", sender, message("m1", sender, ts="2024-01-01T00:00:00+00:00", content="first")) == pid
    _hold(db, "slack", sender, message("m3", sender, ts="2024-01-03T00:00:00+00:00", content="x" * 500))

    pending = get_pending(db, "u1", pid)
    assert pending.message_count == 3
    assert pending.first_message_date == "2024-01-01T00:00:00+00:00"
    assert pending.last_message_date == "2024-01-03T00:00:00+00:00"
    assert pending.preview_content == "x" * 200


def test_approve_merge_links_identity_and_reattaches_messages(db, alice):
    sender = slack_contact("U1", "Alice Smith", handle="asmith")
    pid = _hold(db, "slack", sender, message("C1-1.0", sender))
    _hold(db, "slack", sender, message("C1-2.0", sender))

    result = decide(db, "u1", pid, Decision.approve_merge(alice))

    assert result.status == PendingStatus.APPROVED_MERGE
    assert result.contact_id == alice
    assert result.messages_imported == 2
    assert not result.replayed
    assert find_identity(db, "u1", "slack", "U1") == alice
    assert all(m["contact_id"] == alice for m in list_messages(db, "u1"))
    assert list_pending(db, "u1") == []


def test_replayed_decision_is_a_no_op(db, alice):
    sender = slack_contact("U1", "Alice Smith")
    pid = _hold(db, "slack", sender, message("C1-1.0", sender))
    first = decide(db, "u1", pid, Decision.approve_merge(alice))

    again = decide(db, "u1", pid, Decision.approve_merge(alice))
    assert again.replayed
    assert again.contact_id == first.contact_id
    assert again.messages_imported == first.messages_imported
    assert len(list_contacts(db, "u1")) == 1


def test_conflicting_decision_is_rejected(db, alice):
    sender = slack_contact("U1", "Alice Smith")
    pid = _open(db, "slack", sender)
    decide(db, "u1", pid, Decision.approve_merge(alice))

    with pytest.raises(ConflictingDecision):
        decide(db, "u1", pid, Decision.approve_new())
    with pytest.raises(ConflictingDecision):
        decide(db, "u1", pid, Decision.reject())
    # State unchanged
    assert get_pending(db, "u1", pid).status == PendingStatus.APPROVED_MERGE
    assert len(list_contacts(db, "u1")) == 1
    assert list_blacklist(db, "u1") == []


def test_merge_into_different_target_conflicts(db, alice):
    other = create_contact(db, "u1", gmail_contact("bob@acme.com", "Bob"))
    db.commit()
    sender = slack_contact("U1", "Alice Smith")
    pid = _open(db, "slack", sender)
    decide(db, "u1", pid, Decision.approve_merge(alice))
    with pytest.raises(ConflictingDecision):
        decide(db, "u1", pid, Decision.approve_merge(other))


def test_approve_new_creates_contact(db):
    sender = gmail_contact("newbie@startup.io", "New Bie")
    pid = _hold(db, "gmail", sender, message("g1", sender))

    result = decide(db, "u1", pid, Decision.approve_new())

    assert result.status == PendingStatus.APPROVED_NEW
    contact = get_contact(db, "u1", result.contact_id)
    assert contact.full_name == "New Bie"
    assert contact.identities["gmail"].platform_contact_id == "newbie@startup.io"
    assert result.messages_imported == 1


def test_approve_new_when_identity_already_linked_conflicts(db, alice):
    pid = _open(db, "gmail", gmail_contact("alice@acme.com", "Alice Smith"))
    with pytest.raises(ConflictingDecision):
        decide(db, "u1", pid, Decision.approve_new())
    assert get_pending(db, "u1", pid).status == PendingStatus.OPEN


def test_approve_merge_unknown_target(db):
    pid = _open(db, "slack", slack_contact("U1", "X"))
    with pytest.raises(ContactNotFound):
        decide(db, "u1", pid, Decision.approve_merge("missing"))
    assert get_pending(db, "u1", pid).status == PendingStatus.OPEN


def test_approve_merge_replaces_existing_platform_identity(db, alice):
    """A reviewer may move the target's slack identity to a new account."""
    old = slack_contact("U_OLD", "Alice Smith")
    with transaction(db):
        add_identity(db, "u1", alice, "slack", old)
    pid = _open(db, "slack", slack_contact("U_NEW", "Alice Smith"))

    decide(db, "u1", pid, Decision.approve_merge(alice))

    assert find_identity(db, "u1", "slack", "U_NEW") == alice
    assert find_identity(db, "u1", "slack", "U_OLD") is None


def test_reject_blacklists_sender(db):
    sender = gmail_contact("pitch@vendor.biz", "Sales Rep")
    pid = _hold(db, "gmail", sender, message("g1", sender))

    result = decide(db, "u1", pid, Decision.reject())

    assert result.status == PendingStatus.REJECTED
    assert result.contact_id is None
    assert is_blacklisted(db, "u1", "gmail", sender)
    entries = list_blacklist(db, "u1")
    assert entries[0].sender_email == "pitch@vendor.biz"
    # Held messages stay unlinked
    assert list_messages(db, "u1")[0]["contact_id"] is None


def test_decide_unknown_pending(db):
    with pytest.raises(PendingNotFound):
        decide(db, "u1", "nope", Decision.reject())


def test_pending_is_scoped_to_user(db):
    pid = _open(db, "slack", slack_contact("U1", "X"))
    with pytest.raises(PendingNotFound):
        decide(db, "u2", pid, Decision.reject())


def test_blacklist_matching_rules(db):
    with transaction(db):
        add_blacklist(db, "u1", "slack", platform_contact_id="U5")
        add_blacklist(db, "u1", "slack", sender_handle="spammer")
        add_blacklist(db, "u1", "gmail", sender_email="Promo@Shop.com")

    assert is_blacklisted(db, "u1", "slack", slack_contact("U5", "A"))
    assert not is_blacklisted(db, "u1", "gmail", gmail_contact("u5@x.com"))
    assert is_blacklisted(db, "u1", "slack", slack_contact("U6", "B", handle="spammer"))
    assert is_blacklisted(db, "u1", "slack", slack_contact("U7", "C", email="promo@shop.com"))
    assert not is_blacklisted(db, "u2", "slack", slack_contact("U5", "A"))


def test_remove_blacklist(db):
    with transaction(db):
        entry = add_blacklist(db, "u1", "slack", platform_contact_id="U5")
    assert not remove_blacklist(db, "u2", entry)
    assert remove_blacklist(db, "u1", entry)
    assert list_blacklist(db, "u1") == []
    assert not is_blacklisted(db, "u1", "slack", slack_contact("U5", "A"))
