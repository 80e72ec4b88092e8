"""Pending-approval workbench and per-user sender blacklist.

A pending approval is opened for a platform contact that could not be placed
with confidence. It is closed by exactly one decision. Closed rows are kept
so that a replayed decision can be told apart from a conflicting one.
"""

from __future__ import annotations

import json
import sqlite3

from crosswire.contacts import add_identity, create_contact, find_identity, get_contact
from crosswire.database import new_id, to_iso, transaction, utcnow
from crosswire.errors import ConflictingDecision, ContactNotFound, PendingNotFound
from crosswire.locks import user_lock
from crosswire.messages import reattach_messages
from crosswire.models import (
    BlacklistEntry,
    Candidate,
    Decision,
    DecisionKind,
    DecisionResult,
    NormalizedContact,
    NormalizedMessage,
    PendingApproval,
    PendingStatus,
)
from crosswire.observability import get_logger

log = get_logger(__name__)

PREVIEW_CHARS = 200

_CLOSING_STATUS = {
    DecisionKind.APPROVE_NEW: PendingStatus.APPROVED_NEW,
    DecisionKind.APPROVE_MERGE: PendingStatus.APPROVED_MERGE,
    DecisionKind.REJECT: PendingStatus.REJECTED,
}


def _row_to_pending(row: sqlite3.Row) -> PendingApproval:
    return PendingApproval(
        id=row["id"],
        user_id=row["user_id"],
        platform=row["platform"],
        platform_contact_id=row["platform_contact_id"],
        sender_name=row["sender_name"],
        contact=NormalizedContact.from_dict(json.loads(row["payload"])),
        sender_email=row["sender_email"],
        sender_handle=row["sender_handle"],
        candidate_contact_id=row["candidate_contact_id"],
        candidate_score=row["candidate_score"],
        candidate_reasons=json.loads(row["candidate_reasons"]) if row["candidate_reasons"] else [],
        message_count=row["message_count"],
        first_message_date=row["first_message_date"],
        last_message_date=row["last_message_date"],
        preview_content=row["preview_content"],
        status=PendingStatus(row["status"]),
        decision_target_id=row["decision_target_id"],
        resolved_contact_id=row["resolved_contact_id"],
        messages_imported=row["messages_imported"],
        created_at=row["created_at"],
        decided_at=row["decided_at"],
    )


def get_pending(conn: sqlite3.Connection, user_id: str, pending_id: str) -> PendingApproval | None:
    row = conn.execute(
        "SELECT * FROM pending_approvals WHERE id = ? AND user_id = ?", (pending_id, user_id)
    ).fetchone()
    return _row_to_pending(row) if row else None


def find_open_pending(
    conn: sqlite3.Connection, user_id: str, platform: str, remote_id: str
) -> PendingApproval | None:
    row = conn.execute(
        """SELECT * FROM pending_approvals
           WHERE user_id = ? AND platform = ? AND platform_contact_id = ? AND status = 'open'""",
        (user_id, platform, remote_id),
    ).fetchone()
    return _row_to_pending(row) if row else None


def list_pending(
    conn: sqlite3.Connection, user_id: str, status: PendingStatus | None = PendingStatus.OPEN
) -> list[PendingApproval]:
    """Pending approvals for a user, most recent activity first."""
    sql = "SELECT * FROM pending_approvals WHERE user_id = ?"
    params: list = [user_id]
    if status is not None:
        sql += " AND status = ?"
        params.append(status.value)
    sql += " ORDER BY COALESCE(last_message_date, created_at) DESC, id"
    return [_row_to_pending(r) for r in conn.execute(sql, params).fetchall()]


def create_pending(
    conn: sqlite3.Connection,
    user_id: str,
    platform: str,
    contact: NormalizedContact,
    candidates: list[Candidate] | None = None,
) -> str:
    """Open a pending approval, attaching the best candidate if any."""
    best = candidates[0] if candidates else None
    pending_id = new_id()
    conn.execute(
        """INSERT INTO pending_approvals
           (id, user_id, platform, platform_contact_id, sender_name, sender_email, sender_handle,
            payload, candidate_contact_id, candidate_score, candidate_reasons, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            pending_id,
            user_id,
            platform,
            contact.remote_id,
            contact.name or contact.handle or contact.email or contact.remote_id,
            (contact.email or "").lower() or None,
            contact.handle,
            json.dumps(contact.to_dict()),
            best.contact_id if best else None,
            best.score if best else None,
            json.dumps([c.reason for c in candidates or []]),
            to_iso(utcnow()),
        ),
    )
    log.info(
        "pending_created",
        user_id=user_id,
        platform=platform,
        remote_id=contact.remote_id,
        candidate=best.contact_id if best else None,
    )
    return pending_id


def hold_message(
    conn: sqlite3.Connection,
    user_id: str,
    platform: str,
    contact: NormalizedContact,
    message: NormalizedMessage,
) -> str:
    """Record a message from a sender awaiting approval on their pending item.

    Opens a pending approval for the sender if none is open. Tracks the
    message count, first and last message date and a preview of the latest
    message. Returns the pending id.
    """
    pending = find_open_pending(conn, user_id, platform, contact.remote_id)
    pending_id = pending.id if pending else create_pending(conn, user_id, platform, contact)
    conn.execute(
        """UPDATE pending_approvals SET
               message_count = message_count + 1,
               first_message_date = CASE
                   WHEN first_message_date IS NULL OR ? < first_message_date THEN ?
                   ELSE first_message_date END,
               last_message_date = CASE
                   WHEN last_message_date IS NULL OR ? >= last_message_date THEN ?
                   ELSE last_message_date END,
               preview_content = CASE
                   WHEN last_message_date IS NULL OR ? >= last_message_date THEN ?
                   ELSE preview_content END
           WHERE id = ?""",
        (
            message.timestamp, message.timestamp,
            message.timestamp, message.timestamp,
            message.timestamp, (message.content or "")[:PREVIEW_CHARS],
            pending_id,
        ),
    )
    return pending_id


def _recorded_result(pending: PendingApproval, replayed: bool) -> DecisionResult:
    return DecisionResult(
        pending_id=pending.id,
        status=pending.status,
        contact_id=pending.resolved_contact_id,
        messages_imported=pending.messages_imported,
        replayed=replayed,
    )


def _same_decision(pending: PendingApproval, decision: Decision) -> bool:
    if _CLOSING_STATUS[decision.kind] != pending.status:
        return False
    if decision.kind == DecisionKind.APPROVE_MERGE:
        return decision.target_id == pending.decision_target_id
    return True


def decide(
    conn: sqlite3.Connection, user_id: str, pending_id: str, decision: Decision
) -> DecisionResult:
    """Apply one terminal decision to a pending approval.

    Replaying the decision that closed the item returns the recorded outcome
    without side effects. Any other decision on a closed item raises
    ConflictingDecision.
    """
    with user_lock(user_id):
        try:
            with transaction(conn, immediate=True):
                pending = get_pending(conn, user_id, pending_id)
                if pending is None:
                    raise PendingNotFound(f"pending approval {pending_id} not found")

                if pending.status != PendingStatus.OPEN:
                    if _same_decision(pending, decision):
                        return _recorded_result(pending, replayed=True)
                    raise ConflictingDecision(
                        f"pending approval {pending_id} already closed as {pending.status.value}"
                    )

                contact_id, imported = _apply(conn, pending, decision)
                conn.execute(
                    """UPDATE pending_approvals SET
                           status = ?, decision_target_id = ?, resolved_contact_id = ?,
                           messages_imported = ?, decided_at = ?
                       WHERE id = ?""",
                    (
                        _CLOSING_STATUS[decision.kind].value,
                        decision.target_id,
                        contact_id,
                        imported,
                        to_iso(utcnow()),
                        pending_id,
                    ),
                )
                result = _recorded_result(get_pending(conn, user_id, pending_id), replayed=False)
        except sqlite3.IntegrityError as e:
            raise ConflictingDecision(
                f"identity for pending approval {pending_id} was linked concurrently"
            ) from e

    log.info(
        "pending_decided",
        user_id=user_id,
        pending_id=pending_id,
        decision=decision.kind.value,
        contact_id=result.contact_id,
        messages_imported=result.messages_imported,
    )
    return result


def _apply(
    conn: sqlite3.Connection, pending: PendingApproval, decision: Decision
) -> tuple[str | None, int | None]:
    contact = pending.contact
    user_id = pending.user_id
    platform = pending.platform
    linked = find_identity(conn, user_id, platform, pending.platform_contact_id)

    if decision.kind == DecisionKind.REJECT:
        add_blacklist(
            conn,
            user_id,
            platform,
            platform_contact_id=pending.platform_contact_id,
            sender_name=pending.sender_name,
            sender_email=pending.sender_email,
            sender_handle=pending.sender_handle,
            reason="rejected pending approval",
        )
        return None, None

    if decision.kind == DecisionKind.APPROVE_NEW:
        if linked:
            raise ConflictingDecision(
                f"{platform} identity {pending.platform_contact_id} is already linked to {linked}"
            )
        contact_id = create_contact(conn, user_id, contact)
        add_identity(conn, user_id, contact_id, platform, contact)
    else:
        if not decision.target_id or get_contact(conn, user_id, decision.target_id) is None:
            raise ContactNotFound(f"contact {decision.target_id} not found")
        contact_id = decision.target_id
        if linked and linked != contact_id:
            raise ConflictingDecision(
                f"{platform} identity {pending.platform_contact_id} is already linked to {linked}"
            )
        if not linked:
            add_identity(conn, user_id, contact_id, platform, contact, replace=True)

    imported = reattach_messages(
        conn, user_id, contact_id, platform, pending.platform_contact_id, pending.sender_email
    )
    return contact_id, imported


def _row_to_blacklist(row: sqlite3.Row) -> BlacklistEntry:
    return BlacklistEntry(
        id=row["id"],
        user_id=row["user_id"],
        platform=row["platform"],
        platform_contact_id=row["platform_contact_id"],
        sender_name=row["sender_name"],
        sender_email=row["sender_email"],
        sender_handle=row["sender_handle"],
        reason=row["reason"],
        created_at=row["created_at"],
    )


def add_blacklist(
    conn: sqlite3.Connection,
    user_id: str,
    platform: str,
    platform_contact_id: str | None = None,
    sender_name: str | None = None,
    sender_email: str | None = None,
    sender_handle: str | None = None,
    reason: str | None = None,
) -> str:
    entry_id = new_id()
    conn.execute(
        """INSERT INTO blacklisted_senders
           (id, user_id, platform, platform_contact_id, sender_name, sender_email,
            sender_handle, reason, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            entry_id, user_id, platform, platform_contact_id, sender_name,
            (sender_email or "").lower() or None, sender_handle, reason, to_iso(utcnow()),
        ),
    )
    return entry_id


def is_blacklisted(
    conn: sqlite3.Connection, user_id: str, platform: str, contact: NormalizedContact
) -> bool:
    """Match on platform id or handle within the platform, or on email anywhere."""
    email = (contact.email or "").strip().lower()
    row = conn.execute(
        """SELECT 1 FROM blacklisted_senders
           WHERE user_id = ? AND (
               (platform = ? AND platform_contact_id = ?)
               OR (platform = ? AND sender_handle IS NOT NULL AND sender_handle = ?)
               OR (? != '' AND sender_email = ?)
           ) LIMIT 1""",
        (user_id, platform, contact.remote_id, platform, contact.handle, email, email),
    ).fetchone()
    return row is not None


def list_blacklist(conn: sqlite3.Connection, user_id: str) -> list[BlacklistEntry]:
    rows = conn.execute(
        "SELECT * FROM blacklisted_senders WHERE user_id = ? ORDER BY created_at DESC, id",
        (user_id,),
    ).fetchall()
    return [_row_to_blacklist(r) for r in rows]


def remove_blacklist(conn: sqlite3.Connection, user_id: str, entry_id: str) -> bool:
    """Administratively remove a blacklist entry. Returns False if none matched."""
    with transaction(conn):
        cur = conn.execute(
            "DELETE FROM blacklisted_senders WHERE id = ? AND user_id = ?", (entry_id, user_id)
        )
    if cur.rowcount:
        log.info("blacklist_removed", user_id=user_id, entry_id=entry_id)
    return cur.rowcount > 0
