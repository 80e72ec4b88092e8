"""Message store: natural-key upserts, thread summaries and re-attachment."""

from __future__ import annotations

import json
import sqlite3

from crosswire.database import new_id, to_iso, utcnow
from crosswire.models import NormalizedMessage

SUMMARY_PREFIX = "thread_summary_"


def summary_message_id(thread_id: str) -> str:
    return f"{SUMMARY_PREFIX}{thread_id}"


def _platform_data(msg: NormalizedMessage) -> dict:
    data = dict(msg.metadata)
    data.update({
        "thread_id": msg.thread_id,
        "direction": msg.direction,
        "subject": msg.subject,
        "from": msg.from_header,
    })
    return data


def upsert_message(
    conn: sqlite3.Connection,
    user_id: str,
    platform: str,
    msg: NormalizedMessage,
    contact_id: str | None,
) -> bool:
    """Insert or update a message by (user, platform, platform_message_id).

    Returns True if a new row was created. An existing contact link is kept
    when the incoming one is unknown, and stored AI annotations survive a
    re-ingest.
    """
    now = to_iso(utcnow())
    existing = conn.execute(
        """SELECT id, platform_data FROM messages
           WHERE user_id = ? AND platform = ? AND platform_message_id = ?""",
        (user_id, platform, msg.platform_message_id),
    ).fetchone()

    counterpart = msg.contact
    sender_id = None
    sender_email = None
    if counterpart is not None:
        sender_id = counterpart.remote_id
        sender_email = (counterpart.email or "").strip().lower() or None
    data = _platform_data(msg)

    if existing is None:
        conn.execute(
            """INSERT INTO messages
               (id, user_id, platform, platform_message_id, contact_id, sender_id, sender_email,
                content, timestamp, thread_id, is_thread_summary, platform_data, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)""",
            (
                new_id(), user_id, platform, msg.platform_message_id, contact_id,
                sender_id, sender_email, msg.content, msg.timestamp, msg.thread_id,
                json.dumps(data), now, now,
            ),
        )
        return True

    previous = json.loads(existing["platform_data"]) if existing["platform_data"] else {}
    for key in ("summary", "key_points", "action_items", "urgency"):
        if key in previous and key not in data:
            data[key] = previous[key]
    conn.execute(
        """UPDATE messages SET
               contact_id = COALESCE(?, contact_id),
               sender_id = COALESCE(?, sender_id),
               sender_email = COALESCE(?, sender_email),
               content = ?,
               timestamp = ?,
               thread_id = ?,
               platform_data = ?,
               updated_at = ?
           WHERE id = ?""",
        (
            contact_id, sender_id, sender_email, msg.content, msg.timestamp,
            msg.thread_id, json.dumps(data), now, existing["id"],
        ),
    )
    return False


def upsert_thread_summary(
    conn: sqlite3.Connection,
    user_id: str,
    platform: str,
    thread_id: str,
    content: str,
    analysis: dict,
    timestamp: str,
    contact_id: str | None = None,
) -> None:
    """Store or replace the summary record for a thread."""
    now = to_iso(utcnow())
    data = {"thread_id": thread_id, "is_thread_summary": True, "analysis": analysis}
    conn.execute(
        """INSERT INTO messages
           (id, user_id, platform, platform_message_id, contact_id, content, timestamp,
            thread_id, is_thread_summary, platform_data, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
           ON CONFLICT(user_id, platform, platform_message_id) DO UPDATE SET
               content = excluded.content,
               timestamp = excluded.timestamp,
               contact_id = COALESCE(excluded.contact_id, messages.contact_id),
               platform_data = excluded.platform_data,
               updated_at = excluded.updated_at""",
        (
            new_id(), user_id, platform, summary_message_id(thread_id), contact_id,
            content, timestamp, thread_id, json.dumps(data), now, now,
        ),
    )


def reattach_messages(
    conn: sqlite3.Connection,
    user_id: str,
    contact_id: str,
    platform: str,
    sender_id: str,
    sender_email: str | None = None,
) -> int:
    """Attach unlinked messages from this sender to contact_id. Returns the count."""
    email = (sender_email or "").strip().lower()
    cur = conn.execute(
        """UPDATE messages SET contact_id = ?, updated_at = ?
           WHERE user_id = ? AND contact_id IS NULL AND is_thread_summary = 0
             AND ((platform = ? AND sender_id = ?) OR (? != '' AND sender_email = ?))""",
        (contact_id, to_iso(utcnow()), user_id, platform, sender_id, email, email),
    )
    return cur.rowcount


def list_messages(conn: sqlite3.Connection, user_id: str) -> list[dict]:
    """All messages for a user with their contact's name and email, newest first."""
    rows = conn.execute(
        """SELECT m.*, c.full_name AS contact_name, c.email AS contact_email
           FROM messages m
           LEFT JOIN contacts c ON c.id = m.contact_id
           WHERE m.user_id = ?
           ORDER BY m.timestamp DESC, m.platform, m.platform_message_id""",
        (user_id,),
    ).fetchall()
    result = []
    for r in rows:
        row = dict(r)
        row["platform_data"] = json.loads(r["platform_data"]) if r["platform_data"] else {}
        row["is_thread_summary"] = bool(r["is_thread_summary"])
        result.append(row)
    return result


def thread_messages(conn: sqlite3.Connection, user_id: str, thread_id: str) -> list[dict]:
    """Raw messages of one thread, oldest first."""
    return [
        m for m in reversed(list_messages(conn, user_id))
        if not m["is_thread_summary"] and (m["thread_id"] or m["platform_message_id"]) == thread_id
    ]


def message_stats(conn: sqlite3.Connection, user_id: str) -> dict:
    row = conn.execute(
        """SELECT COUNT(*) AS total,
                  SUM(CASE WHEN contact_id IS NULL AND is_thread_summary = 0 THEN 1 ELSE 0 END) AS unlinked,
                  SUM(CASE WHEN is_thread_summary = 1 THEN 1 ELSE 0 END) AS summaries,
                  MAX(timestamp) AS latest
           FROM messages WHERE user_id = ?""",
        (user_id,),
    ).fetchone()
    contacts = conn.execute(
        "SELECT COUNT(*) AS cnt FROM contacts WHERE user_id = ?", (user_id,)
    ).fetchone()
    return {
        "messages": row["total"] or 0,
        "unlinked_messages": row["unlinked"] or 0,
        "thread_summaries": row["summaries"] or 0,
        "latest_message_at": row["latest"],
        "contacts": contacts["cnt"],
    }
