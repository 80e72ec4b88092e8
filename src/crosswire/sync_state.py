"""Durable per-(user, platform) sync state: cursor, in-progress gate, counters."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from crosswire.database import from_iso, to_iso, transaction, utcnow
from crosswire.errors import SyncInProgress
from crosswire.observability import get_logger

log = get_logger(__name__)


@dataclass
class SyncState:
    user_id: str
    platform: str
    cursor: str | None = None
    initial_sync_complete: bool = False
    is_currently_syncing: bool = False
    sync_started_at: str | None = None
    last_sync_at: str | None = None
    last_success_at: str | None = None
    total_messages_processed: int = 0
    last_error: str | None = None
    last_error_kind: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SyncState:
        return cls(
            user_id=row["user_id"],
            platform=row["platform"],
            cursor=row["cursor"],
            initial_sync_complete=bool(row["initial_sync_complete"]),
            is_currently_syncing=bool(row["is_currently_syncing"]),
            sync_started_at=row["sync_started_at"],
            last_sync_at=row["last_sync_at"],
            last_success_at=row["last_success_at"],
            total_messages_processed=row["total_messages_processed"],
            last_error=row["last_error"],
            last_error_kind=row["last_error_kind"],
            updated_at=row["updated_at"],
        )


def get_state(conn: sqlite3.Connection, user_id: str, platform: str) -> SyncState | None:
    row = conn.execute(
        "SELECT * FROM sync_state WHERE user_id = ? AND platform = ?",
        (user_id, platform),
    ).fetchone()
    return SyncState.from_row(row) if row else None


def list_states(conn: sqlite3.Connection, user_id: str) -> list[SyncState]:
    rows = conn.execute(
        "SELECT * FROM sync_state WHERE user_id = ? ORDER BY platform", (user_id,)
    ).fetchall()
    return [SyncState.from_row(r) for r in rows]


def begin_sync(
    conn: sqlite3.Connection, user_id: str, platform: str, now: datetime | None = None
) -> SyncState:
    """Atomically flip the in-progress flag on, creating the row if needed.

    Raises SyncInProgress without waiting if another run holds the flag.
    Returns the state as read at entry (carrying the cursor to fetch from).
    """
    ts = to_iso(now or utcnow())
    with transaction(conn, immediate=True):
        cur = conn.execute(
            """INSERT INTO sync_state
               (user_id, platform, is_currently_syncing, sync_started_at, updated_at)
               VALUES (?, ?, 1, ?, ?)
               ON CONFLICT(user_id, platform) DO UPDATE SET
                   is_currently_syncing = 1,
                   sync_started_at = excluded.sync_started_at,
                   updated_at = excluded.updated_at
               WHERE sync_state.is_currently_syncing = 0""",
            (user_id, platform, ts, ts),
        )
        if cur.rowcount == 0:
            raise SyncInProgress(user_id, platform)
        state = get_state(conn, user_id, platform)

    log.info("sync_started", user_id=user_id, platform=platform, cursor=state.cursor)
    return state


def cursor_at_least(prior: str | None, new: str | None) -> str | None:
    """Return the cursor to store after a successful run.

    A missing new cursor keeps the prior one. Numeric cursors (history ids,
    message timestamps) never move backwards. Opaque cursors are taken as-is.
    """
    if new is None:
        return prior
    if prior is None:
        return new
    try:
        if Decimal(new) < Decimal(prior):
            return prior
    except InvalidOperation:
        pass
    return new


def complete_sync(
    conn: sqlite3.Connection,
    user_id: str,
    platform: str,
    next_cursor: str | None,
    messages_processed: int,
    now: datetime | None = None,
) -> SyncState:
    """Advance the cursor, mark initial sync complete and clear the flag."""
    ts = to_iso(now or utcnow())
    with transaction(conn, immediate=True):
        state = get_state(conn, user_id, platform)
        prior = state.cursor if state else None
        cursor = cursor_at_least(prior, next_cursor)
        conn.execute(
            """UPDATE sync_state SET
                   cursor = ?,
                   initial_sync_complete = 1,
                   is_currently_syncing = 0,
                   sync_started_at = NULL,
                   last_sync_at = ?,
                   last_success_at = ?,
                   total_messages_processed = total_messages_processed + ?,
                   last_error = NULL,
                   last_error_kind = NULL,
                   updated_at = ?
               WHERE user_id = ? AND platform = ?""",
            (cursor, ts, ts, messages_processed, ts, user_id, platform),
        )
        state = get_state(conn, user_id, platform)

    log.info(
        "sync_completed",
        user_id=user_id,
        platform=platform,
        cursor=cursor,
        messages=messages_processed,
    )
    return state


def fail_sync(
    conn: sqlite3.Connection,
    user_id: str,
    platform: str,
    error: str,
    kind: str = "error",
    now: datetime | None = None,
) -> None:
    """Record the error and clear the flag. The cursor is left untouched."""
    ts = to_iso(now or utcnow())
    with transaction(conn, immediate=True):
        conn.execute(
            """UPDATE sync_state SET
                   is_currently_syncing = 0,
                   sync_started_at = NULL,
                   last_sync_at = ?,
                   last_error = ?,
                   last_error_kind = ?,
                   updated_at = ?
               WHERE user_id = ? AND platform = ?""",
            (ts, error, kind, ts, user_id, platform),
        )
    log.warning("sync_failed", user_id=user_id, platform=platform, kind=kind, error=error)


def reset_sync_state(conn: sqlite3.Connection, user_id: str, platform: str) -> SyncState:
    """Administrative reset: clears cursor, initial-sync flag and in-progress flag.

    The next run for this (user, platform) is treated as an initial sync.
    Message and contact rows are kept.
    """
    ts = to_iso(utcnow())
    with transaction(conn, immediate=True):
        conn.execute(
            """INSERT INTO sync_state (user_id, platform, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(user_id, platform) DO UPDATE SET
                   cursor = NULL,
                   initial_sync_complete = 0,
                   is_currently_syncing = 0,
                   sync_started_at = NULL,
                   last_error = NULL,
                   last_error_kind = NULL,
                   updated_at = excluded.updated_at""",
            (user_id, platform, ts),
        )
        state = get_state(conn, user_id, platform)
    log.info("sync_state_reset", user_id=user_id, platform=platform)
    return state


def reset_eligible(
    conn: sqlite3.Connection,
    max_run_minutes: float,
    user_id: str | None = None,
    now: datetime | None = None,
) -> list[SyncState]:
    """List runs whose in-progress flag has been held longer than max_run_minutes.

    These are candidates for reset_sync_state(); nothing is cleared here.
    """
    now = now or utcnow()
    sql = "SELECT * FROM sync_state WHERE is_currently_syncing = 1"
    params: tuple = ()
    if user_id is not None:
        sql += " AND user_id = ?"
        params = (user_id,)
    limit = timedelta(minutes=max_run_minutes)
    stuck = []
    for row in conn.execute(sql, params).fetchall():
        state = SyncState.from_row(row)
        started = from_iso(state.sync_started_at)
        if started is None or now - started > limit:
            stuck.append(state)
    return stuck
