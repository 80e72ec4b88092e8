"""SQLite database connection and schema management."""

from __future__ import annotations

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from crosswire.config import Config, load_config

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"

TABLES = [
    "contacts",
    "contact_identities",
    "messages",
    "pending_approvals",
    "blacklisted_senders",
    "sync_state",
    "platform_credentials",
]


def get_db(config: Config | None = None, db_path: str | None = None) -> sqlite3.Connection:
    """Return a configured SQLite connection.

    Uses WAL mode and row_factory=sqlite3.Row for dict-like access. The
    connection may be handed to worker threads (fetch, annotation, web
    request handlers), so same-thread checking is off.
    """
    if db_path is None:
        if config is None:
            config = load_config()
        db_path = config.storage.sqlite_path

    conn = sqlite3.connect(db_path, timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables from schema.sql."""
    schema = _SCHEMA_PATH.read_text()
    conn.executescript(schema)


def reset_db(config: Config | None = None) -> sqlite3.Connection:
    """Drop and recreate the database. Returns a fresh connection."""
    if config is None:
        config = load_config()

    db_path = Path(config.storage.sqlite_path)
    if db_path.exists():
        db_path.unlink()

    conn = get_db(config)
    init_db(conn)
    return conn


def migrate_db(conn: sqlite3.Connection) -> list[str]:
    """Add columns that may be missing from databases created by older versions.

    Returns list of migration actions taken.
    """
    migrations: list[str] = []

    expected_columns = [
        ("sync_state", "sync_started_at", "TEXT"),
        ("sync_state", "last_success_at", "TEXT"),
        ("sync_state", "last_error_kind", "TEXT"),
        ("messages", "sender_email", "TEXT"),
        ("messages", "read_at", "TEXT"),
        ("pending_approvals", "messages_imported", "INTEGER"),
        ("blacklisted_senders", "platform_contact_id", "TEXT"),
    ]

    for table, column, col_type in expected_columns:
        existing = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing_names = {row["name"] for row in existing}
        if existing_names and column not in existing_names:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")
            migrations.append(f"Added {table}.{column} ({col_type})")

    # Tables added after the first release
    init_db(conn)

    if migrations:
        conn.commit()

    return migrations


def db_stats(conn: sqlite3.Connection) -> dict[str, int]:
    """Return row counts for all tables."""
    stats = {}
    for table in TABLES:
        try:
            row = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}").fetchone()
            stats[table] = row["cnt"]
        except sqlite3.OperationalError:
            stats[table] = -1  # table doesn't exist
    return stats


@contextmanager
def transaction(conn: sqlite3.Connection, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """Run a block in one transaction: commit on success, roll back on error.

    ``immediate=True`` takes the write lock up front (BEGIN IMMEDIATE) so that
    read-then-write sequences cannot interleave with another writer. When the
    connection is already inside a transaction a savepoint is used instead.
    """
    if conn.in_transaction:
        name = f"sp_{uuid.uuid4().hex[:8]}"
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield conn
        except BaseException:
            conn.execute(f"ROLLBACK TO {name}")
            conn.execute(f"RELEASE {name}")
            raise
        conn.execute(f"RELEASE {name}")
        return

    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    """Serialize a datetime as an ISO-8601 UTC string (naive values are UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id() -> str:
    return uuid.uuid4().hex
