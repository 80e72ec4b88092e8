"""Stored platform credentials and the provider the sync engine consumes."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Callable

from crosswire.database import from_iso, to_iso, transaction, utcnow
from crosswire.errors import CredentialExpired, NotAuthenticated
from crosswire.models import Credential
from crosswire.observability import get_logger

log = get_logger(__name__)

# Platforms whose access tokens carry an expiry
EXPIRING_PLATFORMS = {"gmail"}

Refresher = Callable[[Credential], Credential]


def _row_to_credential(row: sqlite3.Row) -> Credential:
    return Credential(
        user_id=row["user_id"],
        platform=row["platform"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=row["expires_at"],
        integration_enabled=bool(row["integration_enabled"]),
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
    )


def get_credential(conn: sqlite3.Connection, user_id: str, platform: str) -> Credential | None:
    row = conn.execute(
        "SELECT * FROM platform_credentials WHERE user_id = ? AND platform = ?",
        (user_id, platform),
    ).fetchone()
    return _row_to_credential(row) if row else None


def list_credentials(conn: sqlite3.Connection, user_id: str) -> list[Credential]:
    rows = conn.execute(
        "SELECT * FROM platform_credentials WHERE user_id = ? ORDER BY platform",
        (user_id,),
    ).fetchall()
    return [_row_to_credential(r) for r in rows]


def save_credential(conn: sqlite3.Connection, cred: Credential) -> None:
    with transaction(conn):
        conn.execute(
            """INSERT INTO platform_credentials
               (user_id, platform, access_token, refresh_token, expires_at,
                integration_enabled, metadata, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(user_id, platform) DO UPDATE SET
                   access_token = excluded.access_token,
                   refresh_token = excluded.refresh_token,
                   expires_at = excluded.expires_at,
                   integration_enabled = excluded.integration_enabled,
                   metadata = excluded.metadata,
                   updated_at = excluded.updated_at""",
            (
                cred.user_id,
                cred.platform,
                cred.access_token,
                cred.refresh_token,
                cred.expires_at,
                cred.integration_enabled,
                json.dumps(cred.metadata),
                to_iso(utcnow()),
            ),
        )


def is_expired(cred: Credential, now: datetime | None = None) -> bool:
    if cred.platform not in EXPIRING_PLATFORMS or not cred.expires_at:
        return False
    return from_iso(cred.expires_at) <= (now or utcnow())


def is_valid(cred: Credential | None, now: datetime | None = None) -> bool:
    """Present, enabled, carrying a token and (for expiring platforms) unexpired."""
    if cred is None or not cred.integration_enabled or not cred.access_token:
        return False
    return not is_expired(cred, now)


class StoredCredentialProvider:
    """Credential provider backed by the platform_credentials table.

    ``refreshers`` maps a platform to a callable that exchanges the stored
    refresh token for a new credential. Platforms without a refresher cannot
    recover from expiry.
    """

    def __init__(self, conn: sqlite3.Connection, refreshers: dict[str, Refresher] | None = None):
        self.conn = conn
        self.refreshers = refreshers or {}

    def get(self, user_id: str, platform: str) -> Credential:
        cred = get_credential(self.conn, user_id, platform)
        if cred is None or not cred.access_token:
            raise NotAuthenticated(f"no {platform} credential for user {user_id}")
        if not cred.integration_enabled:
            raise NotAuthenticated(f"{platform} integration disabled for user {user_id}")
        if is_expired(cred):
            raise CredentialExpired(f"{platform} credential expired at {cred.expires_at}")
        return cred

    def refresh(self, user_id: str, platform: str) -> Credential:
        """Attempt one refresh. Any failure becomes NotAuthenticated."""
        cred = get_credential(self.conn, user_id, platform)
        refresher = self.refreshers.get(platform)
        if cred is None or refresher is None or not cred.refresh_token:
            raise NotAuthenticated(f"{platform} credential expired and cannot be refreshed")
        try:
            refreshed = refresher(cred)
        except Exception as e:
            log.warning("credential_refresh_failed", user_id=user_id, platform=platform, error=str(e))
            raise NotAuthenticated(f"{platform} credential refresh failed: {e}") from e
        save_credential(self.conn, refreshed)
        log.info("credential_refreshed", user_id=user_id, platform=platform)
        return refreshed
