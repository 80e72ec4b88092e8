"""Unified contact graph storage: contacts and their platform identities."""

from __future__ import annotations

import json
import sqlite3

from crosswire.database import new_id, to_iso, utcnow
from crosswire.models import NormalizedContact, PlatformIdentity, UnifiedContact


def _normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    return email.strip().lower() or None


def find_identity(conn: sqlite3.Connection, user_id: str, platform: str, remote_id: str) -> str | None:
    """Return the contact id holding (platform, remote_id), if any."""
    row = conn.execute(
        """SELECT contact_id FROM contact_identities
           WHERE user_id = ? AND platform = ? AND platform_contact_id = ?""",
        (user_id, platform, remote_id),
    ).fetchone()
    return row["contact_id"] if row else None


def identity_on_platform(conn: sqlite3.Connection, contact_id: str, platform: str) -> str | None:
    """Return the remote id this contact already holds on platform, if any."""
    row = conn.execute(
        "SELECT platform_contact_id FROM contact_identities WHERE contact_id = ? AND platform = ?",
        (contact_id, platform),
    ).fetchone()
    return row["platform_contact_id"] if row else None


def create_contact(conn: sqlite3.Connection, user_id: str, contact: NormalizedContact) -> str:
    """Insert a unified contact seeded from a platform contact. Returns its id."""
    contact_id = new_id()
    now = to_iso(utcnow())
    conn.execute(
        """INSERT INTO contacts (id, user_id, full_name, email, phone, photo_url, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            contact_id,
            user_id,
            contact.name or contact.handle or contact.email or contact.remote_id,
            _normalize_email(contact.email),
            contact.phone,
            contact.avatar_url,
            now,
            now,
        ),
    )
    return contact_id


def add_identity(
    conn: sqlite3.Connection,
    user_id: str,
    contact_id: str,
    platform: str,
    contact: NormalizedContact,
    replace: bool = False,
) -> None:
    """Attach a platform identity to a contact and fill in missing fields.

    With ``replace=True`` an existing identity the contact holds on the same
    platform is dropped first. Raises sqlite3.IntegrityError if the identity
    is already linked elsewhere.
    """
    now = to_iso(utcnow())
    if replace:
        conn.execute(
            "DELETE FROM contact_identities WHERE contact_id = ? AND platform = ?",
            (contact_id, platform),
        )
    conn.execute(
        """INSERT INTO contact_identities
           (user_id, platform, platform_contact_id, contact_id, handle, email, name, metadata, added_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            user_id,
            platform,
            contact.remote_id,
            contact_id,
            contact.handle,
            _normalize_email(contact.email),
            contact.name,
            json.dumps(contact.metadata),
            now,
        ),
    )
    conn.execute(
        """UPDATE contacts SET
               email = COALESCE(email, ?),
               phone = COALESCE(phone, ?),
               photo_url = COALESCE(photo_url, ?),
               updated_at = ?
           WHERE id = ?""",
        (_normalize_email(contact.email), contact.phone, contact.avatar_url, now, contact_id),
    )


def _identities(conn: sqlite3.Connection, contact_id: str) -> dict[str, PlatformIdentity]:
    rows = conn.execute(
        "SELECT * FROM contact_identities WHERE contact_id = ? ORDER BY platform", (contact_id,)
    ).fetchall()
    return {
        r["platform"]: PlatformIdentity(
            platform=r["platform"],
            platform_contact_id=r["platform_contact_id"],
            handle=r["handle"],
            email=r["email"],
            name=r["name"],
            metadata=json.loads(r["metadata"]) if r["metadata"] else {},
            added_at=r["added_at"],
        )
        for r in rows
    }


def _row_to_contact(conn: sqlite3.Connection, row: sqlite3.Row) -> UnifiedContact:
    return UnifiedContact(
        id=row["id"],
        user_id=row["user_id"],
        full_name=row["full_name"],
        email=row["email"],
        phone=row["phone"],
        photo_url=row["photo_url"],
        identities=_identities(conn, row["id"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def get_contact(conn: sqlite3.Connection, user_id: str, contact_id: str) -> UnifiedContact | None:
    row = conn.execute(
        "SELECT * FROM contacts WHERE id = ? AND user_id = ?", (contact_id, user_id)
    ).fetchone()
    return _row_to_contact(conn, row) if row else None


def list_contacts(conn: sqlite3.Connection, user_id: str) -> list[UnifiedContact]:
    rows = conn.execute(
        "SELECT * FROM contacts WHERE user_id = ? ORDER BY full_name, id", (user_id,)
    ).fetchall()
    return [_row_to_contact(conn, r) for r in rows]


def contact_rows(conn: sqlite3.Connection, user_id: str) -> list[sqlite3.Row]:
    """Contacts with their identities' emails and handles, for candidate matching."""
    return conn.execute(
        """SELECT c.id, c.full_name, c.email, c.phone,
                  GROUP_CONCAT(ci.email, ' ') AS identity_emails,
                  GROUP_CONCAT(ci.handle, ' ') AS identity_handles
           FROM contacts c
           LEFT JOIN contact_identities ci ON ci.contact_id = c.id
           WHERE c.user_id = ?
           GROUP BY c.id
           ORDER BY c.created_at, c.id""",
        (user_id,),
    ).fetchall()
