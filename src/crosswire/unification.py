"""Contact unification: place one platform contact in the user's contact graph.

Every call for a user is serialized by a per-user lock and runs inside a
single BEGIN IMMEDIATE transaction, so two racing calls can never both
decide to create a contact for the same identity.
"""

from __future__ import annotations

import re
import sqlite3

from crosswire import approvals
from crosswire.bots import BotRules, detect_bot
from crosswire.config import UnificationConfig
from crosswire.contacts import add_identity, contact_rows, create_contact, find_identity, identity_on_platform
from crosswire.database import transaction
from crosswire.errors import ConflictingDecision
from crosswire.locks import user_lock
from crosswire.models import Candidate, NormalizedContact, UnificationAction, UnificationResult
from crosswire.observability import get_logger

log = get_logger(__name__)

EMAIL_EXACT = 100.0
NAME_AND_DOMAIN = 75.0
HANDLE_OR_PHONE = 60.0
FUZZY_NAME = 40.0


def _words(name: str) -> list[str]:
    return [w for w in name.lower().split() if len(w) > 1]


def name_similarity(a: str, b: str) -> float:
    """1.0 for equal names, 0.8 when one contains the other, else word overlap."""
    s1 = a.lower().strip()
    s2 = b.lower().strip()
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return 0.8
    words1 = _words(s1)
    words2 = _words(s2)
    if not words1 or not words2:
        return 0.0
    common = [w for w in words1 if any(w in o or o in w for o in words2)]
    return len(common) / max(len(words1), len(words2))


def _name_parts_match(name: str, other: str) -> bool:
    """At least min(2, len(parts)) of name's parts appear in other."""
    parts = _words(name)
    if not parts:
        return False
    other_parts = other.lower().split()
    matching = [p for p in parts if any(p in o or o in p for o in other_parts)]
    return len(matching) >= min(2, len(parts))


def _digits(phone: str | None) -> str:
    return re.sub(r"\D", "", phone or "")


def find_candidates(
    conn: sqlite3.Connection,
    user_id: str,
    contact: NormalizedContact,
    fuzzy_threshold: float = 0.7,
    limit: int = 5,
) -> list[Candidate]:
    """Score the user's existing contacts against an incoming one.

    Returns at most ``limit`` candidates, one per contact (its best score),
    highest score first.
    """
    email = (contact.email or "").strip().lower()
    domain = email.rpartition("@")[2] if "@" in email else ""
    handle = (contact.handle or "").strip().lower()
    phone = _digits(contact.phone)
    name = contact.name or ""

    best: dict[str, Candidate] = {}

    def offer(contact_id: str, score: float, reason: str) -> None:
        current = best.get(contact_id)
        if current is None or score > current.score:
            best[contact_id] = Candidate(contact_id, score, reason)

    for row in contact_rows(conn, user_id):
        emails = {e for e in [row["email"], *(row["identity_emails"] or "").split()] if e}
        handles = {h.lower() for h in (row["identity_handles"] or "").split() if h}
        full_name = row["full_name"] or ""

        if email and email in emails:
            offer(row["id"], EMAIL_EXACT, "email_exact_match")

        if domain and name and any(e.endswith("@" + domain) for e in emails):
            if _name_parts_match(name, full_name):
                offer(row["id"], NAME_AND_DOMAIN, "name_similarity_email_domain")

        if handle and (
            handle in handles
            or any(handle in e.split("@")[0] for e in emails)
            or handle in full_name.lower()
        ):
            offer(row["id"], HANDLE_OR_PHONE, "handle_match")

        if phone and len(phone) >= 7 and phone == _digits(row["phone"]):
            offer(row["id"], HANDLE_OR_PHONE, "phone_match")

        if name and name_similarity(name, full_name) > fuzzy_threshold:
            offer(row["id"], FUZZY_NAME, "name_fuzzy_match")

    ranked = sorted(best.values(), key=lambda c: c.score, reverse=True)
    return ranked[:limit]


class ContactUnifier:
    """Decide auto-merge, auto-create or review for incoming contacts."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: UnificationConfig | None = None,
        bot_rules: BotRules | None = None,
    ):
        self.conn = conn
        self.config = config or UnificationConfig()
        self.bot_rules = bot_rules

    def process(self, contact: NormalizedContact, platform: str, user_id: str) -> UnificationResult:
        check = detect_bot(contact, self.bot_rules)
        if check.should_filter:
            log.info(
                "contact_filtered_bot",
                user_id=user_id,
                platform=platform,
                remote_id=contact.remote_id,
                reasons=check.reasons,
            )
            return UnificationResult(UnificationAction.FILTERED_BOT, bot_reasons=check.reasons)
        if check.is_bot:
            log.debug("contact_bot_signal", remote_id=contact.remote_id, reasons=check.reasons)

        with user_lock(user_id):
            try:
                with transaction(self.conn, immediate=True):
                    result = self._decide(contact, platform, user_id)
            except sqlite3.IntegrityError as e:
                raise ConflictingDecision(
                    f"{platform} identity {contact.remote_id} was linked concurrently"
                ) from e

        log.info(
            "contact_unified",
            user_id=user_id,
            platform=platform,
            remote_id=contact.remote_id,
            action=result.action.value,
            contact_id=result.contact_id,
        )
        return result

    def _decide(self, contact: NormalizedContact, platform: str, user_id: str) -> UnificationResult:
        conn = self.conn

        linked = find_identity(conn, user_id, platform, contact.remote_id)
        if linked:
            return UnificationResult(UnificationAction.DEFINITIVE_LINK_EXISTS, contact_id=linked)

        if approvals.is_blacklisted(conn, user_id, platform, contact):
            return UnificationResult(UnificationAction.SUPPRESSED)

        open_pending = approvals.find_open_pending(conn, user_id, platform, contact.remote_id)
        if open_pending is not None:
            return UnificationResult(UnificationAction.FLAGGED_FOR_REVIEW, pending_id=open_pending.id)

        candidates = find_candidates(
            conn,
            user_id,
            contact,
            fuzzy_threshold=self.config.fuzzy_name_threshold,
            limit=self.config.max_candidates,
        )

        if not candidates:
            contact_id = create_contact(conn, user_id, contact)
            add_identity(conn, user_id, contact_id, platform, contact)
            return UnificationResult(UnificationAction.AUTO_CREATED_NEW, contact_id=contact_id)

        exact = [c for c in candidates if c.score == EMAIL_EXACT]
        if len(exact) == 1:
            target = exact[0].contact_id
            # A contact holds one identity per platform; a second one needs a human.
            if identity_on_platform(conn, target, platform) is None:
                add_identity(conn, user_id, target, platform, contact)
                return UnificationResult(
                    UnificationAction.AUTO_MERGED, contact_id=target, candidates=candidates
                )

        pending_id = approvals.create_pending(conn, user_id, platform, contact, candidates)
        return UnificationResult(
            UnificationAction.FLAGGED_FOR_REVIEW, pending_id=pending_id, candidates=candidates
        )
