"""Sync orchestration: scheduler → fetch → bot filter → unification → messages.

Each (user, platform) run moves idle → syncing → idle through the durable
flag in sync_state. Platforms requested together run one after another and
fail independently.
"""

from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

from crosswire import approvals, contacts
from crosswire.adapters import FetchAdapter, FetchResult, default_adapters
from crosswire.annotations import AnnotationQueue, build_annotation_queue
from crosswire.bots import BotRules, load_bot_rules
from crosswire.config import Config
from crosswire.credentials import StoredCredentialProvider, get_credential, is_valid
from crosswire.database import get_db, transaction
from crosswire.errors import (
    ContactNotFound,
    CredentialExpired,
    CrosswireError,
    RateLimited,
    TransientFetchFailure,
)
from crosswire.events import publish_event
from crosswire.messages import message_stats, upsert_message
from crosswire.models import (
    Candidate,
    Decision,
    DecisionResult,
    NormalizedContact,
    PlatformReport,
    SyncReport,
    SyncStatus,
    UnificationAction,
    UnificationResult,
    UnifiedContact,
)
from crosswire.observability import get_logger
from crosswire.scheduler import SyncDecision, SyncScheduler
from crosswire.sync_state import (
    begin_sync,
    complete_sync,
    cursor_at_least,
    fail_sync,
    get_state,
    list_states,
    reset_eligible,
    reset_sync_state,
)
from crosswire.threads import ThreadView, ThreadViewCache, thread_cache
from crosswire.unification import ContactUnifier, find_candidates

log = get_logger(__name__)

INITIAL_SYNC_REQUIRED = "initial sync required"
UP_TO_DATE = "already up to date"
REQUESTED = "requested"

_ACTION_COUNTERS = {
    UnificationAction.AUTO_CREATED_NEW: "created",
    UnificationAction.AUTO_MERGED: "merged",
    UnificationAction.FLAGGED_FOR_REVIEW: "flagged",
    UnificationAction.DEFINITIVE_LINK_EXISTS: "linked",
    UnificationAction.FILTERED_BOT: "filtered",
    UnificationAction.SUPPRESSED: "suppressed",
}


def overall_status(reports: dict[str, PlatformReport]) -> SyncStatus:
    failed = sum(1 for r in reports.values() if not r.ok)
    if failed == 0:
        return SyncStatus.SUCCESS
    if failed == len(reports):
        return SyncStatus.FAILED
    return SyncStatus.PARTIAL


class SyncEngine:
    """Entry point for sync, webhook, approval and thread operations."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: Config | None = None,
        adapters: dict[str, FetchAdapter] | None = None,
        credentials: StoredCredentialProvider | None = None,
        annotator: AnnotationQueue | None = None,
        bot_rules: BotRules | None = None,
        cache: ThreadViewCache | None = None,
        owns_annotator: bool = True,
    ):
        self.conn = conn
        self.config = config or Config()
        self.adapters = adapters if adapters is not None else default_adapters(self.config)
        self.credentials = credentials or StoredCredentialProvider(conn)
        self.annotator = annotator
        self.cache = cache if cache is not None else thread_cache
        self.scheduler = SyncScheduler(conn, self.config.sync)
        self.unifier = ContactUnifier(conn, self.config.unification, bot_rules)
        self._fetch_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="fetch")
        self._owns_annotator = owns_annotator

    @classmethod
    def from_config(
        cls,
        config: Config,
        conn: sqlite3.Connection | None = None,
        annotator: AnnotationQueue | None = None,
    ) -> SyncEngine:
        """Wire the production collaborators: adapters, refreshers, AI queue.

        A passed-in ``annotator`` is shared and outlives this engine; otherwise
        the engine builds its own and shuts it down on close.
        """
        from crosswire.gmail.auth import refresh_gmail_credential

        conn = conn or get_db(config)
        refreshers = {"gmail": lambda cred: refresh_gmail_credential(cred, config.gmail)}
        owns_annotator = annotator is None
        if owns_annotator:
            annotator = build_annotation_queue(config)
        return cls(
            conn,
            config,
            credentials=StoredCredentialProvider(conn, refreshers),
            annotator=annotator,
            bot_rules=load_bot_rules(config.unification.bot_rules_file),
            owns_annotator=owns_annotator,
        )

    def close(self, wait: bool = False) -> None:
        """Release the fetch pool. ``wait`` blocks until queued summaries finish."""
        self._fetch_pool.shutdown(wait=False, cancel_futures=True)
        if self.annotator is not None and self._owns_annotator:
            self.annotator.shutdown(wait=wait)

    # -- scheduling -------------------------------------------------------

    def decide(self, user_id: str, force: bool = False) -> SyncDecision:
        return self.scheduler.decide(user_id, force)

    def sync_user(
        self, user_id: str, platforms: list[str] | None = None, force: bool = False
    ) -> SyncReport:
        """Sync a user's platforms.

        Without ``platforms`` the scheduler decides whether and what to sync;
        a declined decision returns a ``skipped`` report. Explicit platforms
        run unconditionally.
        """
        if platforms is None:
            decision = self.decide(user_id, force)
            if not decision.should_sync:
                log.info("sync_skipped", user_id=user_id, reason=decision.reason)
                return SyncReport(user_id, SyncStatus.SKIPPED, reason=decision.reason)
            platforms, reason = decision.platforms, decision.reason
        else:
            reason = REQUESTED
            if not platforms:
                return SyncReport(user_id, SyncStatus.SKIPPED, reason="no platforms requested")

        reports: dict[str, PlatformReport] = {}
        for platform in platforms:
            reports[platform] = self.sync_platform(user_id, platform)

        report = SyncReport(user_id, overall_status(reports), reason=reason, platforms=reports)
        log.info(
            "sync_user_finished",
            user_id=user_id,
            status=report.status.value,
            reason=reason,
            platforms=list(reports),
        )
        return report

    # -- one platform run -------------------------------------------------

    def _fetch(self, adapter: FetchAdapter, user_id: str, cursor: str | None, credential) -> FetchResult:
        future = self._fetch_pool.submit(adapter.fetch_since, user_id, cursor, credential)
        timeout = self.config.sync.fetch_timeout_seconds
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as e:
            future.cancel()
            raise TransientFetchFailure(f"{adapter.platform} fetch exceeded {timeout:g}s") from e

    def _fetch_with_refresh(self, user_id: str, platform: str, adapter: FetchAdapter, cursor: str | None) -> FetchResult:
        refreshed = False
        try:
            credential = self.credentials.get(user_id, platform)
        except CredentialExpired:
            credential = self.credentials.refresh(user_id, platform)
            refreshed = True
        try:
            return self._fetch(adapter, user_id, cursor, credential)
        except CredentialExpired:
            if refreshed:
                raise
            credential = self.credentials.refresh(user_id, platform)
            return self._fetch(adapter, user_id, cursor, credential)

    def sync_platform(self, user_id: str, platform: str) -> PlatformReport:
        """Run one (user, platform) sync. Errors are recorded, not raised."""
        report = PlatformReport(platform)
        adapter = self.adapters.get(platform)
        if adapter is None:
            report.ok = False
            report.error_kind = "unknown_platform"
            report.errors.append(f"no adapter for platform {platform!r}")
            return report

        try:
            state = begin_sync(self.conn, user_id, platform)
        except CrosswireError as e:
            report.ok = False
            report.error_kind = e.kind
            report.errors.append(str(e))
            return report

        publish_event({"type": "sync_started", "user_id": user_id, "platform": platform})
        try:
            result = self._fetch_with_refresh(user_id, platform, adapter, state.cursor)
            touched = self._ingest(user_id, platform, result, report)
            final = complete_sync(self.conn, user_id, platform, result.next_cursor, report.messages)
            report.cursor = final.cursor
        except CrosswireError as e:
            self._record_failure(user_id, platform, report, str(e), e.kind)
            if isinstance(e, RateLimited):
                report.retry_after = e.retry_after
            return report
        except Exception as e:
            log.error("sync_internal_error", user_id=user_id, platform=platform, exc_info=True)
            self._record_failure(user_id, platform, report, f"{type(e).__name__}: {e}", "internal_error")
            return report
        finally:
            if report.messages:
                self.cache.invalidate(user_id)

        publish_event({
            "type": "sync_completed",
            "user_id": user_id,
            "platform": platform,
            "messages": report.messages,
            "created": report.created,
            "merged": report.merged,
            "flagged": report.flagged,
        })
        self._queue_annotations(user_id, touched)
        return report

    def _record_failure(self, user_id: str, platform: str, report: PlatformReport, message: str, kind: str) -> None:
        report.ok = False
        report.error_kind = kind
        report.errors.append(message)
        fail_sync(self.conn, user_id, platform, message, kind)
        publish_event({
            "type": "sync_failed", "user_id": user_id, "platform": platform,
            "kind": kind, "error": message,
        })

    def _count(self, report: PlatformReport, result: UnificationResult) -> None:
        report.processed += 1
        attr = _ACTION_COUNTERS[result.action]
        setattr(report, attr, getattr(report, attr) + 1)

    def _ingest(self, user_id: str, platform: str, result: FetchResult, report: PlatformReport) -> set[str]:
        """Unify contacts then upsert messages in adapter order.

        Returns the thread ids that received new messages.
        """
        resolved: dict[str, UnificationResult] = {}

        def unify(contact: NormalizedContact) -> UnificationResult:
            outcome = resolved.get(contact.remote_id)
            if outcome is None:
                outcome = self.unifier.process(contact, platform, user_id)
                resolved[contact.remote_id] = outcome
                self._count(report, outcome)
            return outcome

        for contact in result.contacts:
            unify(contact)

        touched: set[str] = set()
        for msg in result.messages:
            outcome = unify(msg.contact) if msg.contact is not None else None
            if outcome is not None and outcome.action in (
                UnificationAction.FILTERED_BOT, UnificationAction.SUPPRESSED,
            ):
                continue
            contact_id = outcome.contact_id if outcome is not None else None
            with transaction(self.conn):
                inserted = upsert_message(self.conn, user_id, platform, msg, contact_id)
                if inserted and outcome is not None and outcome.action == UnificationAction.FLAGGED_FOR_REVIEW:
                    approvals.hold_message(self.conn, user_id, platform, msg.contact, msg)
            report.messages += 1
            if inserted:
                touched.add(msg.thread_id or msg.platform_message_id)
        return touched

    def _queue_annotations(self, user_id: str, thread_ids: set[str]) -> None:
        if self.annotator is None:
            return
        for thread_id in sorted(thread_ids):
            self.annotator.submit(user_id, thread_id)

    # -- webhook ----------------------------------------------------------

    def handle_webhook(self, user_id: str, platform: str, cursor: str | None = None) -> SyncReport:
        """Fetch the delta announced by a push, bypassing the staleness check.

        ``cursor`` is the position the push reports (e.g. a Gmail historyId).
        A push at or behind the stored cursor is ignored.
        """
        state = get_state(self.conn, user_id, platform)
        if state is None or not state.cursor:
            return SyncReport(user_id, SyncStatus.SKIPPED, reason=INITIAL_SYNC_REQUIRED)
        if cursor is not None:
            ahead = cursor != state.cursor and cursor_at_least(state.cursor, cursor) == cursor
            if not ahead:
                return SyncReport(user_id, SyncStatus.SKIPPED, reason=UP_TO_DATE)

        report = self.sync_platform(user_id, platform)
        reports = {platform: report}
        return SyncReport(user_id, overall_status(reports), reason="webhook", platforms=reports)

    # -- status and admin -------------------------------------------------

    def status(self, user_id: str) -> dict:
        """Current sync state and cached statistics. Never fetches."""
        stuck = {s.platform for s in reset_eligible(self.conn, self.config.sync.max_run_minutes, user_id)}
        states = {s.platform: s for s in list_states(self.conn, user_id)}
        platforms = []
        for name in sorted(set(self.config.sync.platforms) | set(states)):
            s = states.get(name)
            platforms.append({
                "platform": name,
                "credential_valid": is_valid(get_credential(self.conn, user_id, name)),
                "cursor": s.cursor if s else None,
                "initial_sync_complete": s.initial_sync_complete if s else False,
                "is_currently_syncing": s.is_currently_syncing if s else False,
                "sync_started_at": s.sync_started_at if s else None,
                "last_sync_at": s.last_sync_at if s else None,
                "last_success_at": s.last_success_at if s else None,
                "total_messages_processed": s.total_messages_processed if s else 0,
                "last_error": s.last_error if s else None,
                "last_error_kind": s.last_error_kind if s else None,
                "reset_eligible": name in stuck,
            })
        decision = self.decide(user_id)
        return {
            "user_id": user_id,
            "platforms": platforms,
            "stats": message_stats(self.conn, user_id),
            "pending_approvals": len(approvals.list_pending(self.conn, user_id)),
            "recommendation": {
                "should_sync": decision.should_sync,
                "reason": decision.reason,
                "platforms": decision.platforms,
            },
            "thread_cache": self.cache.stats(),
        }

    def reset_sync_state(self, user_id: str, platform: str):
        state = reset_sync_state(self.conn, user_id, platform)
        self.cache.invalidate(user_id)
        return state

    def reset_eligible(self, user_id: str | None = None):
        return reset_eligible(self.conn, self.config.sync.max_run_minutes, user_id)

    # -- contacts, approvals and threads ---------------------------------

    def list_contacts(self, user_id: str) -> list[UnifiedContact]:
        return contacts.list_contacts(self.conn, user_id)

    def get_contact(self, user_id: str, contact_id: str) -> UnifiedContact:
        contact = contacts.get_contact(self.conn, user_id, contact_id)
        if contact is None:
            raise ContactNotFound(f"contact {contact_id} not found")
        return contact

    def find_matches(self, user_id: str, contact: NormalizedContact) -> list[Candidate]:
        """Score existing contacts against ``contact`` without changing anything."""
        return find_candidates(
            self.conn,
            user_id,
            contact,
            fuzzy_threshold=self.config.unification.fuzzy_name_threshold,
            limit=self.config.unification.max_candidates,
        )

    def process_contact(self, user_id: str, platform: str, contact: NormalizedContact) -> UnificationResult:
        """Out-of-band unification (manual import). Serialized with sync runs."""
        return self.unifier.process(contact, platform, user_id)

    def list_pending(self, user_id: str):
        return approvals.list_pending(self.conn, user_id)

    def decide_pending(self, user_id: str, pending_id: str, decision: Decision) -> DecisionResult:
        result = approvals.decide(self.conn, user_id, pending_id, decision)
        if not result.replayed and result.messages_imported:
            self.cache.invalidate(user_id)
        return result

    def list_blacklist(self, user_id: str):
        return approvals.list_blacklist(self.conn, user_id)

    def remove_blacklist(self, user_id: str, entry_id: str) -> bool:
        return approvals.remove_blacklist(self.conn, user_id, entry_id)

    def thread_view(self, user_id: str) -> ThreadView:
        return ThreadView(self.conn, user_id, self.cache)
