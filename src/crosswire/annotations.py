"""Best-effort AI thread annotation on a background queue.

Summaries are stored as thread-summary message records. Failures are logged
and dropped; they never reach the sync run that queued the work.
"""

from __future__ import annotations

import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from crosswire.ai.analysis import TranscriptLine, analyze_thread
from crosswire.ai.base import AIProvider
from crosswire.config import Config
from crosswire.database import get_db, to_iso, transaction, utcnow
from crosswire.messages import thread_messages, upsert_thread_summary
from crosswire.observability import get_logger
from crosswire.threads import ThreadViewCache, parse_actual_sender, thread_cache

log = get_logger(__name__)


def _transcript_lines(messages: list[dict]) -> list[TranscriptLine]:
    lines = []
    for m in messages:
        pd = m.get("platform_data") or {}
        sender = parse_actual_sender(pd.get("from"))
        lines.append(TranscriptLine(
            timestamp=m["timestamp"],
            direction=pd.get("direction", "inbound"),
            sender=sender[0] if sender else (m.get("contact_name") or "unknown"),
            content=m.get("content") or "",
        ))
    return lines


def summarize_thread(
    conn: sqlite3.Connection,
    user_id: str,
    thread_id: str,
    provider: AIProvider,
    model: str,
    max_body_chars: int = 2000,
) -> dict | None:
    """Ask the provider for a thread analysis and store it as the thread summary.

    Returns the stored analysis, or None if the thread is empty or the reply
    carried no summary.
    """
    messages = thread_messages(conn, user_id, thread_id)
    if not messages:
        return None
    latest = messages[-1]

    result = analyze_thread(
        provider,
        model,
        _transcript_lines(messages),
        platform=latest["platform"],
        contact_name=latest.get("contact_name") or "an unknown contact",
        max_chars=max_body_chars,
    )
    if result is None:
        log.warning("thread_summary_empty", user_id=user_id, thread_id=thread_id)
        return None

    analysis = {**result.to_dict(), "message_count": len(messages), "model": model}
    with transaction(conn):
        upsert_thread_summary(
            conn,
            user_id,
            latest["platform"],
            thread_id,
            result.summary,
            analysis,
            timestamp=to_iso(utcnow()),
            contact_id=latest.get("contact_id"),
        )
    log.info("thread_summarized", user_id=user_id, thread_id=thread_id, messages=len(messages))
    return analysis


class AnnotationQueue:
    """ThreadPoolExecutor-backed queue of thread summarization jobs.

    ``connect`` opens a database connection for each job; it is closed when
    the job ends. Duplicate submissions for a thread that is still queued
    are collapsed.
    """

    def __init__(
        self,
        connect: Callable[[], sqlite3.Connection],
        provider: AIProvider,
        model: str,
        max_workers: int = 1,
        max_body_chars: int = 2000,
        cache: ThreadViewCache | None = None,
    ):
        self.connect = connect
        self.provider = provider
        self.model = model
        self.max_body_chars = max_body_chars
        self.cache = cache if cache is not None else thread_cache
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="annotate")
        self._pending: dict[tuple[str, str], Future] = {}
        self._lock = threading.Lock()

    def submit(self, user_id: str, thread_id: str) -> Future:
        key = (user_id, thread_id)
        with self._lock:
            existing = self._pending.get(key)
            if existing is not None and not existing.done():
                return existing
            future = self._executor.submit(self._run, user_id, thread_id)
            self._pending[key] = future
        future.add_done_callback(lambda f, k=key: self._forget(k, f))
        return future

    def _forget(self, key: tuple[str, str], future: Future) -> None:
        with self._lock:
            if self._pending.get(key) is future:
                del self._pending[key]

    def _run(self, user_id: str, thread_id: str) -> dict | None:
        conn = None
        try:
            conn = self.connect()
            analysis = summarize_thread(
                conn, user_id, thread_id, self.provider, self.model, self.max_body_chars
            )
            if analysis is not None:
                self.cache.invalidate(user_id)
            return analysis
        except Exception:
            log.warning("thread_annotation_failed", user_id=user_id, thread_id=thread_id, exc_info=True)
            return None
        finally:
            if conn is not None:
                conn.close()

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for f in self._pending.values() if not f.done())

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work. Jobs already queued still run to completion."""
        self._executor.shutdown(wait=wait)


def build_annotation_queue(config: Config) -> AnnotationQueue | None:
    """Queue wired to the configured provider, or None when AI is disabled."""
    if not config.ai.enabled:
        return None
    from crosswire.ai import get_provider

    provider, model = get_provider(f"{config.ai.provider}:{config.ai.model}", config.ai.to_provider_dict())
    return AnnotationQueue(
        connect=lambda: get_db(config),
        provider=provider,
        model=model,
        max_workers=config.ai.max_workers,
        max_body_chars=config.ai.max_body_chars,
    )
