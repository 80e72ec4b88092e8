"""Message deduplication and threading.

Thread membership is derived on read: raw messages are grouped by thread id
(or their own id), the newest message represents the thread, and a stored
thread summary, when present, replaces the displayed content.
"""

from __future__ import annotations

import re
import sqlite3
import threading
from typing import Iterable, Iterator

from crosswire.messages import list_messages
from crosswire.models import DisplayThread

UNKNOWN = "Unknown"

_ANGLE_RE = re.compile(r"<(.+?)>")
_NAME_RE = re.compile(r"^([^<]+)")


def parse_actual_sender(from_field: str | None) -> tuple[str, str] | None:
    """Parse ``"Name <email>"`` into (name, email).

    Without angle brackets the whole value is used as both name and email.
    """
    if not from_field or not from_field.strip():
        return None
    email_match = _ANGLE_RE.search(from_field)
    if email_match:
        email = email_match.group(1).strip()
        name_match = _NAME_RE.match(from_field)
        name = name_match.group(1).strip().strip('"').strip() if name_match else ""
        return (name or email, email)
    value = from_field.strip()
    return (value, value)


def display_name(
    contact_name: str | None, contact_email: str | None, sender: tuple[str, str] | None
) -> str:
    if not contact_name:
        return UNKNOWN
    if sender is None:
        return contact_name
    sender_name, sender_email = sender
    if (contact_email or "").lower() == sender_email.lower():
        return contact_name
    if "@" not in sender_email and sender_name.lower() == contact_name.lower():
        return contact_name
    return f"{sender_name} (via {contact_name})"


def thread_key(message: dict) -> str:
    return message.get("thread_id") or message["platform_message_id"]


def build_threads(messages: Iterable[dict]) -> list[DisplayThread]:
    """Collapse message rows into display threads, newest activity first.

    ``messages`` are dicts as returned by crosswire.messages.list_messages.
    The result depends only on the input rows, so repeated calls over an
    unchanged set give identical output.
    """
    summaries: dict[str, dict] = {}
    groups: dict[str, list[dict]] = {}

    for msg in messages:
        if msg.get("is_thread_summary"):
            tid = msg.get("thread_id")
            if tid and tid not in summaries:
                summaries[tid] = msg
            continue
        groups.setdefault(thread_key(msg), []).append(msg)

    threads: list[DisplayThread] = []
    for tid, group in groups.items():
        # Stable: equal timestamps keep input order
        ordered = sorted(group, key=lambda m: m["timestamp"], reverse=True)
        latest = ordered[0]
        pd = latest.get("platform_data") or {}
        sender = parse_actual_sender(pd.get("from"))
        summary = summaries.get(tid)

        content = latest["content"]
        summary_text = pd.get("summary")
        key_points = list(pd.get("key_points") or [])
        action_items = list(pd.get("action_items") or [])
        urgency = pd.get("urgency")

        if summary is not None:
            analysis = (summary.get("platform_data") or {}).get("analysis") or {}
            content = summary["content"]
            summary_text = summary["content"]
            key_points = list(
                analysis.get("key_points") or analysis.get("key_topics") or key_points
            )
            action_items = list(analysis.get("action_items") or action_items)
            urgency = analysis.get("urgency") or urgency or "low"

        threads.append(
            DisplayThread(
                thread_id=tid,
                message=latest,
                content=content,
                display_name=display_name(latest.get("contact_name"), latest.get("contact_email"), sender),
                actual_sender=sender[1] if sender else None,
                timestamp=latest["timestamp"],
                contact_id=latest.get("contact_id"),
                thread_count=len(ordered),
                thread_messages=ordered,
                summary=summary_text,
                key_points=key_points,
                action_items=action_items,
                urgency=urgency,
            )
        )

    threads.sort(key=lambda t: t.timestamp, reverse=True)
    return threads


class ThreadViewCache:
    """Per-user memoized thread lists, dropped explicitly when messages change.

    Each user has a generation that every invalidation bumps. A list built
    from a read that started before an invalidation is refused by ``put``,
    so a recompute racing a committed sync can never outlive it.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list[DisplayThread]] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.invalidations = 0
        self.stale_puts = 0

    def generation(self, user_id: str) -> tuple[int, int]:
        with self._lock:
            return (self._epoch, self._generations.get(user_id, 0))

    def get(self, user_id: str) -> list[DisplayThread] | None:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                self.misses += 1
            else:
                self.hits += 1
            return entry

    def put(
        self, user_id: str, threads: list[DisplayThread], generation: tuple[int, int] | None = None
    ) -> bool:
        """Store ``threads`` unless the user was invalidated since ``generation``."""
        with self._lock:
            current = (self._epoch, self._generations.get(user_id, 0))
            if generation is not None and generation != current:
                self.stale_puts += 1
                return False
            self._entries[user_id] = threads
            return True

    def invalidate(self, user_id: str | None = None) -> None:
        with self._lock:
            if user_id is None:
                self._entries.clear()
                self._epoch += 1
            else:
                self._entries.pop(user_id, None)
                self._generations[user_id] = self._generations.get(user_id, 0) + 1
            self.invalidations += 1

    def stats(self) -> dict:
        with self._lock:
            return {
                "users": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "invalidations": self.invalidations,
                "stale_puts": self.stale_puts,
            }


thread_cache = ThreadViewCache()


class ThreadView:
    """Lazy, restartable view over a user's threads.

    Each iteration reads the current cache entry or recomputes it from the
    message table.
    """

    def __init__(self, conn: sqlite3.Connection, user_id: str, cache: ThreadViewCache | None = None):
        self.conn = conn
        self.user_id = user_id
        self.cache = cache if cache is not None else thread_cache

    def _threads(self) -> list[DisplayThread]:
        threads = self.cache.get(self.user_id)
        if threads is None:
            generation = self.cache.generation(self.user_id)
            threads = build_threads(list_messages(self.conn, self.user_id))
            self.cache.put(self.user_id, threads, generation)
        return threads

    def __iter__(self) -> Iterator[DisplayThread]:
        return iter(list(self._threads()))


def thread_view(conn: sqlite3.Connection, user_id: str, cache: ThreadViewCache | None = None) -> ThreadView:
    return ThreadView(conn, user_id, cache)
