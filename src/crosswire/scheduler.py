"""Staleness-aware sync decisions.

``decide()`` is a pure function over a snapshot of the user's sync states and
credentials. ``SyncScheduler`` builds that snapshot from the database.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from crosswire.config import SyncConfig
from crosswire.credentials import get_credential, is_valid
from crosswire.database import from_iso, utcnow
from crosswire.sync_state import SyncState, list_states

IN_PROGRESS = "in progress"
FORCE_TOO_SOON = "forced sync too soon"
FORCED = "forced"
INITIAL = "initial sync"
STALE = "stale"
FRESH = "fresh"
AGING = "aging"
NO_PLATFORMS = "no valid platforms"


@dataclass
class SyncDecision:
    should_sync: bool
    reason: str
    platforms: list[str] = field(default_factory=list)
    retry_after_seconds: float | None = None


@dataclass
class SchedulerSnapshot:
    states: list[SyncState]
    valid_platforms: list[str]
    has_data: bool
    now: datetime


def _last_sync(states: list[SyncState]) -> datetime | None:
    times = [from_iso(s.last_sync_at) for s in states if s.last_sync_at]
    return max(times) if times else None


def decide(snapshot: SchedulerSnapshot, force: bool, config: SyncConfig) -> SyncDecision:
    now = snapshot.now

    if any(s.is_currently_syncing for s in snapshot.states):
        return SyncDecision(False, IN_PROGRESS)

    if force:
        last = _last_sync(snapshot.states)
        min_interval = timedelta(minutes=config.min_force_interval_minutes)
        if last is not None and now - last < min_interval:
            remaining = (min_interval - (now - last)).total_seconds()
            return SyncDecision(False, FORCE_TOO_SOON, retry_after_seconds=remaining)

    valid = list(snapshot.valid_platforms)
    if not valid:
        return SyncDecision(False, NO_PLATFORMS)

    if force:
        return SyncDecision(True, FORCED, valid)

    if not snapshot.has_data:
        return SyncDecision(True, INITIAL, valid)

    by_platform = {s.platform: s for s in snapshot.states}
    stale_after = timedelta(hours=config.stale_hours)
    fresh_within = timedelta(hours=config.fresh_hours)

    stale: list[str] = []
    oldest_age = timedelta(0)
    for platform in valid:
        state = by_platform.get(platform)
        success = from_iso(state.last_success_at) if state else None
        if success is None:
            stale.append(platform)
            continue
        age = now - success
        if age > stale_after:
            stale.append(platform)
        oldest_age = max(oldest_age, age)

    if stale:
        return SyncDecision(True, STALE, stale)
    if oldest_age < fresh_within:
        return SyncDecision(False, FRESH)
    return SyncDecision(False, AGING)


class SyncScheduler:
    """Builds the decision snapshot for one user from the database."""

    def __init__(self, conn: sqlite3.Connection, config: SyncConfig):
        self.conn = conn
        self.config = config

    def valid_platforms(self, user_id: str, now: datetime | None = None) -> list[str]:
        return [
            p for p in self.config.platforms
            if is_valid(get_credential(self.conn, user_id, p), now)
        ]

    def has_data(self, user_id: str) -> bool:
        row = self.conn.execute(
            """SELECT EXISTS(SELECT 1 FROM contacts WHERE user_id = ?)
                   OR EXISTS(SELECT 1 FROM messages WHERE user_id = ?) AS has_data""",
            (user_id, user_id),
        ).fetchone()
        return bool(row["has_data"])

    def snapshot(self, user_id: str, now: datetime | None = None) -> SchedulerSnapshot:
        now = now or utcnow()
        return SchedulerSnapshot(
            states=list_states(self.conn, user_id),
            valid_platforms=self.valid_platforms(user_id, now),
            has_data=self.has_data(user_id),
            now=now,
        )

    def decide(self, user_id: str, force: bool = False, now: datetime | None = None) -> SyncDecision:
        return decide(self.snapshot(user_id, now), force, self.config)
