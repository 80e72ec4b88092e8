"""Per-user locks serializing contact-graph writes within one process.

Cross-process safety comes from BEGIN IMMEDIATE on the same database.
Locks are held weakly, so a user's entry disappears once no caller holds it.
"""

from __future__ import annotations

import threading
import weakref


class UserLock:
    """Reentrant lock for one user's contact graph."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def __enter__(self) -> UserLock:
        self._lock.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self._lock.release()


_user_locks: weakref.WeakValueDictionary[str, UserLock] = weakref.WeakValueDictionary()
_registry_lock = threading.Lock()


def user_lock(user_id: str) -> UserLock:
    with _registry_lock:
        lock = _user_locks.get(user_id)
        if lock is None:
            lock = _user_locks[user_id] = UserLock()
        return lock
