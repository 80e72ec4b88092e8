"""In-process sync event bus: sync runs publish, SSE listeners read."""

from __future__ import annotations

import threading

_event_listeners: list[list] = []
_event_lock = threading.Lock()


def publish_event(event: dict) -> None:
    """Publish a sync event to all listeners."""
    with _event_lock:
        for q in _event_listeners:
            q.append(event)


def subscribe_events() -> list:
    """Return a new event queue that receives sync events."""
    q: list = []
    with _event_lock:
        _event_listeners.append(q)
    return q


def unsubscribe_events(q: list) -> None:
    with _event_lock:
        try:
            _event_listeners.remove(q)
        except ValueError:
            pass


def drain(q: list) -> list[dict]:
    """Pop and return everything queued on q."""
    with _event_lock:
        events = list(q)
        q.clear()
    return events
