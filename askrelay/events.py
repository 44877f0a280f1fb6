"""
Activity events.

Components report status changes (peer connected, endpoint error, tunnel
state, request resolved, ...) through an EventLog instead of raising. The
log keeps a capped newest-first list for the status surface and fans each
event out to subscribers, e.g. a UI push or a test collector.
"""
import logging
import threading
import uuid
from datetime import datetime, timezone

log = logging.getLogger("askrelay.events")

_MAX = 200   # cap to prevent unbounded growth


class EventLog:

    def __init__(self, capacity: int = _MAX):
        self._capacity = capacity
        self._events: list[dict] = []
        self._subscribers: list = []
        self._lock = threading.Lock()

    def subscribe(self, callback):
        """Register callback(event_dict), called synchronously on every emit."""
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback):
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def emit(self, kind: str, title: str, message: str = "",
             level: str = "info", **data) -> dict:
        """
        Record an event and notify subscribers.

        level: "info" | "warn" | "error"
        """
        event = {
            "id": uuid.uuid4().hex[:12],
            "kind": kind,
            "level": level,
            "title": title,
            "message": message,
            "ts": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }
        with self._lock:
            self._events.insert(0, event)
            if len(self._events) > self._capacity:
                del self._events[self._capacity:]
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:
                log.warning("Event subscriber %r raised: %s", callback, exc)
        return event

    def recent(self, limit: int = 50, kind: str = "") -> list[dict]:
        """Newest-first events, optionally filtered by kind prefix."""
        with self._lock:
            events = list(self._events)
        if kind:
            events = [e for e in events if e["kind"].startswith(kind)]
        return events[:limit]

    def clear(self):
        with self._lock:
            self._events.clear()
