"""
Correlation engine: pairs each outstanding agent call with exactly one answer.

submit() stores a PendingRequest, fans it out to every delivery channel and
returns a PendingHandle the caller blocks on. The first resolve() for an id
wins; expiry, cancellation and later answers for the same id are no-ops.

Every state transition of an entry happens under that entry's own lock, so a
late answer racing the deadline sweep settles on exactly one outcome. The
registry lock only guards the id -> entry map and is never held while a
caller waits or a channel is called.
"""
import logging
import threading
import time
import uuid

from askrelay.errors import RequestCancelled, RequestTimeout
from askrelay.models import Answer, PendingRequest

log = logging.getLogger("askrelay.pending")

DEFAULT_TIMEOUT = 600.0
SWEEP_INTERVAL  = 0.5


class _Entry:
    __slots__ = ("request", "lock", "done", "answer")

    def __init__(self, request: PendingRequest):
        self.request = request
        self.lock = threading.Lock()
        self.done = threading.Event()
        self.answer: Answer | None = None


class PendingHandle:
    """What submit() gives back: something to block on until the outcome is known."""

    def __init__(self, registry: "PendingRegistry", entry: _Entry):
        self._registry = registry
        self._entry = entry

    @property
    def id(self) -> str:
        return self._entry.request.id

    @property
    def request(self) -> PendingRequest:
        return self._entry.request

    def done(self) -> bool:
        return self._entry.done.is_set()

    def result(self) -> Answer:
        """
        Block until answered, expired or cancelled.

        Returns the winning Answer; raises RequestTimeout or RequestCancelled.
        """
        entry = self._entry
        while not entry.done.is_set():
            remaining = entry.request.remaining()
            if entry.done.wait(remaining if remaining > 0 else 0):
                break
            if time.monotonic() >= entry.request.deadline:
                self._registry._expire(entry)

        status = entry.request.status
        if status == "resolved":
            return entry.answer
        if status == "expired":
            raise RequestTimeout(entry.request.id, entry.request.timeout)
        raise RequestCancelled(entry.request.id)

    def cancel(self) -> bool:
        return self._registry.cancel(self.id)


class PendingRegistry:

    def __init__(self, events=None, default_timeout: float = DEFAULT_TIMEOUT,
                 sweep_interval: float = SWEEP_INTERVAL):
        self.events = events
        self.default_timeout = default_timeout
        self._sweep_interval = sweep_interval
        self._entries: dict[str, _Entry] = {}
        self._channels: list = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    # ── Channels ──────────────────────────────────────────────

    def add_channel(self, channel):
        with self._lock:
            if any(c.name == channel.name for c in self._channels):
                raise ValueError(f"channel {channel.name!r} already registered")
            self._channels.append(channel)

    def remove_channel(self, name: str):
        with self._lock:
            self._channels = [c for c in self._channels if c.name != name]

    def channel_names(self) -> list[str]:
        with self._lock:
            return [c.name for c in self._channels]

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self):
        """Start the background deadline sweep (entries nobody is waiting on)."""
        if self._sweeper and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, daemon=True,
                                         name="pending-sweep")
        self._sweeper.start()

    def close(self):
        """Stop the sweep and cancel whatever is still pending."""
        self._stop.set()
        for request_id in [r.id for r in self.list_pending()]:
            self.cancel(request_id)

    # ── Public API ────────────────────────────────────────────

    def submit(self, payload: dict, timeout: float | None = None, *,
               origin: str = "local", channels=None, exclude=()) -> PendingHandle:
        """
        Register a new request and hand it to the delivery channels.

        channels: restrict fan-out to these channel names (None = all).
        exclude:  channel names to skip, e.g. the peer a request came from.
        """
        timeout = self.default_timeout if timeout is None else float(timeout)
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        request = PendingRequest(payload=dict(payload or {}), timeout=timeout, origin=origin)
        entry = _Entry(request)
        with self._lock:
            while request.id in self._entries:
                request.id = uuid.uuid4().hex
            self._entries[request.id] = entry
            targets = [c for c in self._channels
                       if (channels is None or c.name in channels) and c.name not in exclude]

        log.info("Request %s submitted (timeout %gs, origin %s)", request.id, timeout, origin)
        self._emit("request.submitted", f"Request {request.id[:8]} submitted",
                   request_id=request.id, origin=origin)

        for channel in targets:
            try:
                accepted = channel.deliver(request)
            except Exception as exc:
                log.warning("Channel %s failed to deliver %s: %s", channel.name, request.id, exc)
                continue
            if accepted:
                with entry.lock:
                    request.delivered_to.add(channel.name)

        if not request.delivered_to:
            log.info("Request %s reached no channel — it will time out unless one connects",
                     request.id)
        return PendingHandle(self, entry)

    def resolve(self, request_id: str, answer: Answer) -> bool:
        """
        Complete a pending request. True only for the first answer while the
        entry is still pending; duplicates and late answers return False.
        """
        with self._lock:
            entry = self._entries.get(request_id)
        if entry is None:
            log.debug("Answer for unknown or finished request %s from %s ignored",
                      request_id, answer.source_channel)
            return False
        if not self._finish(entry, "resolved", answer):
            return False
        log.info("Request %s resolved by %s", request_id, answer.source_channel)
        self._emit("request.resolved", f"Request {request_id[:8]} answered",
                   request_id=request_id, source=answer.source_channel)
        self._withdraw(entry.request)
        return True

    def cancel(self, request_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(request_id)
        if entry is None or not self._finish(entry, "cancelled"):
            return False
        log.info("Request %s cancelled", request_id)
        self._emit("request.cancelled", f"Request {request_id[:8]} cancelled",
                   request_id=request_id)
        self._withdraw(entry.request)
        return True

    def expire_due(self) -> int:
        """Expire every entry whose deadline has passed. Returns how many."""
        now = time.monotonic()
        with self._lock:
            due = [e for e in self._entries.values() if e.request.deadline <= now]
        return sum(1 for e in due if self._expire(e))

    def get(self, request_id: str) -> PendingRequest | None:
        with self._lock:
            entry = self._entries.get(request_id)
        return entry.request if entry else None

    def list_pending(self) -> list[PendingRequest]:
        with self._lock:
            return [e.request for e in self._entries.values()]

    def __len__(self):
        with self._lock:
            return len(self._entries)

    # ── Internals ─────────────────────────────────────────────

    def _expire(self, entry: _Entry) -> bool:
        if not self._finish(entry, "expired"):
            return False
        request = entry.request
        log.info("Request %s expired after %gs (delivered to %s)", request.id,
                 request.timeout, sorted(request.delivered_to) or "nobody")
        self._emit("request.expired", f"Request {request.id[:8]} timed out",
                   level="warn", request_id=request.id)
        self._withdraw(request)
        return True

    def _finish(self, entry: _Entry, status: str, answer: Answer | None = None) -> bool:
        with entry.lock:
            if entry.request.status != "pending":
                return False
            entry.request.status = status
            entry.answer = answer
            entry.done.set()
        with self._lock:
            if self._entries.get(entry.request.id) is entry:
                del self._entries[entry.request.id]
        return True

    def _withdraw(self, request: PendingRequest):
        """Tell channels still showing the request that it no longer needs an answer."""
        with self._lock:
            channels = [c for c in self._channels if c.name in request.delivered_to]
        for channel in channels:
            try:
                channel.cancel(request.id)
            except Exception as exc:
                log.debug("Channel %s cancel(%s) failed: %s", channel.name, request.id, exc)

    def _sweep_loop(self):
        while not self._stop.wait(self._sweep_interval):
            try:
                self.expire_due()
            except Exception as exc:
                log.warning("Deadline sweep failed: %s", exc)

    def _emit(self, kind: str, title: str, level: str = "info", **data):
        if self.events is not None:
            self.events.emit(kind, title, level=level, **data)
