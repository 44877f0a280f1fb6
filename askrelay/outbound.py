"""
Outbound peer pool: the connecting side of the relay.

Holds the registry of RelayEndpoints (remote relays we dial out to) and, per
endpoint, at most one live session. A session is a websocket-client
connection that has passed the same auth handshake the inbound listener
demands, wrapped in a PeerLink whose receive loop runs on a daemon thread.

There is no background reconnect loop. connect() makes one attempt and
leaves the endpoint Connected or Error(reason); auto_connect() makes that one
attempt for every enabled endpoint flagged auto_connect and is meant to be
called at startup and after a config reload.
"""
import logging
import secrets
import threading
from dataclasses import replace

import websocket  # websocket-client

from askrelay import frames
from askrelay.channels import DeliveryChannel
from askrelay.errors import (AuthenticationFailed, ConfigConflict, ConnectionLost,
                             FrameError, UnknownEndpoint)
from askrelay.link import ClientSocket, PeerLink
from askrelay.models import (CONNECTED, CONNECTING, DISCONNECTED, Answer, ConnectionState,
                             PendingRequest, RelayEndpoint, mask_token)

log = logging.getLogger("askrelay.outbound")


def generate_token() -> str:
    """Fresh 256-bit shared secret, hex encoded."""
    return secrets.token_hex(32)


class _Session:
    __slots__ = ("endpoint", "link", "closing")

    def __init__(self, endpoint: RelayEndpoint):
        self.endpoint = endpoint
        self.link: PeerLink | None = None
        self.closing = False


class OutboundPeerPool(DeliveryChannel):
    name = "outbound"

    def __init__(self, resolve, *, on_request=None, on_cancel=None, events=None,
                 connect_timeout: float = frames.CONNECT_TIMEOUT,
                 auth_grace: float = frames.AUTH_GRACE,
                 heartbeat_interval: float = frames.HEARTBEAT_INTERVAL,
                 heartbeat_grace: float = frames.HEARTBEAT_GRACE,
                 ws_factory=websocket.WebSocket):
        self._resolve    = resolve
        self._on_request = on_request
        self._on_cancel  = on_cancel
        self.events      = events
        self.connect_timeout    = connect_timeout
        self.auth_grace         = auth_grace
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_grace    = heartbeat_grace
        self._ws_factory = ws_factory

        self._lock = threading.Lock()
        self._endpoints: dict[str, RelayEndpoint] = {}
        self._states: dict[str, ConnectionState] = {}
        self._sessions: dict[str, _Session] = {}

    generate_token = staticmethod(generate_token)

    # ── Registry CRUD ─────────────────────────────────────────

    def add(self, endpoint: RelayEndpoint) -> RelayEndpoint:
        endpoint.validate()
        with self._lock:
            if endpoint.id in self._endpoints:
                raise ConfigConflict(f"endpoint id {endpoint.id!r} already exists")
            self._check_conflicts(endpoint)
            self._endpoints[endpoint.id] = replace(endpoint)
            self._states[endpoint.id] = DISCONNECTED
        log.info("Added relay endpoint %s (%s:%d)", endpoint.display_name,
                 endpoint.host, endpoint.port)
        return replace(endpoint)

    def update(self, endpoint: RelayEndpoint) -> RelayEndpoint:
        """Replace an endpoint's settings. An open session to it is closed."""
        endpoint.validate()
        with self._lock:
            if endpoint.id not in self._endpoints:
                raise UnknownEndpoint(endpoint.id)
            self._check_conflicts(endpoint, ignore_id=endpoint.id)
            self._endpoints[endpoint.id] = replace(endpoint)
            session = self._sessions.pop(endpoint.id, None)
            if session is not None:
                self._states[endpoint.id] = DISCONNECTED
        if session is not None:
            session.closing = True
            if session.link is not None:
                session.link.close()
            self._emit("endpoint.disconnected", f"Disconnected from {endpoint.display_name}",
                       "settings changed", endpoint_id=endpoint.id)
        log.info("Updated relay endpoint %s (%s:%d)", endpoint.display_name,
                 endpoint.host, endpoint.port)
        return replace(endpoint)

    def remove(self, endpoint_id: str):
        self.disconnect(endpoint_id)
        with self._lock:
            endpoint = self._endpoints.pop(endpoint_id)
            self._states.pop(endpoint_id, None)
        log.info("Removed relay endpoint %s", endpoint.display_name)

    def get(self, endpoint_id: str) -> RelayEndpoint:
        with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            raise UnknownEndpoint(endpoint_id)
        return replace(endpoint)

    def list_endpoints(self) -> list[RelayEndpoint]:
        with self._lock:
            return [replace(e) for e in self._endpoints.values()]

    def load(self, endpoints) -> None:
        """
        Replace the whole registry (startup / config reload). Sessions to
        endpoints that disappeared or changed are closed; unchanged ones stay.
        """
        endpoints = list(endpoints)
        with self._lock:
            by_name = {e.display_name.strip(): e.id for e in self._endpoints.values()}
        claimed = {ep.id for ep in endpoints}

        fresh: dict[str, RelayEndpoint] = {}
        names: set[str] = set()
        addrs: set[tuple[str, int]] = set()
        for ep in endpoints:
            ep.validate()
            # config entries without an id get a new one on every parse;
            # keep the id of the existing entry with the same name
            known = by_name.get(ep.display_name.strip())
            if known and known not in claimed and ep.id not in by_name.values():
                ep = replace(ep, id=known)
                claimed.add(known)
            key = _addr_key(ep)
            if ep.display_name.strip() in names:
                raise ConfigConflict(f"duplicate endpoint name {ep.display_name!r}")
            if key in addrs:
                raise ConfigConflict(f"duplicate endpoint address {ep.host}:{ep.port}")
            if ep.id in fresh:
                raise ConfigConflict(f"duplicate endpoint id {ep.id!r}")
            names.add(ep.display_name.strip())
            addrs.add(key)
            fresh[ep.id] = replace(ep)

        with self._lock:
            stale = [eid for eid in self._sessions
                     if eid not in fresh or fresh[eid] != self._endpoints.get(eid)]
        for eid in stale:
            self.disconnect(eid)

        with self._lock:
            self._endpoints = fresh
            self._states = {eid: self._states.get(eid, DISCONNECTED) for eid in fresh}
        log.info("Loaded %d relay endpoint(s)", len(fresh))

    def _check_conflicts(self, endpoint: RelayEndpoint, ignore_id: str = ""):
        # caller holds self._lock
        name = endpoint.display_name.strip()
        key = _addr_key(endpoint)
        for other in self._endpoints.values():
            if other.id == ignore_id:
                continue
            if other.display_name.strip() == name:
                raise ConfigConflict(f"an endpoint named {name!r} already exists")
            if _addr_key(other) == key:
                raise ConfigConflict(
                    f"endpoint {other.display_name!r} already uses {endpoint.host}:{endpoint.port}")

    # ── Connections ───────────────────────────────────────────

    def connect(self, endpoint_id: str) -> ConnectionState:
        """
        One connection attempt. Blocks for at most the connect timeout plus the
        auth grace period and returns the resulting state.
        """
        endpoint = self.get(endpoint_id)
        if not endpoint.enabled:
            raise ValueError(f"endpoint {endpoint.display_name!r} is disabled")

        self.disconnect(endpoint_id, quiet=True)
        session = _Session(endpoint)
        with self._lock:
            self._sessions[endpoint_id] = session
            self._states[endpoint_id] = CONNECTING
        log.info("[%s] Connecting to %s", endpoint.display_name, endpoint.url)
        self._emit("endpoint.connecting", f"Connecting to {endpoint.display_name}",
                   endpoint_id=endpoint_id)

        try:
            sock = self._open_socket(endpoint)
        except Exception as exc:
            return self._fail(session, str(exc))

        link = PeerLink(
            f"outbound:{endpoint_id}", sock,
            on_request=self._handle_request,
            on_answer=self._handle_answer,
            on_cancel=self._handle_cancel,
            heartbeat_interval=self.heartbeat_interval,
            heartbeat_grace=self.heartbeat_grace,
        )
        with self._lock:
            if self._sessions.get(endpoint_id) is not session:
                # disconnect() or another connect() won the race
                superseded = True
            else:
                superseded = False
                session.link = link
                self._states[endpoint_id] = CONNECTED
        if superseded:
            link.close()
            return self.status(endpoint_id)

        log.info("[%s] Connected", endpoint.display_name)
        self._emit("endpoint.connected", f"Connected to {endpoint.display_name}",
                   endpoint_id=endpoint_id)
        threading.Thread(target=self._run_session, args=(session,), daemon=True,
                         name=f"outbound-{endpoint.display_name}").start()
        return CONNECTED

    def _open_socket(self, endpoint: RelayEndpoint) -> ClientSocket:
        """Dial the endpoint and complete the auth handshake as the client."""
        ws = self._ws_factory()
        try:
            ws.connect(endpoint.url, timeout=self.connect_timeout)
        except Exception as exc:
            raise ConnectionLost(f"connect failed: {exc}") from exc
        sock = ClientSocket(ws)
        try:
            log.debug("[%s] Authenticating with token %s", endpoint.display_name,
                      mask_token(endpoint.auth_token))
            sock.send(frames.encode(frames.auth(endpoint.auth_token)))
            raw = sock.recv(self.auth_grace)
            if raw is None:
                raise AuthenticationFailed(f"no auth response within {self.auth_grace:g}s")
            frame = frames.decode(raw)
            if frame.type == frames.AUTH_ERROR:
                raise AuthenticationFailed(f"rejected: {frame.error or 'unauthorized'}")
            if frame.type != frames.AUTH_OK:
                raise AuthenticationFailed(f"unexpected {frame.type} frame during auth")
        except (AuthenticationFailed, ConnectionLost, FrameError,
                websocket.WebSocketException, OSError) as exc:
            sock.close()
            if isinstance(exc, AuthenticationFailed):
                raise
            raise AuthenticationFailed(f"handshake failed: {exc}") from exc
        return sock

    def _fail(self, session: _Session, reason: str) -> ConnectionState:
        endpoint = session.endpoint
        state = ConnectionState.error(reason)
        with self._lock:
            if self._sessions.get(endpoint.id) is not session:
                return self._states.get(endpoint.id, DISCONNECTED)
            del self._sessions[endpoint.id]
            self._states[endpoint.id] = state
        log.warning("[%s] Connection failed: %s", endpoint.display_name, reason)
        self._emit("endpoint.error", f"Connection to {endpoint.display_name} failed",
                   reason, level="error", endpoint_id=endpoint.id)
        return state

    def _run_session(self, session: _Session):
        reason = session.link.run()
        endpoint = session.endpoint
        with self._lock:
            if self._sessions.get(endpoint.id) is not session:
                return   # disconnect() already recorded the outcome
            del self._sessions[endpoint.id]
            clean = reason.startswith("closed")
            self._states[endpoint.id] = (
                DISCONNECTED if clean else ConnectionState.error(f"connection lost: {reason}"))
        if clean:
            log.info("[%s] Remote closed the connection", endpoint.display_name)
            self._emit("endpoint.disconnected", f"{endpoint.display_name} disconnected",
                       reason, endpoint_id=endpoint.id)
        else:
            log.warning("[%s] Connection lost: %s", endpoint.display_name, reason)
            self._emit("endpoint.error", f"Lost connection to {endpoint.display_name}",
                       reason, level="error", endpoint_id=endpoint.id)

    def disconnect(self, endpoint_id: str, quiet: bool = False):
        """Close the session, if any, and mark the endpoint Disconnected. Idempotent."""
        with self._lock:
            if endpoint_id not in self._endpoints:
                raise UnknownEndpoint(endpoint_id)
            session = self._sessions.pop(endpoint_id, None)
            previous = self._states.get(endpoint_id, DISCONNECTED)
            self._states[endpoint_id] = DISCONNECTED
            name = self._endpoints[endpoint_id].display_name
        if session is not None:
            session.closing = True
            if session.link is not None:
                session.link.close()
        if previous.status in ("connected", "connecting") and not quiet:
            log.info("[%s] Disconnected", name)
            self._emit("endpoint.disconnected", f"Disconnected from {name}",
                       endpoint_id=endpoint_id)

    def disconnect_all(self):
        for endpoint_id in [e.id for e in self.list_endpoints()]:
            self.disconnect(endpoint_id)

    def auto_connect(self) -> list[threading.Thread]:
        """
        Fire one connect attempt for each enabled auto_connect endpoint, each on
        its own thread so one slow host does not hold up the rest.
        """
        threads = []
        for endpoint in self.list_endpoints():
            if not (endpoint.enabled and endpoint.auto_connect):
                continue
            t = threading.Thread(target=self._auto_connect_one, args=(endpoint.id,),
                                 daemon=True, name=f"auto-connect-{endpoint.display_name}")
            t.start()
            threads.append(t)
        return threads

    def _auto_connect_one(self, endpoint_id: str):
        try:
            self.connect(endpoint_id)
        except (UnknownEndpoint, ValueError) as exc:
            log.warning("Auto-connect of %s skipped: %s", endpoint_id, exc)

    # ── Status ────────────────────────────────────────────────

    def status(self, endpoint_id: str) -> ConnectionState:
        with self._lock:
            if endpoint_id not in self._endpoints:
                raise UnknownEndpoint(endpoint_id)
            return self._states.get(endpoint_id, DISCONNECTED)

    def status_all(self) -> dict[str, ConnectionState]:
        with self._lock:
            return {eid: self._states.get(eid, DISCONNECTED) for eid in self._endpoints}

    def connected_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._sessions.values() if s.link is not None)

    # ── Frames from remote relays ─────────────────────────────

    def _handle_request(self, link: PeerLink, frame: frames.Frame):
        if self._on_request is None:
            log.info("Request %s from %s dropped: no local handler", frame.id, link.name)
            return
        self._on_request(self.name, link, frame)

    def _handle_answer(self, link: PeerLink, frame: frames.Frame):
        self._resolve(frame.id, Answer(frame.id, frame.payload, link.name))

    def _handle_cancel(self, link: PeerLink, frame: frames.Frame):
        if self._on_cancel is not None:
            self._on_cancel(self.name, link, frame)

    # ── Delivery ──────────────────────────────────────────────

    def _live_links(self) -> list[tuple[str, PeerLink]]:
        with self._lock:
            return [(s.endpoint.display_name, s.link)
                    for s in self._sessions.values() if s.link is not None]

    def deliver(self, request: PendingRequest) -> bool:
        sent = 0
        for name, link in self._live_links():
            if link.name == request.origin:
                continue
            try:
                link.send_request(request.id, request.payload)
                sent += 1
            except ConnectionLost as exc:
                log.warning("[%s] Could not forward request %s: %s", name, request.id, exc)
        return sent > 0

    def cancel(self, request_id: str):
        for _, link in self._live_links():
            try:
                link.send_cancel(request_id)
            except ConnectionLost:
                pass

    def _emit(self, kind: str, title: str, message: str = "", level: str = "info", **data):
        if self.events is not None:
            self.events.emit(kind, title, message, level=level, **data)


def _addr_key(endpoint: RelayEndpoint) -> tuple[str, int]:
    return endpoint.host.strip().lower(), int(endpoint.port)
