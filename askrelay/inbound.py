"""
Inbound peer manager: the listening side of the relay.

Runs its own small Flask app (one WebSocket route, /ws, via flask-sock) on a
werkzeug server thread. Each accepted socket must send an auth frame with
the shared token within AUTH_GRACE seconds; anything else is answered with
auth_error and closed without ever appearing in the peer registry.

Authenticated sockets become PeerConnections and get a PeerLink receive loop
on the werkzeug handler thread (simple_websocket wants recv on the thread
that owns the socket). The manager is also a delivery channel: deliver()
broadcasts the request to every connected peer.
"""
import logging
import secrets
import threading
import time
from dataclasses import replace

from flask import Flask, request
from flask_sock import Sock
from werkzeug.serving import make_server

from askrelay import frames
from askrelay.channels import DeliveryChannel
from askrelay.errors import ConnectionLost, FrameError
from askrelay.link import PeerLink, ServerSocket
from askrelay.models import Answer, PeerConnection, PendingRequest

log = logging.getLogger("askrelay.inbound")


def format_uptime(seconds: float) -> str:
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class InboundPeerManager(DeliveryChannel):
    name = "inbound"

    def __init__(self, resolve, *, on_request=None, on_cancel=None, events=None,
                 auth_grace: float = frames.AUTH_GRACE,
                 heartbeat_interval: float = frames.HEARTBEAT_INTERVAL,
                 heartbeat_grace: float = frames.HEARTBEAT_GRACE):
        self._resolve    = resolve
        self._on_request = on_request
        self._on_cancel  = on_cancel
        self.events      = events
        self.auth_grace  = auth_grace
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_grace    = heartbeat_grace

        self._token = ""
        self._lock  = threading.Lock()
        self._peers: dict[str, tuple[PeerConnection, PeerLink]] = {}
        self._server = None
        self._address = ""
        self._started_at: float | None = None
        self._error = ""

        self.app = Flask(__name__)
        self.sock = Sock(self.app)
        self.sock.route("/ws")(self._peer_ws)

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self, host: str, port: int, token: str) -> bool:
        """
        Bind the listener and serve it on a daemon thread.

        A failed bind (port in use, bad address) does not raise: it is kept as
        an error string on status() so the rest of the relay stays usable.
        """
        if not token:
            raise ValueError("listener token must not be empty")
        with self._lock:
            if self._server is not None:
                log.info("Listener already running on %s", self._address)
                return True
        self._token = token
        try:
            srv = make_server(host, port, self.app, threaded=True)
        except (OSError, SystemExit) as exc:
            # werkzeug prints the reason and calls sys.exit(1) on a failed bind
            detail = exc if isinstance(exc, OSError) else "address unavailable"
            self._error = f"bind {host}:{port} failed: {detail}"
            log.error("Listener could not start: %s", self._error)
            self._emit("listener.error", "Listener failed to start", self._error, level="error")
            return False

        with self._lock:
            self._server = srv
            self._address = f"{host}:{srv.server_port}"
            self._started_at = time.monotonic()
            self._error = ""
        threading.Thread(target=srv.serve_forever, daemon=True, name="inbound-listener").start()
        log.info("Listening for peers on ws://%s/ws", self._address)
        return True

    def stop(self):
        """Stop accepting and drop every connected peer."""
        with self._lock:
            srv, self._server = self._server, None
            self._started_at = None
        for connection_id in [p.connection_id for p in self.list_peers()]:
            self._unregister(connection_id, "listener stopped")
        if srv is not None:
            srv.shutdown()
            srv.server_close()
            log.info("Listener on %s stopped", self._address)

    def set_token(self, token: str):
        """Replace the shared secret. Already-admitted peers stay connected."""
        if not token:
            raise ValueError("listener token must not be empty")
        self._token = token

    @property
    def port(self) -> int:
        with self._lock:
            return self._server.server_port if self._server else 0

    # ── Connection handling ───────────────────────────────────

    def _peer_ws(self, ws):
        self.handle_socket(ServerSocket(ws), request.remote_addr or "?")

    def handle_socket(self, sock, remote_address: str):
        """
        Authenticate one accepted socket and run its receive loop.
        Blocks until the connection ends.
        """
        if not self._authenticate(sock, remote_address):
            return

        conn = PeerConnection(remote_address=remote_address, authenticated=True)
        link = PeerLink(
            f"inbound:{conn.connection_id}", sock,
            on_request=self._handle_request,
            on_answer=self._handle_answer,
            on_cancel=self._handle_cancel,
            heartbeat_interval=self.heartbeat_interval,
            heartbeat_grace=self.heartbeat_grace,
        )
        with self._lock:
            self._peers[conn.connection_id] = (conn, link)
        log.info("Peer %s connected from %s", conn.connection_id, remote_address)
        self._emit("peer.connected", f"Peer connected from {remote_address}",
                   connection_id=conn.connection_id, remote_address=remote_address)

        reason = link.run()
        self._unregister(conn.connection_id, reason)

    def _authenticate(self, sock, remote_address: str) -> bool:
        reason = ""
        try:
            raw = sock.recv(self.auth_grace)
        except ConnectionLost as exc:
            raw, reason = None, str(exc)
        if raw is None:
            reason = reason or f"no auth frame within {self.auth_grace:g}s"
        else:
            try:
                frame = frames.decode(raw)
            except FrameError as exc:
                frame, reason = None, str(exc)
            if frame is not None:
                if frame.type != frames.AUTH:
                    reason = f"expected auth frame, got {frame.type}"
                elif not frame.token or not secrets.compare_digest(frame.token, self._token):
                    reason = "invalid token"

        if not reason:
            try:
                sock.send(frames.encode(frames.auth_ok()))
                return True
            except Exception as exc:
                reason = f"could not acknowledge auth: {exc}"

        log.warning("Rejected connection from %s: %s", remote_address, reason)
        try:
            sock.send(frames.encode(frames.auth_error(reason)))
        except Exception:
            pass
        sock.close()
        self._emit("peer.auth_failed", f"Authentication failed for {remote_address}",
                   reason, level="warn", remote_address=remote_address)
        return False

    def _unregister(self, connection_id: str, reason: str) -> bool:
        with self._lock:
            entry = self._peers.pop(connection_id, None)
        if entry is None:
            return False
        conn, link = entry
        link.close()
        log.info("Peer %s (%s) disconnected: %s", connection_id, conn.remote_address, reason)
        self._emit("peer.disconnected", f"Peer {conn.remote_address} disconnected", reason,
                   connection_id=connection_id, remote_address=conn.remote_address)
        return True

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

    # ── Queries ───────────────────────────────────────────────

    def list_peers(self) -> list[PeerConnection]:
        with self._lock:
            return [replace(conn) for conn, _ in self._peers.values()]

    def peer_count(self) -> int:
        with self._lock:
            return len(self._peers)

    def drop_peer(self, connection_id: str) -> bool:
        return self._unregister(connection_id, "dropped by operator")

    def status(self) -> dict:
        with self._lock:
            running = self._server is not None
            uptime = time.monotonic() - self._started_at if self._started_at else 0.0
            count = len(self._peers)
            address = self._address
        if running:
            state = "running"
        elif self._error:
            state = f"error: {self._error}"
        else:
            state = "stopped"
        return {
            "status": state,
            "address": address,
            "uptime": round(uptime, 1),
            "uptime_human": format_uptime(uptime) if running else "not started",
            "connected_peer_count": count,
        }

    # ── Delivery ──────────────────────────────────────────────

    def broadcast(self, request_id: str, payload: dict, skip: str = "") -> int:
        """
        Push a request to every connected peer except the link named skip.
        Returns how many took it.
        """
        with self._lock:
            targets = [(conn, link) for conn, link in self._peers.values() if link.name != skip]
        sent = 0
        for conn, link in targets:
            try:
                link.send_request(request_id, payload)
                sent += 1
            except ConnectionLost as exc:
                log.warning("Broadcast of %s to peer %s failed: %s",
                            request_id, conn.connection_id, exc)
        return sent

    def deliver(self, request: PendingRequest) -> bool:
        return self.broadcast(request.id, request.payload, skip=request.origin) > 0

    def cancel(self, request_id: str):
        with self._lock:
            links = [link for _, link in self._peers.values()]
        for link in links:
            try:
                link.send_cancel(request_id)
            except ConnectionLost:
                pass

    def _emit(self, kind: str, title: str, message: str = "", level: str = "info", **data):
        if self.events is not None:
            self.events.emit(kind, title, message, level=level, **data)
