"""
One authenticated peer connection.

Both sides of the relay end up with the same thing once the auth handshake is
done: a WebSocket that carries request / answer / cancel / heartbeat frames.
The listening side gets a simple_websocket server socket from flask-sock, the
connecting side gets a websocket-client WebSocket; each is wrapped in a tiny
adapter so PeerLink can run one receive loop for both.

Frames are processed in arrival order on the receive thread. Callbacks must
not block: anything that waits for a human belongs on its own thread.
"""
import logging
import threading

import websocket  # websocket-client
from simple_websocket import ConnectionClosed

from askrelay import frames
from askrelay.errors import ConnectionLost, FrameError

log = logging.getLogger("askrelay.link")


class ServerSocket:
    """Adapter over a simple_websocket server socket (inbound side)."""

    def __init__(self, sock):
        self._sock = sock

    def send(self, data: str):
        self._sock.send(data)

    def recv(self, timeout: float | None):
        """Next text frame, or None when timeout elapses with nothing received."""
        try:
            raw = self._sock.receive(timeout=timeout)
        except ConnectionClosed as exc:
            raise ConnectionLost(f"closed by peer ({exc})") from exc
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return raw

    def close(self):
        try:
            self._sock.close()
        except Exception:
            pass


class ClientSocket:
    """Adapter over a websocket-client WebSocket (outbound side)."""

    def __init__(self, ws: websocket.WebSocket):
        self._ws = ws

    def send(self, data: str):
        self._ws.send(data)

    def recv(self, timeout: float | None):
        self._ws.settimeout(timeout)
        try:
            raw = self._ws.recv()
        except websocket.WebSocketTimeoutException:
            return None
        except websocket.WebSocketConnectionClosedException as exc:
            raise ConnectionLost("closed by peer") from exc
        if raw == "":
            # websocket-client returns "" on a clean close
            raise ConnectionLost("closed by peer")
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return raw

    def close(self):
        try:
            self._ws.close()
        except Exception:
            pass


class PeerLink:
    """
    Frame loop for one live connection.

    Thread-safety: sends are serialised by _send_lock; _open is only flipped
    under _lock.
    """

    def __init__(self, name: str, sock, *, on_request=None, on_answer=None, on_cancel=None,
                 heartbeat_interval: float = frames.HEARTBEAT_INTERVAL,
                 heartbeat_grace: float = frames.HEARTBEAT_GRACE):
        self.name = name
        self._sock = sock
        self._on_request = on_request
        self._on_answer  = on_answer
        self._on_cancel  = on_cancel
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat_grace    = heartbeat_grace
        self._lock      = threading.Lock()
        self._send_lock = threading.Lock()
        self._open      = True
        self._stopped   = threading.Event()

    # ── Public API ────────────────────────────────────────────

    def is_open(self) -> bool:
        with self._lock:
            return self._open

    def send_request(self, request_id: str, payload: dict):
        self._send(frames.request(request_id, payload))

    def send_answer(self, request_id: str, payload: dict):
        self._send(frames.answer(request_id, payload))

    def send_cancel(self, request_id: str):
        self._send(frames.cancel(request_id))

    def close(self):
        """Close the socket; the receive loop notices and returns."""
        with self._lock:
            was_open = self._open
            self._open = False
        self._stopped.set()
        if was_open:
            self._sock.close()

    def run(self) -> str:
        """
        Receive until the connection dies. Blocks the calling thread and
        returns a short reason string describing why the loop ended.
        """
        threading.Thread(target=self._heartbeat_loop, daemon=True,
                         name=f"heartbeat-{self.name}").start()
        reason = "closed"
        try:
            while self.is_open():
                try:
                    raw = self._sock.recv(self._heartbeat_grace)
                except ConnectionLost as exc:
                    reason = str(exc)
                    break
                except Exception as exc:
                    if self.is_open():
                        log.info("Link %s recv error: %s", self.name, exc)
                    reason = f"read error: {exc}"
                    break

                if raw is None:
                    reason = f"no frames for {self._heartbeat_grace:g}s"
                    log.info("Link %s idle too long — dropping", self.name)
                    break
                if not raw:
                    continue
                try:
                    frame = frames.decode(raw)
                except FrameError as exc:
                    log.warning("Link %s: %s", self.name, exc)
                    continue
                self._dispatch(frame)
        finally:
            closed_here = not self.is_open()
            self.close()
        return "closed locally" if closed_here else reason

    # ── Internals ─────────────────────────────────────────────

    def _dispatch(self, frame: frames.Frame):
        if frame.type == frames.HEARTBEAT:
            return
        handler = {
            frames.REQUEST: self._on_request,
            frames.ANSWER:  self._on_answer,
            frames.CANCEL:  self._on_cancel,
        }.get(frame.type)
        if handler is None:
            log.debug("Link %s: ignoring %s frame", self.name, frame.type)
            return
        try:
            handler(self, frame)
        except Exception as exc:
            log.warning("Link %s: %s handler raised: %s", self.name, frame.type, exc)

    def _send(self, frame: frames.Frame):
        if not self.is_open():
            raise ConnectionLost(f"link {self.name} is not connected")
        try:
            with self._send_lock:
                self._sock.send(frames.encode(frame))
        except Exception as exc:
            self.close()
            raise ConnectionLost(f"send to {self.name} failed: {exc}") from exc

    def _heartbeat_loop(self):
        while not self._stopped.wait(self._heartbeat_interval):
            try:
                self._send(frames.heartbeat())
            except ConnectionLost:
                break
