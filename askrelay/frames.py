"""
Peer wire protocol.

Both the listening side (inbound.py) and the connecting side (outbound.py)
speak the same JSON text framing over a WebSocket:

  Auth       {"type": "auth",       "token": "<secret>"}      first frame, client -> server
  AuthOk     {"type": "auth_ok"}                              server -> client
  AuthError  {"type": "auth_error", "error": "<str>"}         server -> client, then close
  Request    {"type": "request",    "id": "<id>", "payload": {...}}
  Answer     {"type": "answer",     "id": "<id>", "payload": {...}}
  Heartbeat  {"type": "heartbeat"}
  Cancel     {"type": "cancel",     "id": "<id>"}             best-effort
"""
import json
from dataclasses import dataclass, field

from askrelay.errors import FrameError

AUTH       = "auth"
AUTH_OK    = "auth_ok"
AUTH_ERROR = "auth_error"
REQUEST    = "request"
ANSWER     = "answer"
HEARTBEAT  = "heartbeat"
CANCEL     = "cancel"

FRAME_TYPES = frozenset({AUTH, AUTH_OK, AUTH_ERROR, REQUEST, ANSWER, HEARTBEAT, CANCEL})
_NEEDS_ID = frozenset({REQUEST, ANSWER, CANCEL})

HEARTBEAT_INTERVAL = 20   # seconds between heartbeats on an open connection
HEARTBEAT_GRACE    = 60   # silence longer than this means the connection is dead
AUTH_GRACE         = 5    # seconds a new connection has to present its token
CONNECT_TIMEOUT    = 5    # seconds for the outbound WS handshake


@dataclass
class Frame:
    type: str
    id: str = ""
    payload: dict = field(default_factory=dict)
    token: str = ""
    error: str = ""

    def to_dict(self) -> dict:
        out: dict = {"type": self.type}
        if self.type in _NEEDS_ID:
            out["id"] = self.id
        if self.type in (REQUEST, ANSWER):
            out["payload"] = self.payload
        if self.type == AUTH:
            out["token"] = self.token
        if self.type == AUTH_ERROR:
            out["error"] = self.error
        return out


def auth(token: str) -> Frame:
    return Frame(AUTH, token=token)


def auth_ok() -> Frame:
    return Frame(AUTH_OK)


def auth_error(reason: str) -> Frame:
    return Frame(AUTH_ERROR, error=reason)


def request(request_id: str, payload: dict) -> Frame:
    return Frame(REQUEST, id=request_id, payload=payload)


def answer(request_id: str, payload: dict) -> Frame:
    return Frame(ANSWER, id=request_id, payload=payload)


def heartbeat() -> Frame:
    return Frame(HEARTBEAT)


def cancel(request_id: str) -> Frame:
    return Frame(CANCEL, id=request_id)


def encode(frame: Frame) -> str:
    return json.dumps(frame.to_dict())


def decode(raw) -> Frame:
    """Parse one text frame. Raises FrameError on anything malformed."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        msg = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise FrameError(f"bad JSON frame: {exc}") from exc
    if not isinstance(msg, dict):
        raise FrameError("frame is not a JSON object")

    msg_type = msg.get("type", "")
    if msg_type not in FRAME_TYPES:
        raise FrameError(f"unknown frame type: {msg_type!r}")

    msg_id = msg.get("id") or ""
    if msg_type in _NEEDS_ID and (not isinstance(msg_id, str) or not msg_id):
        raise FrameError(f"{msg_type} frame without an id")

    payload = msg.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise FrameError(f"{msg_type} payload must be an object")

    return Frame(
        type=msg_type,
        id=msg_id,
        payload=payload,
        token=str(msg.get("token") or ""),
        error=str(msg.get("error") or ""),
    )
