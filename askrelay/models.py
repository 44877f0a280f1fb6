import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def mask_token(token: str) -> str:
    """Short, log-safe form of a secret."""
    if not token:
        return "(none)"
    return token[:4] + "…"


@dataclass
class PendingRequest:
    """
    One agent call waiting for a human answer.

    deadline is on the time.monotonic() clock; created_at is wall-clock for
    display. delivered_to records the channel names that accepted the request.
    """
    payload: dict
    timeout: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=_now_iso)
    deadline: float = 0.0
    delivered_to: set[str] = field(default_factory=set)
    status: Literal["pending", "resolved", "expired", "cancelled"] = "pending"
    origin: str = "local"   # "local", or the link name a mirrored remote request arrived on

    def __post_init__(self):
        if not self.deadline:
            self.deadline = time.monotonic() + self.timeout

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payload": self.payload,
            "created_at": self.created_at,
            "timeout": self.timeout,
            "remaining": round(self.remaining(), 3),
            "delivered_to": sorted(self.delivered_to),
            "status": self.status,
            "origin": self.origin,
        }


@dataclass(frozen=True)
class Answer:
    request_id: str
    payload: dict
    source_channel: str

    def to_dict(self) -> dict:
        return {"id": self.request_id, "payload": self.payload, "source": self.source_channel}


@dataclass
class PeerConnection:
    remote_address: str
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    connected_at: str = field(default_factory=_now_iso)
    authenticated: bool = False

    def to_dict(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "remote_address": self.remote_address,
            "connected_at": self.connected_at,
            "authenticated": self.authenticated,
        }


@dataclass
class RelayEndpoint:
    """A configured remote relay the outbound pool can connect to."""
    display_name: str
    host: str
    port: int
    auth_token: str = ""
    enabled: bool = True
    auto_connect: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}/ws"

    def validate(self):
        if not self.display_name.strip():
            raise ValueError("display_name must not be empty")
        if not self.host.strip():
            raise ValueError("host must not be empty")
        if not 0 < int(self.port) < 65536:
            raise ValueError(f"port out of range: {self.port}")

    @classmethod
    def from_dict(cls, d: dict) -> "RelayEndpoint":
        kwargs = {}
        if d.get("id"):
            kwargs["id"] = str(d["id"])
        return cls(
            display_name=str(d.get("display_name") or d.get("name") or ""),
            host=str(d.get("host", "")),
            port=int(d.get("port") or 0),
            auth_token=str(d.get("auth_token") or d.get("api_key") or ""),
            enabled=bool(d.get("enabled", True)),
            auto_connect=bool(d.get("auto_connect", False)),
            **kwargs,
        )

    def to_dict(self, include_token: bool = False) -> dict:
        out = {
            "id": self.id,
            "display_name": self.display_name,
            "host": self.host,
            "port": self.port,
            "enabled": self.enabled,
            "auto_connect": self.auto_connect,
        }
        if include_token:
            out["auth_token"] = self.auth_token
        else:
            out["has_token"] = bool(self.auth_token)
        return out


@dataclass(frozen=True)
class ConnectionState:
    """Outbound connection state for one endpoint."""
    status: Literal["disconnected", "connecting", "connected", "error"] = "disconnected"
    reason: str = ""

    @classmethod
    def error(cls, reason: str) -> "ConnectionState":
        return cls("error", reason)

    def to_dict(self) -> dict:
        out = {"status": self.status}
        if self.status == "error":
            out["reason"] = self.reason
        return out


DISCONNECTED = ConnectionState("disconnected")
CONNECTING   = ConnectionState("connecting")
CONNECTED    = ConnectionState("connected")


@dataclass
class TunnelConfig:
    enabled: bool = False
    remote_host: str = ""
    remote_user: str = ""
    key_path: str | None = None
    remote_port: int = 0        # 0 = same as the local listener port
    auto_start: bool = False
    verbosity: int = 0          # 0 = quiet, 1 = forward every subprocess line

    @classmethod
    def from_dict(cls, d: dict | None) -> "TunnelConfig":
        d = d or {}
        return cls(
            enabled=bool(d.get("enabled", False)),
            remote_host=str(d.get("remote_host", "")),
            remote_user=str(d.get("remote_user", "")),
            key_path=d.get("key_path") or None,
            remote_port=int(d.get("remote_port") or 0),
            auto_start=bool(d.get("auto_start", False)),
            verbosity=int(d.get("verbosity") or 0),
        )

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "remote_host": self.remote_host,
            "remote_user": self.remote_user,
            "key_path": self.key_path,
            "remote_port": self.remote_port,
            "auto_start": self.auto_start,
            "verbosity": self.verbosity,
        }


@dataclass(frozen=True)
class TunnelState:
    status: Literal["stopped", "starting", "running", "error"] = "stopped"
    reason: str = ""

    @classmethod
    def error(cls, reason: str) -> "TunnelState":
        return cls("error", reason)

    def to_dict(self) -> dict:
        out = {"status": self.status}
        if self.status == "error":
            out["reason"] = self.reason
        return out


STOPPED  = TunnelState("stopped")
STARTING = TunnelState("starting")
RUNNING  = TunnelState("running")
