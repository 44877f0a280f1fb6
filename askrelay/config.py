"""
Relay configuration.

The relay never reads or writes config files itself: whatever owns
persistence hands it a plain dict (from_dict) or the process environment is
used (from_env), the way the agent entrypoint bootstraps itself.
"""
import json
import os
from dataclasses import dataclass, field

from askrelay.models import RelayEndpoint, TunnelConfig

_TRUE = ("1", "true", "yes", "on")


@dataclass
class RelayConfig:
    listen_host: str = "127.0.0.1"
    listen_port: int = 9000
    token: str = ""                     # empty = generate one at startup
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    request_timeout: float = 600.0
    forward_remote_requests: bool = False
    display_command: str = ""
    log_level: str = "INFO"
    endpoints: list[RelayEndpoint] = field(default_factory=list)
    tunnel: TunnelConfig = field(default_factory=TunnelConfig)

    @classmethod
    def from_dict(cls, d: dict | None) -> "RelayConfig":
        d = d or {}
        return cls(
            listen_host=str(d.get("listen_host") or "127.0.0.1"),
            listen_port=int(d.get("listen_port", 9000)),
            token=str(d.get("token") or ""),
            api_host=str(d.get("api_host") or "127.0.0.1"),
            api_port=int(d.get("api_port", 8000)),
            request_timeout=float(d.get("request_timeout", 600)),
            forward_remote_requests=bool(d.get("forward_remote_requests", False)),
            display_command=str(d.get("display_command") or ""),
            log_level=str(d.get("log_level") or "INFO").upper(),
            endpoints=[RelayEndpoint.from_dict(e) for e in d.get("endpoints") or []],
            tunnel=TunnelConfig.from_dict(d.get("tunnel")),
        )

    @classmethod
    def from_env(cls, environ=None) -> "RelayConfig":
        env = os.environ if environ is None else environ
        try:
            endpoints = json.loads(env.get("ASKRELAY_ENDPOINTS") or "[]")
            tunnel = json.loads(env.get("ASKRELAY_TUNNEL") or "{}")
        except ValueError as exc:
            raise ValueError(f"invalid JSON in ASKRELAY_ENDPOINTS/ASKRELAY_TUNNEL: {exc}") from exc
        return cls.from_dict({
            "listen_host": env.get("ASKRELAY_LISTEN_HOST", "127.0.0.1"),
            "listen_port": env.get("ASKRELAY_PORT", "9000"),
            "token": env.get("ASKRELAY_TOKEN", ""),
            "api_host": env.get("ASKRELAY_API_HOST", "127.0.0.1"),
            "api_port": env.get("ASKRELAY_API_PORT", "8000"),
            "request_timeout": env.get("ASKRELAY_REQUEST_TIMEOUT", "600"),
            "forward_remote_requests":
                env.get("ASKRELAY_FORWARD_REMOTE", "").strip().lower() in _TRUE,
            "display_command": env.get("ASKRELAY_DISPLAY_COMMAND", ""),
            "log_level": env.get("ASKRELAY_LOG_LEVEL", "INFO"),
            "endpoints": endpoints,
            "tunnel": tunnel,
        })

    def to_dict(self) -> dict:
        return {
            "listen_host": self.listen_host,
            "listen_port": self.listen_port,
            "has_token": bool(self.token),
            "api_host": self.api_host,
            "api_port": self.api_port,
            "request_timeout": self.request_timeout,
            "forward_remote_requests": self.forward_remote_requests,
            "display_command": self.display_command,
            "log_level": self.log_level,
            "endpoints": [e.to_dict() for e in self.endpoints],
            "tunnel": self.tunnel.to_dict(),
        }
