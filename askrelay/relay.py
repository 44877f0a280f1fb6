"""
Relay: owns every component and ties their lifecycles to start()/stop().

Nothing here is global. Whoever needs the relay (the HTTP surface, tests, an
embedding application) gets the Relay instance passed to it.

Wiring:

  ask()/submit() ──> PendingRegistry ──> display, inbound peers, outbound
                                         endpoints, any extra channel
  answer frames  ──> PendingRegistry.resolve
  request frames ──> mirrored local submit, answered back on the same link
  cancel frames  ──> cancel of the mirrored entry
"""
import logging
import threading

from askrelay.channels import DisplayChannel
from askrelay.config import RelayConfig
from askrelay.display import PopupCommand
from askrelay.errors import ConnectionLost, RequestCancelled, RequestTimeout
from askrelay.events import EventLog
from askrelay.inbound import InboundPeerManager
from askrelay.link import PeerLink
from askrelay.models import Answer, mask_token
from askrelay.outbound import OutboundPeerPool, generate_token
from askrelay.pending import PendingHandle, PendingRegistry
from askrelay.tunnel import TunnelSupervisor

log = logging.getLogger("askrelay.relay")


class Relay:

    def __init__(self, config: RelayConfig | None = None, *, display=None,
                 events: EventLog | None = None, tunnel_program=("ssh",), **pool_kwargs):
        self.config = config or RelayConfig()
        self.events = events or EventLog()
        self.pending = PendingRegistry(self.events, default_timeout=self.config.request_timeout)

        self.inbound = InboundPeerManager(
            self.pending.resolve,
            on_request=self._handle_remote_request,
            on_cancel=self._handle_remote_cancel,
            events=self.events,
        )
        self.outbound = OutboundPeerPool(
            self.pending.resolve,
            on_request=self._handle_remote_request,
            on_cancel=self._handle_remote_cancel,
            events=self.events,
            **pool_kwargs,
        )
        self.tunnel = TunnelSupervisor(self.config.listen_port, self.events,
                                       program=tunnel_program)
        self.tunnel.update_config(self.config.tunnel)

        if display is None and self.config.display_command:
            display = PopupCommand(self.config.display_command)
        self.display = DisplayChannel(display, self.pending.resolve) if display else None

        if self.display is not None:
            self.pending.add_channel(self.display)
        self.pending.add_channel(self.inbound)
        self.pending.add_channel(self.outbound)

        # (link name, remote request id) -> local mirrored request id
        self._mirrors: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def add_channel(self, channel):
        """Register an extra delivery channel, e.g. a BotChannel built with relay.resolve."""
        self.pending.add_channel(channel)

    def resolve(self, request_id: str, answer: Answer) -> bool:
        return self.pending.resolve(request_id, answer)

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self):
        cfg = self.config
        if not cfg.token:
            cfg.token = generate_token()
            log.info("No listener token configured — generated %s", mask_token(cfg.token))

        self.inbound.start(cfg.listen_host, cfg.listen_port, cfg.token)
        self.tunnel.local_port = self.inbound.port or cfg.listen_port

        self.outbound.load(cfg.endpoints)
        self.outbound.auto_connect()
        self.pending.start()

        if cfg.tunnel.enabled and cfg.tunnel.auto_start:
            try:
                self.tunnel.start(cfg.tunnel)
            except ValueError as exc:
                log.warning("Tunnel auto-start skipped: %s", exc)
        log.info("Relay started (channels: %s)", ", ".join(self.pending.channel_names()))

    def stop(self):
        """Stop the tunnel, close every peer connection, cancel what is still pending."""
        log.info("Relay shutting down")
        self.tunnel.stop()
        self.outbound.disconnect_all()
        self.inbound.stop()
        self.pending.close()

    def reload(self, config: RelayConfig):
        """
        Apply a new configuration without a restart. The endpoint registry is
        replaced (a ConfigConflict leaves the old one in place), auto_connect
        endpoints get one more attempt, and the tunnel config is stored but
        the tunnel itself is not started or stopped.
        """
        self.outbound.load(config.endpoints)
        if not config.token:
            config.token = self.config.token
        elif config.token != self.config.token:
            self.inbound.set_token(config.token)
            log.info("Listener token replaced (%s)", mask_token(config.token))
        self.pending.default_timeout = config.request_timeout
        self.tunnel.update_config(config.tunnel)
        self.config = config
        self.outbound.auto_connect()
        log.info("Configuration reloaded")

    def regenerate_token(self) -> str:
        """New listener token. Peers already admitted stay connected."""
        token = generate_token()
        self.inbound.set_token(token)
        self.config.token = token
        log.info("Listener token regenerated (%s)", mask_token(token))
        return token

    # ── Agent-facing ──────────────────────────────────────────

    def submit(self, payload: dict, timeout: float | None = None) -> PendingHandle:
        return self.pending.submit(payload, timeout)

    def ask(self, payload: dict, timeout: float | None = None) -> Answer:
        """Block until a human answers. Raises RequestTimeout / RequestCancelled."""
        return self.pending.submit(payload, timeout).result()

    # ── Requests from remote relays ───────────────────────────

    def _handle_remote_request(self, channel_name: str, link: PeerLink, frame):
        if self.config.forward_remote_requests:
            only = None
        elif self.display is not None:
            only = [self.display.name]
        else:
            log.warning("Request %s from %s dropped: no local display and forwarding is off",
                        frame.id, link.name)
            return

        handle = self.pending.submit(frame.payload, origin=link.name, channels=only)
        key = (link.name, frame.id)
        with self._lock:
            self._mirrors[key] = handle.id
        log.info("Request %s from %s mirrored as %s", frame.id, link.name, handle.id)
        threading.Thread(target=self._answer_remote, args=(link, frame.id, handle),
                         daemon=True, name=f"mirror-{handle.id[:8]}").start()

    def _answer_remote(self, link: PeerLink, remote_id: str, handle: PendingHandle):
        try:
            answer = handle.result()
        except (RequestTimeout, RequestCancelled) as exc:
            log.info("Mirrored request for %s from %s not answered: %s", remote_id, link.name, exc)
            return
        finally:
            with self._lock:
                self._mirrors.pop((link.name, remote_id), None)
        try:
            link.send_answer(remote_id, answer.payload)
        except ConnectionLost as exc:
            log.warning("Answer for %s could not be sent to %s: %s", remote_id, link.name, exc)

    def _handle_remote_cancel(self, channel_name: str, link: PeerLink, frame):
        with self._lock:
            local_id = self._mirrors.get((link.name, frame.id))
        if local_id is not None:
            log.info("%s withdrew request %s", link.name, frame.id)
            self.pending.cancel(local_id)

    # ── Status ────────────────────────────────────────────────

    def status(self) -> dict:
        return {
            "listener": self.inbound.status(),
            "endpoints": {eid: s.to_dict() for eid, s in self.outbound.status_all().items()},
            "tunnel": self.tunnel.status(),
            "pending": len(self.pending),
            "channels": self.pending.channel_names(),
        }
