"""
Reverse SSH tunnel supervisor.

Keeps `ssh -R <remote_port>:localhost:<listener_port> ... user@host` running
so a relay on the far side of a NAT or firewall can reach our inbound
listener. ssh is always started with -v: its debug output is how we learn
that the remote forward is up.

State machine (TunnelState):

  stopped  -> starting            start()
  starting -> running             readiness line seen (or grace period, see below)
  starting -> error               fatal line, early exit, or startup timeout
  running  -> error               ssh exited on its own
  any      -> stopped             stop()
  error    -> starting            start() / restart()

Nothing restarts ssh behind the operator's back: a crashed tunnel stays in
error until start() or restart() is called. auto_start in TunnelConfig is
only honoured by the relay at process startup.

Each start() bumps a generation counter; the output reader and startup
watchdog threads carry the generation they were started for and are
ignored once it is stale, so a slow-dying old ssh can never clobber the
state of a newer one.
"""
import logging
import shlex
import subprocess
import threading
import time

from askrelay.models import RUNNING, STARTING, STOPPED, TunnelConfig, TunnelState

log = logging.getLogger("askrelay.tunnel")

READY_MARKERS = ("remote forward success", "forwarding_success")
FATAL_MARKERS = (
    "Connection refused",
    "Permission denied",
    "Could not resolve hostname",
    "remote port forwarding failed",
    "Could not request local forwarding",
)

STARTUP_TIMEOUT = 30   # seconds in starting before giving up
READY_GRACE     = 2    # seconds alive => running, when no readiness markers are configured
STOP_TIMEOUT    = 5    # seconds between SIGTERM and SIGKILL
RESTART_PAUSE   = 1


def build_command(config: TunnelConfig, local_port: int, program=("ssh",)) -> list[str]:
    remote_port = config.remote_port or local_port
    argv = list(program)
    argv += ["-R", f"{remote_port}:localhost:{local_port}"]
    if config.key_path:
        argv += ["-i", config.key_path]
    argv += [
        "-N",                              # no remote command
        "-T",                              # no pty
        "-o", "ServerAliveInterval=60",
        "-o", "ServerAliveCountMax=3",
        "-o", "ExitOnForwardFailure=yes",
        "-v",                              # readiness is detected from debug output
        f"{config.remote_user}@{config.remote_host}",
    ]
    return argv


class TunnelSupervisor:

    def __init__(self, local_port: int = 0, events=None, program=("ssh",),
                 startup_timeout: float = STARTUP_TIMEOUT,
                 ready_grace: float = READY_GRACE,
                 stop_timeout: float = STOP_TIMEOUT,
                 ready_markers=READY_MARKERS,
                 fatal_markers=FATAL_MARKERS):
        self.events = events
        self.local_port = local_port
        self.program = tuple(program)
        self.startup_timeout = startup_timeout
        self.ready_grace = ready_grace
        self.stop_timeout = stop_timeout
        self.ready_markers = tuple(ready_markers)
        self.fatal_markers = tuple(fatal_markers)

        self._cond = threading.Condition()
        self._state: TunnelState = STOPPED
        self._config: TunnelConfig | None = None
        self._proc: subprocess.Popen | None = None
        self._gen = 0
        self.history: list[TunnelState] = [STOPPED]

    # ── Config / queries ──────────────────────────────────────

    @property
    def config(self) -> TunnelConfig | None:
        return self._config

    def update_config(self, config: TunnelConfig | None):
        """Store a new config for the next start(); a running tunnel is left alone."""
        with self._cond:
            self._config = config

    @property
    def state(self) -> TunnelState:
        with self._cond:
            return self._state

    def command_preview(self, config: TunnelConfig | None = None) -> str:
        """The exact command start() would run, for display or manual use."""
        config = config or self._config
        if config is None:
            return ""
        return shlex.join(build_command(config, self.local_port, self.program))

    def status(self) -> dict:
        with self._cond:
            state, proc, config = self._state, self._proc, self._config
        out = state.to_dict()
        out["pid"] = proc.pid if proc is not None else None
        out["command"] = self.command_preview(config) if config else ""
        out["enabled"] = bool(config and config.enabled)
        return out

    def wait_for(self, statuses, timeout: float) -> TunnelState:
        """Block until the state is one of statuses (or timeout); returns the state."""
        wanted = {statuses} if isinstance(statuses, str) else set(statuses)
        with self._cond:
            self._cond.wait_for(lambda: self._state.status in wanted, timeout)
            return self._state

    # ── Control ───────────────────────────────────────────────

    def start(self, config: TunnelConfig | None = None) -> bool:
        """
        Launch ssh. Only valid from stopped or error; from starting/running it
        is a logged no-op returning False. A spawn failure lands in error and
        also returns False.
        """
        config = config or self._config
        if config is None:
            raise ValueError("no tunnel configuration")
        if not config.enabled:
            raise ValueError("tunnel is disabled in its configuration")
        if not config.remote_host or not config.remote_user:
            raise ValueError("tunnel needs remote_host and remote_user")

        with self._cond:
            if self._state.status in ("starting", "running"):
                log.info("Tunnel already %s — start ignored", self._state.status)
                return False
            leftover, self._proc = self._proc, None
            self._config = config
            self._gen += 1
            gen = self._gen
        if leftover is not None:
            self._terminate(leftover)
        self._transition(STARTING, gen)

        argv = build_command(config, self.local_port, self.program)
        log.info("Starting tunnel: %s", shlex.join(argv))
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            self._transition(TunnelState.error(f"could not start {argv[0]}: {exc}"), gen)
            return False

        with self._cond:
            stale = gen != self._gen
            if not stale:
                self._proc = proc
        if stale:
            # stop() ran while we were spawning
            self._terminate(proc)
            return False

        threading.Thread(target=self._read_output, args=(proc, gen, config.verbosity),
                         daemon=True, name="tunnel-output").start()
        threading.Thread(target=self._watch_startup, args=(proc, gen),
                         daemon=True, name="tunnel-watchdog").start()
        return True

    def stop(self):
        """Terminate ssh (SIGTERM, then SIGKILL after stop_timeout). No-op when stopped."""
        with self._cond:
            proc, self._proc = self._proc, None
            if self._state.status == "stopped" and proc is None:
                return
            self._gen += 1
            gen = self._gen
        self._transition(STOPPED, gen)
        if proc is not None:
            self._terminate(proc)
            log.info("Tunnel stopped")

    def restart(self, pause: float = RESTART_PAUSE) -> bool:
        config = self._config
        if config is None:
            raise ValueError("no tunnel configuration")
        log.info("Restarting tunnel")
        self.stop()
        time.sleep(pause)
        return self.start(config)

    # ── Internals ─────────────────────────────────────────────

    def _transition(self, new: TunnelState, gen: int, only_from=None) -> bool:
        with self._cond:
            if gen != self._gen:
                return False
            if only_from is not None and self._state.status not in only_from:
                return False
            if self._state == new:
                return False
            old, self._state = self._state, new
            self.history.append(new)
            self._cond.notify_all()
        if new.status == "error":
            log.error("Tunnel %s -> error: %s", old.status, new.reason)
        else:
            log.info("Tunnel %s -> %s", old.status, new.status)
        if self.events is not None:
            self.events.emit("tunnel.state", f"Tunnel {new.status}", new.reason,
                             level="error" if new.status == "error" else "info",
                             status=new.status, previous=old.status)
        return True

    def _read_output(self, proc: subprocess.Popen, gen: int, verbosity: int):
        try:
            for raw in proc.stdout:
                line = raw.rstrip()
                if not line:
                    continue
                fatal = any(m in line for m in self.fatal_markers)
                ready = any(m in line for m in self.ready_markers)
                self._surface(line, verbosity, fatal)
                if ready:
                    self._transition(RUNNING, gen, only_from=("starting",))
                elif fatal:
                    self._transition(TunnelState.error(line), gen, only_from=("starting",))
        finally:
            # the exit transition must run even if reading the pipe blew up
            code = proc.wait()
            with self._cond:
                if self._proc is proc:
                    self._proc = None
            self._transition(TunnelState.error(f"ssh exited with code {code}"), gen,
                             only_from=("starting", "running"))

    def _surface(self, line: str, verbosity: int, fatal: bool):
        debug_line = line.startswith("debug")
        if fatal:
            log.warning("[ssh] %s", line)
        else:
            log.debug("[ssh] %s", line)
        if self.events is None or (debug_line and verbosity <= 0 and not fatal):
            return
        self.events.emit("tunnel.output", f"[ssh] {line}",
                         level="warn" if fatal else "info", verbosity=verbosity)

    def _watch_startup(self, proc: subprocess.Popen, gen: int):
        if not self.ready_markers:
            with self._cond:
                self._cond.wait_for(lambda: gen != self._gen, self.ready_grace)
            if proc.poll() is None:
                self._transition(RUNNING, gen, only_from=("starting",))
            return

        with self._cond:
            self._cond.wait_for(
                lambda: gen != self._gen or self._state.status != "starting",
                self.startup_timeout)
        timed_out = self._transition(
            TunnelState.error(f"startup timed out after {self.startup_timeout:g}s"), gen,
            only_from=("starting",))
        if timed_out:
            with self._cond:
                if self._proc is proc:
                    self._proc = None
            self._terminate(proc)

    def _terminate(self, proc: subprocess.Popen):
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            log.warning("ssh (pid %d) ignored SIGTERM — killing", proc.pid)
            proc.kill()
            proc.wait()
