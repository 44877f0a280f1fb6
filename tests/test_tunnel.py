import shlex
import sys

import pytest

from askrelay.models import TunnelConfig
from askrelay.tunnel import TunnelSupervisor, build_command

from fakes import kinds, wait_until

# Stand-ins for ssh: `python -c <script> -R ... user@host`
READY_THEN_WAIT = """
import sys, time
print("debug1: Authentication succeeded (publickey).", file=sys.stderr, flush=True)
print("debug1: remote forward success for: listen 9000, connect localhost:9000", file=sys.stderr, flush=True)
time.sleep(30)
"""
REFUSED = """
import sys
print("ssh: connect to host unreachable.example port 22: Connection refused", file=sys.stderr, flush=True)
sys.exit(255)
"""
READY_THEN_DIE = """
import sys, time
print("debug1: remote forward success for: listen 9000", file=sys.stderr, flush=True)
time.sleep(0.5)
sys.exit(0)
"""
READY_THEN_GARBAGE = """
import sys
print("debug1: remote forward success for: listen 9000", file=sys.stderr, flush=True)
sys.stderr.buffer.write(b"banner \\xff\\xfe\\n")
sys.stderr.flush()
sys.exit(1)
"""
SILENT = "import time; time.sleep(30)"
EXIT_3 = "import sys; sys.exit(3)"
CHATTY = """
import sys, time
print("debug1: Reading configuration data", file=sys.stderr, flush=True)
print("Warning: Permanently added 'relay' to the list of known hosts.", file=sys.stderr, flush=True)
print("debug1: remote forward success for: listen 9000", file=sys.stderr, flush=True)
time.sleep(30)
"""


def _config(**overrides):
    values = dict(enabled=True, remote_host="relay.example.com", remote_user="ops",
                  remote_port=2222)
    values.update(overrides)
    return TunnelConfig(**values)


@pytest.fixture
def make_supervisor(events):
    created = []

    def make(script, **kwargs):
        sup = TunnelSupervisor(9000, events, program=[sys.executable, "-c", script],
                               stop_timeout=2, **kwargs)
        created.append(sup)
        return sup

    yield make
    for sup in created:
        sup.stop()


def _statuses(sup):
    return [s.status for s in sup.history]


def test_build_command():
    argv = build_command(_config(key_path="/home/ops/.ssh/id_ed25519"), 9000)
    assert argv == [
        "ssh", "-R", "2222:localhost:9000", "-i", "/home/ops/.ssh/id_ed25519",
        "-N", "-T",
        "-o", "ServerAliveInterval=60",
        "-o", "ServerAliveCountMax=3",
        "-o", "ExitOnForwardFailure=yes",
        "-v", "ops@relay.example.com",
    ]


def test_remote_port_zero_uses_listener_port():
    argv = build_command(_config(remote_port=0), 9123)
    assert "9123:localhost:9123" in argv
    assert "-i" not in argv


def test_command_preview_is_the_exact_command():
    sup = TunnelSupervisor(9000)
    config = _config()
    assert sup.command_preview(config) == shlex.join(build_command(config, 9000))
    assert sup.command_preview() == ""
    assert sup.state.status == "stopped"


def test_ready_marker_moves_to_running(make_supervisor, events):
    sup = make_supervisor(READY_THEN_WAIT)
    assert sup.start(_config())
    assert sup.wait_for("running", 10).status == "running"
    assert sup.status()["pid"] is not None
    assert _statuses(sup) == ["stopped", "starting", "running"]
    assert kinds(events, "tunnel.state") == ["tunnel.state", "tunnel.state"]


def test_second_start_does_not_spawn_again(make_supervisor):
    sup = make_supervisor(READY_THEN_WAIT)
    sup.start(_config())
    sup.wait_for("running", 10)
    pid = sup.status()["pid"]
    assert sup.start(_config()) is False
    assert sup.status()["pid"] == pid
    assert _statuses(sup) == ["stopped", "starting", "running"]


def test_unreachable_host_ends_in_error(make_supervisor):
    sup = make_supervisor(REFUSED)
    config = _config(remote_host="unreachable.example")
    preview = sup.command_preview(config)

    sup.start(config)
    state = sup.wait_for("error", 10)
    assert state.status == "error"
    assert "Connection refused" in state.reason
    assert _statuses(sup) == ["stopped", "starting", "error"]
    assert sup.command_preview(config) == preview


def test_exit_before_ready_is_an_error(make_supervisor):
    sup = make_supervisor(EXIT_3)
    sup.start(_config())
    state = sup.wait_for("error", 10)
    assert state.reason == "ssh exited with code 3"


def test_crash_while_running_is_an_error_without_restart(make_supervisor):
    sup = make_supervisor(READY_THEN_DIE)
    sup.start(_config())
    assert sup.wait_for("running", 10).status == "running"
    assert sup.wait_for("error", 10).status == "error"
    assert _statuses(sup) == ["stopped", "starting", "running", "error"]
    assert sup.status()["pid"] is None


def test_undecodable_output_still_reports_the_exit(make_supervisor, events):
    sup = make_supervisor(READY_THEN_GARBAGE)
    sup.start(_config(verbosity=1))
    state = sup.wait_for("error", 10)
    assert state.reason == "ssh exited with code 1"
    assert _statuses(sup) == ["stopped", "starting", "running", "error"]
    assert any("banner" in e["title"] for e in events.recent(kind="tunnel.output"))


def test_startup_timeout(make_supervisor):
    sup = make_supervisor(SILENT, startup_timeout=0.3)
    sup.start(_config())
    state = sup.wait_for("error", 10)
    assert state.reason.startswith("startup timed out")
    assert wait_until(lambda: sup.status()["pid"] is None)


def test_grace_period_when_no_ready_markers(make_supervisor):
    sup = make_supervisor(SILENT, ready_markers=(), ready_grace=0.2)
    sup.start(_config())
    assert sup.wait_for("running", 10).status == "running"


def test_stop_and_stop_again(make_supervisor, events):
    sup = make_supervisor(READY_THEN_WAIT)
    sup.start(_config())
    sup.wait_for("running", 10)
    sup.stop()
    assert sup.state.status == "stopped"
    assert sup.status()["pid"] is None

    before = list(sup.history)
    emitted = len(events.recent(500))
    sup.stop()
    assert sup.history == before
    assert len(events.recent(500)) == emitted


def test_restart_from_error(make_supervisor):
    sup = make_supervisor(EXIT_3)
    sup.start(_config())
    sup.wait_for("error", 10)
    sup.program = (sys.executable, "-c", READY_THEN_WAIT)
    assert sup.restart(pause=0)
    assert sup.wait_for("running", 10).status == "running"


def test_start_rejects_disabled_or_missing_config():
    sup = TunnelSupervisor(9000)
    with pytest.raises(ValueError):
        sup.start()
    with pytest.raises(ValueError):
        sup.start(_config(enabled=False))
    with pytest.raises(ValueError):
        sup.start(_config(remote_user=""))
    assert sup.state.status == "stopped"


def test_missing_program_is_an_error():
    sup = TunnelSupervisor(9000, program=["/nonexistent/ssh-binary"])
    assert sup.start(_config()) is False
    assert sup.state.status == "error"
    assert "could not start" in sup.state.reason


@pytest.mark.parametrize("verbosity,expected_lines", [(0, 1), (1, 3)])
def test_verbosity_controls_forwarded_output(make_supervisor, events, verbosity, expected_lines):
    sup = make_supervisor(CHATTY)
    sup.start(_config(verbosity=verbosity))
    sup.wait_for("running", 10)
    output = events.recent(500, kind="tunnel.output")
    assert len(output) == expected_lines
