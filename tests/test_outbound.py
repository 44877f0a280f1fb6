import pytest

from askrelay import frames
from askrelay.errors import ConfigConflict, UnknownEndpoint
from askrelay.models import CONNECTED, DISCONNECTED, Answer, PendingRequest, RelayEndpoint
from askrelay.outbound import OutboundPeerPool, generate_token

from fakes import FakeWebSocket, kinds, wait_until


class _Resolver:
    def __init__(self):
        self.answers: list[Answer] = []

    def __call__(self, request_id, answer):
        self.answers.append(answer)
        return True


def _pool(events, ws_factory=None, resolve=None, **kwargs):
    return OutboundPeerPool(
        resolve or _Resolver(), events=events,
        ws_factory=ws_factory or FakeWebSocket.factory(auth_reply=frames.auth_ok()),
        auth_grace=0.5, heartbeat_interval=0.1, heartbeat_grace=2, **kwargs)


def _ep(name, host, port, **kwargs):
    return RelayEndpoint(display_name=name, host=host, port=port, auth_token="tok-" + name, **kwargs)


# ── Registry ──────────────────────────────────────────────────

def test_name_and_address_conflicts(events):
    pool = _pool(events)
    pool.add(_ep("A", "10.0.0.1", 9000))
    pool.add(_ep("B", "10.0.0.2", 9000))

    with pytest.raises(ConfigConflict, match="named 'A'"):
        pool.add(_ep("A", "10.0.0.3", 9001))
    with pytest.raises(ConfigConflict, match="10.0.0.1:9000"):
        pool.add(_ep("C", "10.0.0.1", 9000))
    assert [e.display_name for e in pool.list_endpoints()] == ["A", "B"]


def test_conflict_checks_normalise_name_and_host(events):
    pool = _pool(events)
    pool.add(_ep("A", "relay.example.com", 9000))
    with pytest.raises(ConfigConflict):
        pool.add(_ep(" A ", "other.example.com", 9000))
    with pytest.raises(ConfigConflict):
        pool.add(_ep("B", "RELAY.example.com", 9000))


def test_update_checks_conflicts_against_others_only(events):
    pool = _pool(events)
    a = pool.add(_ep("A", "10.0.0.1", 9000))
    pool.add(_ep("B", "10.0.0.2", 9000))

    a.port = 9100
    assert pool.update(a).port == 9100
    a.display_name = "B"
    with pytest.raises(ConfigConflict):
        pool.update(a)
    assert pool.get(a.id).display_name == "A"


def test_unknown_endpoint(events):
    pool = _pool(events)
    with pytest.raises(UnknownEndpoint):
        pool.get("missing")
    with pytest.raises(UnknownEndpoint):
        pool.update(_ep("X", "h", 1, id="missing"))
    with pytest.raises(UnknownEndpoint):
        pool.remove("missing")
    with pytest.raises(LookupError):
        pool.status("missing")


def test_remove(events):
    pool = _pool(events)
    a = pool.add(_ep("A", "10.0.0.1", 9000))
    pool.remove(a.id)
    assert pool.list_endpoints() == []
    assert pool.status_all() == {}


def test_invalid_endpoint_rejected(events):
    pool = _pool(events)
    with pytest.raises(ValueError):
        pool.add(_ep("", "10.0.0.1", 9000))
    with pytest.raises(ValueError):
        pool.add(_ep("A", "10.0.0.1", 70000))


def test_load_rejects_duplicates_and_keeps_old_registry(events):
    pool = _pool(events)
    pool.add(_ep("A", "10.0.0.1", 9000))
    with pytest.raises(ConfigConflict):
        pool.load([_ep("X", "h1", 1), _ep("X", "h2", 2)])
    assert [e.display_name for e in pool.list_endpoints()] == ["A"]


def test_generate_token():
    first, second = generate_token(), OutboundPeerPool.generate_token()
    assert len(first) == 64
    int(first, 16)
    assert first != second


# ── Connections ───────────────────────────────────────────────

def test_connect_authenticates_and_relays_frames(events):
    resolve = _Resolver()
    pool = _pool(events, resolve=resolve)
    ep = pool.add(_ep("A", "10.0.0.1", 9000))

    assert pool.connect(ep.id) == CONNECTED
    ws = FakeWebSocket.instances[-1]
    assert ws.url == "ws://10.0.0.1:9000/ws"
    assert ws.sent_frames()[0] == frames.auth("tok-A")
    assert pool.connected_count() == 1
    assert kinds(events, "endpoint.") == ["endpoint.connecting", "endpoint.connected"]

    req = PendingRequest({"message": "ok?"}, timeout=5)
    assert pool.deliver(req)
    assert ws.sent_frames(frames.REQUEST)[0].id == req.id

    ws.feed(frames.answer(req.id, {"text": "yes"}))
    assert wait_until(lambda: resolve.answers)
    assert resolve.answers[0] == Answer(req.id, {"text": "yes"}, f"outbound:{ep.id}")

    pool.cancel(req.id)
    assert ws.sent_frames(frames.CANCEL)[0].id == req.id


def test_rejected_token_is_an_error_state(events):
    pool = _pool(events, ws_factory=FakeWebSocket.factory(
        auth_reply=frames.auth_error("invalid token")))
    ep = pool.add(_ep("A", "10.0.0.1", 9000))

    state = pool.connect(ep.id)
    assert state.status == "error"
    assert "invalid token" in state.reason
    assert pool.status(ep.id) == state
    assert pool.connected_count() == 0
    assert FakeWebSocket.instances[-1].closed.is_set()
    assert kinds(events, "endpoint.")[-1] == "endpoint.error"


def test_unreachable_endpoint_is_an_error_state(events):
    pool = _pool(events, ws_factory=FakeWebSocket.factory(
        connect_error=ConnectionRefusedError("refused")))
    ep = pool.add(_ep("A", "10.0.0.1", 9000))
    state = pool.connect(ep.id)
    assert state.status == "error"
    assert "connect failed" in state.reason
    # retry is just another connect()
    assert pool.connect(ep.id).status == "error"


def test_silent_server_fails_auth(events):
    pool = _pool(events, ws_factory=FakeWebSocket.factory(auth_reply=None))
    ep = pool.add(_ep("A", "10.0.0.1", 9000))
    state = pool.connect(ep.id)
    assert state.status == "error"
    assert "no auth response" in state.reason


def test_connect_disabled_endpoint_refused(events):
    pool = _pool(events)
    ep = pool.add(_ep("A", "10.0.0.1", 9000, enabled=False))
    with pytest.raises(ValueError):
        pool.connect(ep.id)


def test_disconnect_is_idempotent(events):
    pool = _pool(events)
    ep = pool.add(_ep("A", "10.0.0.1", 9000))
    pool.connect(ep.id)

    pool.disconnect(ep.id)
    pool.disconnect(ep.id)
    assert pool.status(ep.id) == DISCONNECTED
    assert FakeWebSocket.instances[-1].closed.is_set()
    assert kinds(events, "endpoint.disconnected") == ["endpoint.disconnected"]


def test_remote_close_marks_disconnected(events):
    pool = _pool(events)
    ep = pool.add(_ep("A", "10.0.0.1", 9000))
    pool.connect(ep.id)
    FakeWebSocket.instances[-1].hang_up()
    assert wait_until(lambda: pool.status(ep.id) == DISCONNECTED)
    assert pool.connected_count() == 0


def test_update_closes_open_session(events):
    pool = _pool(events)
    ep = pool.add(_ep("A", "10.0.0.1", 9000))
    pool.connect(ep.id)
    ep.port = 9001
    pool.update(ep)
    assert pool.status(ep.id) == DISCONNECTED
    assert FakeWebSocket.instances[-1].closed.is_set()


def test_update_holds_its_new_name_while_closing_the_session(events):
    outcome = []

    class RacingWebSocket(FakeWebSocket):
        def close(self):
            # another caller grabs the new name while the old session shuts down
            try:
                pool.add(_ep("B", "10.0.0.2", 9000))
            except ConfigConflict as exc:
                outcome.append(exc)
            super().close()

    pool = _pool(events, ws_factory=RacingWebSocket.factory(auth_reply=frames.auth_ok()))
    ep = pool.add(_ep("A", "10.0.0.1", 9000))
    pool.connect(ep.id)
    ep.display_name, ep.host, ep.port = "B", "10.0.0.3", 9001
    pool.update(ep)
    assert len(outcome) == 1
    assert [e.display_name for e in pool.list_endpoints()] == ["B"]


def test_reloading_the_same_config_keeps_ids_and_sessions(events):
    pool = _pool(events)
    raw = [{"display_name": "A", "host": "10.0.0.1", "port": 9000}]
    pool.load([RelayEndpoint.from_dict(d) for d in raw])
    [first] = pool.list_endpoints()
    pool.connect(first.id)

    pool.load([RelayEndpoint.from_dict(d) for d in raw])
    [second] = pool.list_endpoints()
    assert second.id == first.id
    assert pool.status_all() == {first.id: CONNECTED}

    changed = [{"display_name": "A", "host": "10.0.0.1", "port": 9001}]
    pool.load([RelayEndpoint.from_dict(d) for d in changed])
    [third] = pool.list_endpoints()
    assert third.id == first.id
    assert pool.status(first.id) == DISCONNECTED


def test_status_all_and_auto_connect(events):
    pool = _pool(events)
    auto = pool.add(_ep("auto", "10.0.0.1", 9000, auto_connect=True))
    manual = pool.add(_ep("manual", "10.0.0.2", 9000))
    off = pool.add(_ep("off", "10.0.0.3", 9000, auto_connect=True, enabled=False))

    threads = pool.auto_connect()
    assert len(threads) == 1
    for t in threads:
        t.join(5)

    assert pool.status_all() == {
        auto.id: CONNECTED,
        manual.id: DISCONNECTED,
        off.id: DISCONNECTED,
    }
    pool.disconnect_all()
    assert pool.connected_count() == 0
