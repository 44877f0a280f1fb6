import pytest

from askrelay.events import EventLog
from askrelay.pending import PendingRegistry

from fakes import FakeWebSocket


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def registry(events):
    reg = PendingRegistry(events, default_timeout=5, sweep_interval=0.05)
    yield reg
    reg.close()


@pytest.fixture(autouse=True)
def _reset_fake_websockets():
    FakeWebSocket.instances.clear()
    yield
    for ws in FakeWebSocket.instances:
        ws.close()
    FakeWebSocket.instances.clear()
