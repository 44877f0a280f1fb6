import json

import pytest

from askrelay import frames
from askrelay.errors import FrameError


def test_request_frame_wire_shape():
    raw = frames.encode(frames.request("abc", {"message": "Deploy?", "predefined_options": ["yes", "no"]}))
    assert json.loads(raw) == {
        "type": "request",
        "id": "abc",
        "payload": {"message": "Deploy?", "predefined_options": ["yes", "no"]},
    }


def test_control_frames_carry_only_their_fields():
    assert json.loads(frames.encode(frames.heartbeat())) == {"type": "heartbeat"}
    assert json.loads(frames.encode(frames.auth("s3cret"))) == {"type": "auth", "token": "s3cret"}
    assert json.loads(frames.encode(frames.auth_error("invalid token"))) == {
        "type": "auth_error", "error": "invalid token"}
    assert json.loads(frames.encode(frames.cancel("abc"))) == {"type": "cancel", "id": "abc"}


def test_decode_answer():
    frame = frames.decode('{"type": "answer", "id": "r1", "payload": {"text": "ok"}}')
    assert frame.type == frames.ANSWER
    assert frame.id == "r1"
    assert frame.payload == {"text": "ok"}


def test_decode_accepts_bytes_and_missing_payload():
    frame = frames.decode(b'{"type": "cancel", "id": "r1"}')
    assert frame.type == frames.CANCEL
    assert frame.payload == {}


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2, 3]",
    '{"type": "gossip"}',
    '{"id": "x"}',
    '{"type": "request", "payload": {}}',
    '{"type": "answer", "id": "", "payload": {}}',
    '{"type": "request", "id": "x", "payload": [1]}',
])
def test_decode_rejects_malformed(raw):
    with pytest.raises(FrameError):
        frames.decode(raw)


def test_frame_error_is_a_value_error():
    with pytest.raises(ValueError):
        frames.decode("{")
