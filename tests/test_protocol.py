import json

import pytest

from chatrelay.server.errors import FrameParseError
from chatrelay.server.models import GetHistory, PostMessage, UnknownFrame
from chatrelay.server.protocol import ProtocolHandler, parse_frame
from chatrelay.server.state import ChatRelay

from conftest import FakeConnection


def test_parse_message_frame_ignores_client_identity_fields():
    frame = parse_frame(
        json.dumps(
            {
                "type": "message",
                "content": "hi",
                "username": "mallory",
                "timestamp": "1999-01-01T00:00:00.000Z",
            }
        )
    )
    assert isinstance(frame, PostMessage)
    assert frame.content == "hi"
    assert not hasattr(frame, "username")


def test_parse_get_history_frame():
    assert isinstance(parse_frame('{"type": "get_history", "username": "a"}'), GetHistory)


def test_parse_binary_frame():
    frame = parse_frame(b'{"type": "message", "content": "bytes"}')
    assert isinstance(frame, PostMessage)
    assert frame.content == "bytes"


@pytest.mark.parametrize(
    "raw",
    [
        '{"type": "typing"}',
        '{"content": "no type"}',
        '{"users": [{"username": "a"}]}',
        '{"type": 7}',
    ],
)
def test_unrecognized_shapes_are_unknown(raw):
    frame = parse_frame(raw)
    assert isinstance(frame, UnknownFrame)
    assert frame.raw == json.loads(raw)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "",
        "[1, 2, 3]",
        '"just a string"',
        b"\xff\xfe",
        '{"type": "message"}',
        '{"type": "message", "content": 42}',
    ],
)
def test_malformed_frames_raise(raw):
    with pytest.raises(FrameParseError):
        parse_frame(raw)


async def _joined(relay, username):
    connection = FakeConnection(username)
    session = await relay.join(connection, username)
    return session, connection


@pytest.mark.asyncio
async def test_message_frame_is_stamped_and_broadcast_to_everyone():
    relay = ChatRelay(max_history=10)
    handler = ProtocolHandler(relay)
    alice, alice_conn = await _joined(relay, "alice")
    _, bob_conn = await _joined(relay, "bob")

    await handler.handle_frame(
        alice.session_id,
        json.dumps({"type": "message", "content": "hi", "username": "bob", "timestamp": "x"}),
    )
    await relay.dispatcher.drain(timeout=1)

    for conn in (alice_conn, bob_conn):
        [message] = conn.frames_of("message")
        assert message["content"] == "hi"
        assert message["username"] == "alice"
        assert message["timestamp"] != "x"
        assert message["timestamp"].endswith("Z")
    assert [m.content for m in relay.history.snapshot()] == ["hi"]
    await relay.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_get_history_replies_only_to_requester():
    relay = ChatRelay(max_history=10)
    handler = ProtocolHandler(relay)
    alice, alice_conn = await _joined(relay, "alice")
    bob, bob_conn = await _joined(relay, "bob")
    await handler.handle_frame(alice.session_id, '{"type": "message", "content": "one"}')

    await handler.handle_frame(bob.session_id, '{"type": "get_history"}')
    await relay.dispatcher.drain(timeout=1)

    # One history on join for each, plus bob's explicit request.
    assert len(alice_conn.frames_of("history")) == 1
    bob_histories = bob_conn.frames_of("history")
    assert len(bob_histories) == 2
    assert [m["content"] for m in bob_histories[-1]["messages"]] == ["one"]
    assert bob_histories[-1]["messages"][0]["type"] == "message"
    await relay.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_malformed_frame_is_discarded_and_next_frame_processed(caplog):
    relay = ChatRelay(max_history=10)
    handler = ProtocolHandler(relay)
    alice, alice_conn = await _joined(relay, "alice")

    await handler.handle_frame(alice.session_id, "{not json")
    await handler.handle_frame(alice.session_id, '{"type": "message", "content": "ok"}')
    await relay.dispatcher.drain(timeout=1)

    assert "Discarding malformed frame" in caplog.text
    assert [m["content"] for m in alice_conn.frames_of("message")] == ["ok"]
    await relay.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_unknown_type_is_logged_and_ignored(caplog):
    relay = ChatRelay(max_history=10)
    handler = ProtocolHandler(relay)
    alice, alice_conn = await _joined(relay, "alice")
    await relay.dispatcher.drain(timeout=1)
    frames_before = len(alice_conn.sent)

    await handler.handle_frame(alice.session_id, '{"type": "typing"}')
    await relay.dispatcher.drain(timeout=1)

    assert "Unknown message type: typing" in caplog.text
    assert len(alice_conn.sent) == frames_before
    assert relay.history.snapshot() == []
    await relay.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_handler_survives_errors_inside_dispatch(caplog, monkeypatch):
    relay = ChatRelay(max_history=10)
    handler = ProtocolHandler(relay)
    alice, _ = await _joined(relay, "alice")

    async def explode(session_id, content):
        raise RuntimeError("boom")

    monkeypatch.setattr(relay, "post", explode)
    await handler.handle_frame(alice.session_id, '{"type": "message", "content": "x"}')

    assert "boom" in caplog.text
    await relay.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_message_from_departed_session_is_dropped():
    relay = ChatRelay(max_history=10)
    handler = ProtocolHandler(relay)
    alice, _ = await _joined(relay, "alice")
    await relay.leave(alice.session_id)

    await handler.handle_frame(alice.session_id, '{"type": "message", "content": "late"}')

    assert relay.history.snapshot() == []
    await relay.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_malformed_frame_log_carries_a_truncated_copy(caplog):
    relay = ChatRelay(max_history=10)
    handler = ProtocolHandler(relay)
    alice, _ = await _joined(relay, "alice")

    await handler.handle_frame(alice.session_id, "x" * 1000)

    [record] = [r for r in caplog.records if "Discarding malformed frame" in r.getMessage()]
    assert record.raw == "x" * 200 + "..."
    await relay.shutdown(timeout=1)


def test_malformed_frame_error_keeps_the_raw_frame():
    with pytest.raises(FrameParseError) as excinfo:
        parse_frame(b"\xff\xfe")
    assert excinfo.value.raw == b"\xff\xfe"
