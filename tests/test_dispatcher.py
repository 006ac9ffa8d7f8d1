import asyncio

import pytest

from chatrelay.server.dispatcher import BroadcastDispatcher
from chatrelay.server.registry import SessionRegistry

from conftest import BlockingConnection, FakeConnection, wait_until


def _attached(registry, dispatcher, connection, username):
    session_id = registry.register(connection, username)
    dispatcher.attach(session_id)
    return session_id


@pytest.mark.asyncio
async def test_broadcast_reaches_every_registered_connection_in_order():
    registry = SessionRegistry()
    dispatcher = BroadcastDispatcher(registry)
    a, b = FakeConnection("a"), FakeConnection("b")
    _attached(registry, dispatcher, a, "alice")
    _attached(registry, dispatcher, b, "bob")

    for i in range(5):
        assert dispatcher.broadcast_to_all({"type": "message", "content": str(i)}) == 2
    await dispatcher.drain(timeout=1)

    expected = [str(i) for i in range(5)]
    assert [f["content"] for f in a.frames] == expected
    assert [f["content"] for f in b.frames] == expected
    await dispatcher.close()


@pytest.mark.asyncio
async def test_send_to_targets_exactly_one_connection():
    registry = SessionRegistry()
    dispatcher = BroadcastDispatcher(registry)
    a, b = FakeConnection("a"), FakeConnection("b")
    a_id = _attached(registry, dispatcher, a, "alice")
    _attached(registry, dispatcher, b, "bob")

    assert dispatcher.send_to(a_id, {"type": "history", "messages": []})
    await dispatcher.drain(timeout=1)

    assert a.frames == [{"type": "history", "messages": []}]
    assert b.frames == []
    await dispatcher.close()


@pytest.mark.asyncio
async def test_unknown_or_detached_recipient_is_skipped():
    registry = SessionRegistry()
    dispatcher = BroadcastDispatcher(registry)
    a = FakeConnection("a")
    a_id = _attached(registry, dispatcher, a, "alice")

    assert dispatcher.send_to("stale-session", {"type": "users", "users": []}) is False

    dispatcher.detach(a_id)
    registry.deregister(a_id)
    assert dispatcher.send_to(a_id, {"type": "users", "users": []}) is False
    assert dispatcher.broadcast_to_all({"type": "users", "users": []}) == 0
    await dispatcher.close()


@pytest.mark.asyncio
async def test_closed_connection_is_skipped_silently():
    registry = SessionRegistry()
    dispatcher = BroadcastDispatcher(registry)
    open_conn, closed_conn = FakeConnection("open"), FakeConnection("closed")
    _attached(registry, dispatcher, open_conn, "alice")
    _attached(registry, dispatcher, closed_conn, "bob")
    closed_conn.closed = True

    assert dispatcher.broadcast_to_all({"type": "message", "content": "x"}) == 1
    await dispatcher.drain(timeout=1)

    assert len(open_conn.frames) == 1
    assert closed_conn.sent == []
    await dispatcher.close()


@pytest.mark.asyncio
async def test_connection_closing_mid_send_does_not_break_writer():
    registry = SessionRegistry()
    dispatcher = BroadcastDispatcher(registry)
    conn = FakeConnection()
    _attached(registry, dispatcher, conn, "alice")

    dispatcher.broadcast_to_all({"type": "message", "content": "1"})
    await dispatcher.drain(timeout=1)
    conn.closed = True
    # Frames still queued when the transport closes are dropped.
    channel_queue = dispatcher._channels[next(iter(dispatcher._channels))].queue
    channel_queue.put_nowait('{"type": "message", "content": "2"}')
    assert await dispatcher.drain(timeout=1)

    assert [f["content"] for f in conn.frames] == ["1"]
    await dispatcher.close()


@pytest.mark.asyncio
async def test_slow_receiver_does_not_block_others():
    registry = SessionRegistry()
    dispatcher = BroadcastDispatcher(registry)
    slow, fast = BlockingConnection("slow"), FakeConnection("fast")
    _attached(registry, dispatcher, slow, "slow")
    _attached(registry, dispatcher, fast, "fast")

    for i in range(3):
        dispatcher.broadcast_to_all({"type": "message", "content": str(i)})

    await wait_until(lambda: len(fast.sent) == 3)
    assert slow.sent == []
    assert await dispatcher.drain(timeout=0.05) is False

    slow.release.set()
    assert await dispatcher.drain(timeout=1)
    assert [f["content"] for f in slow.frames] == ["0", "1", "2"]
    await dispatcher.close()


@pytest.mark.asyncio
async def test_close_cancels_writers():
    registry = SessionRegistry()
    dispatcher = BroadcastDispatcher(registry)
    slow = BlockingConnection()
    _attached(registry, dispatcher, slow, "slow")
    dispatcher.broadcast_to_all({"type": "users", "users": []})
    await asyncio.sleep(0)

    await dispatcher.close()
    assert await dispatcher.drain(timeout=0.1)
    assert slow.sent == []


@pytest.mark.asyncio
async def test_detach_reports_frames_left_behind(caplog):
    caplog.set_level("DEBUG", logger="chat_relay_app")
    registry = SessionRegistry()
    dispatcher = BroadcastDispatcher(registry)
    slow = BlockingConnection()
    slow_id = _attached(registry, dispatcher, slow, "slow")

    for i in range(3):
        dispatcher.broadcast_to_all({"type": "message", "content": str(i)})
    # The writer holds the first frame; the other two are still queued.
    await asyncio.sleep(0)
    dispatcher.detach(slow_id)

    assert "Dropped 2 queued frame(s) on detach" in caplog.text
    assert await dispatcher.drain(timeout=0.1)
    await dispatcher.close()
