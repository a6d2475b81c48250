import asyncio
import json

import pytest

from avanti.sse import (
    SESSION_CLOSED,
    SSEManager,
    broadcast_session_change_nowait,
    format_event,
    task_room,
)


@pytest.mark.asyncio
async def test_broadcast_reaches_room_members_only():
    manager = SSEManager()
    ours, theirs = asyncio.Queue(), asyncio.Queue()
    await manager.add_connection(task_room(1), ours)
    await manager.add_connection(task_room(2), theirs)

    delivered = broadcast_session_change_nowait(1, SESSION_CLOSED, "abc", 7, manager=manager)

    assert delivered == 1
    message = ours.get_nowait()
    assert message["type"] == SESSION_CLOSED
    assert message["session_id"] == "abc"
    assert message["user_id"] == 7
    assert "timestamp" in message
    assert theirs.empty()


@pytest.mark.asyncio
async def test_full_queue_is_dropped():
    manager = SSEManager()
    slow = asyncio.Queue(maxsize=1)
    await manager.add_connection("room", slow)
    manager.broadcast_nowait("room", {"type": "one"})
    assert manager.broadcast_nowait("room", {"type": "two"}) == 0
    assert manager.connection_count("room") == 0


@pytest.mark.asyncio
async def test_remove_last_connection_drops_room():
    manager = SSEManager()
    queue = asyncio.Queue()
    await manager.add_connection("room", queue)
    await manager.remove_connection("room", queue)
    assert "room" not in manager.connections
    assert await manager.broadcast_to_room("room", {"type": "x"}) == 0


def test_format_event():
    line = format_event({"type": "heartbeat"})
    assert line.startswith("data: ")
    assert line.endswith("\n\n")
    assert json.loads(line[len("data: "):]) == {"type": "heartbeat"}
