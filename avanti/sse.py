import asyncio
import json
from typing import Dict, Set, Any
from datetime import datetime, timezone
from fastapi import APIRouter
from fastapi.responses import StreamingResponse
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 30.0

# Slow consumers beyond this backlog are dropped
QUEUE_MAXSIZE = 100

# Ledger change notification types
SESSION_CREATED = "session_created"
SESSION_CLOSED = "session_closed"
SESSION_DELETED = "session_deleted"

def task_room(task_id: int) -> str:
    return f"task_sessions_{task_id}"

def format_event(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"

class SSEManager:
    def __init__(self):
        # Store active connections by room
        self.connections: Dict[str, Set[asyncio.Queue]] = {}
        logger.info("SSE Manager initialized")

    async def add_connection(self, room: str, queue: asyncio.Queue):
        """Add a connection to a room"""
        if room not in self.connections:
            self.connections[room] = set()
        self.connections[room].add(queue)
        logger.info(f"Added connection to room {room}. Total connections: {len(self.connections[room])}")

    async def remove_connection(self, room: str, queue: asyncio.Queue):
        """Remove a connection from a room"""
        if room in self.connections:
            self.connections[room].discard(queue)
            if not self.connections[room]:
                del self.connections[room]
            logger.info(f"Removed connection from room {room}. Remaining connections: {len(self.connections.get(room, []))}")

    def connection_count(self, room: str) -> int:
        return len(self.connections.get(room, ()))

    def broadcast_nowait(self, room: str, data: Dict[str, Any]) -> int:
        """
        Queue a message for every connection in a room without awaiting.
        Safe to call from synchronous code running on the event loop thread.
        Returns the number of connections reached.
        """
        if room not in self.connections:
            logger.debug(f"No connections found for room {room}")
            return 0

        message = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **data
        }

        # Send to all connections in the room
        dead_connections = set()
        delivered = 0
        for queue in self.connections[room].copy():
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.error(f"Connection queue full in room {room}, dropping connection")
                dead_connections.add(queue)

        # Remove dead connections
        for dead_queue in dead_connections:
            self.connections[room].discard(dead_queue)
            logger.info(f"Removed dead connection from room {room}")

        logger.info(f"Broadcasted {data.get('type')} to room {room}: {delivered} active connections")
        return delivered

    async def broadcast_to_room(self, room: str, data: Dict[str, Any]) -> int:
        """Broadcast data to all connections in a room"""
        return self.broadcast_nowait(room, data)

# Global SSE manager instance
sse_manager = SSEManager()

# SSE Router
router = APIRouter(prefix="/events", tags=["sse"])

@router.get("/tasks/{task_id}/sessions")
async def task_session_events(task_id: int):
    """SSE endpoint for task session ledger changes"""
    logger.info(f"New SSE connection request for task {task_id}")

    async def event_generator():
        queue = asyncio.Queue(maxsize=QUEUE_MAXSIZE)
        room = task_room(task_id)

        try:
            await sse_manager.add_connection(room, queue)

            # Send initial connection confirmation
            yield format_event({'type': 'connected', 'task_id': task_id})

            while True:
                try:
                    # Wait for messages with timeout for heartbeat
                    message = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                    yield format_event(message)
                except asyncio.TimeoutError:
                    # Send heartbeat to keep connection alive
                    yield format_event({'type': 'heartbeat'})

        except asyncio.CancelledError:
            logger.info(f"SSE connection cancelled for task {task_id}")
            raise
        finally:
            await sse_manager.remove_connection(room, queue)
            logger.info(f"SSE connection cleanup completed for task {task_id}")

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Headers": "Cache-Control",
        }
    )

def broadcast_session_change_nowait(task_id: int, event_type: str, session_id: str, user_id: int = None, manager: SSEManager = None) -> int:
    """Tell subscribers of a task that its ledger changed"""
    return (manager or sse_manager).broadcast_nowait(task_room(task_id), {
        "type": event_type,
        "task_id": task_id,
        "session_id": session_id,
        "user_id": user_id
    })

async def broadcast_session_change(task_id: int, event_type: str, session_id: str, user_id: int = None) -> int:
    """Broadcast task session ledger updates"""
    logger.info(f"Broadcasting session change - Task: {task_id}, Session: {session_id}, Event: {event_type}")
    return broadcast_session_change_nowait(task_id, event_type, session_id, user_id)
