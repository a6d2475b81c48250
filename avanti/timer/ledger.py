"""
Session ledger access for the client engine.

`SessionLedger` is the contract the session manager, timer controller and
aggregator depend on. `SqlSessionLedger` implements it in-process on top of the
SQLAlchemy models; `avanti.timer.http_ledger.HttpSessionLedger` implements it
against the ledger service.

Change notifications only say that something changed for a task. Subscribers
re-query; they never apply a notification as a delta.
"""
import abc
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from ..database import SessionLocal
from ..schemas import TaskSessionOut
from ..services import task_sessions as service
from ..sse import SSEManager, sse_manager, task_room, broadcast_session_change_nowait
from ..sse import SESSION_CREATED, SESSION_CLOSED, SESSION_DELETED
from ..utils.datetime_utils import sum_durations
from .errors import PersistenceError, SyncFlushError

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


async def deliver(callback: ChangeCallback, message: Dict[str, Any]):
    result = callback(message)
    if inspect.isawaitable(result):
        await result


class Subscription:
    """Handle for a change-feed subscription; close() stops delivery"""

    def __init__(self, task: asyncio.Task, on_close: Callable[[], Awaitable[None]] = None):
        self._task = task
        self._on_close = on_close
        self.closed = False

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        if self._on_close is not None:
            await self._on_close()


class SessionLedger(abc.ABC):
    """Durable record of time-tracking sessions"""

    @abc.abstractmethod
    async def insert(self, task_id, user_id, start_time) -> TaskSessionOut:
        """Create an open session. Raises PersistenceError on invalid references."""

    @abc.abstractmethod
    async def get(self, session_id) -> Optional[TaskSessionOut]:
        """Fetch one session, or None if it does not exist"""

    @abc.abstractmethod
    async def update(self, session_id, end_time, duration_seconds) -> Optional[TaskSessionOut]:
        """
        Close a session. The ledger measures the duration from the stored start
        time; a session under a second is deleted instead and None is returned.
        Closing twice is a caller error and fails.
        """

    @abc.abstractmethod
    async def delete(self, session_id):
        pass

    @abc.abstractmethod
    async def query(self, task_id=None, user_id=None, status=None) -> List[TaskSessionOut]:
        """Sessions matching the filter, newest first. status is "open", "closed" or None."""

    @abc.abstractmethod
    async def subscribe(self, task_id, on_change: ChangeCallback) -> Subscription:
        pass

    @abc.abstractmethod
    def flush_sync(self, session_id, task_id, end_time, duration_seconds) -> bool:
        """
        Close (or discard, under one second) a session with a blocking call.

        Only for shutdown paths where the event loop may not run again.
        Raises SyncFlushError when the request fails.
        """

    async def find_open_session(self, task_id, user_id) -> Optional[TaskSessionOut]:
        sessions = await self.query(task_id=task_id, user_id=user_id, status="open")
        if not sessions:
            return None
        return max(sessions, key=lambda s: s.start_time)

    async def total_duration(self, task_id) -> int:
        sessions = await self.query(task_id=task_id, status="closed")
        return sum_durations(s.duration_seconds for s in sessions)

    async def close(self):
        pass


class SqlSessionLedger(SessionLedger):
    """Ledger backed directly by the database, for single-process deployments and tests"""

    def __init__(self, session_factory=SessionLocal, feed: SSEManager = sse_manager):
        self.session_factory = session_factory
        self.feed = feed

    def _call(self, fn, *args):
        db = self.session_factory()
        try:
            return fn(db, *args)
        finally:
            db.close()

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(self._call, fn, *args)
        except (SQLAlchemyError, service.LedgerError) as e:
            raise PersistenceError(str(e)) from e

    @staticmethod
    def _insert(db, task_id, user_id, start_time):
        return TaskSessionOut.model_validate(service.create_session(db, task_id, user_id, start_time))

    @staticmethod
    def _get(db, session_id):
        try:
            return TaskSessionOut.model_validate(service.get_session(db, session_id))
        except service.NotFoundError:
            return None

    @staticmethod
    def _update(db, session_id, end_time, duration_seconds):
        session = service.get_session(db, session_id)
        task_id, user_id = session.task_id, session.user_id
        closed = service.close_or_discard(db, session_id, end_time, duration_seconds)
        return task_id, user_id, TaskSessionOut.model_validate(closed) if closed is not None else None

    @staticmethod
    def _query(db, task_id, user_id, status):
        return [TaskSessionOut.model_validate(s) for s in service.list_sessions(db, task_id, user_id, status)]

    async def insert(self, task_id, user_id, start_time):
        session = await self._run(self._insert, task_id, user_id, start_time)
        broadcast_session_change_nowait(session.task_id, SESSION_CREATED, session.id, session.user_id, self.feed)
        return session

    async def get(self, session_id):
        return await self._run(self._get, session_id)

    async def update(self, session_id, end_time, duration_seconds):
        task_id, user_id, session = await self._run(self._update, session_id, end_time, duration_seconds)
        event_type = SESSION_DELETED if session is None else SESSION_CLOSED
        broadcast_session_change_nowait(task_id, event_type, session_id, user_id, self.feed)
        return session

    async def delete(self, session_id):
        task_id = await self._run(service.delete_session, session_id)
        broadcast_session_change_nowait(task_id, SESSION_DELETED, session_id, manager=self.feed)

    async def query(self, task_id=None, user_id=None, status=None):
        return await self._run(self._query, task_id, user_id, status)

    async def total_duration(self, task_id):
        return await self._run(service.calculate_task_total_duration, task_id)

    def flush_sync(self, session_id, task_id, end_time, duration_seconds):
        try:
            closed = self._call(service.close_or_discard, session_id, end_time, duration_seconds)
        except (SQLAlchemyError, service.LedgerError) as e:
            raise SyncFlushError(str(e)) from e
        event_type = SESSION_DELETED if closed is None else SESSION_CLOSED
        broadcast_session_change_nowait(task_id, event_type, session_id, manager=self.feed)
        return True

    async def subscribe(self, task_id, on_change):
        room = task_room(task_id)
        queue = asyncio.Queue()
        await self.feed.add_connection(room, queue)

        async def pump():
            while True:
                message = await queue.get()
                try:
                    await deliver(on_change, message)
                except Exception:
                    logger.exception(f"Change handler for task {task_id} failed")

        async def unsubscribe():
            await self.feed.remove_connection(room, queue)

        return Subscription(asyncio.create_task(pump()), on_close=unsubscribe)
