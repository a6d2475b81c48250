"""
The session manager owns the single session a client process is tracking.

Create one per process and share it with every timer controller:

    async with SessionManager(ledger, BreadcrumbStore(), lifecycle) as manager:
        ...

Entering closes sessions orphaned by a previous run, leaving ends whatever is
still open. Ledger failures never escape the public methods; they are logged
and reported as False / None so a lost interval never takes the client down.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, List, NamedTuple, Optional

from ..schemas import TaskSessionOut
from ..services.task_sessions import MIN_SESSION_SECONDS
from ..utils.datetime_utils import compute_duration_seconds, ensure_utc, utcnow
from .breadcrumbs import Breadcrumb, BreadcrumbStore
from .errors import PersistenceError, RecoveryError, SyncFlushError
from .ledger import SessionLedger
from .lifecycle import HIDDEN, VISIBLE, PageLifecycle

logger = logging.getLogger(__name__)

STARTED = "started"
ENDED = "ended"


class ActiveSession(NamedTuple):
    session_id: str
    task_id: int
    user_id: Optional[int]
    start_time: datetime


class SessionEvent(NamedTuple):
    kind: str  # STARTED or ENDED
    session: ActiveSession
    reason: str  # start, adopt, resume, end, hidden, unload


class SessionManager:
    def __init__(
        self,
        ledger: SessionLedger,
        breadcrumbs: BreadcrumbStore,
        lifecycle: Optional[PageLifecycle] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.breadcrumbs = breadcrumbs
        self.lifecycle = lifecycle or PageLifecycle()
        self.clock = clock
        self._current: Optional[ActiveSession] = None
        # Task flushed because the client went hidden, restarted when visible
        self._paused: Optional[ActiveSession] = None
        self._lock = asyncio.Lock()
        self._listeners: List[Callable[[SessionEvent], None]] = []
        self._handlers_registered = False
        self._initialized = False

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.dispose()

    async def initialize(self):
        if self._initialized:
            return
        self._initialized = True
        await self.close_orphaned_sessions()

    async def dispose(self):
        await self.end_current_session()
        self._paused = None
        self._unregister_handlers()

    @property
    def current_session(self) -> Optional[ActiveSession]:
        return self._current

    def is_session_active(self, task_id=None):
        if self._current is None:
            return False
        return task_id is None or self._current.task_id == task_id

    def add_listener(self, listener: Callable[[SessionEvent], None]):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[SessionEvent], None]):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind, session: ActiveSession, reason):
        event = SessionEvent(kind, session, reason)
        for listener in list(self._listeners):
            listener(event)

    async def start_session(self, task_id, user_id) -> Optional[str]:
        """Open a new session, closing the one this process had open first"""
        async with self._lock:
            return await self._start_locked(task_id, user_id, reason="start")

    async def adopt_session(self, session: TaskSessionOut) -> Optional[str]:
        """Take over an open ledger session instead of opening a duplicate"""
        async with self._lock:
            if self._current is not None and self._current.session_id == session.id:
                return session.id
            if not await self._close_previous_locked(keep_session_id=session.id):
                return None
            self._take_ownership(session, reason="adopt")
            return session.id

    def cancel_resume(self, task_id=None):
        """Forget the session paused by going hidden, so becoming visible does not restart it"""
        if self._paused is not None and (task_id is None or self._paused.task_id == task_id):
            logger.info(f"Dropping pending resume of task {self._paused.task_id}")
            self._paused = None

    async def end_current_session(self, use_sync=False) -> bool:
        """
        Close the open session. Returns False when there was nothing to close
        or the ledger could not be updated.

        use_sync=True sends one blocking request instead and must only be used
        on shutdown paths.
        """
        if use_sync:
            return self.end_current_session_sync()
        async with self._lock:
            return await self._end_locked(reason="end")

    def end_current_session_sync(self, reason="unload") -> bool:
        active = self._current
        if active is None:
            crumb = self.breadcrumbs.load()
            if crumb is None or crumb.start_time is None:
                return False
            active = ActiveSession(crumb.session_id, crumb.task_id, crumb.user_id, ensure_utc(crumb.start_time))

        end_time = self.clock()
        duration = compute_duration_seconds(active.start_time, end_time)
        self._current = None

        try:
            self.ledger.flush_sync(active.session_id, active.task_id, end_time, duration)
        except SyncFlushError as e:
            # The breadcrumb stays, the next start or run closes the session
            logger.error(f"Blocking close of session {active.session_id} failed: {e}")
            self._emit(ENDED, active, reason)
            return False

        logger.info(f"Session {active.session_id} closed on {reason} after {duration}s")
        self.breadcrumbs.clear()
        self._emit(ENDED, active, reason)
        return True

    async def close_orphaned_sessions(self) -> bool:
        """
        Close a session a previous run left open. Returns True if one was
        closed. The breadcrumb is cleared whatever happens, so a session that
        cannot be repaired is not retried on every start.
        """
        crumb = self.breadcrumbs.load()
        if crumb is None:
            return False
        if self._current is not None and self._current.session_id == crumb.session_id:
            return False

        logger.info(f"Closing orphaned session {crumb.session_id} of task {crumb.task_id}")
        try:
            return await self._close_orphan(crumb)
        except RecoveryError as e:
            logger.error(f"Could not recover orphaned session {crumb.session_id}: {e}")
            return False
        finally:
            self.breadcrumbs.clear()

    async def _close_orphan(self, crumb: Breadcrumb):
        try:
            session = await self.ledger.get(crumb.session_id)
        except PersistenceError as e:
            raise RecoveryError(f"fetching session failed: {e}") from e
        if session is None:
            raise RecoveryError("session no longer exists")
        if not session.is_open:
            logger.info(f"Orphaned session {crumb.session_id} was already closed")
            return False

        try:
            duration = await self._close_in_ledger(session)
        except PersistenceError as e:
            raise RecoveryError(f"closing session failed: {e}") from e
        logger.info(f"Orphaned session {crumb.session_id} closed after {duration}s")
        return True

    async def _close_in_ledger(self, session: TaskSessionOut):
        end_time = self.clock()
        duration = compute_duration_seconds(session.start_time, end_time)
        if duration < MIN_SESSION_SECONDS:
            await self.ledger.delete(session.id)
        else:
            await self.ledger.update(session.id, end_time, duration)
        return duration

    def _has_open_session(self, keep_session_id=None):
        if self._current is not None:
            return self._current.session_id != keep_session_id
        crumb = self.breadcrumbs.load()
        return crumb is not None and crumb.session_id != keep_session_id

    async def _close_previous_locked(self, keep_session_id=None):
        """End whatever is open in this process. False if it is still open afterwards."""
        if not self._has_open_session(keep_session_id):
            return True
        await self._end_locked(reason="end")
        if self._has_open_session(keep_session_id):
            logger.error("Previous session is still open, not starting another one")
            return False
        return True

    async def _start_locked(self, task_id, user_id, reason):
        if not await self._close_previous_locked():
            return None

        try:
            session = await self.ledger.insert(task_id, user_id, self.clock())
        except PersistenceError as e:
            logger.error(f"Failed to start session for task {task_id}: {e}")
            return None

        logger.info(f"Started session {session.id} for task {task_id}")
        self._take_ownership(session, reason)
        return session.id

    def _take_ownership(self, session: TaskSessionOut, reason):
        active = ActiveSession(session.id, session.task_id, session.user_id, ensure_utc(session.start_time))
        self._current = active
        self._paused = None
        self.breadcrumbs.save(Breadcrumb(
            session_id=active.session_id,
            task_id=active.task_id,
            user_id=active.user_id,
            start_time=active.start_time
        ))
        self._register_handlers()
        self._emit(STARTED, active, reason)

    async def _end_locked(self, reason):
        active = self._current
        if active is not None:
            session_id = active.session_id
        else:
            crumb = self.breadcrumbs.load()
            if crumb is None:
                return False
            session_id = crumb.session_id

        try:
            session = await self.ledger.get(session_id)
        except PersistenceError as e:
            logger.error(f"Error fetching session {session_id}: {e}")
            return False

        if session is None or not session.is_open:
            logger.warning(f"Session {session_id} is gone or already closed, forgetting it")
            self._forget(active)
            return False

        try:
            duration = await self._close_in_ledger(session)
        except PersistenceError as e:
            logger.error(f"Error ending session {session_id}: {e}")
            return False

        logger.info(f"Ended session {session_id} after {duration}s")
        self._forget(active or ActiveSession(session.id, session.task_id, session.user_id, ensure_utc(session.start_time)), reason)
        return True

    def _forget(self, active: Optional[ActiveSession], reason="end"):
        self._current = None
        self.breadcrumbs.clear()
        self._unregister_handlers()
        if active is not None:
            self._emit(ENDED, active, reason)

    def _register_handlers(self):
        if self._handlers_registered:
            return
        self.lifecycle.add_visibility_handler(self._on_visibility_change)
        self.lifecycle.add_unload_handler(self._on_unload)
        self._handlers_registered = True

    def _unregister_handlers(self):
        if not self._handlers_registered:
            return
        self.lifecycle.remove_visibility_handler(self._on_visibility_change)
        self.lifecycle.remove_unload_handler(self._on_unload)
        self._handlers_registered = False

    async def _on_visibility_change(self, state):
        if state == HIDDEN:
            async with self._lock:
                active = self._current
                if active is None:
                    return
                self.end_current_session_sync(reason="hidden")
                self._paused = active
        elif state == VISIBLE:
            async with self._lock:
                paused = self._paused
                if paused is None or self._current is not None:
                    return
                self._paused = None
                await self._start_locked(paused.task_id, paused.user_id, reason="resume")

    def _on_unload(self):
        self.end_current_session_sync(reason="unload")
        self._paused = None
        self._unregister_handlers()
