import asyncio
import logging
from typing import Callable, List, Optional

from ..models import TRACKED_STATUSES
from ..utils.datetime_utils import compute_duration_seconds, format_hms, format_ms
from . import settings
from .aggregator import RealtimeAggregator
from .errors import PersistenceError
from .session_manager import ENDED, STARTED, ActiveSession, SessionEvent, SessionManager

logger = logging.getLogger(__name__)

IDLE = "idle"
TRACKING = "tracking"


def should_track(is_view_active, task_status, trackable_statuses=TRACKED_STATUSES):
    """Time is recorded only while the task view is active and the task is still open"""
    return bool(is_view_active) and task_status in trackable_statuses


class TaskTimerController:
    """
    Per-task-view timer.

    Decides from the task status and whether its view is active if a session
    should be running, asks the session manager to start or end one, and keeps
    two counters: elapsed seconds of the current session and the task total
    across all users (from the aggregator).
    """

    def __init__(
        self,
        manager: SessionManager,
        task_id,
        user_id,
        task_status=None,
        is_view_active=False,
        aggregator: Optional[RealtimeAggregator] = None,
        tick_interval: float = settings.TICK_INTERVAL,
        trackable_statuses=TRACKED_STATUSES,
    ):
        self.manager = manager
        self.ledger = manager.ledger
        self.task_id = task_id
        self.user_id = user_id
        self.task_status = task_status
        self.is_view_active = is_view_active
        self.aggregator = aggregator or RealtimeAggregator(manager.ledger, task_id)
        self.tick_interval = tick_interval
        self.trackable_statuses = trackable_statuses

        self.state = IDLE
        self.elapsed_seconds = 0
        self.session_id = None
        self._session_start = None
        self._tick_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._listeners: List[Callable[["TaskTimerController"], None]] = []
        self._background = set()
        self.mounted = False

    @property
    def should_track(self):
        return should_track(self.is_view_active, self.task_status, self.trackable_statuses)

    @property
    def total_seconds(self):
        return self.aggregator.total_seconds

    @property
    def live_total_seconds(self):
        """Closed total plus the session running here, for display"""
        if self.state == TRACKING:
            return self.total_seconds + self.elapsed_seconds
        return self.total_seconds

    @property
    def formatted_elapsed(self):
        return format_hms(self.elapsed_seconds)

    @property
    def formatted_total(self):
        return format_hms(self.total_seconds)

    @property
    def formatted_elapsed_short(self):
        return format_ms(self.elapsed_seconds)

    def add_listener(self, listener: Callable[["TaskTimerController"], None]):
        self._listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self):
        for listener in list(self._listeners):
            listener(self)

    async def mount(self):
        if self.mounted:
            return
        self.mounted = True
        self.manager.add_listener(self._on_session_event)
        self.aggregator.add_listener(self._on_total_changed)
        self.aggregator.add_notification_listener(self._on_ledger_notification)
        await self.aggregator.start()
        await self._reconcile()

    async def unmount(self):
        if not self.mounted:
            return
        self.is_view_active = False
        await self._reconcile()
        self.manager.cancel_resume(self.task_id)
        self.manager.remove_listener(self._on_session_event)
        self.aggregator.remove_listener(self._on_total_changed)
        self.aggregator.remove_notification_listener(self._on_ledger_notification)
        await self.aggregator.stop()
        for task in list(self._background):
            task.cancel()
        self._cancel_tick()
        self.mounted = False

    async def set_view_active(self, is_view_active):
        self.is_view_active = is_view_active
        await self._reconcile()

    async def set_task_status(self, task_status):
        self.task_status = task_status
        await self._reconcile()

    async def _reconcile(self):
        async with self._lock:
            if not self.mounted:
                return
            if not self.should_track:
                # A hidden flush leaves this idle already; the resume must not fire either
                self.manager.cancel_resume(self.task_id)
            if self.should_track and self.state == IDLE:
                await self._begin_tracking()
            elif not self.should_track and self.state == TRACKING:
                await self._stop_tracking()

    async def _begin_tracking(self):
        try:
            existing = await self.ledger.find_open_session(self.task_id, self.user_id)
        except PersistenceError as e:
            logger.warning(f"Could not look for an open session of task {self.task_id}: {e}")
            existing = None

        if existing is not None:
            logger.info(f"Resuming open session {existing.id} of task {self.task_id}")
            session_id = await self.manager.adopt_session(existing)
            if session_id is not None and not self.should_track:
                # Inputs changed while the lookup was in flight
                await self.manager.end_current_session()
                self._enter_idle()
                await self.aggregator.refresh()
                return
        else:
            session_id = await self.manager.start_session(self.task_id, self.user_id)

        if session_id is None:
            logger.warning(f"Timer for task {self.task_id} not started this time")
            return

        current = self.manager.current_session
        if current is not None and current.session_id == session_id:
            self._enter_tracking(current)

    async def _stop_tracking(self):
        self._cancel_tick()
        if self.manager.is_session_active(self.task_id):
            await self.manager.end_current_session()
        self._enter_idle()
        await self.aggregator.refresh()

    def _enter_tracking(self, active: ActiveSession):
        if self.state == TRACKING and self.session_id == active.session_id:
            return
        self.state = TRACKING
        self.session_id = active.session_id
        self._session_start = active.start_time
        self._start_tick()

    def _enter_idle(self):
        self._cancel_tick()
        if self.state == IDLE:
            return
        self.state = IDLE
        self.session_id = None
        self._session_start = None
        self._notify()

    def _update_elapsed(self):
        if self._session_start is None:
            return
        # Derived from the clock, not counted, so a suspended process catches up
        self.elapsed_seconds = compute_duration_seconds(self._session_start, self.manager.clock())
        self._notify()

    def _start_tick(self):
        self._cancel_tick()
        self._update_elapsed()
        self._tick_task = asyncio.get_running_loop().create_task(self._tick())

    def _cancel_tick(self):
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None

    async def _tick(self):
        while True:
            await asyncio.sleep(self.tick_interval)
            self._update_elapsed()

    def _spawn(self, coro):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Shutting down without a loop (unload at exit)
            coro.close()
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_session_event(self, event: SessionEvent):
        if event.session.task_id != self.task_id:
            return
        if event.kind == STARTED:
            self._enter_tracking(event.session)
            if not self.should_track:
                # Resumed by the manager after the task stopped qualifying
                self._spawn(self._reconcile())
        elif event.kind == ENDED and event.session.session_id == self.session_id:
            self._enter_idle()
            self._spawn(self.aggregator.refresh())

    def _on_total_changed(self, total):
        self._notify()

    def _on_ledger_notification(self, message):
        if message.get("type") == "task_status_changed" and message.get("status"):
            if message["status"] != self.task_status:
                logger.info(f"Task {self.task_id} status changed to {message['status']}")
                self._spawn(self.set_task_status(message["status"]))
