import asyncio
import logging
from typing import Callable, List, Optional

from ..utils.datetime_utils import utcnow
from .errors import PersistenceError
from .ledger import SessionLedger, Subscription

logger = logging.getLogger(__name__)


class RealtimeAggregator:
    """
    Keeps the cross-user total of one task current.

    Every ledger notification triggers a fresh summation query; notifications
    are never applied as deltas, so duplicates and reordering are harmless.
    """

    def __init__(self, ledger: SessionLedger, task_id):
        self.ledger = ledger
        self.task_id = task_id
        self.total_seconds = 0
        self.last_refreshed_at = None
        self._subscription: Optional[Subscription] = None
        # Refreshes run one at a time so a slow old query never wins
        self._lock = asyncio.Lock()
        self._listeners: List[Callable[[int], None]] = []
        self._notification_listeners: List[Callable[[dict], None]] = []

    def add_listener(self, listener: Callable[[int], None]):
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[int], None]):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_notification_listener(self, listener: Callable[[dict], None]):
        """Also see the raw notifications, e.g. task status changes"""
        self._notification_listeners.append(listener)

    def remove_notification_listener(self, listener: Callable[[dict], None]):
        if listener in self._notification_listeners:
            self._notification_listeners.remove(listener)

    @property
    def is_subscribed(self):
        return self._subscription is not None

    async def start(self):
        if self._subscription is None:
            try:
                self._subscription = await self.ledger.subscribe(self.task_id, self._on_change)
            except PersistenceError as e:
                logger.warning(f"Live updates unavailable for task {self.task_id}: {e}")
        return await self.refresh()

    async def stop(self):
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await subscription.close()

    async def _on_change(self, message):
        for listener in list(self._notification_listeners):
            listener(message)
        await self.refresh()

    async def refresh(self) -> int:
        async with self._lock:
            try:
                total = await self.ledger.total_duration(self.task_id)
            except PersistenceError as e:
                logger.warning(f"Could not refresh total for task {self.task_id}, keeping {self.total_seconds}s: {e}")
                return self.total_seconds

            changed = total != self.total_seconds
            self.total_seconds = total
            self.last_refreshed_at = utcnow()

        if changed:
            logger.debug(f"Task {self.task_id} total is now {total}s")
            for listener in list(self._listeners):
                listener(total)
        return total
