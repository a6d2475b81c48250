import asyncio
import json
import logging
from typing import Optional

import httpx

from ..schemas import TaskSessionOut
from . import settings
from .errors import PersistenceError, SyncFlushError
from .ledger import SessionLedger, Subscription, deliver

logger = logging.getLogger(__name__)

# Feed messages that carry no ledger change
KEEPALIVE_EVENTS = {"heartbeat"}


class HttpSessionLedger(SessionLedger):
    """Ledger reached over the avanti REST API"""

    def __init__(
        self,
        base_url: str = settings.API_URL,
        token: str = settings.API_TOKEN,
        timeout: float = settings.REQUEST_TIMEOUT,
        sync_timeout: float = settings.SYNC_FLUSH_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sync_transport: Optional[httpx.BaseTransport] = None,
        reconnect_delay: float = 2.0,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.reconnect_delay = reconnect_delay
        self._client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout, transport=transport)
        # Separate blocking client: the unload path cannot rely on the event loop
        self._sync_client = httpx.Client(base_url=base_url, headers=headers, timeout=sync_timeout, transport=sync_transport)

    async def _request(self, method, url, allow_404=False, **kwargs):
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise PersistenceError(f"{method} {url} failed: {e}") from e
        if allow_404 and response.status_code == 404:
            return None
        if response.is_error:
            raise PersistenceError(f"{method} {url} failed with {response.status_code}: {response.text}")
        return response

    async def insert(self, task_id, user_id, start_time):
        response = await self._request("POST", "/api/task-sessions", json={
            "task_id": task_id,
            "user_id": user_id,
            "start_time": start_time.isoformat()
        })
        return TaskSessionOut.model_validate(response.json())

    async def get(self, session_id):
        response = await self._request("GET", f"/api/task-sessions/{session_id}", allow_404=True)
        if response is None:
            return None
        return TaskSessionOut.model_validate(response.json())

    async def update(self, session_id, end_time, duration_seconds):
        response = await self._request("PATCH", f"/api/task-sessions/{session_id}", json={
            "end_time": end_time.isoformat(),
            "duration_seconds": duration_seconds
        })
        if response.status_code == 204:
            return None
        return TaskSessionOut.model_validate(response.json())

    async def delete(self, session_id):
        await self._request("DELETE", f"/api/task-sessions/{session_id}")

    async def query(self, task_id=None, user_id=None, status=None):
        params = {k: v for k, v in {"task_id": task_id, "user_id": user_id, "status": status}.items() if v is not None}
        response = await self._request("GET", "/api/task-sessions", params=params)
        return [TaskSessionOut.model_validate(item) for item in response.json()]

    async def total_duration(self, task_id):
        response = await self._request("GET", f"/api/tasks/{task_id}/total-duration")
        return int(response.json()["total_duration_seconds"])

    async def get_task(self, task_id):
        response = await self._request("GET", f"/api/tasks/{task_id}", allow_404=True)
        return response.json() if response is not None else None

    async def whoami(self):
        response = await self._request("GET", "/auth/me")
        return response.json()

    def flush_sync(self, session_id, task_id, end_time, duration_seconds):
        try:
            response = self._sync_client.post("/api/end-session", json={
                "sessionId": session_id,
                "taskId": task_id,
                "endTime": end_time.isoformat(),
                "durationSeconds": duration_seconds
            })
        except httpx.HTTPError as e:
            raise SyncFlushError(f"end-session request failed: {e}") from e
        logger.info(f"Blocking session close completed with status {response.status_code}")
        if response.is_error:
            raise SyncFlushError(f"end-session failed with {response.status_code}: {response.text}")
        return True

    async def subscribe(self, task_id, on_change):
        return Subscription(asyncio.create_task(self._stream(task_id, on_change)))

    async def _stream(self, task_id, on_change):
        url = f"/events/tasks/{task_id}/sessions"
        while True:
            try:
                async with self._client.stream("GET", url, timeout=httpx.Timeout(10.0, read=None)) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        try:
                            message = json.loads(line[len("data:"):].strip())
                        except ValueError:
                            logger.warning(f"Ignoring malformed feed line for task {task_id}: {line!r}")
                            continue
                        if not isinstance(message, dict):
                            logger.warning(f"Ignoring non-object feed payload for task {task_id}: {line!r}")
                            continue
                        if message.get("type") in KEEPALIVE_EVENTS:
                            continue
                        # "connected" is passed on too: changes may have been
                        # missed while the stream was down
                        try:
                            await deliver(on_change, message)
                        except Exception:
                            logger.exception(f"Change handler for task {task_id} failed on {message.get('type')}")
            except httpx.HTTPError as e:
                logger.warning(f"Change feed for task {task_id} dropped: {e}")
            await asyncio.sleep(self.reconnect_delay)

    async def close(self):
        await self._client.aclose()
        self._sync_client.close()
