from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

from sanic.log import logger

from deploy_audit.metric import sync_scheduler_total


@dataclass
class _AppState:
    full: bool = False
    dirty: bool = False


class SyncScheduler:
    """Runs on-demand syncs, at most one task per application.

    A request arriving while the application's task is running marks it dirty
    and the task runs the handler once more before exiting.
    """

    def __init__(self, *, handler: Callable[[int, bool], Awaitable[None]]):
        self.handler = handler
        self._tasks: Dict[int, asyncio.Task] = {}
        self._states: Dict[int, _AppState] = {}
        self._lock = asyncio.Lock()

    def is_running(self, app_id: int) -> bool:
        return app_id in self._tasks

    async def request(self, app_id: int, *, full: bool = False) -> bool:
        """Schedule a sync; False when it was coalesced into a running one."""
        async with self._lock:
            if app_id in self._tasks:
                state = self._states[app_id]
                state.dirty = True
                state.full = state.full or full
                sync_scheduler_total.labels(result="coalesced").inc()
                return False

            self._states[app_id] = _AppState(full=full)
            sync_scheduler_total.labels(result="scheduled").inc()
            self._tasks[app_id] = asyncio.create_task(self._run(app_id))
            return True

    async def wait(self, app_id: int) -> None:
        task = self._tasks.get(app_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        async with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
            self._states.clear()

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, app_id: int) -> None:
        try:
            while True:
                async with self._lock:
                    state = self._states.get(app_id)
                    if state is None:
                        return
                    full = state.full
                    state.dirty = False
                    state.full = False

                sync_scheduler_total.labels(result="executed").inc()
                try:
                    await self.handler(app_id, full)
                except asyncio.CancelledError:
                    raise
                except Exception:  # noqa: BLE001
                    logger.error("On-demand sync failed app_id=%s", app_id, exc_info=True)
                    sync_scheduler_total.labels(result="failed").inc()

                async with self._lock:
                    latest = self._states.get(app_id)
                    if latest is None or not latest.dirty:
                        return
        finally:
            async with self._lock:
                self._states.pop(app_id, None)
                self._tasks.pop(app_id, None)
