"""
Cancellable deferred actions.

Artifact deletion after the serving window is the main client: instead of
fire-and-forget timers, every deferred action is a ScheduledTask owned by a
DeferredScheduler. Tests fast-forward with ``run_pending()``; shutdown
either runs or cancels whatever is still armed.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[object]]


class ScheduledTask:
    """One armed deferred action. Runs at most once."""

    def __init__(self, scheduler: "DeferredScheduler", name: str, delay: float, action: Action):
        self.name = name
        self.delay = delay
        self.due_at = time.monotonic() + delay
        self._scheduler = scheduler
        self._action = action
        self._timer: Optional[asyncio.Task] = None
        self._ran = False
        self._cancelled = False

    @property
    def done(self) -> bool:
        return self._ran or self._cancelled

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Disarm the action. Returns False if it already ran or was cancelled."""
        if self.done:
            return False
        self._cancelled = True
        if self._timer is not None and self._timer is not asyncio.current_task():
            self._timer.cancel()
        self._scheduler._forget(self)
        return True

    async def run_now(self) -> None:
        """Run the action immediately instead of waiting for the timer."""
        if self.done:
            return
        self._ran = True
        if self._timer is not None and self._timer is not asyncio.current_task():
            self._timer.cancel()
        self._scheduler._forget(self)
        try:
            await self._action()
        except Exception as e:
            logger.error(f"Deferred action '{self.name}' failed: {e}")

    async def _wait_and_run(self) -> None:
        await asyncio.sleep(self.delay)
        await self.run_now()


class DeferredScheduler:
    """
    Owner of every pending deferred action in the process.

    Must be used from within a running event loop.
    """

    def __init__(self):
        self._pending: Dict[int, ScheduledTask] = {}

    def schedule(self, delay: float, action: Action, *, name: str = "deferred") -> ScheduledTask:
        """Arm ``action`` to run once after ``delay`` seconds."""
        task = ScheduledTask(self, name, max(0.0, delay), action)
        self._pending[id(task)] = task
        task._timer = asyncio.get_running_loop().create_task(
            task._wait_and_run(), name=f"deferred:{name}"
        )
        logger.debug(f"Scheduled '{name}' in {task.delay:g}s")
        return task

    def pending(self) -> List[ScheduledTask]:
        return list(self._pending.values())

    async def run_pending(self) -> int:
        """Run every armed action now, in due order. Returns how many ran."""
        tasks = sorted(self._pending.values(), key=lambda t: t.due_at)
        for task in tasks:
            await task.run_now()
        return len(tasks)

    def cancel_all(self) -> int:
        """Disarm every pending action. Returns how many were cancelled."""
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        return len(tasks)

    async def shutdown(self, run_pending: bool = True) -> None:
        """Flush (or drop) pending actions before the loop stops."""
        if run_pending:
            count = await self.run_pending()
            if count:
                logger.info(f"Ran {count} pending deferred action(s) at shutdown")
        else:
            count = self.cancel_all()
            if count:
                logger.info(f"Cancelled {count} pending deferred action(s) at shutdown")

    def _forget(self, task: ScheduledTask) -> None:
        self._pending.pop(id(task), None)
