"""
Deadline tokens threaded through every suspension point of a render job.

A job owns one root Deadline for the whole request. Stages derive child
deadlines for their own budgets (render, upload, context admission); a
child never outlives its parent. When an awaited operation overruns,
``Deadline.wait_for`` cancels it and raises either the stage's own error
or ``OverallTimeout`` when it was the request deadline that ran out.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import OverallTimeout, ReportServiceError

T = TypeVar("T")


class Deadline:
    """
    Absolute point in (monotonic) time after which work must stop.

    Args:
        seconds: Budget from now
        parent: Enclosing deadline; the child expires no later than it
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        seconds: float,
        *,
        parent: Optional["Deadline"] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.budget = float(seconds)
        self.parent = parent
        self._clock = clock

        expires_at = clock() + max(0.0, self.budget)
        if parent is not None:
            expires_at = min(expires_at, parent.expires_at)
        self.expires_at = expires_at

    def __repr__(self) -> str:
        return f"Deadline(budget={self.budget}, remaining={self.remaining():.3f})"

    def child(self, seconds: float) -> "Deadline":
        """Derive a stage deadline capped by this one."""
        return Deadline(seconds, parent=self, clock=self._clock)

    def root(self) -> "Deadline":
        node = self
        while node.parent is not None:
            node = node.parent
        return node

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def bound_by_root(self) -> bool:
        """True when the request deadline, not the stage budget, is the binding limit."""
        return self.root().expires_at <= self.expires_at

    def timeout_error(
        self, on_timeout: Optional[Callable[[], ReportServiceError]] = None
    ) -> ReportServiceError:
        """Build the error to raise when this deadline fires."""
        if on_timeout is None or self.bound_by_root():
            return OverallTimeout(
                f"Request deadline of {self.root().budget:g}s elapsed"
            )
        return on_timeout()

    async def wait_for(
        self,
        awaitable: Awaitable[T],
        *,
        on_timeout: Optional[Callable[[], ReportServiceError]] = None,
    ) -> T:
        """
        Await ``awaitable`` for at most the remaining time.

        The awaitable is cancelled on expiry. ``on_timeout`` builds the
        stage-specific error; it is ignored when the root deadline is the
        one that ran out.
        """
        remaining = self.remaining()
        if remaining <= 0.0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise self.timeout_error(on_timeout)

        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError:
            raise self.timeout_error(on_timeout) from None
