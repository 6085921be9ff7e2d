"""
Engine Pool - long-lived Chromium processes shared across render jobs.

Each EngineInstance is one Playwright-launched Chromium browser. Jobs never
touch a browser directly: they borrow a RenderContext (a fresh incognito
BrowserContext with one Page) and give it back when done. Contexts are
never reused, so no cookies, storage or DOM leak between jobs.

Capacity is bounded twice: at most ``max_engine_instances`` browsers and at
most ``max_contexts_per_instance`` open contexts in each. All bookkeeping
happens under a single asyncio.Condition.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Set

from playwright.async_api import Browser, BrowserContext, Page, async_playwright

from .config import ServiceSettings
from .deadline import Deadline
from .errors import EngineUnavailable, PoolExhausted, best_effort

logger = logging.getLogger(__name__)

# Flags needed to run Chromium as an unprivileged user in a small container
CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]

CONTEXT_CLOSE_TIMEOUT = 5.0  # seconds
ENGINE_CLOSE_TIMEOUT = 10.0  # seconds

BrowserLauncher = Callable[[], Awaitable[Browser]]


class EngineInstance:
    """One running Chromium process and the contexts currently open in it."""

    def __init__(self, browser: Browser, instance_id: int):
        self.browser = browser
        self.instance_id = instance_id
        self.contexts: Set["RenderContext"] = set()
        self.reserved = 0  # slots promised to callers whose context is still opening
        self.created_at = time.time()
        self.healthy = True
        self.retired = False
        self.closed = False
        browser.on("disconnected", self._on_disconnected)

    def __repr__(self) -> str:
        return f"EngineInstance(#{self.instance_id}, load={self.load}, healthy={self.healthy})"

    @property
    def load(self) -> int:
        return len(self.contexts) + self.reserved

    def is_alive(self) -> bool:
        if self.closed or not self.healthy:
            return False
        if not self.browser.is_connected():
            self.healthy = False
        return self.healthy

    def _on_disconnected(self, *_args) -> None:
        if not self.closed:
            logger.warning(f"Engine instance #{self.instance_id} disconnected")
        self.healthy = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await asyncio.wait_for(self.browser.close(), timeout=ENGINE_CLOSE_TIMEOUT)
        logger.info(f"Engine instance #{self.instance_id} closed")


@dataclass(eq=False)
class RenderContext:
    """An isolated page lent to exactly one render job."""

    instance: EngineInstance
    browser_context: BrowserContext
    page: Page
    timeout: float
    context_id: int
    opened_at: float = field(default_factory=time.monotonic)
    released: bool = False

    async def close(self) -> None:
        # Closing the BrowserContext closes its page too
        await asyncio.wait_for(self.browser_context.close(), timeout=CONTEXT_CLOSE_TIMEOUT)


class EnginePool:
    """
    Lends RenderContexts backed by a bounded set of Chromium processes.

    Args:
        settings: Pool capacity, backpressure policy and timeouts
        launcher: Coroutine factory returning a launched Browser.
                  Defaults to Playwright Chromium.
    """

    def __init__(self, settings: ServiceSettings, launcher: Optional[BrowserLauncher] = None):
        self.max_instances = settings.max_engine_instances
        self.max_contexts_per_instance = settings.max_contexts_per_instance
        self.backpressure_policy = settings.backpressure_policy
        self.start_attempts = settings.engine_start_attempts
        self.shutdown_grace = settings.shutdown_grace_seconds
        self.context_timeout = settings.render_timeout_seconds
        self.headless = settings.playwright_headless

        self._launcher = launcher
        self._playwright = None
        self._driver_lock = asyncio.Lock()
        self._condition = asyncio.Condition()
        self._instances: List[EngineInstance] = []
        self._retired: List[EngineInstance] = []
        self._spawning = 0
        self._closing = False
        self._reapers: Set[asyncio.Task] = set()
        self._instance_seq = 0
        self._context_seq = 0
        self.last_error: Optional[str] = None

    @property
    def capacity(self) -> int:
        return self.max_instances * self.max_contexts_per_instance

    @property
    def active_contexts(self) -> int:
        return sum(i.load for i in self._instances + self._retired)

    @property
    def closing(self) -> bool:
        return self._closing

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, prewarm: bool = False) -> None:
        """Prepare the pool; optionally launch the first engine right away."""
        self._closing = False
        if not prewarm:
            logger.info(f"Engine pool ready (lazy start, capacity={self.capacity})")
            return

        instance = await self._spawn_instance()
        async with self._condition:
            self._instances.append(instance)
            self._condition.notify_all()
        logger.info(f"Engine pool ready (prewarmed, capacity={self.capacity})")

    async def shutdown(self, grace: Optional[float] = None) -> None:
        """
        Close every engine. In-flight contexts get ``grace`` seconds to finish;
        whatever is still open afterwards is torn down with its browser.
        """
        grace = self.shutdown_grace if grace is None else grace

        async with self._condition:
            self._closing = True
            self._condition.notify_all()

        try:
            await asyncio.wait_for(self._wait_drained(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(
                f"{self.active_contexts} render context(s) still open after {grace:g}s grace; closing engines"
            )

        if self._reapers:
            await asyncio.gather(*list(self._reapers), return_exceptions=True)

        for instance in self._instances + self._retired:
            await best_effort(instance.close(), operation=f"close engine #{instance.instance_id}", logger=logger)
        self._instances.clear()
        self._retired.clear()

        if self._playwright is not None:
            await best_effort(self._playwright.stop(), operation="stop playwright", logger=logger)
            self._playwright = None

        logger.info("Engine pool shut down")

    async def _wait_drained(self) -> None:
        async with self._condition:
            await self._condition.wait_for(lambda: self.active_contexts == 0 and self._spawning == 0)

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire_context(self, deadline: Deadline) -> RenderContext:
        """
        Borrow a fresh isolated context.

        Raises:
            PoolExhausted: pool full (fail_fast) or no slot freed before ``deadline``
            EngineUnavailable: engine could not be started, crashed, or pool closing
            OverallTimeout: the request deadline ran out while waiting
        """
        instance = await self._reserve_slot(deadline)
        try:
            context = await deadline.wait_for(
                self._open_context(instance),
                on_timeout=lambda: EngineUnavailable(
                    f"Engine #{instance.instance_id} did not open a context in time"
                ),
            )
        except BaseException:
            async with self._condition:
                instance.reserved -= 1
                self._retire_if_idle(instance)
                self._condition.notify_all()
            raise

        async with self._condition:
            instance.reserved -= 1
            instance.contexts.add(context)
        logger.debug(f"Context {context.context_id} opened on engine #{instance.instance_id} ({self.active_contexts}/{self.capacity})")
        return context

    async def release_context(self, context: RenderContext) -> None:
        """Close the context and free its slot. Safe to call more than once."""
        if context.released:
            return
        context.released = True
        await self._close_and_free(context)

    def reclaim_in_background(self, context: RenderContext) -> None:
        """Release a context without making the caller wait for the engine."""
        if context.released:
            return
        context.released = True
        self._reap(self._close_and_free(context), name=f"reclaim-context-{context.context_id}")

    def _reap(self, coro, name: str) -> None:
        """Run cleanup off the caller's path; shutdown awaits whatever is still running."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    async def _close_and_free(self, context: RenderContext) -> None:
        await best_effort(context.close(), operation=f"close context {context.context_id}", logger=logger)

        instance = context.instance
        async with self._condition:
            instance.contexts.discard(context)
            self._retire_if_idle(instance)
            self._condition.notify_all()
        logger.debug(f"Context {context.context_id} released ({self.active_contexts}/{self.capacity})")

    @asynccontextmanager
    async def lease(self, deadline: Deadline) -> AsyncIterator[RenderContext]:
        """Acquire a context for the duration of a ``with`` block."""
        context = await self.acquire_context(deadline)
        try:
            yield context
        except asyncio.CancelledError:
            self.reclaim_in_background(context)
            raise
        except BaseException:
            await self.release_context(context)
            raise
        else:
            await self.release_context(context)

    def snapshot(self) -> dict:
        """Capacity figures for the health endpoint."""
        return {
            "instances": len(self._instances),
            "healthy_instances": sum(1 for i in self._instances if i.is_alive()),
            "active_contexts": self.active_contexts,
            "max_instances": self.max_instances,
            "max_contexts_per_instance": self.max_contexts_per_instance,
            "capacity": self.capacity,
            "backpressure_policy": self.backpressure_policy,
            "closing": self._closing,
            "last_error": self.last_error,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _reserve_slot(self, deadline: Deadline) -> EngineInstance:
        """Reserve one context slot, spawning an engine if the pool may grow."""
        async with self._condition:
            while True:
                if self._closing:
                    raise EngineUnavailable("Engine pool is shutting down")

                self._prune_dead()
                instance = self._pick_instance()
                if instance is not None:
                    instance.reserved += 1
                    return instance

                if len(self._instances) + self._spawning < self.max_instances:
                    self._spawning += 1
                    break

                if self.backpressure_policy == "fail_fast":
                    logger.warning("Engine pool at capacity, rejecting request")
                    raise PoolExhausted(f"All {self.capacity} render contexts are busy")

                await deadline.wait_for(
                    self._condition.wait(),
                    on_timeout=lambda: PoolExhausted(
                        f"No render context became free within {deadline.budget:g}s"
                    ),
                )

        try:
            instance = await deadline.wait_for(
                self._spawn_instance(),
                on_timeout=lambda: EngineUnavailable("Engine start timed out"),
            )
        except BaseException:
            async with self._condition:
                self._spawning -= 1
                self._condition.notify_all()
            raise

        async with self._condition:
            self._spawning -= 1
            if self._closing:
                self._condition.notify_all()
                closing = True
            else:
                closing = False
                instance.reserved += 1
                self._instances.append(instance)
                self._condition.notify_all()

        if closing:
            await best_effort(instance.close(), operation="close late engine", logger=logger)
            raise EngineUnavailable("Engine pool is shutting down")
        return instance

    def _pick_instance(self) -> Optional[EngineInstance]:
        """Least-loaded live instance with a free slot."""
        candidates = [i for i in self._instances if i.load < self.max_contexts_per_instance]
        if not candidates:
            return None
        return min(candidates, key=lambda i: i.load)

    def _prune_dead(self) -> None:
        """Drop crashed engines from the lending set; they respawn on demand."""
        for instance in list(self._instances):
            if instance.is_alive():
                continue
            logger.warning(f"Removing dead engine instance #{instance.instance_id}")
            self._instances.remove(instance)
            instance.retired = True
            self._retired.append(instance)
            self._retire_if_idle(instance)

    def _retire_if_idle(self, instance: EngineInstance) -> None:
        if not instance.retired or instance.load > 0 or instance not in self._retired:
            return
        self._retired.remove(instance)
        self._reap(
            best_effort(instance.close(), operation=f"close engine #{instance.instance_id}", logger=logger),
            name=f"close-engine-{instance.instance_id}",
        )

    async def _spawn_instance(self) -> EngineInstance:
        """Launch a browser, trying at most ``start_attempts`` times."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.start_attempts + 1):
            try:
                browser = await self._launch_browser()
            except Exception as e:
                last_error = e
                logger.warning(f"Engine launch attempt {attempt}/{self.start_attempts} failed: {e}")
                continue

            self._instance_seq += 1
            self.last_error = None
            logger.info(f"✅ Engine instance #{self._instance_seq} started")
            return EngineInstance(browser, self._instance_seq)

        self.last_error = str(last_error)
        logger.error(f"❌ Chromium failed to start after {self.start_attempts} attempt(s): {last_error}")
        raise EngineUnavailable(
            f"Rendering engine failed to start: {last_error}", cause=last_error
        )

    async def _launch_browser(self) -> Browser:
        if self._launcher is not None:
            return await self._launcher()

        async with self._driver_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(headless=self.headless, args=CHROMIUM_ARGS)

    async def _open_context(self, instance: EngineInstance) -> RenderContext:
        try:
            browser_context = await instance.browser.new_context()
        except Exception as e:
            # A still-connected engine keeps serving its other contexts
            if not instance.browser.is_connected():
                instance.healthy = False
            raise EngineUnavailable(
                f"Engine #{instance.instance_id} could not open a context: {e}", cause=e
            ) from e

        try:
            page = await browser_context.new_page()
        except asyncio.CancelledError:
            self._reap(
                best_effort(browser_context.close(), operation="close half-open context", logger=logger),
                name=f"close-half-open-context-{instance.instance_id}",
            )
            raise
        except Exception as e:
            await best_effort(browser_context.close(), operation="close half-open context", logger=logger)
            raise EngineUnavailable(f"Engine #{instance.instance_id} could not open a page: {e}", cause=e) from e

        page.set_default_timeout(self.context_timeout * 1000)
        self._context_seq += 1
        return RenderContext(
            instance=instance,
            browser_context=browser_context,
            page=page,
            timeout=self.context_timeout,
            context_id=self._context_seq,
        )
