"""
Process-level wiring: builds every component once and ties their
lifecycles to service start and stop.
"""

import logging
from typing import Optional

import httpx

from .artifact_store import ArtifactStore
from .config import ServiceSettings
from .engine_pool import BrowserLauncher, EnginePool
from .orchestrator import RequestOrchestrator
from .render_executor import RenderExecutor
from .scheduler import DeferredScheduler
from .upload import UploadCoordinator

logger = logging.getLogger(__name__)


class ServiceRuntime:
    """Owner of the engine pool, artifact store, uploader and orchestrator."""

    def __init__(
        self,
        settings: ServiceSettings,
        launcher: Optional[BrowserLauncher] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.scheduler = DeferredScheduler()
        self.pool = EnginePool(settings, launcher=launcher)
        self.executor = RenderExecutor(self.pool, settings)
        self.store = ArtifactStore(settings, self.scheduler)
        self.uploader = UploadCoordinator(settings, client=http_client)
        self.orchestrator = RequestOrchestrator(
            self.pool, self.executor, self.store, self.uploader, settings
        )
        self.started = False

    async def start(self) -> None:
        self.store.ensure_directory()
        swept = await self.store.sweep_stale()
        if swept:
            logger.info(f"Removed {swept} artifact(s) left by a previous run")

        await self.uploader.start()

        try:
            await self.pool.start(prewarm=self.settings.engine_prewarm)
        except Exception as e:
            # Service stays up and reports unhealthy; the pool retries lazily
            logger.error(f"❌ Engine prewarm failed: {e}")
        self.started = True

    async def shutdown(self) -> None:
        """Drain renders, close engines, flush pending deletions, close HTTP client."""
        if not self.started:
            return
        await self.pool.shutdown()
        await self.scheduler.shutdown(run_pending=True)
        await self.uploader.aclose()
        self.started = False
        logger.info("Service runtime stopped")

    @property
    def engine_ready(self) -> bool:
        return self.started and self.pool.last_error is None
