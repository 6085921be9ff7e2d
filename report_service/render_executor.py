"""
Render Executor - HTML string in, PDF bytes out.

Output parameters are fixed policy (A4, backgrounds printed, 10mm margins)
so identical HTML always produces the same layout. The borrowed context is
torn down before ``render`` returns or raises; it is never handed back to
the pool half-used.
"""

import asyncio
import logging
import time

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .config import ServiceSettings
from .deadline import Deadline
from .engine_pool import EnginePool, RenderContext
from .errors import OverallTimeout, RenderFailure, RenderTimeout, ReportServiceError

logger = logging.getLogger(__name__)

PDF_FORMAT = "A4"
PDF_PRINT_BACKGROUND = True
PDF_MARGINS = {"top": "10mm", "right": "10mm", "bottom": "10mm", "left": "10mm"}


class RenderExecutor:
    """Turns HTML into PDF bytes inside a borrowed RenderContext."""

    def __init__(self, pool: EnginePool, settings: ServiceSettings):
        self._pool = pool
        self.render_timeout = settings.render_timeout_seconds
        self.load_timeout = settings.render_load_timeout_seconds

    async def render(self, context: RenderContext, html: str, deadline: Deadline) -> bytes:
        """
        Render ``html`` to a PDF within the render budget.

        Args:
            context: Context borrowed from the pool; always released here
            html: Complete HTML document or fragment
            deadline: Enclosing request deadline

        Returns:
            PDF bytes

        Raises:
            RenderTimeout: loading or serialization overran the render budget
            RenderFailure: engine crash or serialization error
            OverallTimeout: the request deadline ran out mid-render
        """
        stage = deadline.child(self.render_timeout)
        started = time.monotonic()

        try:
            pdf_bytes = await stage.wait_for(
                self._render_page(context.page, html),
                on_timeout=lambda: RenderTimeout(f"Rendering timed out after {stage.budget:g}s"),
            )
        except (OverallTimeout, asyncio.CancelledError):
            # Response must not wait on the engine; close the page off-path
            self._pool.reclaim_in_background(context)
            raise
        except ReportServiceError:
            await self._pool.release_context(context)
            raise
        except PlaywrightTimeoutError as e:
            await self._pool.release_context(context)
            raise RenderTimeout(f"Rendering timed out: {e}", cause=e) from e
        except Exception as e:
            await self._pool.release_context(context)
            logger.error(f"PDF rendering failed: {e}")
            raise RenderFailure(f"PDF generation failed: {e}", cause=e) from e

        await self._pool.release_context(context)

        if not pdf_bytes:
            raise RenderFailure("Engine returned an empty PDF")

        elapsed = time.monotonic() - started
        logger.info(f"Rendered {len(pdf_bytes)} byte PDF in {elapsed:.2f}s")
        return pdf_bytes

    async def _render_page(self, page: Page, html: str) -> bytes:
        await page.set_content(html, wait_until="load")

        # Give late network requests (fonts, images) a bounded chance to settle
        try:
            await page.wait_for_load_state("networkidle", timeout=self.load_timeout * 1000)
        except PlaywrightTimeoutError:
            logger.warning(
                f"Network not idle after {self.load_timeout:g}s; rendering what has loaded"
            )

        return await page.pdf(
            format=PDF_FORMAT,
            print_background=PDF_PRINT_BACKGROUND,
            margin=PDF_MARGINS,
        )
