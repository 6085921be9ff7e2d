"""
Report Service - FastAPI application.

Renders patrol report HTML to PDF with a shared Chromium pool, serves the
file for a short window under /public, and attaches it to the matching
Airtable record.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from . import __version__
from .auth import verify_token
from .config import ServiceSettings, get_settings, validate_config_on_startup
from .logger import setup_logging
from .runtime import ServiceRuntime

logger = logging.getLogger(__name__)


# ============================================================================
# Request/Response Models
# ============================================================================

class GeneratePDFRequest(BaseModel):
    """Render job submitted by the caller. camelCase field names are what existing callers send."""

    htmlContent: Optional[str] = Field(None, description="HTML document to render")
    recordId: Optional[str] = Field(None, description="Airtable record to attach the PDF to")
    location: Optional[str] = Field(
        None,
        description="Optional label (patrol location) used in the file name",
    )
    label: Optional[str] = Field(None, description="Alias of location")

    @property
    def effective_label(self) -> Optional[str]:
        return self.location if self.location is not None else self.label


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    timestamp: datetime
    engine_ready: bool
    engine_error: Optional[str] = None
    pool: dict
    jobs: dict
    pending_deletions: int


# ============================================================================
# Application factory
# ============================================================================

def create_app(
    settings: Optional[ServiceSettings] = None,
    runtime: Optional[ServiceRuntime] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        settings: Validated settings (defaults to environment)
        runtime: Pre-built runtime; tests inject one with fake engines
    """
    settings = settings or (runtime.settings if runtime else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_format)
        validate_config_on_startup(settings)
        logger.info(f"Report service {__version__} starting")

        app.state.runtime = runtime or ServiceRuntime(settings)
        await app.state.runtime.start()
        try:
            yield
        finally:
            logger.info("Report service shutting down")
            await app.state.runtime.shutdown()

    app = FastAPI(
        title="Report PDF Service",
        version=__version__,
        description="Renders HTML reports to PDF and attaches them to Airtable records",
        lifespan=lifespan,
    )

    if settings.serving_path:
        app.mount(
            settings.serving_path,
            StaticFiles(directory=settings.serving_dir, check_dir=False),
            name="public",
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) for err in exc.errors())
        return JSONResponse(
            status_code=400,
            content={"error": f"Invalid request body: {fields or 'malformed JSON'}", "category": "invalid_input"},
        )

    # ------------------------------------------------------------------------
    # Health Check Endpoint
    # ------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request) -> HealthResponse:
        """
        Health check endpoint for container orchestration.

        Returns HTTP 503 if the rendering engine failed to start.
        """
        rt: ServiceRuntime = request.app.state.runtime
        body = {
            "timestamp": datetime.now(timezone.utc),
            "engine_ready": rt.engine_ready,
            "engine_error": rt.pool.last_error,
            "pool": rt.pool.snapshot(),
            "jobs": rt.orchestrator.snapshot(),
            "pending_deletions": len(rt.scheduler.pending()),
        }

        if not rt.engine_ready:
            body["status"] = "unhealthy"
            body["timestamp"] = body["timestamp"].isoformat()
            raise HTTPException(status_code=503, detail=body)

        return HealthResponse(status="healthy", **body)

    # ------------------------------------------------------------------------
    # PDF Generation Endpoint
    # ------------------------------------------------------------------------

    @app.post("/generate-pdf", dependencies=[Depends(verify_token)])
    async def generate_pdf(payload: GeneratePDFRequest, request: Request):
        """
        Render ``htmlContent`` to PDF and attach it to ``recordId``.

        Returns:
            200 on success; 400 invalid input; 401 bad token;
            503 pool exhausted (retry later); 504 request deadline;
            500 for every other failure
        """
        rt: ServiceRuntime = request.app.state.runtime
        result = await rt.orchestrator.submit(
            payload.htmlContent, payload.recordId, payload.effective_label
        )

        if result.succeeded:
            return JSONResponse(status_code=200, content=result.to_dict())

        error = result.error
        headers = {"Retry-After": "5"} if error is not None and error.retryable else None
        status_code = error.status_code if error is not None else 500
        return JSONResponse(status_code=status_code, content=result.to_dict(), headers=headers)

    return app


app = create_app()
