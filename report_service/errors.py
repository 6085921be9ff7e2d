"""
Error taxonomy for the report PDF service.

Every failure a render job can hit is converted into one of the
ReportServiceError subclasses below at the stage where it happens. The
HTTP layer maps them to status codes; the orchestrator only ever sees
these types.
"""

import logging
from typing import Any, Awaitable, Optional, TypeVar

T = TypeVar("T")


class ReportServiceError(Exception):
    """
    Base class for every classified job failure.

    Attributes:
        category: Stable machine-readable name (e.g., "render_timeout")
        status_code: HTTP status surfaced to the client
        retryable: True when the client may safely resubmit the same job
    """

    category: str = "internal_error"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON responses and logs."""
        return {
            "error": self.message,
            "category": self.category,
            "retryable": self.retryable,
        }


class InvalidInput(ReportServiceError):
    """Request payload failed validation; nothing was acquired."""

    category = "invalid_input"
    status_code = 400


class PoolExhausted(ReportServiceError):
    """No render context could be obtained within the admission budget."""

    category = "pool_exhausted"
    status_code = 503
    retryable = True


class EngineUnavailable(ReportServiceError):
    """The rendering engine could not be started or is shutting down."""

    category = "engine_unavailable"


class RenderTimeout(ReportServiceError):
    """Content loading or PDF serialization overran the render budget."""

    category = "render_timeout"


class RenderFailure(ReportServiceError):
    """The engine crashed or failed to serialize the page."""

    category = "render_failure"


class PersistFailure(ReportServiceError):
    """The rendered PDF could not be written to the serving directory."""

    category = "persist_failure"


class UploadFailure(ReportServiceError):
    """The record store did not accept the attachment."""

    category = "upload_failure"


class OverallTimeout(ReportServiceError):
    """The whole-request deadline elapsed before the job finished."""

    category = "overall_timeout"
    status_code = 504


async def best_effort(
    awaitable: Awaitable[T],
    *,
    operation: str,
    logger: Optional[logging.Logger] = None,
    fallback: Any = None,
) -> T:
    """
    Await a cleanup step without letting its failure escape.

    Cleanup runs on paths that are already reporting an error (or already
    succeeded), so a failure here is logged and replaced by ``fallback``.

    Usage:
        await best_effort(page.close(), operation="close page", logger=logger)
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    try:
        return await awaitable
    except Exception as e:
        logger.warning(f"[{operation}] Failed: {e}")
        return fallback
