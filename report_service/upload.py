"""
Upload Coordinator - attaches a served PDF to an Airtable record.

Airtable fetches attachments by URL, so the "upload" is a single PATCH
that points the record's attachment field at the artifact's public URL.
The call is bounded by its own sub-deadline and never retried here; any
non-success is reported as an UploadOutcome for the orchestrator to roll
back.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from .artifact_store import Artifact
from .config import ServiceSettings
from .deadline import Deadline
from .errors import UploadFailure

logger = logging.getLogger(__name__)

MAX_ERROR_DETAIL_CHARS = 500


class UploadStatus(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"


@dataclass
class UploadOutcome:
    """Result of one attach call. Consumed immediately, never stored."""

    status: UploadStatus
    status_code: Optional[int] = None
    detail: Optional[str] = None
    elapsed: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == UploadStatus.SUCCESS

    def to_error(self) -> UploadFailure:
        """Convert a failed outcome into the error reported to the client."""
        if self.status == UploadStatus.REJECTED and self.status_code is not None:
            message = f"Airtable API returned {self.status_code}: {self.detail}"
        elif self.status == UploadStatus.TIMEOUT:
            message = f"Airtable update timed out: {self.detail}"
        else:
            message = f"Airtable update failed: {self.detail}"
        return UploadFailure(message)


class UploadCoordinator:
    """
    Pushes artifact URLs to Airtable.

    Args:
        settings: Airtable credentials, table/field names and upload timeout
        client: Optional pre-built httpx.AsyncClient (tests pass one with a MockTransport)
    """

    def __init__(self, settings: ServiceSettings, client: Optional[httpx.AsyncClient] = None):
        self.api_key = settings.airtable_api_key
        self.base_id = settings.airtable_base_id
        self.table_name = settings.airtable_table_name
        self.attachment_field = settings.airtable_attachment_field
        self.api_url = settings.airtable_api_url.rstrip("/")
        self.upload_timeout = settings.upload_timeout_seconds
        self._client = client
        self._owns_client = client is None

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.base_id)

    @property
    def endpoint(self) -> str:
        return f"{self.api_url}/{self.base_id}/{quote(self.table_name)}"

    async def start(self) -> None:
        self._get_client()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.upload_timeout)
        return self._client

    def build_payload(self, artifact: Artifact, record_id: str) -> Dict[str, Any]:
        return {
            "records": [
                {
                    "id": record_id,
                    "fields": {
                        self.attachment_field: [
                            {"url": artifact.url, "filename": artifact.filename}
                        ]
                    },
                }
            ]
        }

    async def attach(self, artifact: Artifact, record_id: str, deadline: Deadline) -> UploadOutcome:
        """
        Point the record's attachment field at ``artifact``.

        Returns an UploadOutcome for every ordinary failure.

        Raises:
            OverallTimeout: the request deadline, not the upload budget, ran out
        """
        if not self.configured:
            logger.error("Airtable upload skipped: AIRTABLE_API_KEY/AIRTABLE_BASE_ID not configured")
            return UploadOutcome(UploadStatus.REJECTED, detail="Airtable credentials not configured")

        stage = deadline.child(self.upload_timeout)
        started = time.monotonic()
        client = self._get_client()

        try:
            response = await stage.wait_for(
                client.patch(
                    self.endpoint,
                    json=self.build_payload(artifact, record_id),
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    timeout=stage.remaining(),
                ),
                on_timeout=lambda: UploadFailure(f"no response within {stage.budget:g}s"),
            )
        except UploadFailure as e:
            return self._failed(UploadStatus.TIMEOUT, artifact, started, detail=e.message)
        except httpx.TimeoutException as e:
            if stage.bound_by_root() and stage.expired():
                raise stage.timeout_error() from e
            return self._failed(UploadStatus.TIMEOUT, artifact, started, detail=str(e) or "request timed out")
        except httpx.HTTPError as e:
            return self._failed(UploadStatus.TRANSPORT_ERROR, artifact, started, detail=str(e) or type(e).__name__)

        elapsed = time.monotonic() - started
        if response.is_success:
            logger.info(f"Airtable record {record_id} updated with {artifact.filename} ({elapsed:.2f}s)")
            return UploadOutcome(UploadStatus.SUCCESS, status_code=response.status_code, elapsed=elapsed)

        return self._failed(
            UploadStatus.REJECTED,
            artifact,
            started,
            status_code=response.status_code,
            detail=response.text[:MAX_ERROR_DETAIL_CHARS],
        )

    def _failed(
        self,
        status: UploadStatus,
        artifact: Artifact,
        started: float,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> UploadOutcome:
        outcome = UploadOutcome(
            status,
            status_code=status_code,
            detail=detail,
            elapsed=time.monotonic() - started,
        )
        logger.error(f"Airtable upload error for {artifact.filename}: {outcome.to_error().message}")
        return outcome
