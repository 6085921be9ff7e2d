"""
Request Orchestrator - the per-job state machine.

    received -> rendering -> persisted -> uploading -> cleanup -> completed
        |            |            |                        |
        +------------+------------+--> failed <------------+

Every stage runs against the job's single request deadline. Whatever a
failing job still holds (render context, persisted file) is reclaimed
before the result is returned, or in the background when the request
deadline is what failed.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from .artifact_store import Artifact, ArtifactStore
from .config import ServiceSettings
from .deadline import Deadline
from .engine_pool import EnginePool
from .errors import (
    InvalidInput,
    OverallTimeout,
    PersistFailure,
    ReportServiceError,
)
from .logger import JobLogger, get_logger
from .render_executor import RenderExecutor
from .upload import UploadCoordinator

MAX_RECORD_ID_LENGTH = 64
MAX_LABEL_LENGTH = 100


class JobState(str, Enum):
    RECEIVED = "received"
    RENDERING = "rendering"
    PERSISTED = "persisted"
    UPLOADING = "uploading"
    CLEANUP = "cleanup"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[JobState, Set[JobState]] = {
    JobState.RECEIVED: {JobState.RENDERING, JobState.FAILED},
    JobState.RENDERING: {JobState.PERSISTED, JobState.FAILED},
    JobState.PERSISTED: {JobState.UPLOADING, JobState.CLEANUP},
    JobState.UPLOADING: {JobState.CLEANUP},
    JobState.CLEANUP: {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}

TERMINAL_STATES = {JobState.COMPLETED, JobState.FAILED}


@dataclass
class RenderJob:
    """One submitted render request and its progress."""

    html: str
    record_id: str
    label: Optional[str]
    deadline: Deadline
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.RECEIVED
    history: List[JobState] = field(default_factory=lambda: [JobState.RECEIVED])
    artifact: Optional[Artifact] = None
    error: Optional[ReportServiceError] = None
    started_at: float = field(default_factory=time.monotonic)

    def transition(self, new_state: JobState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal job transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


@dataclass
class JobResult:
    """What the HTTP layer needs to answer the client."""

    job_id: str
    state: JobState
    history: List[JobState]
    elapsed: float
    artifact: Optional[Artifact] = None
    error: Optional[ReportServiceError] = None

    @property
    def succeeded(self) -> bool:
        return self.state == JobState.COMPLETED

    def to_dict(self) -> dict:
        if self.succeeded:
            return {
                "message": "PDF generated and attached successfully.",
                "job_id": self.job_id,
                "filename": self.artifact.filename,
                "url": self.artifact.url,
            }
        body = self.error.to_dict() if self.error else {"error": "Unknown failure", "category": "internal_error"}
        body["job_id"] = self.job_id
        return body


class RequestOrchestrator:
    """
    Sequences render -> persist -> upload for each job.

    Owns no resources itself; the pool, store and uploader are injected and
    their lifecycles belong to the caller.
    """

    def __init__(
        self,
        pool: EnginePool,
        executor: RenderExecutor,
        store: ArtifactStore,
        uploader: UploadCoordinator,
        settings: ServiceSettings,
    ):
        self._pool = pool
        self._executor = executor
        self._store = store
        self._uploader = uploader
        self.overall_deadline = settings.overall_deadline_seconds
        self.acquire_timeout = settings.acquire_timeout_seconds
        self.max_html_bytes = settings.max_html_bytes
        self.in_flight = 0
        self.completed = 0
        self.failed = 0

    async def submit(self, html: str, record_id: str, label: Optional[str] = None) -> JobResult:
        """Run one job to a terminal state. Taxonomy errors are returned, not raised."""
        job = RenderJob(
            html=html,
            record_id=record_id.strip() if isinstance(record_id, str) else record_id,
            label=label.strip() if isinstance(label, str) and label.strip() else None,
            deadline=Deadline(self.overall_deadline),
        )
        log = get_logger(
            __name__,
            job_id=job.job_id,
            record_id=job.record_id if isinstance(job.record_id, str) else None,
            state=lambda: job.state.value,
        )

        try:
            self._validate(html, record_id, label)
        except InvalidInput as e:
            log.warning(f"Rejected: {e.message}")
            job.error = e
            job.transition(JobState.FAILED)
            self.failed += 1
            return self._result(job)

        self.in_flight += 1
        try:
            await self._run(job, log)
        except ReportServiceError as e:
            await self._fail(job, e, log)
        except asyncio.CancelledError:
            log.warning(f"Cancelled in state {job.state.value}; reclaiming resources")
            self._abandon(job)
            raise
        except Exception as e:
            log.exception(f"Unexpected error in state {job.state.value}: {e}")
            await self._fail(job, ReportServiceError(f"Internal server error: {e}", cause=e), log)
        finally:
            self.in_flight -= 1

        if job.state == JobState.COMPLETED:
            self.completed += 1
        else:
            self.failed += 1
        return self._result(job)

    def snapshot(self) -> dict:
        return {"in_flight": self.in_flight, "completed": self.completed, "failed": self.failed}

    async def _run(self, job: RenderJob, log: JobLogger) -> None:
        log.info(f"Starting render (label={job.label!r}, {len(job.html)} chars)")

        async with self._pool.lease(job.deadline.child(self.acquire_timeout)) as context:
            job.transition(JobState.RENDERING)
            pdf_bytes = await self._executor.render(context, job.html, job.deadline)

        job.artifact = await job.deadline.wait_for(
            self._store.persist(pdf_bytes, job.record_id, job.label),
            on_timeout=lambda: PersistFailure("Writing the PDF timed out"),
        )
        job.transition(JobState.PERSISTED)

        job.transition(JobState.UPLOADING)
        outcome = await self._uploader.attach(job.artifact, job.record_id, job.deadline)
        if not outcome.succeeded:
            raise outcome.to_error()

        job.transition(JobState.CLEANUP)
        self._store.schedule_deletion(job.artifact)
        job.transition(JobState.COMPLETED)
        log.info(f"✅ Completed in {job.elapsed:.2f}s: {job.artifact.url}")

    async def _fail(self, job: RenderJob, error: ReportServiceError, log: JobLogger) -> None:
        job.error = error

        if job.artifact is not None:
            job.transition(JobState.CLEANUP)
            if isinstance(error, OverallTimeout):
                # Already past the deadline: answer now, delete off-path
                self._store.schedule_deletion(job.artifact, delay=0)
            else:
                await self._store.delete_now(job.artifact)

        job.transition(JobState.FAILED)
        log.error(f"❌ Failed after {job.elapsed:.2f}s [{error.category}]: {error.message}")

    def _abandon(self, job: RenderJob) -> None:
        """Cancelled mid-flight: schedule cleanup and mark the job failed."""
        if job.state in TERMINAL_STATES:
            return
        job.error = ReportServiceError("Request cancelled")
        if job.artifact is not None:
            if job.state != JobState.CLEANUP:
                job.transition(JobState.CLEANUP)
            self._store.schedule_deletion(job.artifact, delay=0)
            job.transition(JobState.FAILED)
        elif JobState.FAILED in ALLOWED_TRANSITIONS[job.state]:
            job.transition(JobState.FAILED)
        self.failed += 1

    def _validate(self, html, record_id, label) -> None:
        if not isinstance(html, str) or not html.strip():
            raise InvalidInput("htmlContent is required")
        if len(html.encode("utf-8")) > self.max_html_bytes:
            raise InvalidInput(f"htmlContent exceeds {self.max_html_bytes} bytes")
        if not isinstance(record_id, str) or not record_id.strip():
            raise InvalidInput("recordId is required")
        if len(record_id.strip()) > MAX_RECORD_ID_LENGTH or any(c in record_id for c in "/\\\0"):
            raise InvalidInput("recordId is malformed")
        if label is not None and not isinstance(label, str):
            raise InvalidInput("location must be a string")
        if isinstance(label, str) and len(label) > MAX_LABEL_LENGTH:
            raise InvalidInput(f"location exceeds {MAX_LABEL_LENGTH} characters")

    def _result(self, job: RenderJob) -> JobResult:
        return JobResult(
            job_id=job.job_id,
            state=job.state,
            history=list(job.history),
            elapsed=job.elapsed,
            artifact=job.artifact,
            error=job.error,
        )
