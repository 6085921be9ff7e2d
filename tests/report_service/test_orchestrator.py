"""
Unit tests for report_service/orchestrator.py

End-to-end job flows against fake Chromium and fake Airtable: the happy
path, validation, upload rollback, concurrent jobs for one record and
resource reclamation on timeouts and cancellation.
"""

import asyncio

import pytest

from report_service.errors import (
    InvalidInput,
    OverallTimeout,
    PoolExhausted,
    RenderTimeout,
    UploadFailure,
)
from report_service.orchestrator import JobState, RenderJob
from report_service.deadline import Deadline

from .conftest import FakeLauncher

HTML = "<html><body><h1>Patrol report</h1><p>All clear.</p></body></html>"


@pytest.fixture
def runtime(make_runtime, settings):
    return make_runtime(settings)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_job_completes_and_file_expires_after_window(self, runtime, airtable, serving_files):
        result = await runtime.orchestrator.submit(HTML, "rec1", "Main Gate")

        assert result.succeeded
        assert result.history == [
            JobState.RECEIVED,
            JobState.RENDERING,
            JobState.PERSISTED,
            JobState.UPLOADING,
            JobState.CLEANUP,
            JobState.COMPLETED,
        ]
        assert result.artifact.exists()
        assert serving_files() == [result.artifact.filename]
        assert len(airtable.requests) == 1

        body = result.to_dict()
        assert body["filename"] == result.artifact.filename
        assert body["url"].startswith("https://reports.example.com/public/Report-")

        # Serving window elapses
        await runtime.scheduler.run_pending()
        assert serving_files() == []
        await runtime.pool.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_jobs_for_same_record_do_not_collide(self, runtime, airtable, serving_files):
        first, second = await asyncio.gather(
            runtime.orchestrator.submit(HTML, "rec1", "Gate"),
            runtime.orchestrator.submit(HTML, "rec1", "Gate"),
        )

        assert first.succeeded and second.succeeded
        assert first.artifact.filename != second.artifact.filename
        assert len(serving_files()) == 2
        assert len(airtable.requests) == 2
        runtime.scheduler.cancel_all()
        await runtime.pool.shutdown()

    @pytest.mark.asyncio
    async def test_counters(self, runtime):
        await runtime.orchestrator.submit(HTML, "rec1")
        await runtime.orchestrator.submit("", "rec1")

        assert runtime.orchestrator.snapshot() == {"in_flight": 0, "completed": 1, "failed": 1}
        runtime.scheduler.cancel_all()
        await runtime.pool.shutdown()


class TestValidation:
    @pytest.mark.asyncio
    async def test_empty_html_rejected_before_any_engine_work(self, runtime, launcher, airtable, serving_files):
        result = await runtime.orchestrator.submit("", "rec1")

        assert isinstance(result.error, InvalidInput)
        assert result.history == [JobState.RECEIVED, JobState.FAILED]
        assert result.to_dict()["category"] == "invalid_input"
        assert launcher.calls == 0
        assert airtable.requests == []
        assert serving_files() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "record_id",
        [None, "", "   ", "../etc", "a" * 65],
    )
    async def test_bad_record_ids_rejected(self, runtime, launcher, record_id):
        result = await runtime.orchestrator.submit(HTML, record_id)

        assert isinstance(result.error, InvalidInput)
        assert launcher.calls == 0

    @pytest.mark.asyncio
    async def test_oversized_html_rejected(self, make_runtime, make_settings, launcher):
        runtime = make_runtime(make_settings(max_html_bytes=32))

        result = await runtime.orchestrator.submit("<p>" + "x" * 64 + "</p>", "rec1")

        assert isinstance(result.error, InvalidInput)
        assert launcher.calls == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_upload_rejection_removes_file(self, runtime, airtable, serving_files):
        airtable.status_code = 403

        result = await runtime.orchestrator.submit(HTML, "rec1")

        assert isinstance(result.error, UploadFailure)
        assert result.history[-3:] == [JobState.UPLOADING, JobState.CLEANUP, JobState.FAILED]
        assert serving_files() == []
        assert runtime.scheduler.pending() == []
        await runtime.pool.shutdown()

    @pytest.mark.asyncio
    async def test_stalled_upload_fails_within_upload_budget(self, make_runtime, make_settings, airtable, serving_files):
        runtime = make_runtime(make_settings(upload_timeout_seconds=0.2))
        airtable.delay = 0.5

        result = await runtime.orchestrator.submit(HTML, "rec1")

        assert isinstance(result.error, UploadFailure)
        assert result.elapsed < 0.2 + 0.25
        assert serving_files() == []
        await runtime.pool.shutdown()

    @pytest.mark.asyncio
    async def test_render_timeout_leaves_nothing_behind(self, make_runtime, make_settings, serving_files):
        launcher = FakeLauncher(pdf_delay=1.0)
        runtime = make_runtime(make_settings(render_timeout_seconds=0.1), launcher_override=launcher)

        result = await runtime.orchestrator.submit(HTML, "rec1")

        assert isinstance(result.error, RenderTimeout)
        assert result.elapsed < 0.1 + 0.25
        assert result.history == [JobState.RECEIVED, JobState.RENDERING, JobState.FAILED]
        assert serving_files() == []
        assert launcher.open_contexts == []
        await runtime.pool.shutdown()

    @pytest.mark.asyncio
    async def test_pool_exhausted_under_fail_fast(self, make_runtime, make_settings, launcher):
        runtime = make_runtime(make_settings(max_contexts_per_instance=1, backpressure_policy="fail_fast"))
        held = await runtime.pool.acquire_context(Deadline(1.0))

        result = await runtime.orchestrator.submit(HTML, "rec1")

        assert isinstance(result.error, PoolExhausted)
        assert result.to_dict()["retryable"] is True
        assert result.history == [JobState.RECEIVED, JobState.FAILED]
        assert launcher.open_contexts == [held.browser_context]
        await runtime.pool.release_context(held)
        await runtime.pool.shutdown()

    @pytest.mark.asyncio
    async def test_overall_deadline_during_upload(self, make_runtime, make_settings, airtable, serving_files):
        launcher = FakeLauncher(pdf_delay=0.15)
        runtime = make_runtime(
            make_settings(overall_deadline_seconds=0.3, upload_timeout_seconds=0.25),
            launcher_override=launcher,
        )
        airtable.delay = 2.0

        result = await runtime.orchestrator.submit(HTML, "rec1")

        assert isinstance(result.error, OverallTimeout)
        assert result.error.status_code == 504
        assert result.elapsed < 0.3 + 0.2

        # Artifact removal runs off the response path
        await asyncio.sleep(0.1)
        assert serving_files() == []
        await runtime.pool.shutdown()

    @pytest.mark.asyncio
    async def test_cancelled_job_releases_context(self, make_runtime, settings, serving_files):
        launcher = FakeLauncher(pdf_delay=1.0)
        runtime = make_runtime(settings, launcher_override=launcher)

        task = asyncio.create_task(runtime.orchestrator.submit(HTML, "rec1"))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.05)
        assert launcher.open_contexts == []
        assert runtime.pool.active_contexts == 0
        assert serving_files() == []
        await runtime.pool.shutdown()


class TestRenderJob:
    def test_illegal_transition_rejected(self):
        job = RenderJob(html=HTML, record_id="rec1", label=None, deadline=Deadline(1.0))

        with pytest.raises(RuntimeError):
            job.transition(JobState.COMPLETED)

    def test_upload_cannot_be_skipped_to_completed(self):
        job = RenderJob(html=HTML, record_id="rec1", label=None, deadline=Deadline(1.0))
        job.transition(JobState.RENDERING)
        job.transition(JobState.PERSISTED)

        with pytest.raises(RuntimeError):
            job.transition(JobState.COMPLETED)
