"""
test_translation_tracker.py — Unit tests for the translation job state machine.

Covers:
  - Job submission (SVF2 2D+3D, forced re-translation header, URN validation)
  - Manifest parsing (pending/inprogress → InProgress, success, failed, timeout)
  - Attempt counting and the TimedOut transition at exactly max_attempts
  - Transient poll errors and unreadable manifest bodies counted as missed attempts
  - Terminal states are sinks (no further remote calls)
  - Fixed-interval wait loop
  - JobRegistry adoption, grace-period and idle pruning
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import (
    BUCKET,
    MANIFEST_FAILED,
    MANIFEST_PENDING,
    MANIFEST_RUNNING,
    MANIFEST_SUCCESS,
)
from app.config import PipelineSettings
from app.models.pipeline_models import TranslationJob, TranslationStatus
from app.services.errors import SubmissionError, TranslationServiceError
from app.services.forge_upload import object_urn
from app.services.translation_tracker import (
    JobRegistry,
    TranslationTracker,
    decode_urn,
    parse_progress,
    public_status,
    status_from_manifest,
)

URN = object_urn(BUCKET, "shared-sample.ifc")


@pytest.fixture
def tracker(forge_settings, http_client, token_provider):
    return TranslationTracker(forge_settings, PipelineSettings(), http_client, token_provider)


def manifest_polls(fake_forge) -> int:
    return sum(1 for r in fake_forge.requests if r.url.path.endswith("/manifest"))


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestManifestParsing:

    @pytest.mark.parametrize("text,expected", [
        ("complete", 100),
        ("0% complete", 0),
        ("45% complete", 45),
        ("99% complete", 99),
        (None, 0),
        ("", 0),
        ("queued", 0),
    ])
    def test_parse_progress(self, text, expected):
        assert parse_progress(text) == expected

    def test_pending_is_in_progress(self):
        assert status_from_manifest(MANIFEST_PENDING)[0] == TranslationStatus.IN_PROGRESS

    def test_inprogress_carries_percent(self):
        assert status_from_manifest(MANIFEST_RUNNING) == (TranslationStatus.IN_PROGRESS, 45)

    def test_success(self):
        assert status_from_manifest(MANIFEST_SUCCESS) == (TranslationStatus.SUCCESS, 100)

    def test_failed(self):
        assert status_from_manifest(MANIFEST_FAILED)[0] == TranslationStatus.FAILED

    def test_remote_timeout_is_failure(self):
        assert status_from_manifest({"status": "timeout"})[0] == TranslationStatus.FAILED

    def test_failed_derivative_fails_job(self):
        manifest = {"status": "inprogress", "derivatives": [{"status": "failed"}]}
        assert status_from_manifest(manifest)[0] == TranslationStatus.FAILED


class TestUrnValidation:

    def test_decode_roundtrip(self):
        assert decode_urn(URN) == f"urn:adsk.objects:os.object:{BUCKET}/shared-sample.ifc"

    @pytest.mark.parametrize("bad", ["", "not a urn!", "@@@", "aGVsbG8"])
    def test_malformed(self, bad):
        with pytest.raises(SubmissionError):
            decode_urn(bad)


class TestPublicStatus:

    @pytest.mark.parametrize("status,expected", [
        (TranslationStatus.SUBMITTED, "pending"),
        (TranslationStatus.IN_PROGRESS, "pending"),
        (TranslationStatus.SUCCESS, "success"),
        (TranslationStatus.FAILED, "failed"),
        (TranslationStatus.TIMED_OUT, "timeout"),
    ])
    def test_status_strings(self, status, expected):
        job = TranslationJob(urn=URN, status=status)
        assert public_status(job)["status"] == expected


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

class TestSubmit:

    @pytest.mark.asyncio
    async def test_submit_returns_submitted_job(self, tracker, fake_forge):
        job = await tracker.submit(URN)
        assert job.status == TranslationStatus.SUBMITTED
        assert job.poll_attempts == 0
        assert job.max_attempts == 60
        assert job.submit_result == "created"

    @pytest.mark.asyncio
    async def test_submit_requests_svf2_with_force(self, tracker, fake_forge):
        await tracker.submit(URN)
        sent = fake_forge.jobs[0]
        assert sent["body"]["input"]["urn"] == URN
        assert sent["body"]["output"]["formats"] == [{"type": "svf2", "views": ["2d", "3d"]}]
        assert sent["headers"]["x-ads-force"] == "true"

    @pytest.mark.asyncio
    async def test_existing_derivatives_reported(self, tracker, fake_forge):
        fake_forge.job_result = "success"
        job = await tracker.submit(URN)
        assert job.submit_result == "success"

    @pytest.mark.asyncio
    async def test_malformed_urn_makes_no_remote_call(self, tracker, fake_forge):
        with pytest.raises(SubmissionError):
            await tracker.submit("not-base64!")
        assert fake_forge.network_calls == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 406, 415, 422])
    async def test_rejected_job(self, tracker, fake_forge, status):
        fake_forge.job_status = status
        with pytest.raises(SubmissionError) as exc_info:
            await tracker.submit(URN)
        assert "Unsupported source format" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_server_error(self, tracker, fake_forge):
        fake_forge.job_status = 503
        with pytest.raises(TranslationServiceError):
            await tracker.submit(URN)


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

class TestPoll:

    @pytest.mark.asyncio
    async def test_pending_moves_to_in_progress(self, tracker, fake_forge):
        job = tracker.new_job(URN)
        await tracker.poll(job)
        assert job.status == TranslationStatus.IN_PROGRESS
        assert job.poll_attempts == 1
        assert job.last_polled_at is not None

    @pytest.mark.asyncio
    async def test_progress_tracked(self, tracker, fake_forge):
        fake_forge.manifests = [MANIFEST_RUNNING]
        job = tracker.new_job(URN)
        await tracker.poll(job)
        assert job.progress_percent == 45

    @pytest.mark.asyncio
    async def test_success(self, tracker, fake_forge):
        fake_forge.manifests = [MANIFEST_RUNNING, MANIFEST_SUCCESS]
        job = tracker.new_job(URN)
        await tracker.poll(job)
        await tracker.poll(job)
        assert job.status == TranslationStatus.SUCCESS
        assert job.progress_percent == 100
        assert job.finished_at is not None

    @pytest.mark.asyncio
    async def test_failed_keeps_messages(self, tracker, fake_forge):
        fake_forge.manifests = [MANIFEST_FAILED]
        job = tracker.new_job(URN)
        await tracker.poll(job)
        assert job.status == TranslationStatus.FAILED
        assert job.messages[0]["code"] == "TranslationWorker-InternalFailure"

    @pytest.mark.asyncio
    async def test_attempts_count_every_call(self, tracker, fake_forge):
        job = tracker.new_job(URN)
        for _ in range(7):
            await tracker.poll(job)
        assert job.poll_attempts == 7
        assert job.status == TranslationStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_times_out_exactly_at_max_attempts(self, tracker, fake_forge):
        job = tracker.new_job(URN)
        for _ in range(59):
            await tracker.poll(job)
        assert job.poll_attempts == 59
        assert job.status == TranslationStatus.IN_PROGRESS

        await tracker.poll(job)
        assert job.poll_attempts == 60
        assert job.status == TranslationStatus.TIMED_OUT

    @pytest.mark.asyncio
    async def test_success_on_last_attempt_is_not_timeout(self, tracker, fake_forge):
        fake_forge.manifests = [MANIFEST_PENDING] * 59 + [MANIFEST_SUCCESS]
        job = tracker.new_job(URN)
        for _ in range(60):
            await tracker.poll(job)
        assert job.status == TranslationStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_terminal_job_is_not_polled_again(self, tracker, fake_forge):
        fake_forge.manifests = [MANIFEST_SUCCESS]
        job = tracker.new_job(URN)
        await tracker.poll(job)
        await tracker.poll(job)
        await tracker.poll(job)
        assert job.poll_attempts == 1
        assert manifest_polls(fake_forge) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [500, 502, 503, 429])
    async def test_transient_error_is_missed_attempt(self, tracker, fake_forge, code):
        fake_forge.manifests = [code, MANIFEST_SUCCESS]
        job = tracker.new_job(URN)
        await tracker.poll(job)
        assert job.status == TranslationStatus.SUBMITTED
        assert job.poll_attempts == 1
        await tracker.poll(job)
        assert job.status == TranslationStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_missing_manifest_is_still_pending(self, tracker, fake_forge):
        fake_forge.manifests = [404]
        job = tracker.new_job(URN)
        await tracker.poll(job)
        assert job.status == TranslationStatus.SUBMITTED
        assert not job.is_terminal

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        "<html><body>Gateway hiccup</body></html>",
        "[]",
        '"pending"',
    ])
    async def test_unreadable_manifest_is_missed_attempt(self, tracker, fake_forge, body):
        fake_forge.manifests = [body, MANIFEST_SUCCESS]
        job = tracker.new_job(URN)
        await tracker.poll(job)
        assert job.status == TranslationStatus.SUBMITTED
        assert job.poll_attempts == 1
        await tracker.poll(job)
        assert job.status == TranslationStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_errors_until_exhaustion_time_out(self, forge_settings, http_client, token_provider, fake_forge):
        tracker = TranslationTracker(
            forge_settings, PipelineSettings(poll_max_attempts=3), http_client, token_provider
        )
        fake_forge.manifests = [500]
        job = tracker.new_job(URN)
        for _ in range(3):
            await tracker.poll(job)
        assert job.status == TranslationStatus.TIMED_OUT


class TestWaitForCompletion:

    @pytest.mark.asyncio
    async def test_fixed_interval_between_polls(self, forge_settings, http_client, token_provider, fake_forge):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        tracker = TranslationTracker(
            forge_settings, PipelineSettings(), http_client, token_provider, sleep=fake_sleep
        )
        fake_forge.manifests = [MANIFEST_PENDING, MANIFEST_RUNNING, MANIFEST_RUNNING, MANIFEST_SUCCESS]
        job = await tracker.wait_for_completion(tracker.new_job(URN))
        assert job.status == TranslationStatus.SUCCESS
        assert job.poll_attempts == 4
        assert sleeps == [30.0, 30.0, 30.0]

    @pytest.mark.asyncio
    async def test_on_poll_sees_every_reading(self, forge_settings, http_client, token_provider, fake_forge):
        async def no_sleep(seconds):
            return None

        tracker = TranslationTracker(
            forge_settings, PipelineSettings(poll_max_attempts=5), http_client, token_provider, sleep=no_sleep
        )
        seen = []

        async def on_poll(job):
            seen.append(job.status)

        job = await tracker.wait_for_completion(tracker.new_job(URN), on_poll=on_poll)
        assert job.status == TranslationStatus.TIMED_OUT
        assert len(seen) == 5
        assert seen[-1] == TranslationStatus.TIMED_OUT


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TestJobRegistry:

    def test_adopts_unknown_urn_as_submitted(self, tracker):
        registry = JobRegistry(grace_seconds=3600)
        job = registry.get_or_adopt(URN, tracker)
        assert job.status == TranslationStatus.SUBMITTED
        assert registry.get_or_adopt(URN, tracker) is job

    def test_adopt_rejects_malformed_urn(self, tracker):
        registry = JobRegistry(grace_seconds=3600)
        with pytest.raises(SubmissionError):
            registry.get_or_adopt("%%%", tracker)
        assert len(registry) == 0

    def test_timed_out_dropped_immediately(self):
        registry = JobRegistry(grace_seconds=3600)
        registry.put(TranslationJob(urn=URN, status=TranslationStatus.TIMED_OUT))
        assert registry.get(URN) is None

    def test_finished_job_kept_within_grace(self):
        now = datetime.now(timezone.utc)
        registry = JobRegistry(grace_seconds=3600, clock=lambda: now.timestamp())
        registry.put(TranslationJob(urn=URN, status=TranslationStatus.SUCCESS, finished_at=now - timedelta(minutes=30)))
        assert registry.get(URN) is not None

    def test_finished_job_pruned_after_grace(self):
        now = datetime.now(timezone.utc)
        registry = JobRegistry(grace_seconds=3600, clock=lambda: now.timestamp())
        registry.put(TranslationJob(urn=URN, status=TranslationStatus.FAILED, finished_at=now - timedelta(hours=2)))
        assert registry.get(URN) is None

    def test_recently_polled_jobs_kept(self):
        registry = JobRegistry(grace_seconds=0)
        registry.put(TranslationJob(urn=URN, status=TranslationStatus.IN_PROGRESS))
        assert registry.prune() == 0
        assert len(registry) == 1

    def test_idle_unfinished_jobs_pruned(self):
        now = datetime.now(timezone.utc)
        registry = JobRegistry(grace_seconds=3600, idle_seconds=1800, clock=lambda: now.timestamp())
        stale = TranslationJob(
            urn=URN,
            status=TranslationStatus.IN_PROGRESS,
            submitted_at=now - timedelta(hours=3),
            last_polled_at=now - timedelta(hours=1),
        )
        other = object_urn(BUCKET, "shared-other.ifc")
        fresh = TranslationJob(urn=other, submitted_at=now - timedelta(hours=3), last_polled_at=now)
        registry.put(stale)
        registry.put(fresh)
        assert registry.prune() == 1
        assert registry.get(URN) is None
        assert registry.get(other) is fresh

    def test_never_polled_job_ages_from_submission(self):
        now = datetime.now(timezone.utc)
        registry = JobRegistry(grace_seconds=3600, idle_seconds=1800, clock=lambda: now.timestamp())
        registry.put(TranslationJob(urn=URN, submitted_at=now - timedelta(hours=1)))
        assert registry.get(URN) is None

    def test_pruned_urn_adopted_again(self, tracker):
        now = datetime.now(timezone.utc)
        registry = JobRegistry(grace_seconds=3600, idle_seconds=1800, clock=lambda: now.timestamp())
        registry.put(TranslationJob(urn=URN, poll_attempts=7, submitted_at=now - timedelta(hours=1)))
        job = registry.get_or_adopt(URN, tracker)
        assert job.poll_attempts == 0
        assert len(registry) == 1
