"""
Translation job tracker — submits Model Derivative jobs and polls manifests.

State machine:
    Submitted → InProgress → {Success, Failed}
    Submitted/InProgress → TimedOut   (poll_attempts reached max_attempts)

TimedOut means we stopped waiting, not that the remote job failed; the remote
translation keeps running. There is no remote cancel. A single failed status
request counts as a missed attempt, never as a job failure.
"""
import asyncio
import base64
import binascii
import logging
import re
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import httpx

from app.config import POLL_INTERVAL_SECONDS, POLL_MAX_ATTEMPTS, ForgeSettings, PipelineSettings
from app.models.pipeline_models import TERMINAL_STATUSES, TranslationJob, TranslationStatus
from app.services.errors import CredentialError, SubmissionError, TranslationServiceError
from app.services.forge_auth import ForgeTokenProvider
from app.services.perf_monitor import tracker as perf_tracker

logger = logging.getLogger("estimate-forge.translation")

JOB_PATH = "/modelderivative/v2/designdata/job"
MANIFEST_PATH = "/modelderivative/v2/designdata/{urn}/manifest"

_URN_CHARS = re.compile(r"^[A-Za-z0-9_\-+/]+={0,2}$")
_PROGRESS = re.compile(r"(\d{1,3})\s*%")

Sleeper = Callable[[float], Awaitable[None]]


def decode_urn(urn: str) -> str:
    """Return the object id behind a base64 URN, or raise SubmissionError."""
    if not urn or not _URN_CHARS.match(urn):
        raise SubmissionError(f"Malformed URN '{urn[:40]}'")
    padded = urn + "=" * (-len(urn) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.replace("+", "-").replace("/", "_")).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise SubmissionError(f"Malformed URN '{urn[:40]}': {e}") from e
    if not decoded.startswith("urn:"):
        raise SubmissionError(f"URN does not encode an object id: '{urn[:40]}'")
    return decoded


def parse_progress(progress: Optional[str]) -> int:
    """Manifest progress is either 'complete' or 'NN% complete'."""
    if not progress:
        return 0
    if progress.strip().lower() == "complete":
        return 100
    match = _PROGRESS.search(progress)
    return min(100, int(match.group(1))) if match else 0


def status_from_manifest(manifest: dict) -> tuple[TranslationStatus, int]:
    """
    Map a Model Derivative manifest to (status, percent).
    'pending' and 'inprogress' are indistinguishable to callers: both InProgress.
    A remote 'timeout' is the service giving up, so it is Failed here.
    """
    overall = str(manifest.get("status") or "pending").lower()
    derivatives = manifest.get("derivatives") or []
    derivative_statuses = {str(d.get("status", "")).lower() for d in derivatives if isinstance(d, dict)}
    percent = parse_progress(manifest.get("progress"))

    if overall in ("failed", "timeout") or "failed" in derivative_statuses:
        return TranslationStatus.FAILED, percent
    if overall == "success":
        return TranslationStatus.SUCCESS, 100
    return TranslationStatus.IN_PROGRESS, percent


def public_status(job: TranslationJob) -> dict:
    """Status endpoint contract. Never prose; the UI formats messages."""
    if job.status == TranslationStatus.SUCCESS:
        status = "success"
    elif job.status == TranslationStatus.FAILED:
        status = "failed"
    elif job.status == TranslationStatus.TIMED_OUT:
        status = "timeout"
    else:
        status = "pending"
    return {
        "status": status,
        "progress": job.progress_percent,
        "pollAttempts": job.poll_attempts,
        "maxAttempts": job.max_attempts,
    }


class TranslationTracker:
    def __init__(
        self,
        forge: ForgeSettings,
        pipeline: PipelineSettings,
        client: httpx.AsyncClient,
        tokens: ForgeTokenProvider,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.forge = forge
        self.pipeline = pipeline
        self._client = client
        self._tokens = tokens
        self._sleep = sleep

    def new_job(self, urn: str) -> TranslationJob:
        return TranslationJob(urn=urn, max_attempts=self.pipeline.poll_max_attempts)

    # ── Submit ─────────────────────────────────────────────────────────────────

    async def submit(self, urn: str) -> TranslationJob:
        """Register `urn` for SVF2 conversion. Returns a job in Submitted."""
        decode_urn(urn)
        token = (await self._tokens.get_access_token()).access_token
        body = {
            "input": {"urn": urn},
            "output": {"formats": [{"type": "svf2", "views": ["2d", "3d"]}]},
        }
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if self.forge.force_translation:
            headers["x-ads-force"] = "true"

        started = time.perf_counter()
        try:
            response = await self._client.post(
                f"{self.forge.base_url}{JOB_PATH}",
                json=body,
                headers=headers,
                timeout=self.forge.request_timeout_seconds,
            )
        except httpx.HTTPError as e:
            perf_tracker.record_stage_error("translation_submit")
            raise TranslationServiceError(f"Translation job request failed: {e}") from e

        if response.status_code in (401, 403):
            self._tokens.invalidate()
            raise CredentialError(f"Translation service refused the token ({response.status_code})")
        if 400 <= response.status_code < 500:
            perf_tracker.record_stage_error("translation_submit")
            detail = _detail(response)
            logger.warning(f"Translation rejected for {urn} ({response.status_code}): {detail}")
            raise SubmissionError(f"Translation rejected: {detail}")
        if response.status_code >= 500:
            perf_tracker.record_stage_error("translation_submit")
            raise TranslationServiceError(
                f"Translation service error {response.status_code}",
                remote_status=response.status_code,
            )

        job = self.new_job(urn)
        job.submit_result = str(response.json().get("result", "created"))
        perf_tracker.record_stage_duration(
            "translation_submit", round((time.perf_counter() - started) * 1000, 2)
        )
        logger.info(f"Translation job submitted (result={job.submit_result})", extra={"urn": urn})
        return job

    # ── Poll ───────────────────────────────────────────────────────────────────

    async def _fetch_manifest(self, urn: str) -> Optional[dict]:
        """One status request. None means 'no manifest yet'."""
        token = (await self._tokens.get_access_token()).access_token
        response = await self._client.get(
            f"{self.forge.base_url}{MANIFEST_PATH.format(urn=urn)}",
            headers={"Authorization": f"Bearer {token}"},
            timeout=self.forge.request_timeout_seconds,
        )
        if response.status_code == 404:
            return None
        if response.status_code == 401:
            self._tokens.invalidate()
        response.raise_for_status()
        try:
            manifest = response.json()
        except ValueError as e:
            raise TranslationServiceError(
                f"Manifest body is not JSON: {response.text[:80]!r}", response.status_code
            ) from e
        if not isinstance(manifest, dict):
            logger.warning(f"Ignoring non-object manifest ({type(manifest).__name__})", extra={"urn": urn})
            return None
        return manifest

    async def poll(self, job: TranslationJob) -> TranslationJob:
        """Query the remote status once and advance the state machine."""
        if job.status in TERMINAL_STATUSES:
            return job

        job.poll_attempts += 1
        job.last_polled_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        try:
            manifest = await self._fetch_manifest(job.urn)
        except (httpx.HTTPError, TranslationServiceError) as e:
            perf_tracker.record_stage_error("translation_poll")
            logger.warning(
                f"Status check {job.poll_attempts}/{job.max_attempts} missed: {e}",
                extra={"urn": job.urn},
            )
            manifest = None
        else:
            perf_tracker.record_stage_duration(
                "translation_poll", round((time.perf_counter() - started) * 1000, 2)
            )

        if manifest is not None:
            status, percent = status_from_manifest(manifest)
            job.progress_percent = max(job.progress_percent, percent)
            job.messages = list(manifest.get("messages") or [])
            if status == TranslationStatus.IN_PROGRESS:
                if job.status == TranslationStatus.SUBMITTED:
                    job.transition(TranslationStatus.IN_PROGRESS)
            else:
                job.transition(status)
                logger.info(f"Translation {status.value}", extra={"urn": job.urn})

        if not job.is_terminal and job.poll_attempts >= job.max_attempts:
            job.transition(TranslationStatus.TIMED_OUT)
            logger.warning(
                f"Stopped waiting after {job.poll_attempts} status checks; remote job may still finish",
                extra={"urn": job.urn},
            )
        return job

    async def wait_for_completion(
        self,
        job: TranslationJob,
        on_poll: Optional[Callable[[TranslationJob], Awaitable[None]]] = None,
    ) -> TranslationJob:
        """
        Drive poll() on the fixed interval until a terminal status.
        The interval is policy, not adaptive: the remote queue is the bottleneck.
        Cancelling this coroutine only stops our waiting.
        """
        while True:
            await self.poll(job)
            if on_poll is not None:
                await on_poll(job)
            if job.is_terminal:
                return job
            await self._sleep(self.pipeline.poll_interval_seconds)


class JobRegistry:
    """
    In-memory URN → TranslationJob map for the status / extract routes.
    Terminal jobs are dropped after the grace period; TimedOut immediately.
    Unfinished jobs nobody has polled for idle_seconds are dropped too; a
    later status call simply adopts the URN again.
    """

    def __init__(
        self,
        grace_seconds: float,
        idle_seconds: float = POLL_INTERVAL_SECONDS * POLL_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ):
        self.grace_seconds = grace_seconds
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._jobs: dict[str, TranslationJob] = {}

    def put(self, job: TranslationJob) -> None:
        self._jobs[job.urn] = job

    def get(self, urn: str) -> Optional[TranslationJob]:
        self.prune()
        return self._jobs.get(urn)

    def get_or_adopt(self, urn: str, tracker: TranslationTracker) -> TranslationJob:
        """Unknown URNs (e.g. submitted before a restart) are tracked from Submitted."""
        job = self.get(urn)
        if job is None:
            decode_urn(urn)
            job = tracker.new_job(urn)
            self.put(job)
        return job

    def prune(self) -> int:
        now = self._clock()
        expired = []
        for urn, job in self._jobs.items():
            if job.status == TranslationStatus.TIMED_OUT:
                expired.append(urn)
            elif job.is_terminal and job.finished_at is not None:
                if job.finished_at.timestamp() + self.grace_seconds < now:
                    expired.append(urn)
            elif not job.is_terminal:
                last_seen = job.last_polled_at or job.submitted_at
                if last_seen.timestamp() + self.idle_seconds < now:
                    expired.append(urn)
        for urn in expired:
            del self._jobs[urn]
        return len(expired)

    def __len__(self) -> int:
        return len(self._jobs)


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("diagnostic") or body.get("detail") or body.get("reason") or body)[:200]
    return str(body)[:200]
