"""
Binary upload channel — streams CAD/BIM files into Forge OSS.

Two modes:
  * upload()/upload_events(): validating path. Enforces the size ceiling and
    the extension allow-list before any remote call, then pushes the payload
    as signed-S3 multipart parts and returns an UploadSession whose URN is the
    deterministic encoding of bucket + object key.
  * discard(): raw/instant path for admin throughput testing. No validation,
    bytes are counted and thrown away.

No partial resume: a failed transfer has to be restarted by the caller.
"""
import base64
import logging
import os
import re
import time
from typing import AsyncIterator, Awaitable, Callable, Optional, Union
from urllib.parse import quote

import httpx

from app.config import ForgeSettings, PipelineSettings
from app.models.pipeline_models import (
    InstantUploadReceipt,
    UploadProgress,
    UploadSession,
    UploadState,
)
from app.services.errors import CredentialError, TranslationServiceError, UploadError, UploadRejectedError
from app.services.forge_auth import ForgeTokenProvider
from app.services.perf_monitor import tracker as perf_tracker

logger = logging.getLogger("estimate-forge.upload")

PART_TIMEOUT_SECONDS = 300.0
SIGNED_URL_MINUTES = 60
DEFAULT_SCOPE = "shared"

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

ProgressCallback = Callable[[UploadProgress], Awaitable[None]]


def object_key_for(file_name: str, user_scope: str = DEFAULT_SCOPE) -> str:
    """Logical object key: same scope + same file name always lands on the same key."""
    base = os.path.basename(file_name.replace("\\", "/")) or "upload"
    safe_name = _UNSAFE_KEY_CHARS.sub("_", base)
    safe_scope = _UNSAFE_KEY_CHARS.sub("_", user_scope or DEFAULT_SCOPE)
    return f"{safe_scope}-{safe_name}"


def object_urn(bucket_key: str, object_key: str) -> str:
    """URL-safe base64 (unpadded) of the OSS object id, as Model Derivative expects."""
    object_id = f"urn:adsk.objects:os.object:{bucket_key}/{object_key}"
    return base64.urlsafe_b64encode(object_id.encode("utf-8")).decode("ascii").rstrip("=")


async def rechunk(stream: AsyncIterator[bytes], chunk_bytes: int) -> AsyncIterator[bytes]:
    """Re-slice an arbitrary byte stream into fixed-size parts (last one short)."""
    buffer = bytearray()
    async for piece in stream:
        if not piece:
            continue
        buffer.extend(piece)
        while len(buffer) >= chunk_bytes:
            yield bytes(buffer[:chunk_bytes])
            del buffer[:chunk_bytes]
    if buffer:
        yield bytes(buffer)


class ForgeUploadChannel:
    def __init__(
        self,
        forge: ForgeSettings,
        pipeline: PipelineSettings,
        client: httpx.AsyncClient,
        tokens: ForgeTokenProvider,
    ):
        self.forge = forge
        self.pipeline = pipeline
        self._client = client
        self._tokens = tokens

    # ── Validation ─────────────────────────────────────────────────────────────

    def validate(self, file_name: str, file_size_bytes: int) -> None:
        """Reject oversize / unsupported files. Pure; never touches the network."""
        ext = os.path.splitext(file_name or "")[-1].lower()
        if ext not in self.pipeline.allowed_extensions:
            allowed = ", ".join(self.pipeline.allowed_extensions)
            raise UploadRejectedError(f"Unsupported file format '{ext or file_name}'. Supported: {allowed}")
        if file_size_bytes <= 0:
            raise UploadRejectedError("File is empty")
        if file_size_bytes > self.pipeline.max_upload_bytes:
            limit_mb = self.pipeline.max_upload_bytes // (1024 * 1024)
            raise UploadRejectedError(f"File too large. Maximum size is {limit_mb}MB.")

    # ── Bucket ─────────────────────────────────────────────────────────────────

    def _auth(self, token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    async def ensure_bucket(self) -> None:
        """Create the configured bucket on first use; 409 means someone beat us to it."""
        try:
            await self._ensure_bucket()
        except httpx.HTTPError as e:
            raise TranslationServiceError(f"Bucket check failed: {e}") from e

    async def _ensure_bucket(self) -> None:
        token = (await self._tokens.get_access_token()).access_token
        bucket = self.forge.bucket_key
        base = self.forge.base_url
        response = await self._client.get(
            f"{base}/oss/v2/buckets/{bucket}/details",
            headers=self._auth(token),
            timeout=self.forge.request_timeout_seconds,
        )
        if response.status_code == 200:
            return
        if response.status_code == 401:
            self._tokens.invalidate()
        if response.status_code != 404:
            raise TranslationServiceError(
                f"Bucket check failed for '{bucket}' ({response.status_code})",
                remote_status=response.status_code,
            )

        logger.info(f"Bucket '{bucket}' not found, creating (policy={self.forge.bucket_policy})")
        created = await self._client.post(
            f"{base}/oss/v2/buckets",
            json={"bucketKey": bucket, "policyKey": self.forge.bucket_policy},
            headers=self._auth(token),
            timeout=self.forge.request_timeout_seconds,
        )
        if created.status_code in (200, 201, 409):
            return
        raise TranslationServiceError(
            f"Bucket creation failed for '{bucket}' ({created.status_code})",
            remote_status=created.status_code,
        )

    # ── Signed S3 multipart ────────────────────────────────────────────────────

    def _signed_path(self, object_key: str) -> str:
        return (
            f"{self.forge.base_url}/oss/v2/buckets/{self.forge.bucket_key}"
            f"/objects/{quote(object_key, safe='')}/signeds3upload"
        )

    async def _request_part_urls(
        self, object_key: str, first_part: int, parts: int, upload_key: Optional[str]
    ) -> tuple[list[str], str]:
        token = (await self._tokens.get_access_token()).access_token
        params = {
            "parts": parts,
            "firstPart": first_part,
            "minutesExpiration": SIGNED_URL_MINUTES,
        }
        if upload_key:
            params["uploadKey"] = upload_key
        response = await self._client.get(
            self._signed_path(object_key),
            params=params,
            headers=self._auth(token),
            timeout=self.forge.request_timeout_seconds,
        )
        if response.status_code == 401:
            self._tokens.invalidate()
        response.raise_for_status()
        data = response.json()
        urls = data.get("urls") or ([data["signedUrl"]] if data.get("signedUrl") else [])
        if not urls:
            raise UploadError(f"No signed URLs returned for parts {first_part}..{first_part + parts - 1}")
        return list(urls), data["uploadKey"]

    async def _put_part(self, url: str, part: bytes, part_number: int) -> None:
        response = await self._client.put(
            url,
            content=part,
            headers={"Content-Type": "application/octet-stream"},
            timeout=PART_TIMEOUT_SECONDS,
        )
        if response.status_code not in (200, 201):
            raise UploadError(f"S3 upload failed for part {part_number} with status {response.status_code}")

    async def _complete(self, object_key: str, upload_key: str) -> dict:
        token = (await self._tokens.get_access_token()).access_token
        response = await self._client.post(
            self._signed_path(object_key),
            json={"uploadKey": upload_key},
            headers=self._auth(token),
            timeout=self.forge.request_timeout_seconds,
        )
        response.raise_for_status()
        return response.json()

    # ── Validating path ────────────────────────────────────────────────────────

    async def upload_events(
        self,
        stream: AsyncIterator[bytes],
        file_name: str,
        file_size_bytes: int,
        user_scope: str = DEFAULT_SCOPE,
        mime_hint: str = "application/octet-stream",
    ) -> AsyncIterator[Union[UploadProgress, UploadSession]]:
        """
        Yield one UploadProgress per stored part, then the final UploadSession.
        Raises UploadRejectedError before any remote call when validation fails,
        UploadError (with the byte offset reached) when the transfer breaks.
        """
        self.validate(file_name, file_size_bytes)
        session = UploadSession(
            file_name=file_name, file_size_bytes=file_size_bytes, mime_hint=mime_hint
        )
        object_key = object_key_for(file_name, user_scope)
        chunk = self.pipeline.chunk_bytes
        total_parts = -(-file_size_bytes // chunk)
        started = time.perf_counter()

        await self.ensure_bucket()
        session.begin(object_key)
        logger.info(
            f"Uploading {file_name} ({file_size_bytes / 1048576:.2f} MB, {total_parts} parts) "
            f"as {self.forge.bucket_key}/{object_key}"
        )

        try:
            urls: list[str] = []
            upload_key: Optional[str] = None
            part_number = 0
            async for part in rechunk(stream, chunk):
                part_number += 1
                if session.bytes_transferred + len(part) > file_size_bytes:
                    raise UploadError(
                        f"Stream longer than declared size {file_size_bytes}",
                        session.bytes_transferred,
                    )
                if not urls:
                    batch = min(total_parts - part_number + 1, self.pipeline.signed_url_batch)
                    urls, upload_key = await self._request_part_urls(
                        object_key, part_number, batch, upload_key
                    )
                await self._put_part(urls.pop(0), part, part_number)
                session.advance(len(part))
                yield UploadProgress(
                    file_name=file_name,
                    bytes_transferred=session.bytes_transferred,
                    file_size_bytes=file_size_bytes,
                )

            if session.bytes_transferred != file_size_bytes or upload_key is None:
                raise UploadError(
                    f"Stream ended at {session.bytes_transferred} of {file_size_bytes} bytes",
                    session.bytes_transferred,
                )
            await self._complete(object_key, upload_key)
        except UploadError as e:
            e.bytes_transferred = session.bytes_transferred
            session.mark_failed()
            perf_tracker.record_stage_error("upload")
            logger.error(f"Upload of {file_name} failed at byte {session.bytes_transferred}: {e}")
            raise
        except CredentialError as e:
            # Not retryable; surfaces unchanged
            session.mark_failed()
            perf_tracker.record_stage_error("upload")
            logger.error(f"Upload of {file_name} stopped at byte {session.bytes_transferred}: {e}")
            raise
        except Exception as e:
            session.mark_failed()
            perf_tracker.record_stage_error("upload")
            logger.error(f"Upload of {file_name} failed at byte {session.bytes_transferred}: {e}")
            raise UploadError(f"File upload failed: {e}", session.bytes_transferred) from e

        urn = object_urn(self.forge.bucket_key, object_key)
        session.mark_uploaded(urn)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        perf_tracker.record_stage_duration("upload", duration_ms)
        perf_tracker.record_bytes_uploaded(file_size_bytes)
        logger.info(
            "upload completed",
            extra={"urn": urn, "bytes_transferred": file_size_bytes, "duration_ms": duration_ms},
        )
        yield session

    async def upload(
        self,
        stream: AsyncIterator[bytes],
        file_name: str,
        file_size_bytes: int,
        user_scope: str = DEFAULT_SCOPE,
        mime_hint: str = "application/octet-stream",
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadSession:
        """Run upload_events() to completion and return the terminal session."""
        result: Optional[UploadSession] = None
        async for event in self.upload_events(
            stream, file_name, file_size_bytes, user_scope=user_scope, mime_hint=mime_hint
        ):
            if isinstance(event, UploadSession):
                result = event
            elif on_progress is not None:
                await on_progress(event)
        if result is None or result.state != UploadState.UPLOADED:
            raise UploadError(f"Upload of {file_name} produced no session")
        return result

    # ── Raw / instant path ─────────────────────────────────────────────────────

    async def discard(self, stream: AsyncIterator[bytes]) -> InstantUploadReceipt:
        """Consume and drop the payload; report size and throughput only."""
        started = time.monotonic()
        received = 0
        async for piece in stream:
            received += len(piece)
        duration = max(time.monotonic() - started, 0.001)
        speed = received / duration / (1024 * 1024)
        logger.info(f"Instant upload discarded {received} bytes in {duration:.3f}s")
        return InstantUploadReceipt(
            size_bytes=received,
            upload_time=round(duration, 3),
            speed_mbps=round(speed, 2),
        )
