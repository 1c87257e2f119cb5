"""Forge API — model upload, translation status, element extraction, tokens."""
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from app.api.deps import (
    get_extractor,
    get_job_registry,
    get_token_provider,
    get_tracker,
    get_upload_channel,
    get_viewer_token_provider,
)
from app.models.pipeline_models import TranslationJob
from app.services.element_extractor import ElementExtractor, summarize_elements
from app.services.forge_auth import ForgeTokenProvider
from app.services.forge_upload import DEFAULT_SCOPE, ForgeUploadChannel
from app.services.translation_tracker import JobRegistry, TranslationTracker, public_status

logger = logging.getLogger("estimate-api.forge")

router = APIRouter(prefix="/api/forge", tags=["Forge BIM Pipeline"])
admin_router = APIRouter(prefix="/api/admin", tags=["Admin"])

READ_CHUNK_BYTES = 1024 * 1024


async def iter_upload_file(file: UploadFile, chunk_bytes: int = READ_CHUNK_BYTES) -> AsyncIterator[bytes]:
    """Stream an UploadFile without loading it into memory."""
    while True:
        piece = await file.read(chunk_bytes)
        if not piece:
            break
        yield piece


def _upload_size(file: UploadFile) -> int:
    if file.size is not None:
        return file.size
    # Spooled file without a recorded size
    handle = file.file
    handle.seek(0, 2)
    size = handle.tell()
    handle.seek(0)
    return size


async def _resolve_job(urn: str, jobs: JobRegistry, tracker: TranslationTracker) -> TranslationJob:
    """Known job, or adopt the URN and take one status reading."""
    job = jobs.get(urn)
    if job is None:
        job = jobs.get_or_adopt(urn, tracker)
        await tracker.poll(job)
    return job


# ─── Upload + submit ─────────────────────────────────────────────────────────

@router.post("/upload")
async def upload_model(
    file: UploadFile = File(...),
    user_scope: str = Form(DEFAULT_SCOPE),
    uploads: ForgeUploadChannel = Depends(get_upload_channel),
    tracker: TranslationTracker = Depends(get_tracker),
    jobs: JobRegistry = Depends(get_job_registry),
):
    """
    Validating upload path. Streams the file into the bucket, then submits
    the translation job. Returns immediately; clients poll /status/{urn}.
    """
    file_name = file.filename or "upload"
    session = await uploads.upload(
        iter_upload_file(file),
        file_name=file_name,
        file_size_bytes=_upload_size(file),
        user_scope=user_scope,
        mime_hint=file.content_type or "application/octet-stream",
    )
    job = await tracker.submit(session.object_urn)
    jobs.put(job)
    status = "ready" if job.submit_result == "success" else "translating"
    return {"status": status, "urn": session.object_urn}


# ─── Translation status ──────────────────────────────────────────────────────

@router.get("/status/{urn:path}")
async def translation_status(
    urn: str,
    tracker: TranslationTracker = Depends(get_tracker),
    jobs: JobRegistry = Depends(get_job_registry),
):
    """One remote status reading per call; the client owns the 30s cadence."""
    job = jobs.get_or_adopt(urn, tracker)
    await tracker.poll(job)
    return public_status(job)


# ─── Elements + estimate ─────────────────────────────────────────────────────

@router.get("/extract/{urn:path}")
async def extract_elements(
    urn: str,
    tracker: TranslationTracker = Depends(get_tracker),
    jobs: JobRegistry = Depends(get_job_registry),
    extractor: ElementExtractor = Depends(get_extractor),
):
    job = await _resolve_job(urn, jobs, tracker)
    records = await extractor.collect(job)
    return [record.to_line_item() for record in records]


@router.get("/estimate/{urn:path}")
async def estimate_summary(
    urn: str,
    tracker: TranslationTracker = Depends(get_tracker),
    jobs: JobRegistry = Depends(get_job_registry),
    extractor: ElementExtractor = Depends(get_extractor),
):
    job = await _resolve_job(urn, jobs, tracker)
    summary = summarize_elements(urn, await extractor.collect(job))
    return summary.model_dump(by_alias=True)


# ─── Tokens ──────────────────────────────────────────────────────────────────

@router.post("/token")
async def access_token(tokens: ForgeTokenProvider = Depends(get_token_provider)):
    token = await tokens.get_access_token()
    return {"access_token": token.access_token, "expires_in": token.expires_in()}


@router.get("/viewer-token")
async def viewer_token(tokens: ForgeTokenProvider = Depends(get_viewer_token_provider)):
    """Read-only token for the browser viewer."""
    token = await tokens.get_access_token()
    return {"access_token": token.access_token, "expires_in": token.expires_in()}


# ─── Raw / instant upload ────────────────────────────────────────────────────

@admin_router.post("/fast-upload")
async def fast_upload(request: Request, uploads: ForgeUploadChannel = Depends(get_upload_channel)):
    """Throughput check: counts the request body and discards it."""
    receipt = await uploads.discard(request.stream())
    return receipt.model_dump(by_alias=True)
