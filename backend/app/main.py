"""
Estimate BIM Pipeline API v1.0
FastAPI backend for CAD/BIM upload → Forge translation → element pricing,
with xAI Grok primary / OpenAI secondary AI assistance.
"""
import sys
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app.config import Settings, load_settings
from app.services.ai_gateway import AIGateway
from app.services.element_extractor import ElementExtractor
from app.services.errors import PipelineError, UploadError
from app.services.forge_auth import ForgeTokenProvider, viewer_token_provider
from app.services.forge_upload import ForgeUploadChannel
from app.services.logging_config import setup_logging
from app.services.middleware import (
    RateLimitMiddleware,
    RequestTimingMiddleware,
    SecurityHeadersMiddleware,
)
from app.services.perf_monitor import tracker as perf_tracker
from app.services.rate_table import load_rate_table
from app.services.translation_tracker import JobRegistry, TranslationTracker

logger = logging.getLogger("estimate-api")

VERSION = "1.0.0"

# Record process start time for uptime calculation
_PROCESS_START = time.monotonic()


def _startup_checks(settings: Settings) -> None:
    if not settings.forge.configured:
        logger.warning("MISSING env vars: FORGE_CLIENT_ID / FORGE_CLIENT_SECRET — Forge routes will answer 503")
    for var, present in (("XAI_API_KEY", settings.ai.xai_api_key), ("OPENAI_API_KEY", settings.ai.openai_api_key)):
        if not present:
            logger.info(f"Optional env var not set: {var}")


def build_components(app: FastAPI, settings: Settings, client: httpx.AsyncClient) -> None:
    """Wire every pipeline component onto app.state. Called once per process."""
    tokens = ForgeTokenProvider(settings.forge, client)
    tracker = TranslationTracker(settings.forge, settings.pipeline, client, tokens)
    app.state.settings = settings
    app.state.http = client
    app.state.tokens = tokens
    app.state.viewer_tokens = viewer_token_provider(settings.forge, client)
    app.state.uploads = ForgeUploadChannel(settings.forge, settings.pipeline, client, tokens)
    app.state.tracker = tracker
    app.state.jobs = JobRegistry(
        settings.pipeline.job_grace_seconds,
        idle_seconds=settings.pipeline.poll_interval_seconds * settings.pipeline.poll_max_attempts,
    )
    app.state.extractor = ElementExtractor(
        settings.forge, client, tokens, load_rate_table(settings.pipeline.rate_table_path)
    )
    app.state.ai = AIGateway(settings.ai, forge_configured=settings.forge.configured)


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Application factory. `transport` replaces the network for the shared
    httpx client (tests pass an httpx.MockTransport).
    """
    settings = settings or load_settings()
    setup_logging(level=settings.log_level, json_output=settings.json_logs)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _startup_checks(settings)
        client = httpx.AsyncClient(transport=transport, timeout=settings.forge.request_timeout_seconds)
        build_components(app, settings, client)
        logger.info(f"Pipeline ready (bucket={settings.forge.bucket_key})")
        try:
            yield
        finally:
            await client.aclose()

    app = FastAPI(
        title="Estimate BIM Pipeline API",
        version=VERSION,
        description="CAD/BIM upload, Forge translation and element cost extraction",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With", "X-Request-ID"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RateLimitMiddleware)
    # Request timing + X-Request-ID must be outermost so it wraps all other middleware
    app.add_middleware(RequestTimingMiddleware)

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(level, f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        content = {"error": type(exc).__name__, "detail": exc.message, "retryable": exc.retryable}
        if isinstance(exc, UploadError):
            content["bytesTransferred"] = exc.bytes_transferred
        return JSONResponse(status_code=exc.status_code, content=content)

    # Routers
    from app.api.forge_routes import router as forge_router, admin_router
    from app.api.ai_routes import router as ai_router

    app.include_router(forge_router)
    app.include_router(admin_router)
    app.include_router(ai_router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "active",
            "version": VERSION,
            "forge_configured": settings.forge.configured,
            "ai_providers": {
                "xai": bool(settings.ai.xai_api_key),
                "openai": bool(settings.ai.openai_api_key),
            },
        }

    @app.get("/metrics")
    async def metrics():
        """
        Per-stage durations, error counts and process memory, sourced from the
        in-process PerformanceTracker singleton.
        """
        uptime_seconds = round(time.monotonic() - _PROCESS_START, 1)

        memory_mb: float = 0.0
        try:
            import resource  # Unix only
            usage = resource.getrusage(resource.RUSAGE_SELF)
            # ru_maxrss is in kilobytes on Linux, bytes on macOS
            if sys.platform == "darwin":
                memory_mb = round(usage.ru_maxrss / (1024 * 1024), 2)
            else:
                memory_mb = round(usage.ru_maxrss / 1024, 2)
        except ImportError:
            memory_mb = 0.0

        snapshot = perf_tracker.get_metrics()
        jobs = getattr(app.state, "jobs", None)
        return {
            "uptime_seconds": uptime_seconds,
            "memory_usage_mb": memory_mb,
            "tracked_jobs": len(jobs) if jobs is not None else 0,
            **snapshot,
        }

    return app


app = create_app()
