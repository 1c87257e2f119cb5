"""
Pipeline configuration — single source of truth for remote endpoints,
credentials, upload policy, polling policy and AI provider routing.

Built once at process start by load_settings() and passed explicitly to
every component. Nothing below reads the environment after startup.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

# Load .env file automatically in dev (no-op if the file is missing)
load_dotenv()

MIB = 1024 * 1024

# ── Upload policy ──────────────────────────────────────────────────────────────
MAX_UPLOAD_BYTES: int = 500 * MIB
UPLOAD_CHUNK_BYTES: int = 5 * MIB          # S3 multipart part size
SIGNED_URL_BATCH: int = 25                 # Max parts per signeds3upload request
ALLOWED_EXTENSIONS: tuple[str, ...] = (".rvt", ".ifc", ".dwg", ".dxf")

# ── Translation polling policy ─────────────────────────────────────────────────
POLL_INTERVAL_SECONDS: float = 30.0
POLL_MAX_ATTEMPTS: int = 60
JOB_GRACE_SECONDS: float = 3600.0

# ── AI policy ─────────────────────────────────────────────────────────────────
AI_TIMEOUT_SECONDS: float = 60.0

# Scopes for the two token flavours
INTERNAL_SCOPES = "data:read data:write data:create bucket:create bucket:read bucket:update"
VIEWER_SCOPES = "viewables:read"


@dataclass(frozen=True)
class ForgeSettings:
    """Autodesk Platform Services (Forge) connection details."""

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    base_url: str = "https://developer.api.autodesk.com"
    bucket_key: str = "estimate-ai-bucket"
    bucket_policy: str = "persistent"
    force_translation: bool = True
    token_refresh_margin_seconds: int = 300
    request_timeout_seconds: float = 30.0

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True)
class AISettings:
    """Credentials and model names for each AI backend."""

    xai_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    xai_base_url: str = "https://api.x.ai/v1"
    xai_text_model: str = "xai/grok-2-1212"
    xai_vision_model: str = "xai/grok-2-vision-1212"
    openai_text_model: str = "openai/gpt-4o"
    openai_vision_model: str = "openai/gpt-4o"
    timeout_seconds: float = AI_TIMEOUT_SECONDS
    temperature: float = 0.7
    max_tokens: int = 1000


@dataclass(frozen=True)
class PipelineSettings:
    """Upload, polling and pricing policy."""

    max_upload_bytes: int = MAX_UPLOAD_BYTES
    chunk_bytes: int = UPLOAD_CHUNK_BYTES
    signed_url_batch: int = SIGNED_URL_BATCH
    allowed_extensions: tuple[str, ...] = ALLOWED_EXTENSIONS
    poll_interval_seconds: float = POLL_INTERVAL_SECONDS
    poll_max_attempts: int = POLL_MAX_ATTEMPTS
    job_grace_seconds: float = JOB_GRACE_SECONDS
    rate_table_path: Optional[str] = None


@dataclass(frozen=True)
class Settings:
    forge: ForgeSettings = field(default_factory=ForgeSettings)
    ai: AISettings = field(default_factory=AISettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    log_level: str = "INFO"
    json_logs: bool = True
    cors_origins: tuple[str, ...] = ("http://localhost:3000", "http://localhost:5000")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """Read the process environment once and freeze it into a Settings struct."""
    forge = ForgeSettings(
        client_id=os.getenv("FORGE_CLIENT_ID") or None,
        client_secret=os.getenv("FORGE_CLIENT_SECRET") or None,
        base_url=os.getenv("FORGE_BASE_URL", ForgeSettings.base_url).rstrip("/"),
        bucket_key=os.getenv("FORGE_BUCKET_KEY", ForgeSettings.bucket_key).lower(),
        bucket_policy=os.getenv("FORGE_BUCKET_POLICY", ForgeSettings.bucket_policy),
        force_translation=_env_bool("FORGE_FORCE_TRANSLATION", True),
    )
    ai = AISettings(
        xai_api_key=os.getenv("XAI_API_KEY") or None,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        xai_text_model=os.getenv("XAI_TEXT_MODEL", AISettings.xai_text_model),
        xai_vision_model=os.getenv("XAI_VISION_MODEL", AISettings.xai_vision_model),
        openai_text_model=os.getenv("OPENAI_TEXT_MODEL", AISettings.openai_text_model),
        openai_vision_model=os.getenv("OPENAI_VISION_MODEL", AISettings.openai_vision_model),
        timeout_seconds=_env_float("AI_TIMEOUT_SECONDS", AI_TIMEOUT_SECONDS),
    )
    pipeline = PipelineSettings(
        max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", MAX_UPLOAD_BYTES),
        chunk_bytes=_env_int("UPLOAD_CHUNK_BYTES", UPLOAD_CHUNK_BYTES),
        poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", POLL_INTERVAL_SECONDS),
        poll_max_attempts=_env_int("POLL_MAX_ATTEMPTS", POLL_MAX_ATTEMPTS),
        job_grace_seconds=_env_float("JOB_GRACE_SECONDS", JOB_GRACE_SECONDS),
        rate_table_path=os.getenv("RATE_TABLE_PATH") or None,
    )
    cors_raw = os.getenv("CORS_ORIGINS", "")
    cors = tuple(o.strip() for o in cors_raw.split(",") if o.strip()) or Settings.cors_origins
    return Settings(
        forge=forge,
        ai=ai,
        pipeline=pipeline,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        json_logs=os.getenv("LOG_FORMAT", "json").lower() != "text",
        cors_origins=cors,
    )
