"""
Pipeline data model — upload sessions, translation jobs, priced elements,
AI provider capabilities and the JSON contracts the frontend consumes.

State-changing helpers on UploadSession and TranslationJob enforce the
lifecycle rules; nothing else should assign `state` / `status` directly.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
)
from pydantic.alias_generators import to_camel


# ── Credentials ────────────────────────────────────────────────────────────────

class AccessToken(BaseModel):
    """Opaque bearer token plus its absolute expiry (epoch seconds)."""
    model_config = ConfigDict(frozen=True)

    access_token: str
    expires_at: float
    token_type: str = "Bearer"

    def expires_in(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(0, int(self.expires_at - now))

    def is_valid(self, margin_seconds: float = 0.0, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return self.expires_at - margin_seconds > now


# ── Upload ────────────────────────────────────────────────────────────────────

class UploadState(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"


class UploadSession(BaseModel):
    """One file transfer. Owned by the coroutine that created it."""

    file_name: str
    file_size_bytes: int = Field(ge=0)
    mime_hint: str = "application/octet-stream"
    object_key: Optional[str] = None
    object_urn: Optional[str] = None
    state: UploadState = UploadState.PENDING
    bytes_transferred: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in (UploadState.UPLOADED, UploadState.FAILED)

    def begin(self, object_key: str) -> None:
        if self.state != UploadState.PENDING:
            raise RuntimeError(f"Upload of {self.file_name} already {self.state.value}")
        self.object_key = object_key
        self.state = UploadState.UPLOADING

    def advance(self, n_bytes: int) -> None:
        if self.state != UploadState.UPLOADING:
            raise RuntimeError(f"Cannot record progress while {self.state.value}")
        if n_bytes <= 0:
            raise ValueError("Progress must move forward")
        if self.bytes_transferred + n_bytes > self.file_size_bytes:
            raise ValueError(
                f"Stream exceeded declared size {self.file_size_bytes} "
                f"(at {self.bytes_transferred + n_bytes})"
            )
        self.bytes_transferred += n_bytes

    def mark_uploaded(self, urn: str) -> None:
        if self.state != UploadState.UPLOADING:
            raise RuntimeError(f"Cannot complete upload while {self.state.value}")
        if self.bytes_transferred != self.file_size_bytes:
            raise ValueError(
                f"Upload incomplete: {self.bytes_transferred}/{self.file_size_bytes} bytes"
            )
        self.object_urn = urn
        self.state = UploadState.UPLOADED

    def mark_failed(self) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Upload of {self.file_name} already {self.state.value}")
        self.state = UploadState.FAILED


class UploadProgress(BaseModel):
    """Progress event emitted after each chunk lands in the object store."""
    model_config = ConfigDict(frozen=True)

    file_name: str
    bytes_transferred: int
    file_size_bytes: int

    @computed_field
    @property
    def percent(self) -> float:
        if self.file_size_bytes == 0:
            return 100.0
        return round(self.bytes_transferred / self.file_size_bytes * 100, 1)


class InstantUploadReceipt(BaseModel):
    """Raw/instant path result: bytes were counted and discarded."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    size_bytes: int = Field(alias="size")
    upload_time: float
    speed_mbps: float = Field(alias="speedMBps")
    instant: bool = True


# ── Translation ───────────────────────────────────────────────────────────────

class TranslationStatus(str, Enum):
    SUBMITTED = "submitted"
    IN_PROGRESS = "inprogress"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timedout"


TERMINAL_STATUSES = frozenset(
    {TranslationStatus.SUCCESS, TranslationStatus.FAILED, TranslationStatus.TIMED_OUT}
)


class TranslationJob(BaseModel):
    """Remote conversion of an uploaded object. Mutated only by the poll loop."""

    urn: str
    status: TranslationStatus = TranslationStatus.SUBMITTED
    progress_percent: int = Field(default=0, ge=0, le=100)
    poll_attempts: int = 0
    max_attempts: int = 60
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_polled_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    submit_result: Optional[str] = None    # "created" | "success" as returned by the job POST
    messages: list[dict] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: TranslationStatus) -> None:
        """Move to `status`. Terminal states are sinks."""
        if self.is_terminal:
            raise RuntimeError(
                f"Translation {self.urn} is {self.status.value}; cannot move to {status.value}"
            )
        self.status = status
        if status in TERMINAL_STATUSES:
            self.finished_at = datetime.now(timezone.utc)
            if status == TranslationStatus.SUCCESS:
                self.progress_percent = 100


# ── Elements ──────────────────────────────────────────────────────────────────

class Quantity(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: float = Field(ge=0)
    unit: str

    def __str__(self) -> str:
        amount = int(self.amount) if float(self.amount).is_integer() else self.amount
        return f"{amount} {self.unit}"


class ElementRecord(BaseModel):
    """One priced construction quantity. total_cost is always derived."""
    model_config = ConfigDict(frozen=True)

    element_id: str
    name: str
    category: str
    rate_category: str
    quantity: Quantity
    unit_cost: float = Field(ge=0)

    @computed_field
    @property
    def total_cost(self) -> float:
        return round(self.quantity.amount * self.unit_cost, 2)

    def to_line_item(self) -> dict:
        """Shape served by the element extraction endpoint."""
        return {
            "element": self.name,
            "quantity": str(self.quantity),
            "unitCost": self.unit_cost,
            "total": self.total_cost,
        }


class CategorySubtotal(BaseModel):
    category: str
    element_count: int
    total_cost: float


class EstimateSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    urn: str
    element_count: int
    total_cost: float
    by_category: list[CategorySubtotal]
    elements: list[dict]


# ── AI providers ──────────────────────────────────────────────────────────────

class Capability(str, Enum):
    TEXT_COMPLETION = "text_completion"
    VISION_ANALYSIS = "vision_analysis"
    JSON_MODE = "json_mode"


class ProviderId(str, Enum):
    XAI = "xai"          # primary text provider (Grok)
    OPENAI = "openai"    # secondary text, preferred vision


class ProviderCapability(BaseModel):
    """What one configured AI backend can do. Computed once from settings."""
    model_config = ConfigDict(frozen=True)

    provider_id: ProviderId
    supports: frozenset[Capability]
    available: bool
    text_model: str
    vision_model: str

    def model_for(self, capability: Capability) -> str:
        if capability == Capability.VISION_ANALYSIS:
            return self.vision_model
        return self.text_model


class ServiceStatus(BaseModel):
    xai: bool
    openai: bool
    forge: bool


class CostPredictionRequest(BaseModel):
    project_type: str = Field(validation_alias=AliasChoices("type", "projectType"))
    area: float = Field(gt=0)
    location: str
    complexity: str = "medium"
    timeline: str = ""


class CostPrediction(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    predicted_cost: float
    min_cost: float
    max_cost: float
    confidence: str = "Medium"
    breakdown: dict = Field(default_factory=dict)
    factors: dict = Field(default_factory=dict)
    risks: list = Field(default_factory=list)
    provider: Optional[ProviderId] = None


class BIMFileInfo(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    file_name: str
    file_type: str
    file_size: int = Field(ge=0)
