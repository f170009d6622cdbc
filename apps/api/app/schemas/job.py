"""Job API schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from app.schemas.account import TranscriptionMode


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    ASSIGNED = "assigned"
    HUMAN_REVIEW = "human_review"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class FailureKind(str, Enum):
    SUBMIT_FAILED = "submit_failed"
    REJECTED = "rejected"
    POLLING_TIMEOUT = "polling_timeout"


class HybridSnapshot(BaseModel):
    transcript: str
    captured_at: datetime
    automated_minutes: float | None = None


class JobCharge(BaseModel):
    transaction_id: str
    amount: Decimal
    minutes: Decimal


class Job(BaseModel):
    id: str
    account_id: str
    mode: TranscriptionMode
    status: JobStatus
    priority: JobPriority
    duration_minutes: Decimal
    audio_ref: str
    language: str
    external_ref: str | None = None
    assignment_ref: str | None = None
    retry_count: int
    max_retries: int
    transcript: str | None = None
    final_transcript: str | None = None
    hybrid_snapshot: HybridSnapshot | None = None
    status_reason: str | None = None
    charge: JobCharge | None = None
    refunded_at: datetime | None = None
    created_at: datetime
    updated_at: datetime | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None


class JobList(BaseModel):
    items: list[Job]


class CreateJobRequest(BaseModel):
    mode: TranscriptionMode
    audio_ref: str = Field(min_length=1)
    duration_minutes: Decimal = Field(gt=0)
    priority: JobPriority = JobPriority.NORMAL
    language: str = Field(default="en", min_length=2)
    diarization: bool = False


class ResetRetryRequest(BaseModel):
    reason: str = Field(min_length=1)
