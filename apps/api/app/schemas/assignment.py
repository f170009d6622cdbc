"""Human transcriber and assignment schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from app.schemas.account import TranscriptionMode


class AssignmentStatus(str, Enum):
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TranscriberStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BUSY = "busy"


class Assignment(BaseModel):
    id: str
    job_id: str
    worker_id: str
    mode: TranscriptionMode
    duration_minutes: Decimal
    status: AssignmentStatus
    assigned_at: datetime
    estimated_completion: datetime
    completed_at: datetime | None = None
    notes: str | None = None


class AssignmentList(BaseModel):
    items: list[Assignment]


class Transcriber(BaseModel):
    id: str
    user_id: str
    name: str
    status: TranscriberStatus
    rating: float
    completed_jobs: int
    created_at: datetime


class TranscriberStats(BaseModel):
    worker_id: str
    total_jobs: int
    completed_jobs: int
    active_jobs: int
    rating: float
    active_workload_minutes: Decimal


class RegisterTranscriberRequest(BaseModel):
    user_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    rating: float = Field(default=5.0, ge=0, le=5)
    status: TranscriberStatus = TranscriberStatus.ACTIVE


class TranscriberStatusUpdate(BaseModel):
    status: TranscriberStatus


class SubmitTranscriptRequest(BaseModel):
    text: str = Field(min_length=1)
    notes: str | None = None


class DispatchQueuedResponse(BaseModel):
    assigned_job_ids: list[str]
