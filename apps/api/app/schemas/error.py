"""API error response schemas."""

from typing import Any
from typing import Literal

from pydantic import BaseModel

from app.schemas.job import JobStatus


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class TransitionErrorDetails(BaseModel):
    current_status: JobStatus
    attempted_status: JobStatus
    allowed_next_statuses: list[JobStatus] | None = None


class FsmTransitionError(BaseModel):
    code: Literal["FSM_TRANSITION_INVALID", "FSM_TERMINAL_IMMUTABLE"]
    message: str
    details: TransitionErrorDetails


class InsufficientFundsErrorDetails(BaseModel):
    required: str
    available: str


class InsufficientFundsError(BaseModel):
    code: Literal["INSUFFICIENT_FUNDS"]
    message: str
    details: InsufficientFundsErrorDetails


class EventIdPayloadMismatchErrorDetails(BaseModel):
    event_id: str


class EventIdPayloadMismatchError(BaseModel):
    code: Literal["EVENT_ID_PAYLOAD_MISMATCH"]
    message: str
    details: EventIdPayloadMismatchErrorDetails


class NoLeakNotFoundError(BaseModel):
    code: Literal["RESOURCE_NOT_FOUND"]
    message: str


class RetryStateConflictErrorDetails(BaseModel):
    current_status: JobStatus | None = None
    job_id: str | None = None
    retry_count: int | None = None
    max_retries: int | None = None


class RetryStateConflictError(BaseModel):
    code: Literal["RETRY_NOT_ALLOWED_STATE", "RETRY_LIMIT_REACHED", "NEEDS_RESUBMISSION"]
    message: str
    details: RetryStateConflictErrorDetails
