"""Internal callback and payment event schemas."""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from app.schemas.account import PackageGrant
from app.schemas.job import JobStatus


class EngineJobStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    REJECTED = "rejected"


class EngineCallbackRequest(BaseModel):
    status: EngineJobStatus
    transcript: str | None = None
    engine_job_id: str | None = None


class EngineCallbackResponse(BaseModel):
    job_id: str
    applied: bool
    current_status: JobStatus


class PaymentKind(str, Enum):
    PACKAGE = "package"
    TOPUP = "topup"


class PaymentEvent(BaseModel):
    event_id: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    kind: PaymentKind
    amount: Decimal = Field(gt=0)
    package_meta: PackageGrant | None = None


class PaymentEventResponse(BaseModel):
    event_id: str
    replayed: bool
    transaction_id: str | None = None
