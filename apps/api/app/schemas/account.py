"""Account, package and ledger transaction schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TranscriptionMode(str, Enum):
    AUTOMATED = "automated"
    HYBRID = "hybrid"
    MANUAL = "manual"


class TransactionKind(str, Enum):
    PURCHASE = "purchase"
    TOPUP = "topup"
    CONSUMPTION = "consumption"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class Package(BaseModel):
    """Prepaid, mode-specific, time-boxed bundle of minutes."""

    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    mode: TranscriptionMode
    minutes_total: Decimal = Field(ge=0)
    minutes_used: Decimal = Field(ge=0)
    minutes_remaining: Decimal = Field(ge=0)
    rate_per_minute: Decimal = Field(ge=0)
    purchased_at: datetime
    expires_at: datetime
    active: bool
    source_ref: str | None = None

    @model_validator(mode="after")
    def _minutes_balance(self) -> "Package":
        if self.minutes_used + self.minutes_remaining != self.minutes_total:
            raise ValueError("package minutes_used + minutes_remaining must equal minutes_total")
        return self

    def is_eligible(self, mode: TranscriptionMode, now: datetime) -> bool:
        return self.active and self.minutes_remaining > 0 and now < self.expires_at and self.mode is mode


class Account(BaseModel):
    """Per-user funds document.

    Every balance field is required: a stored document missing one fails validation
    instead of being read as zero.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    free_trial_total: Decimal = Field(ge=0)
    free_trial_used: Decimal = Field(ge=0)
    free_trial_remaining: Decimal = Field(ge=0)
    free_trial_active: bool
    wallet_balance: Decimal = Field(ge=0)
    packages: list[Package]
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _trial_balance(self) -> "Account":
        if self.free_trial_used + self.free_trial_remaining != self.free_trial_total:
            raise ValueError("free_trial_used + free_trial_remaining must equal free_trial_total")
        if self.free_trial_active and self.free_trial_remaining <= 0:
            raise ValueError("free trial cannot be active without remaining minutes")
        return self


class PackageAllocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    package_id: str
    minutes: Decimal
    rate_per_minute: Decimal
    amount: Decimal


class Transaction(BaseModel):
    """Append-only ledger entry; never mutated once written."""

    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    kind: TransactionKind
    amount: Decimal
    description: str
    created_at: datetime
    job_id: str | None = None
    package_id: str | None = None
    minutes_applied: Decimal | None = None
    source_ref: str | None = None
    actor_id: str | None = None
    trial_minutes: Decimal | None = None
    package_allocations: tuple[PackageAllocation, ...] = ()
    wallet_minutes: Decimal | None = None
    wallet_amount: Decimal | None = None


class CostEstimate(BaseModel):
    mode: TranscriptionMode
    minutes: Decimal
    trial_minutes: Decimal
    package_minutes: Decimal
    package_allocations: list[PackageAllocation]
    wallet_minutes: Decimal
    wallet_rate: Decimal
    wallet_amount: Decimal
    wallet_balance: Decimal
    total_cost: Decimal
    sufficient: bool
    credits_required: int


class DeductionResult(BaseModel):
    transaction_id: str
    trial_used: Decimal
    package_minutes_used: Decimal
    package_allocations: list[PackageAllocation]
    wallet_used: Decimal
    total_cost: Decimal


class PackageGrant(BaseModel):
    """Package metadata attached to a purchase credit."""

    name: str = Field(default="Prepaid package", min_length=1)
    mode: TranscriptionMode
    minutes: Decimal = Field(gt=0)
    rate_per_minute: Decimal | None = Field(default=None, ge=0)
    validity_days: int | None = Field(default=None, gt=0)


class TransactionPage(BaseModel):
    items: list[Transaction]
    limit: int


class WalletAdjustmentRequest(BaseModel):
    amount: Decimal
    reason: str = Field(min_length=1)


class FreeTrialUpdateRequest(BaseModel):
    remaining_minutes: Decimal = Field(ge=0)
    reason: str | None = None


class CreditQuote(BaseModel):
    mode: TranscriptionMode
    minutes: Decimal
    credits_required: int
    standard_rate: Decimal
    standard_cost: Decimal
