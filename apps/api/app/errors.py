"""Application exception types."""

from decimal import Decimal
from typing import Any

from app.schemas.error import ErrorResponse


class ApiError(Exception):
    """Structured API error that maps directly to contract error payloads."""

    def __init__(self, status_code: int, code: str, message: str, details: dict | None = None) -> None:
        self.status_code = status_code
        self.payload = ErrorResponse(code=code, message=message, details=details)
        super().__init__(message)


class DomainValidationError(ApiError):
    """Malformed input such as a non-positive duration or an unknown mode."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=422, code="VALIDATION_ERROR", message=message, details=details)


class NotFoundError(ApiError):
    def __init__(self) -> None:
        super().__init__(status_code=404, code="RESOURCE_NOT_FOUND", message="Resource not found")


class InsufficientFundsError(ApiError):
    """Wallet deficit; carries the wallet amount required against what is available."""

    def __init__(self, *, required: Decimal, available: Decimal) -> None:
        self.required = required
        self.available = available
        super().__init__(
            status_code=402,
            code="INSUFFICIENT_FUNDS",
            message="Wallet balance does not cover the remaining minutes.",
            details={"required": str(required), "available": str(available)},
        )


class ConcurrencyConflictError(ApiError):
    def __init__(self, *, account_id: str, attempts: int) -> None:
        super().__init__(
            status_code=409,
            code="CONCURRENCY_CONFLICT",
            message="Account was modified concurrently; retry the request.",
            details={"attempts": attempts},
        )
        self.account_id = account_id


class NeedsResubmissionError(ApiError):
    """The job never reached the engine, so only a fresh submission can recover it."""

    def __init__(self, *, job_id: str) -> None:
        super().__init__(
            status_code=409,
            code="NEEDS_RESUBMISSION",
            message="Job never reached the transcription engine; resubmit the original audio.",
            details={"job_id": job_id},
        )


class CreditAlreadyAppliedError(ApiError):
    def __init__(self, *, source_ref: str) -> None:
        super().__init__(
            status_code=409,
            code="CREDIT_ALREADY_APPLIED",
            message="Credit for this source reference was already applied.",
            details={"source_ref": source_ref},
        )
        self.source_ref = source_ref


class ExternalServiceError(ApiError):
    """Transcription engine failure, split into transient and permanent kinds."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(
            status_code=502,
            code="ENGINE_UNAVAILABLE" if transient else "ENGINE_REJECTED",
            message=message,
        )
        self.transient = transient


__all__ = [
    "ApiError",
    "ConcurrencyConflictError",
    "CreditAlreadyAppliedError",
    "DomainValidationError",
    "ExternalServiceError",
    "InsufficientFundsError",
    "NeedsResubmissionError",
    "NotFoundError",
]
