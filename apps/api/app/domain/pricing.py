"""Pricing arithmetic shared by quoting, estimation and scheduling."""

from datetime import datetime, timedelta
from decimal import ROUND_CEILING, Decimal, InvalidOperation

from app.errors import DomainValidationError
from app.schemas.account import TranscriptionMode
from app.schemas.job import JobPriority

CREDITS_PER_MINUTE: dict[TranscriptionMode, int] = {
    TranscriptionMode.AUTOMATED: 1,
    TranscriptionMode.HYBRID: 2,
    TranscriptionMode.MANUAL: 3,
}

_TURNAROUND_MINUTES: dict[JobPriority, int] = {
    JobPriority.URGENT: 60,
    JobPriority.HIGH: 240,
}
_DEFAULT_TURNAROUND_MINUTES = 720


def parse_mode(value: str | TranscriptionMode) -> TranscriptionMode:
    try:
        return TranscriptionMode(value)
    except ValueError as exc:
        raise DomainValidationError(
            "Unknown transcription mode.",
            details={"mode": str(value), "allowed": [mode.value for mode in TranscriptionMode]},
        ) from exc


def validate_minutes(minutes: Decimal | float | int | str) -> Decimal:
    """Coerce a duration to Decimal and reject non-positive values."""
    try:
        # str() first so 30.5 stays 30.5 instead of the float's binary expansion.
        normalized = minutes if isinstance(minutes, Decimal) else Decimal(str(minutes))
    except (InvalidOperation, ValueError) as exc:
        raise DomainValidationError("Minutes must be a number.", details={"minutes": str(minutes)}) from exc
    if not normalized.is_finite() or normalized <= 0:
        raise DomainValidationError("Minutes must be greater than zero.", details={"minutes": str(minutes)})
    return normalized


def credits_required(mode: str | TranscriptionMode, minutes: Decimal | float | int | str) -> int:
    """Whole credits needed for ``minutes`` of work in ``mode``, always rounded up."""
    resolved_mode = parse_mode(mode)
    normalized = validate_minutes(minutes)
    credits = (normalized * CREDITS_PER_MINUTE[resolved_mode]).to_integral_value(rounding=ROUND_CEILING)
    return int(credits)


def estimated_completion(priority: JobPriority, *, now: datetime) -> datetime:
    minutes = _TURNAROUND_MINUTES.get(priority, _DEFAULT_TURNAROUND_MINUTES)
    return now + timedelta(minutes=minutes)
