"""Utilities for safe structured logging fields."""

from __future__ import annotations

from decimal import Decimal
import hashlib
from typing import Any

_CENT = Decimal("0.01")


def safe_log_identifier(value: Any, *, prefix: str) -> str:
    """Return a deterministic non-reversible token for log correlation fields."""
    text = str(value or "").strip()
    if not text:
        return f"{prefix}-missing"

    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
    return f"{prefix}-{digest}"


def log_amount(value: Decimal | None) -> str:
    """Render a money or minutes value for log lines without leaking float noise."""
    if value is None:
        return "-"
    return str(value.quantize(_CENT))
