"""Workload-balanced selection of a human transcriber."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from app.schemas.assignment import AssignmentStatus, TranscriberStatus

OPEN_ASSIGNMENT_STATES: frozenset[AssignmentStatus] = frozenset(
    {AssignmentStatus.ASSIGNED, AssignmentStatus.IN_PROGRESS}
)


@dataclass(frozen=True, slots=True)
class WorkerCandidate:
    worker_id: str
    status: TranscriberStatus
    rating: float


@dataclass(frozen=True, slots=True)
class OpenWork:
    worker_id: str
    status: AssignmentStatus
    duration_minutes: Decimal


def workload_by_worker(open_work: Iterable[OpenWork], *, review_overhead_factor: Decimal) -> dict[str, Decimal]:
    """Sum review effort (duration x overhead) of each worker's assigned or in-progress work."""
    totals: dict[str, Decimal] = {}
    for item in open_work:
        if item.status not in OPEN_ASSIGNMENT_STATES:
            continue
        totals[item.worker_id] = totals.get(item.worker_id, Decimal("0")) + (
            item.duration_minutes * review_overhead_factor
        )
    return totals


def select_transcriber(
    candidates: Iterable[WorkerCandidate],
    open_work: Iterable[OpenWork],
    *,
    review_overhead_factor: Decimal,
) -> str | None:
    """Pick the active worker with the least workload; ties go to the higher rating.

    Returns ``None`` when no worker is active, which callers treat as "queue the job".
    """
    active = [candidate for candidate in candidates if candidate.status is TranscriberStatus.ACTIVE]
    if not active:
        return None

    workloads = workload_by_worker(open_work, review_overhead_factor=review_overhead_factor)
    chosen = min(
        active,
        key=lambda candidate: (
            workloads.get(candidate.worker_id, Decimal("0")),
            -candidate.rating,
            candidate.worker_id,
        ),
    )
    return chosen.worker_id
