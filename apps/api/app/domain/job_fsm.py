"""Job lifecycle transition rules."""

from app.errors import ApiError
from app.schemas.job import JobStatus

_TERMINAL_STATES: set[JobStatus] = {
    JobStatus.COMPLETED,
    JobStatus.CANCELLED,
}

# ASSIGNED and HUMAN_REVIEW are sub-states of the processing family.
CANCELLABLE_STATES: frozenset[JobStatus] = frozenset(
    {
        JobStatus.PENDING,
        JobStatus.PROCESSING,
        JobStatus.ASSIGNED,
        JobStatus.HUMAN_REVIEW,
    }
)

# Engine results are applied only while the automated phase is (or was prematurely
# marked as failed while) in flight.
ENGINE_RESULT_STATES: frozenset[JobStatus] = frozenset({JobStatus.PROCESSING, JobStatus.ERROR})

_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.ASSIGNED, JobStatus.ERROR, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.HUMAN_REVIEW, JobStatus.ERROR, JobStatus.CANCELLED},
    JobStatus.ASSIGNED: {JobStatus.COMPLETED, JobStatus.CANCELLED},
    JobStatus.HUMAN_REVIEW: {JobStatus.COMPLETED, JobStatus.CANCELLED},
    JobStatus.ERROR: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.HUMAN_REVIEW},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}


def is_terminal(status: JobStatus) -> bool:
    return status in _TERMINAL_STATES


def allowed_next_statuses(status: JobStatus) -> list[JobStatus]:
    """Return deterministically ordered allowed successors for a status."""
    return sorted(_ALLOWED_TRANSITIONS.get(status, set()), key=lambda s: s.value)


def ensure_transition(old_status: JobStatus, new_status: JobStatus) -> None:
    """Validate transition according to lifecycle rules."""
    if old_status in _TERMINAL_STATES:
        raise ApiError(
            status_code=409,
            code="FSM_TERMINAL_IMMUTABLE",
            message="Terminal state cannot be mutated",
            details={
                "current_status": old_status,
                "attempted_status": new_status,
                "allowed_next_statuses": [],
            },
        )

    allowed_next = allowed_next_statuses(old_status)
    if new_status not in _ALLOWED_TRANSITIONS.get(old_status, set()):
        raise ApiError(
            status_code=409,
            code="FSM_TRANSITION_INVALID",
            message="Invalid status transition",
            details={
                "current_status": old_status,
                "attempted_status": new_status,
                "allowed_next_statuses": allowed_next,
            },
        )
