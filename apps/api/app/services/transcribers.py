"""Transcriber roster service layer."""

from decimal import Decimal
import logging

from app.core.logging_safety import safe_log_identifier
from app.domain.assignment import OPEN_ASSIGNMENT_STATES, OpenWork, workload_by_worker
from app.errors import ApiError, NotFoundError
from app.repositories.memory import InMemoryStore, TranscriberRecord
from app.schemas.assignment import (
    Assignment,
    AssignmentStatus,
    Transcriber,
    TranscriberStats,
    TranscriberStatus,
)
from app.services.jobs import JobService, to_assignment

logger = logging.getLogger(__name__)


class TranscriberService:
    def __init__(self, store: InMemoryStore, jobs: JobService, *, review_overhead_factor: Decimal) -> None:
        self._store = store
        self._jobs = jobs
        self._review_overhead = review_overhead_factor

    def register_transcriber(
        self,
        *,
        user_id: str,
        name: str,
        rating: float,
        status: TranscriberStatus,
    ) -> Transcriber:
        if self._store.get_transcriber_for_user(user_id) is not None:
            raise ApiError(
                status_code=409,
                code="TRANSCRIBER_EXISTS",
                message="A transcriber is already registered for this user.",
            )
        record = self._store.add_transcriber(user_id=user_id, name=name, rating=rating, status=status)
        logger.info(
            "transcriber.registered worker_id=%s status=%s",
            safe_log_identifier(record.id, prefix="wid"),
            record.status.value,
        )
        if record.status is TranscriberStatus.ACTIVE:
            self._jobs.dispatch_queued_jobs()
        return self._to_transcriber(record)

    def set_transcriber_status(self, *, worker_id: str, status: TranscriberStatus) -> Transcriber:
        record = self._store.get_transcriber(worker_id)
        if record is None:
            raise NotFoundError()
        previous = record.status
        record.status = status
        logger.info(
            "transcriber.status_changed worker_id=%s prev_status=%s new_status=%s",
            safe_log_identifier(record.id, prefix="wid"),
            previous.value,
            status.value,
        )
        if status is TranscriberStatus.ACTIVE and previous is not TranscriberStatus.ACTIVE:
            self._jobs.dispatch_queued_jobs()
        return self._to_transcriber(record)

    def worker_for_user(self, user_id: str) -> TranscriberRecord:
        record = self._store.get_transcriber_for_user(user_id)
        if record is None:
            raise NotFoundError()
        return record

    def list_assignments_for_worker(self, *, worker_id: str, active_only: bool = False) -> list[Assignment]:
        statuses = OPEN_ASSIGNMENT_STATES if active_only else None
        records = self._store.list_assignments(worker_id=worker_id, statuses=statuses)
        return [to_assignment(record) for record in records]

    def transcriber_stats(self, *, worker_id: str) -> TranscriberStats:
        record = self._store.get_transcriber(worker_id)
        if record is None:
            raise NotFoundError()

        assignments = self._store.list_assignments(worker_id=worker_id)
        open_work = [
            OpenWork(worker_id=item.worker_id, status=item.status, duration_minutes=item.duration_minutes)
            for item in assignments
        ]
        workload = workload_by_worker(open_work, review_overhead_factor=self._review_overhead)
        return TranscriberStats(
            worker_id=record.id,
            total_jobs=len(assignments),
            completed_jobs=sum(1 for item in assignments if item.status is AssignmentStatus.COMPLETED),
            active_jobs=sum(1 for item in assignments if item.status in OPEN_ASSIGNMENT_STATES),
            rating=record.rating,
            active_workload_minutes=workload.get(record.id, Decimal("0")),
        )

    @staticmethod
    def _to_transcriber(record: TranscriberRecord) -> Transcriber:
        return Transcriber(
            id=record.id,
            user_id=record.user_id,
            name=record.name,
            status=record.status,
            rating=record.rating,
            completed_jobs=record.completed_jobs,
            created_at=record.created_at,
        )
