"""Job orchestration service layer."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
import logging
from secrets import token_urlsafe
from uuid import uuid4

from app.adapters.engine import EngineJobConfig, EnginePollResult, TranscriptionEngine
from app.core.config import Settings
from app.core.logging_safety import log_amount, safe_log_identifier
from app.domain.assignment import OPEN_ASSIGNMENT_STATES, OpenWork, WorkerCandidate, select_transcriber
from app.domain.job_fsm import ENGINE_RESULT_STATES, is_terminal
from app.domain.pricing import estimated_completion, parse_mode, validate_minutes
from app.errors import (
    ApiError,
    CreditAlreadyAppliedError,
    ExternalServiceError,
    InsufficientFundsError,
    NeedsResubmissionError,
    NotFoundError,
)
from app.repositories.memory import ActorType, AssignmentRecord, InMemoryStore, JobRecord
from app.schemas.account import TranscriptionMode
from app.schemas.assignment import Assignment, AssignmentStatus, TranscriberStatus
from app.schemas.internal import EngineJobStatus
from app.schemas.job import (
    FailureKind,
    HybridSnapshot,
    Job,
    JobCharge,
    JobPriority,
    JobStatus,
)
from app.services.ledger import LedgerService

logger = logging.getLogger(__name__)

_QUEUED_REASON = "queued, no workers available"
_REJECTED_REASON = "rejected by engine"
_TIMEOUT_REASON = "polling timeout"
_RESUBMIT_FAILURES: frozenset[FailureKind] = frozenset({FailureKind.REJECTED, FailureKind.SUBMIT_FAILED})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def to_assignment(record: AssignmentRecord) -> Assignment:
    return Assignment(
        id=record.id,
        job_id=record.job_id,
        worker_id=record.worker_id,
        mode=record.mode,
        duration_minutes=record.duration_minutes,
        status=record.status,
        assigned_at=record.assigned_at,
        estimated_completion=record.estimated_completion,
        completed_at=record.completed_at,
        notes=record.notes,
    )


class JobService:
    """Routes jobs to the engine or to human workers and settles them against the ledger."""

    def __init__(
        self,
        store: InMemoryStore,
        ledger: LedgerService,
        engine: TranscriptionEngine,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._engine = engine
        self._max_retries = settings.max_retries
        self._poll_interval = timedelta(seconds=settings.poll_interval_seconds)
        self._review_overhead = settings.review_overhead_factor
        self._callback_base_url = (settings.engine_callback_base_url or "").rstrip("/")
        self._clock = clock

    def create_job(
        self,
        *,
        account_id: str,
        mode: str | TranscriptionMode,
        audio_ref: str,
        duration_minutes: Decimal | float | int | str,
        priority: JobPriority = JobPriority.NORMAL,
        language: str = "en",
        diarization: bool = False,
    ) -> Job:
        resolved_mode = parse_mode(mode)
        minutes = validate_minutes(duration_minutes)
        safe_account_id = safe_log_identifier(account_id, prefix="aid")

        estimate = self._ledger.estimate_cost(account_id=account_id, mode=resolved_mode, minutes=minutes)
        if not estimate.sufficient:
            logger.info(
                "job.create.rejected account_id=%s mode=%s minutes=%s code=INSUFFICIENT_FUNDS",
                safe_account_id,
                resolved_mode.value,
                log_amount(minutes),
            )
            raise InsufficientFundsError(required=estimate.wallet_amount, available=estimate.wallet_balance)

        # The charge references the job, so the id exists before the record does.
        job_id = f"job-{uuid4()}"
        deduction = self._ledger.deduct(account_id=account_id, mode=resolved_mode, minutes=minutes, job_id=job_id)

        now = self._clock()
        record = self._store.add_job(
            JobRecord(
                id=job_id,
                account_id=account_id,
                mode=resolved_mode,
                status=JobStatus.PENDING,
                priority=priority,
                audio_ref=audio_ref,
                language=language,
                diarization=diarization,
                duration_minutes=minutes,
                max_retries=self._max_retries,
                created_at=now,
                updated_at=now,
                charge=JobCharge(
                    transaction_id=deduction.transaction_id,
                    amount=deduction.total_cost,
                    minutes=minutes,
                ),
            )
        )
        logger.info(
            "job.created account_id=%s job_id=%s mode=%s priority=%s minutes=%s charged=%s",
            safe_account_id,
            safe_log_identifier(job_id, prefix="jid"),
            resolved_mode.value,
            priority.value,
            log_amount(minutes),
            log_amount(deduction.total_cost),
        )

        with self._store.job_lock(record.id):
            if resolved_mode is TranscriptionMode.MANUAL:
                self._assign_worker(record, actor_type="customer")
            else:
                self._submit_to_engine(record, actor_type="customer")
        return self._to_job(record)

    def get_job(self, *, account_id: str, job_id: str) -> Job:
        record = self._store.get_job_for_owner(account_id=account_id, job_id=job_id)
        if record is None:
            raise NotFoundError()
        return self._to_job(record)

    def list_jobs(
        self,
        *,
        account_id: str,
        mode: TranscriptionMode | None = None,
        status: JobStatus | None = None,
    ) -> list[Job]:
        records = self._store.list_jobs_for_owner(account_id, mode=mode, status=status)
        return [self._to_job(record) for record in records]

    def retry_job(self, *, account_id: str, job_id: str) -> Job:
        record = self._store.get_job_for_owner(account_id=account_id, job_id=job_id)
        if record is None:
            raise NotFoundError()

        safe_job_id = safe_log_identifier(record.id, prefix="jid")
        with self._store.job_lock(record.id):
            if record.external_ref is None:
                logger.info("retry.rejected job_id=%s code=NEEDS_RESUBMISSION", safe_job_id)
                raise NeedsResubmissionError(job_id=record.id)
            if record.status is not JobStatus.ERROR:
                self._raise_retry_conflict(record, code="RETRY_NOT_ALLOWED_STATE", message="Retry is only allowed from error.")
            if record.retry_count >= record.max_retries:
                self._raise_retry_conflict(record, code="RETRY_LIMIT_REACHED", message="Retry limit reached for this job.")

            if record.refunded_at is not None:
                self._charge(record, actor_type="customer")
            record.retry_count += 1

            if record.failure_kind in _RESUBMIT_FAILURES:
                self._submit_to_engine(record, actor_type="customer")
            else:
                self._store.transition_job_status(
                    job=record,
                    new_status=JobStatus.PROCESSING,
                    actor_type="customer",
                    reason="retry: status sync re-armed",
                )
                record.failure_kind = None
                self._store.schedule_poll(job_id=record.id, external_ref=record.external_ref, next_run_at=self._clock())

            logger.info(
                "retry.dispatched job_id=%s retry_count=%s max_retries=%s status=%s",
                safe_job_id,
                record.retry_count,
                record.max_retries,
                record.status.value,
            )
        return self._to_job(record)

    def reset_retry_count(self, *, job_id: str, actor_id: str, reason: str) -> Job:
        """Admin override that grants a fresh retry budget; audited every time.

        A refunded job is charged again only when `retry_job` actually resumes it.
        """
        record = self._store.get_job(job_id)
        if record is None:
            raise NotFoundError()

        with self._store.job_lock(record.id):
            if is_terminal(record.status):
                raise ApiError(
                    status_code=409,
                    code="FSM_TERMINAL_IMMUTABLE",
                    message="Terminal state cannot be mutated",
                    details={"current_status": record.status, "job_id": record.id},
                )
            previous = record.retry_count
            record.retry_count = 0
            record.retry_resets += 1
            self._store.record_job_event(
                job=record,
                event_type="JOB_RETRY_COUNT_RESET",
                actor_type="admin",
                reason=reason,
                actor_id=actor_id,
            )
            logger.warning(
                "retry.reset job_id=%s actor_id=%s previous_retry_count=%s retry_resets=%s",
                safe_log_identifier(record.id, prefix="jid"),
                safe_log_identifier(actor_id, prefix="pid"),
                previous,
                record.retry_resets,
            )
        return self._to_job(record)

    def cancel_job(self, *, account_id: str, job_id: str) -> Job:
        record = self._store.get_job_for_owner(account_id=account_id, job_id=job_id)
        if record is None:
            raise NotFoundError()

        safe_job_id = safe_log_identifier(record.id, prefix="jid")
        with self._store.job_lock(record.id):
            previous_status = record.status
            try:
                self._store.transition_job_status(
                    job=record,
                    new_status=JobStatus.CANCELLED,
                    actor_type="customer",
                    reason="cancelled by customer",
                )
            except ApiError as exc:
                logger.warning(
                    "cancel.rejected job_id=%s code=%s current_status=%s",
                    safe_job_id,
                    exc.payload.code,
                    previous_status.value,
                )
                raise

            self._store.cancel_poll(record.id)
            self._close_open_assignment(record, note="job cancelled")
            self._refund(record, actor_type="customer")
            logger.info(
                "cancel.applied job_id=%s prev_status=%s new_status=%s",
                safe_job_id,
                previous_status.value,
                record.status.value,
            )
        return self._to_job(record)

    def start_assignment(self, *, assignment_id: str, worker_id: str) -> Assignment:
        assignment = self._get_worker_assignment(assignment_id=assignment_id, worker_id=worker_id)
        with self._store.job_lock(assignment.job_id):
            if assignment.status is not AssignmentStatus.ASSIGNED:
                self._raise_assignment_conflict(assignment, attempted=AssignmentStatus.IN_PROGRESS)
            assignment.status = AssignmentStatus.IN_PROGRESS
            logger.info(
                "assignment.started assignment_id=%s worker_id=%s",
                safe_log_identifier(assignment.id, prefix="asg"),
                safe_log_identifier(worker_id, prefix="wid"),
            )
        return to_assignment(assignment)

    def submit_transcript(
        self,
        *,
        assignment_id: str,
        worker_id: str,
        text: str,
        notes: str | None = None,
    ) -> Assignment:
        assignment = self._get_worker_assignment(assignment_id=assignment_id, worker_id=worker_id)
        record = self._store.get_job(assignment.job_id)
        if record is None:
            raise NotFoundError()

        with self._store.job_lock(record.id):
            if assignment.status not in OPEN_ASSIGNMENT_STATES:
                self._raise_assignment_conflict(assignment, attempted=AssignmentStatus.COMPLETED)
            self._store.transition_job_status(
                job=record,
                new_status=JobStatus.COMPLETED,
                actor_type="transcriber",
                actor_id=worker_id,
            )
            now = self._clock()
            record.final_transcript = text
            record.completed_at = now
            assignment.status = AssignmentStatus.COMPLETED
            assignment.completed_at = now
            assignment.notes = notes
            transcriber = self._store.get_transcriber(worker_id)
            if transcriber is not None:
                transcriber.completed_jobs += 1
            logger.info(
                "assignment.completed assignment_id=%s job_id=%s worker_id=%s",
                safe_log_identifier(assignment.id, prefix="asg"),
                safe_log_identifier(record.id, prefix="jid"),
                safe_log_identifier(worker_id, prefix="wid"),
            )
        return to_assignment(assignment)

    def apply_engine_result(
        self,
        *,
        job_id: str,
        external_ref: str,
        result: EnginePollResult,
        actor_type: ActorType = "engine",
    ) -> bool:
        """Fold a poll or callback result into the job; stale or late results are no-ops."""
        record = self._store.get_job(job_id)
        if record is None:
            raise NotFoundError()

        safe_job_id = safe_log_identifier(record.id, prefix="jid")
        with self._store.job_lock(record.id):
            ignored_reason = None
            if external_ref != record.external_ref:
                ignored_reason = "superseded_ref"
            elif is_terminal(record.status):
                ignored_reason = "terminal"
            elif record.status not in ENGINE_RESULT_STATES:
                ignored_reason = "not_awaiting_engine"
            elif record.status is JobStatus.ERROR and record.refunded_at is not None:
                ignored_reason = "settled"
            elif result.status is EngineJobStatus.RUNNING:
                ignored_reason = "still_running"
            elif result.status is EngineJobStatus.REJECTED and record.status is JobStatus.ERROR:
                ignored_reason = "already_failed"

            if ignored_reason is not None:
                logger.info(
                    "engine_result.ignored job_id=%s engine_status=%s current_status=%s reason=%s",
                    safe_job_id,
                    result.status.value,
                    record.status.value,
                    ignored_reason,
                )
                return False

            self._store.cancel_poll(record.id)
            if result.status is EngineJobStatus.DONE:
                self._complete_automated_phase(record, transcript=result.transcript or "", actor_type=actor_type)
            else:
                self._fail(record, kind=FailureKind.REJECTED, reason=_REJECTED_REASON, actor_type=actor_type)
        return True

    def mark_polling_timeout(self, *, job_id: str, external_ref: str) -> bool:
        record = self._store.get_job(job_id)
        if record is None:
            return False
        with self._store.job_lock(record.id):
            self._store.cancel_poll(record.id)
            if record.external_ref != external_ref or record.status is not JobStatus.PROCESSING:
                return False
            self._fail(record, kind=FailureKind.POLLING_TIMEOUT, reason=_TIMEOUT_REASON, actor_type="system")
        return True

    def dispatch_queued_jobs(self) -> list[str]:
        """Assign queued manual jobs and unassigned hybrid reviews, oldest first."""
        assigned: list[str] = []
        if not any(worker.status is TranscriberStatus.ACTIVE for worker in self._store.list_transcribers()):
            return assigned

        for record in self._store.list_jobs():
            if not self._awaiting_worker(record):
                continue
            with self._store.job_lock(record.id):
                # A concurrent dispatch or cancel may have won the lock first.
                if not self._awaiting_worker(record):
                    continue
                assignment = self._assign_worker(record, actor_type="system")
            if assignment is None:
                break
            assigned.append(record.id)

        if assigned:
            logger.info("dispatch.completed assigned_jobs=%s", len(assigned))
        return assigned

    def _submit_to_engine(self, record: JobRecord, *, actor_type: ActorType) -> None:
        record.callback_token = token_urlsafe(24)
        self._store.register_callback_token(job_id=record.id, token=record.callback_token)
        callback_url = None
        if self._callback_base_url:
            callback_url = f"{self._callback_base_url}/api/v1/internal/engine/callbacks/{record.callback_token}"
        config = EngineJobConfig(language=record.language, diarization=record.diarization, callback_url=callback_url)
        safe_job_id = safe_log_identifier(record.id, prefix="jid")

        try:
            external_ref = self._engine.submit(record.audio_ref, config)
        except ExternalServiceError as exc:
            logger.warning(
                "engine.submit_failed job_id=%s transient=%s code=%s",
                safe_job_id,
                exc.transient,
                exc.payload.code,
            )
            self._fail(
                record,
                kind=FailureKind.SUBMIT_FAILED,
                reason=f"engine submission failed: {exc.payload.message}",
                actor_type=actor_type,
            )
            return

        now = self._clock()
        record.external_ref = external_ref
        record.submitted_at = now
        record.failure_kind = None
        self._store.transition_job_status(
            job=record,
            new_status=JobStatus.PROCESSING,
            actor_type=actor_type,
            reason="submitted to engine",
        )
        self._store.schedule_poll(job_id=record.id, external_ref=external_ref, next_run_at=now + self._poll_interval)
        logger.info(
            "engine.submitted job_id=%s external_ref=%s",
            safe_job_id,
            safe_log_identifier(external_ref, prefix="ext"),
        )

    def _complete_automated_phase(self, record: JobRecord, *, transcript: str, actor_type: ActorType) -> None:
        now = self._clock()
        record.failure_kind = None
        if record.mode is TranscriptionMode.HYBRID:
            self._store.transition_job_status(
                job=record,
                new_status=JobStatus.HUMAN_REVIEW,
                actor_type=actor_type,
                reason="automated phase complete",
            )
            record.transcript = transcript
            record.hybrid_snapshot = HybridSnapshot(
                transcript=transcript,
                captured_at=now,
                automated_minutes=float(record.duration_minutes),
            )
            record.completed_at = None
            self._assign_worker(record, actor_type="system")
        else:
            self._store.transition_job_status(job=record, new_status=JobStatus.COMPLETED, actor_type=actor_type)
            record.transcript = transcript
            record.final_transcript = transcript
            record.completed_at = now

        logger.info(
            "engine.completed job_id=%s mode=%s status=%s",
            safe_log_identifier(record.id, prefix="jid"),
            record.mode.value,
            record.status.value,
        )

    def _fail(self, record: JobRecord, *, kind: FailureKind, reason: str, actor_type: ActorType) -> None:
        if record.status is JobStatus.ERROR:
            # Resubmission from error failed again; the status stays, the reason moves on.
            record.status_reason = reason
            self._store.record_job_event(
                job=record,
                event_type="JOB_FAILURE_RECORDED",
                actor_type=actor_type,
                reason=reason,
            )
        else:
            self._store.transition_job_status(
                job=record,
                new_status=JobStatus.ERROR,
                actor_type=actor_type,
                reason=reason,
            )
        record.failure_kind = kind
        self._store.cancel_poll(record.id)
        logger.warning(
            "job.failed job_id=%s failure_kind=%s retry_count=%s max_retries=%s",
            safe_log_identifier(record.id, prefix="jid"),
            kind.value,
            record.retry_count,
            record.max_retries,
        )
        if not self._is_retryable(record):
            self._refund(record, actor_type="system")

    @staticmethod
    def _is_retryable(record: JobRecord) -> bool:
        return record.external_ref is not None and record.retry_count < record.max_retries

    def _charge(self, record: JobRecord, *, actor_type: ActorType, actor_id: str | None = None) -> None:
        deduction = self._ledger.deduct(
            account_id=record.account_id,
            mode=record.mode,
            minutes=record.duration_minutes,
            job_id=record.id,
        )
        record.charge = JobCharge(
            transaction_id=deduction.transaction_id,
            amount=deduction.total_cost,
            minutes=record.duration_minutes,
        )
        record.refunded_at = None
        self._store.record_job_event(
            job=record,
            event_type="JOB_CHARGED",
            actor_type=actor_type,
            actor_id=actor_id,
        )

    def _refund(self, record: JobRecord, *, actor_type: ActorType) -> None:
        charge = record.charge
        if charge is None or record.refunded_at is not None:
            return
        try:
            self._ledger.refund(
                account_id=record.account_id,
                job_id=record.id,
                amount=charge.amount,
                minutes=charge.minutes,
                charge_ref=charge.transaction_id,
            )
        except CreditAlreadyAppliedError:
            logger.info("refund.replayed job_id=%s", safe_log_identifier(record.id, prefix="jid"))
        record.refunded_at = self._clock()
        self._store.record_job_event(
            job=record,
            event_type="JOB_CHARGE_REFUNDED",
            actor_type=actor_type,
            reason=record.status_reason,
        )

    def _assign_worker(self, record: JobRecord, *, actor_type: ActorType) -> AssignmentRecord | None:
        candidates = [
            WorkerCandidate(worker_id=worker.id, status=worker.status, rating=worker.rating)
            for worker in self._store.list_transcribers()
        ]
        open_work = [
            OpenWork(worker_id=item.worker_id, status=item.status, duration_minutes=item.duration_minutes)
            for item in self._store.list_assignments(statuses=OPEN_ASSIGNMENT_STATES)
        ]
        worker_id = select_transcriber(candidates, open_work, review_overhead_factor=self._review_overhead)
        safe_job_id = safe_log_identifier(record.id, prefix="jid")
        if worker_id is None:
            self._store.record_job_event(
                job=record,
                event_type="JOB_QUEUED_FOR_WORKER",
                actor_type=actor_type,
                reason=_QUEUED_REASON,
            )
            record.status_reason = _QUEUED_REASON
            logger.info("assignment.queued job_id=%s status=%s", safe_job_id, record.status.value)
            return None

        now = self._clock()
        assignment = self._store.add_assignment(
            AssignmentRecord(
                id=f"asg-{uuid4()}",
                job_id=record.id,
                worker_id=worker_id,
                mode=record.mode,
                duration_minutes=record.duration_minutes,
                status=AssignmentStatus.ASSIGNED,
                assigned_at=now,
                estimated_completion=estimated_completion(record.priority, now=now),
            )
        )
        record.assignment_ref = assignment.id
        if record.status is JobStatus.PENDING:
            self._store.transition_job_status(
                job=record,
                new_status=JobStatus.ASSIGNED,
                actor_type=actor_type,
                reason="assigned to transcriber",
            )
        else:
            record.status_reason = "review assigned to transcriber"
            self._store.record_job_event(
                job=record,
                event_type="JOB_REVIEW_ASSIGNED",
                actor_type=actor_type,
                reason=record.status_reason,
            )
        logger.info(
            "assignment.created job_id=%s assignment_id=%s worker_id=%s",
            safe_job_id,
            safe_log_identifier(assignment.id, prefix="asg"),
            safe_log_identifier(worker_id, prefix="wid"),
        )
        return assignment

    def _close_open_assignment(self, record: JobRecord, *, note: str) -> None:
        if record.assignment_ref is None:
            return
        assignment = self._store.get_assignment(record.assignment_ref)
        if assignment is None or assignment.status not in OPEN_ASSIGNMENT_STATES:
            return
        assignment.status = AssignmentStatus.COMPLETED
        assignment.completed_at = self._clock()
        assignment.notes = note

    def _get_worker_assignment(self, *, assignment_id: str, worker_id: str) -> AssignmentRecord:
        assignment = self._store.get_assignment(assignment_id)
        if assignment is None or assignment.worker_id != worker_id:
            raise NotFoundError()
        return assignment

    @staticmethod
    def _awaiting_worker(record: JobRecord) -> bool:
        return record.assignment_ref is None and (
            (record.status is JobStatus.PENDING and record.mode is TranscriptionMode.MANUAL)
            or record.status is JobStatus.HUMAN_REVIEW
        )

    @staticmethod
    def _raise_retry_conflict(record: JobRecord, *, code: str, message: str) -> None:
        raise ApiError(
            status_code=409,
            code=code,
            message=message,
            details={
                "current_status": record.status,
                "job_id": record.id,
                "retry_count": record.retry_count,
                "max_retries": record.max_retries,
            },
        )

    @staticmethod
    def _raise_assignment_conflict(assignment: AssignmentRecord, *, attempted: AssignmentStatus) -> None:
        raise ApiError(
            status_code=409,
            code="ASSIGNMENT_STATE_INVALID",
            message="Assignment cannot move to the requested state.",
            details={"current_status": assignment.status, "attempted_status": attempted},
        )

    @staticmethod
    def _to_job(record: JobRecord) -> Job:
        return Job(
            id=record.id,
            account_id=record.account_id,
            mode=record.mode,
            status=record.status,
            priority=record.priority,
            duration_minutes=record.duration_minutes,
            audio_ref=record.audio_ref,
            language=record.language,
            external_ref=record.external_ref,
            assignment_ref=record.assignment_ref,
            retry_count=record.retry_count,
            max_retries=record.max_retries,
            transcript=record.transcript,
            final_transcript=record.final_transcript,
            hybrid_snapshot=record.hybrid_snapshot,
            status_reason=record.status_reason,
            charge=record.charge,
            refunded_at=record.refunded_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
            submitted_at=record.submitted_at,
            completed_at=record.completed_at,
        )
