"""In-memory repositories used by the API and tests."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
import threading
from typing import Any
from typing import Literal
from uuid import uuid4

from app.domain.job_fsm import ensure_transition
from app.errors import CreditAlreadyAppliedError
from app.schemas.account import Account, Transaction, TranscriptionMode
from app.schemas.assignment import AssignmentStatus, TranscriberStatus
from app.schemas.job import FailureKind, HybridSnapshot, JobCharge, JobPriority, JobStatus

ActorType = Literal["customer", "transcriber", "admin", "engine", "system"]

_TRANSITION_AUDIT_EVENT_TYPE = "JOB_STATUS_TRANSITION_APPLIED"


class StaleWriteError(Exception):
    """Raised when an account commit is based on a version that is no longer current."""


@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    account: Account
    version: int


@dataclass(slots=True)
class _AccountRow:
    document: dict[str, Any]
    version: int


@dataclass(slots=True)
class JobRecord:
    id: str
    account_id: str
    mode: TranscriptionMode
    status: JobStatus
    priority: JobPriority
    audio_ref: str
    language: str
    diarization: bool
    duration_minutes: Decimal
    max_retries: int
    created_at: datetime
    updated_at: datetime | None = None
    retry_count: int = 0
    retry_resets: int = 0
    external_ref: str | None = None
    callback_token: str | None = None
    assignment_ref: str | None = None
    transcript: str | None = None
    final_transcript: str | None = None
    hybrid_snapshot: HybridSnapshot | None = None
    status_reason: str | None = None
    failure_kind: FailureKind | None = None
    charge: JobCharge | None = None
    refunded_at: datetime | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class AssignmentRecord:
    id: str
    job_id: str
    worker_id: str
    mode: TranscriptionMode
    duration_minutes: Decimal
    status: AssignmentStatus
    assigned_at: datetime
    estimated_completion: datetime
    completed_at: datetime | None = None
    notes: str | None = None


@dataclass(slots=True)
class TranscriberRecord:
    id: str
    user_id: str
    name: str
    status: TranscriberStatus
    rating: float
    created_at: datetime
    completed_jobs: int = 0


@dataclass(slots=True)
class PollTaskRecord:
    job_id: str
    external_ref: str
    next_run_at: datetime
    created_at: datetime
    attempts: int = 0


@dataclass(slots=True)
class PaymentEventRecord:
    event_id: str
    account_id: str
    signature: tuple[Any, ...]
    processed_at: datetime
    transaction_id: str | None = None


@dataclass(slots=True)
class TransitionAuditRecord:
    event_type: str
    job_id: str
    account_id: str
    actor_type: ActorType
    prev_status: JobStatus
    new_status: JobStatus
    recorded_at: datetime
    reason: str | None = None
    actor_id: str | None = None


@dataclass(slots=True)
class InMemoryStore:
    """Deterministic persistence layer with per-account optimistic versioning."""

    accounts: dict[str, _AccountRow] = field(default_factory=dict)
    transactions: list[Transaction] = field(default_factory=list)
    applied_source_refs: dict[str, str] = field(default_factory=dict)
    callback_tokens: dict[str, str] = field(default_factory=dict)
    jobs: dict[str, JobRecord] = field(default_factory=dict)
    assignments: dict[str, AssignmentRecord] = field(default_factory=dict)
    transcribers: dict[str, TranscriberRecord] = field(default_factory=dict)
    poll_tasks: dict[str, PollTaskRecord] = field(default_factory=dict)
    payment_events: dict[str, PaymentEventRecord] = field(default_factory=dict)
    transition_audit_events: list[TransitionAuditRecord] = field(default_factory=list)
    account_write_count: int = 0
    job_write_count: int = 0
    # Failpoint: each unit simulates one concurrent writer landing between read and commit.
    account_conflict_injections: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _job_locks: dict[str, threading.RLock] = field(default_factory=dict, repr=False)

    # Accounts -----------------------------------------------------------------

    def insert_account(self, account: Account) -> tuple[AccountSnapshot, bool]:
        """Create the account unless it exists; return the stored snapshot and whether it was created."""
        document = Account.model_validate(account.model_dump()).model_dump(mode="json")
        with self._lock:
            existing = self.accounts.get(account.id)
            if existing is not None:
                return AccountSnapshot(Account.model_validate(existing.document), existing.version), False
            self.accounts[account.id] = _AccountRow(document=document, version=1)
            self.account_write_count += 1
            return AccountSnapshot(Account.model_validate(document), 1), True

    def read_account(self, account_id: str) -> AccountSnapshot | None:
        with self._lock:
            row = self.accounts.get(account_id)
            if row is None:
                return None
            document, version = dict(row.document), row.version
        return AccountSnapshot(Account.model_validate(document), version)

    def commit_account(
        self,
        *,
        expected_version: int,
        account: Account,
        transactions: list[Transaction],
        source_ref: str | None = None,
    ) -> AccountSnapshot:
        """Write balances and their transactions as one unit, or nothing at all."""
        document = Account.model_validate(account.model_dump()).model_dump(mode="json")
        with self._lock:
            row = self.accounts.get(account.id)
            if row is None:
                raise StaleWriteError(f"account {account.id} does not exist")
            if self.account_conflict_injections > 0:
                self.account_conflict_injections -= 1
                row.version += 1
            if row.version != expected_version:
                raise StaleWriteError(
                    f"account {account.id} at version {row.version}, commit based on {expected_version}"
                )
            if source_ref is not None and source_ref in self.applied_source_refs:
                raise CreditAlreadyAppliedError(source_ref=source_ref)

            row.document = document
            row.version += 1
            self.transactions.extend(transactions)
            if source_ref is not None:
                self.applied_source_refs[source_ref] = transactions[0].id if transactions else ""
            self.account_write_count += 1
            return AccountSnapshot(Account.model_validate(document), row.version)

    def get_applied_source_ref(self, source_ref: str) -> str | None:
        """Return the transaction id recorded for an applied source reference."""
        with self._lock:
            return self.applied_source_refs.get(source_ref)

    def list_transactions(self, account_id: str, *, limit: int | None = None) -> list[Transaction]:
        with self._lock:
            items = [item for item in self.transactions if item.account_id == account_id]
        # Newest first; append order breaks timestamp ties.
        items.reverse()
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items[:limit] if limit is not None else items

    # Jobs ---------------------------------------------------------------------

    @contextmanager
    def job_lock(self, job_id: str) -> Iterator[None]:
        """Serialize mutations of a single job document."""
        with self._lock:
            lock = self._job_locks.setdefault(job_id, threading.RLock())
        with lock:
            yield

    def add_job(self, job: JobRecord) -> JobRecord:
        self.jobs[job.id] = job
        self.job_write_count += 1
        return job

    def get_job(self, job_id: str) -> JobRecord | None:
        return self.jobs.get(job_id)

    def get_job_for_owner(self, account_id: str, job_id: str) -> JobRecord | None:
        job = self.jobs.get(job_id)
        if job is None or job.account_id != account_id:
            return None
        return job

    def register_callback_token(self, *, job_id: str, token: str) -> None:
        """Remember every token ever issued so callbacks for superseded submissions still resolve."""
        self.callback_tokens[token] = job_id

    def get_job_by_callback_token(self, token: str) -> JobRecord | None:
        job_id = self.callback_tokens.get(token)
        if job_id is None:
            return None
        return self.jobs.get(job_id)

    def list_jobs_for_owner(
        self,
        account_id: str,
        *,
        mode: TranscriptionMode | None = None,
        status: JobStatus | None = None,
    ) -> list[JobRecord]:
        jobs = [
            job
            for job in self.jobs.values()
            if job.account_id == account_id
            and (mode is None or job.mode is mode)
            and (status is None or job.status is status)
        ]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs

    def list_jobs(self, *, status: JobStatus | None = None) -> list[JobRecord]:
        jobs = [job for job in self.jobs.values() if status is None or job.status is status]
        jobs.sort(key=lambda job: job.created_at)
        return jobs

    def transition_job_status(
        self,
        *,
        job: JobRecord,
        new_status: JobStatus,
        actor_type: ActorType,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> None:
        """Apply an FSM-validated status mutation and append its audit record."""
        ensure_transition(job.status, new_status)
        previous_status = job.status
        now = datetime.now(UTC)
        job.status = new_status
        job.status_reason = reason
        job.updated_at = now
        self.job_write_count += 1
        self.transition_audit_events.append(
            TransitionAuditRecord(
                event_type=_TRANSITION_AUDIT_EVENT_TYPE,
                job_id=job.id,
                account_id=job.account_id,
                actor_type=actor_type,
                prev_status=previous_status,
                new_status=new_status,
                recorded_at=now,
                reason=reason,
                actor_id=actor_id,
            )
        )

    def record_job_event(
        self,
        *,
        job: JobRecord,
        event_type: str,
        actor_type: ActorType,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> None:
        """Audit a job mutation that does not change its status."""
        now = datetime.now(UTC)
        job.updated_at = now
        self.job_write_count += 1
        self.transition_audit_events.append(
            TransitionAuditRecord(
                event_type=event_type,
                job_id=job.id,
                account_id=job.account_id,
                actor_type=actor_type,
                prev_status=job.status,
                new_status=job.status,
                recorded_at=now,
                reason=reason,
                actor_id=actor_id,
            )
        )

    # Transcribers and assignments ----------------------------------------------

    def add_transcriber(self, *, user_id: str, name: str, rating: float, status: TranscriberStatus) -> TranscriberRecord:
        record = TranscriberRecord(
            id=f"tr-{uuid4()}",
            user_id=user_id,
            name=name,
            status=status,
            rating=rating,
            created_at=datetime.now(UTC),
        )
        self.transcribers[record.id] = record
        return record

    def get_transcriber(self, worker_id: str) -> TranscriberRecord | None:
        return self.transcribers.get(worker_id)

    def get_transcriber_for_user(self, user_id: str) -> TranscriberRecord | None:
        for record in self.transcribers.values():
            if record.user_id == user_id:
                return record
        return None

    def list_transcribers(self) -> list[TranscriberRecord]:
        return sorted(self.transcribers.values(), key=lambda record: record.created_at)

    def add_assignment(self, assignment: AssignmentRecord) -> AssignmentRecord:
        self.assignments[assignment.id] = assignment
        return assignment

    def get_assignment(self, assignment_id: str) -> AssignmentRecord | None:
        return self.assignments.get(assignment_id)

    def list_assignments(
        self,
        *,
        worker_id: str | None = None,
        statuses: frozenset[AssignmentStatus] | None = None,
    ) -> list[AssignmentRecord]:
        items = [
            item
            for item in self.assignments.values()
            if (worker_id is None or item.worker_id == worker_id)
            and (statuses is None or item.status in statuses)
        ]
        items.sort(key=lambda item: item.assigned_at, reverse=True)
        return items

    # Status polling ------------------------------------------------------------

    def schedule_poll(self, *, job_id: str, external_ref: str, next_run_at: datetime) -> PollTaskRecord:
        task = PollTaskRecord(
            job_id=job_id,
            external_ref=external_ref,
            next_run_at=next_run_at,
            created_at=datetime.now(UTC),
        )
        with self._lock:
            self.poll_tasks[job_id] = task
        return task

    def get_poll_task(self, job_id: str) -> PollTaskRecord | None:
        with self._lock:
            return self.poll_tasks.get(job_id)

    def cancel_poll(self, job_id: str) -> bool:
        with self._lock:
            return self.poll_tasks.pop(job_id, None) is not None

    def due_poll_tasks(self, now: datetime) -> list[PollTaskRecord]:
        with self._lock:
            due = [task for task in self.poll_tasks.values() if task.next_run_at <= now]
        due.sort(key=lambda task: task.next_run_at)
        return due

    # Payment events ------------------------------------------------------------

    def get_payment_event(self, event_id: str) -> PaymentEventRecord | None:
        return self.payment_events.get(event_id)

    def record_payment_event(self, record: PaymentEventRecord) -> None:
        self.payment_events.setdefault(record.event_id, record)
