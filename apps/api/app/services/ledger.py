"""Ledger service layer: estimates, deductions, credits and refunds."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
import logging
from uuid import uuid4

from app.core.config import Settings
from app.core.logging_safety import log_amount, safe_log_identifier
from app.domain.funding import apply_funding_plan, plan_funding, refresh_package_activity
from app.domain.pricing import credits_required, parse_mode, validate_minutes
from app.errors import (
    ConcurrencyConflictError,
    DomainValidationError,
    InsufficientFundsError,
    NotFoundError,
)
from app.repositories.memory import InMemoryStore, StaleWriteError
from app.schemas.account import (
    Account,
    CostEstimate,
    DeductionResult,
    Package,
    PackageGrant,
    Transaction,
    TransactionKind,
    TranscriptionMode,
)

logger = logging.getLogger(__name__)

_RATE_QUANTUM = Decimal("0.0001")
_ZERO = Decimal("0")
_CREDIT_KINDS = frozenset({TransactionKind.PURCHASE, TransactionKind.TOPUP})
_MODE_LABELS: dict[TranscriptionMode, str] = {
    TranscriptionMode.AUTOMATED: "Automated transcription",
    TranscriptionMode.HYBRID: "Hybrid review",
    TranscriptionMode.MANUAL: "Manual transcription",
}

Mutation = Callable[[Account, datetime], tuple[Account, list[Transaction]]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LedgerService:
    """Stateless ledger engine; every write is one optimistic read-modify-write."""

    def __init__(
        self,
        store: InMemoryStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._rates = settings.standard_rates()
        self._max_attempts = max(1, settings.ledger_max_conflict_retries)
        self._default_trial_minutes = settings.default_free_trial_minutes
        self._package_validity = timedelta(days=settings.package_validity_days)
        self._clock = clock

    def open_account(self, *, account_id: str) -> tuple[Account, bool]:
        now = self._clock()
        trial = self._default_trial_minutes
        account = Account(
            id=account_id,
            free_trial_total=trial,
            free_trial_used=_ZERO,
            free_trial_remaining=trial,
            free_trial_active=trial > 0,
            wallet_balance=_ZERO,
            packages=[],
            created_at=now,
            updated_at=now,
        )
        snapshot, created = self._store.insert_account(account)
        if created:
            logger.info(
                "ledger.account.opened account_id=%s trial_minutes=%s",
                safe_log_identifier(account_id, prefix="aid"),
                log_amount(trial),
            )
        return snapshot.account, created

    def get_account(self, *, account_id: str) -> Account:
        snapshot = self._store.read_account(account_id)
        if snapshot is None:
            raise NotFoundError()
        account = snapshot.account
        refresh_package_activity(account, now=self._clock())
        return account

    def standard_rate(self, mode: TranscriptionMode) -> Decimal:
        return self._rates[mode]

    def estimate_cost(
        self,
        *,
        account_id: str,
        mode: str | TranscriptionMode,
        minutes: Decimal | float | int | str,
    ) -> CostEstimate:
        resolved_mode = parse_mode(mode)
        normalized = validate_minutes(minutes)
        snapshot = self._store.read_account(account_id)
        if snapshot is None:
            raise NotFoundError()

        plan = plan_funding(
            snapshot.account,
            mode=resolved_mode,
            minutes=normalized,
            wallet_rate=self._rates[resolved_mode],
            now=self._clock(),
        )
        return CostEstimate(
            mode=resolved_mode,
            minutes=normalized,
            trial_minutes=plan.trial_minutes,
            package_minutes=plan.package_minutes,
            package_allocations=list(plan.package_allocations),
            wallet_minutes=plan.wallet_minutes,
            wallet_rate=plan.wallet_rate,
            wallet_amount=plan.wallet_amount,
            wallet_balance=plan.wallet_balance,
            total_cost=plan.total_cost,
            sufficient=plan.sufficient,
            credits_required=credits_required(resolved_mode, normalized),
        )

    def deduct(
        self,
        *,
        account_id: str,
        mode: str | TranscriptionMode,
        minutes: Decimal | float | int | str,
        job_id: str,
    ) -> DeductionResult:
        resolved_mode = parse_mode(mode)
        normalized = validate_minutes(minutes)
        wallet_rate = self._rates[resolved_mode]
        planned: dict[str, object] = {}

        def mutate(account: Account, now: datetime) -> tuple[Account, list[Transaction]]:
            plan = plan_funding(account, mode=resolved_mode, minutes=normalized, wallet_rate=wallet_rate, now=now)
            updated = apply_funding_plan(account, plan, now=now)
            description = f"{_MODE_LABELS[resolved_mode]}: {normalized} minutes"
            if plan.trial_minutes > 0:
                description += f" ({plan.trial_minutes} free trial minutes used)"
            transaction = Transaction(
                id=f"txn-{uuid4()}",
                account_id=account.id,
                kind=TransactionKind.CONSUMPTION,
                amount=-plan.total_cost,
                description=description,
                created_at=now,
                job_id=job_id,
                package_id=plan.package_allocations[0].package_id if plan.package_allocations else None,
                minutes_applied=normalized,
                trial_minutes=plan.trial_minutes,
                package_allocations=plan.package_allocations,
                wallet_minutes=plan.wallet_minutes,
                wallet_amount=plan.wallet_amount,
            )
            planned["plan"] = plan
            return updated, [transaction]

        try:
            _, transactions = self._run_atomic(account_id=account_id, mutate=mutate)
        except InsufficientFundsError as exc:
            logger.info(
                "ledger.deduct.rejected account_id=%s job_id=%s mode=%s minutes=%s required=%s available=%s",
                safe_log_identifier(account_id, prefix="aid"),
                safe_log_identifier(job_id, prefix="jid"),
                resolved_mode.value,
                log_amount(normalized),
                log_amount(exc.required),
                log_amount(exc.available),
            )
            raise

        plan = planned["plan"]
        transaction = transactions[0]
        logger.info(
            "ledger.deduct.applied account_id=%s job_id=%s mode=%s minutes=%s trial=%s package=%s wallet=%s",
            safe_log_identifier(account_id, prefix="aid"),
            safe_log_identifier(job_id, prefix="jid"),
            resolved_mode.value,
            log_amount(normalized),
            log_amount(plan.trial_minutes),
            log_amount(plan.package_minutes),
            log_amount(plan.wallet_amount),
        )
        return DeductionResult(
            transaction_id=transaction.id,
            trial_used=plan.trial_minutes,
            package_minutes_used=plan.package_minutes,
            package_allocations=list(plan.package_allocations),
            wallet_used=plan.wallet_amount,
            total_cost=plan.total_cost,
        )

    def credit(
        self,
        *,
        account_id: str,
        kind: TransactionKind,
        amount: Decimal,
        description: str,
        source_ref: str,
        package: PackageGrant | None = None,
    ) -> Transaction:
        """Apply a purchase or top-up exactly once per ``source_ref``."""
        if kind not in _CREDIT_KINDS:
            raise DomainValidationError("Credit kind must be purchase or topup.", details={"kind": kind.value})
        if amount <= 0:
            raise DomainValidationError("Credit amount must be greater than zero.", details={"amount": str(amount)})
        if not source_ref.strip():
            raise DomainValidationError("Credit requires a source reference.")
        if kind is TransactionKind.PURCHASE and package is None:
            raise DomainValidationError("Package purchase requires package metadata.")

        def mutate(account: Account, now: datetime) -> tuple[Account, list[Transaction]]:
            updated = account.model_copy(deep=True)
            package_id = None
            minutes_applied = None
            if kind is TransactionKind.PURCHASE:
                granted = self._build_package(package, amount=amount, source_ref=source_ref, now=now)
                updated.packages.append(granted)
                package_id = granted.id
                minutes_applied = granted.minutes_total
            else:
                updated.wallet_balance += amount
            updated.updated_at = now
            transaction = Transaction(
                id=f"txn-{uuid4()}",
                account_id=account.id,
                kind=kind,
                amount=amount,
                description=description,
                created_at=now,
                package_id=package_id,
                minutes_applied=minutes_applied,
                source_ref=source_ref,
            )
            return updated, [transaction]

        _, transactions = self._run_atomic(account_id=account_id, mutate=mutate, source_ref=source_ref)
        logger.info(
            "ledger.credit.applied account_id=%s kind=%s amount=%s source_ref=%s",
            safe_log_identifier(account_id, prefix="aid"),
            kind.value,
            log_amount(amount),
            safe_log_identifier(source_ref, prefix="src"),
        )
        return transactions[0]

    def refund(
        self,
        *,
        account_id: str,
        job_id: str,
        amount: Decimal,
        minutes: Decimal,
        charge_ref: str | None = None,
    ) -> Transaction:
        """Credit ``amount`` back to the wallet once per charge (or per job without one)."""
        if amount < 0:
            raise DomainValidationError("Refund amount cannot be negative.", details={"amount": str(amount)})
        source_ref = f"refund:{charge_ref or job_id}"

        def mutate(account: Account, now: datetime) -> tuple[Account, list[Transaction]]:
            updated = account.model_copy(deep=True)
            updated.wallet_balance += amount
            updated.updated_at = now
            transaction = Transaction(
                id=f"txn-{uuid4()}",
                account_id=account.id,
                kind=TransactionKind.REFUND,
                amount=amount,
                description=f"Refund for job {job_id}: {minutes} minutes",
                created_at=now,
                job_id=job_id,
                minutes_applied=minutes,
                source_ref=source_ref,
            )
            return updated, [transaction]

        _, transactions = self._run_atomic(account_id=account_id, mutate=mutate, source_ref=source_ref)
        logger.info(
            "ledger.refund.applied account_id=%s job_id=%s amount=%s minutes=%s",
            safe_log_identifier(account_id, prefix="aid"),
            safe_log_identifier(job_id, prefix="jid"),
            log_amount(amount),
            log_amount(minutes),
        )
        return transactions[0]

    def adjust_wallet(self, *, account_id: str, amount: Decimal, reason: str, actor_id: str) -> Transaction:
        if amount == 0:
            raise DomainValidationError("Adjustment amount cannot be zero.")

        def mutate(account: Account, now: datetime) -> tuple[Account, list[Transaction]]:
            if account.wallet_balance + amount < 0:
                raise InsufficientFundsError(required=-amount, available=account.wallet_balance)
            updated = account.model_copy(deep=True)
            updated.wallet_balance += amount
            updated.updated_at = now
            transaction = Transaction(
                id=f"txn-{uuid4()}",
                account_id=account.id,
                kind=TransactionKind.ADJUSTMENT,
                amount=amount,
                description=reason,
                created_at=now,
                actor_id=actor_id,
            )
            return updated, [transaction]

        _, transactions = self._run_atomic(account_id=account_id, mutate=mutate)
        logger.info(
            "ledger.adjustment.applied account_id=%s amount=%s actor_id=%s",
            safe_log_identifier(account_id, prefix="aid"),
            log_amount(amount),
            safe_log_identifier(actor_id, prefix="pid"),
        )
        return transactions[0]

    def set_free_trial(
        self,
        *,
        account_id: str,
        remaining_minutes: Decimal,
        reason: str | None,
        actor_id: str,
    ) -> Account:
        if remaining_minutes < 0:
            raise DomainValidationError("Free trial minutes cannot be negative.")

        def mutate(account: Account, now: datetime) -> tuple[Account, list[Transaction]]:
            change = remaining_minutes - account.free_trial_remaining
            updated = account.model_copy(deep=True)
            updated.free_trial_remaining = remaining_minutes
            updated.free_trial_total = updated.free_trial_used + remaining_minutes
            updated.free_trial_active = remaining_minutes > 0
            updated.updated_at = now
            transaction = Transaction(
                id=f"txn-{uuid4()}",
                account_id=account.id,
                kind=TransactionKind.ADJUSTMENT,
                amount=_ZERO,
                description=reason or f"Free trial set to {remaining_minutes} minutes",
                created_at=now,
                minutes_applied=change,
                actor_id=actor_id,
            )
            return updated, [transaction]

        updated, _ = self._run_atomic(account_id=account_id, mutate=mutate)
        logger.info(
            "ledger.free_trial.updated account_id=%s remaining=%s actor_id=%s",
            safe_log_identifier(account_id, prefix="aid"),
            log_amount(remaining_minutes),
            safe_log_identifier(actor_id, prefix="pid"),
        )
        return updated

    def list_transactions(self, *, account_id: str, limit: int = 50) -> list[Transaction]:
        if self._store.read_account(account_id) is None:
            raise NotFoundError()
        return self._store.list_transactions(account_id, limit=limit)

    def _run_atomic(
        self,
        *,
        account_id: str,
        mutate: Mutation,
        source_ref: str | None = None,
    ) -> tuple[Account, list[Transaction]]:
        """Read, mutate and commit with optimistic retry; a failing mutation writes nothing."""
        for attempt in range(1, self._max_attempts + 1):
            snapshot = self._store.read_account(account_id)
            if snapshot is None:
                raise NotFoundError()
            updated, transactions = mutate(snapshot.account, self._clock())
            try:
                self._store.commit_account(
                    expected_version=snapshot.version,
                    account=updated,
                    transactions=transactions,
                    source_ref=source_ref,
                )
            except StaleWriteError:
                logger.info(
                    "ledger.commit.conflict account_id=%s attempt=%s max_attempts=%s",
                    safe_log_identifier(account_id, prefix="aid"),
                    attempt,
                    self._max_attempts,
                )
                continue
            return updated, transactions

        logger.warning(
            "ledger.commit.exhausted account_id=%s attempts=%s",
            safe_log_identifier(account_id, prefix="aid"),
            self._max_attempts,
        )
        raise ConcurrencyConflictError(account_id=account_id, attempts=self._max_attempts)

    def _build_package(
        self,
        grant: PackageGrant,
        *,
        amount: Decimal,
        source_ref: str,
        now: datetime,
    ) -> Package:
        rate = grant.rate_per_minute
        if rate is None:
            rate = (amount / grant.minutes).quantize(_RATE_QUANTUM)
        validity = timedelta(days=grant.validity_days) if grant.validity_days else self._package_validity
        return Package(
            id=f"pkg-{uuid4()}",
            name=grant.name,
            mode=grant.mode,
            minutes_total=grant.minutes,
            minutes_used=_ZERO,
            minutes_remaining=grant.minutes,
            rate_per_minute=rate,
            purchased_at=now,
            expires_at=now + validity,
            active=True,
            source_ref=source_ref,
        )
