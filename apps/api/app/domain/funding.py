"""Ordered funding-source strategies used by both cost estimation and deduction.

A funding plan is computed once by walking ``DEFAULT_FUNDING_SOURCES`` in order:
free trial minutes, then eligible packages for the mode (cheapest rate first, each
drained before the next), then the wallet at the mode's standard rate. Deduction
applies the same plan, so an estimate and the deduction that follows it can never
disagree about which sources pay for which minutes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from app.errors import InsufficientFundsError
from app.schemas.account import Account, PackageAllocation, TranscriptionMode

_ZERO = Decimal("0")


@dataclass(slots=True)
class _PlanDraft:
    remaining: Decimal
    trial_minutes: Decimal = _ZERO
    package_allocations: list[PackageAllocation] = field(default_factory=list)
    wallet_minutes: Decimal = _ZERO
    wallet_amount: Decimal = _ZERO


@dataclass(frozen=True, slots=True)
class FundingPlan:
    mode: TranscriptionMode
    minutes: Decimal
    trial_minutes: Decimal
    package_allocations: tuple[PackageAllocation, ...]
    wallet_minutes: Decimal
    wallet_rate: Decimal
    wallet_amount: Decimal
    wallet_balance: Decimal

    @property
    def package_minutes(self) -> Decimal:
        return sum((allocation.minutes for allocation in self.package_allocations), _ZERO)

    @property
    def package_cost(self) -> Decimal:
        return sum((allocation.amount for allocation in self.package_allocations), _ZERO)

    @property
    def total_cost(self) -> Decimal:
        return self.package_cost + self.wallet_amount

    @property
    def sufficient(self) -> bool:
        return self.wallet_balance >= self.wallet_amount


class FundingSource(ABC):
    """One step of the funding priority order."""

    name: str

    @abstractmethod
    def allocate(
        self,
        account: Account,
        draft: _PlanDraft,
        *,
        mode: TranscriptionMode,
        wallet_rate: Decimal,
        now: datetime,
    ) -> None:
        """Claim part of ``draft.remaining`` without touching the account."""

    @abstractmethod
    def apply(self, account: Account, plan: FundingPlan) -> None:
        """Write this source's share of ``plan`` onto a working copy of the account."""


class FreeTrialSource(FundingSource):
    name = "free_trial"

    def allocate(self, account, draft, *, mode, wallet_rate, now) -> None:
        if not account.free_trial_active or account.free_trial_remaining <= 0:
            return
        used = min(draft.remaining, account.free_trial_remaining)
        draft.trial_minutes = used
        draft.remaining -= used

    def apply(self, account: Account, plan: FundingPlan) -> None:
        if plan.trial_minutes <= 0:
            return
        account.free_trial_remaining -= plan.trial_minutes
        account.free_trial_used += plan.trial_minutes
        if account.free_trial_remaining <= 0:
            account.free_trial_active = False


class PackageSource(FundingSource):
    name = "package"

    def allocate(self, account, draft, *, mode, wallet_rate, now) -> None:
        eligible = sorted(
            (package for package in account.packages if package.is_eligible(mode, now)),
            key=lambda package: (package.rate_per_minute, package.expires_at, package.id),
        )
        for package in eligible:
            if draft.remaining <= 0:
                break
            used = min(draft.remaining, package.minutes_remaining)
            draft.package_allocations.append(
                PackageAllocation(
                    package_id=package.id,
                    minutes=used,
                    rate_per_minute=package.rate_per_minute,
                    amount=used * package.rate_per_minute,
                )
            )
            draft.remaining -= used

    def apply(self, account: Account, plan: FundingPlan) -> None:
        packages_by_id = {package.id: package for package in account.packages}
        for allocation in plan.package_allocations:
            package = packages_by_id[allocation.package_id]
            package.minutes_remaining -= allocation.minutes
            package.minutes_used += allocation.minutes
            if package.minutes_remaining <= 0:
                package.active = False


class WalletSource(FundingSource):
    name = "wallet"

    def allocate(self, account, draft, *, mode, wallet_rate, now) -> None:
        if draft.remaining <= 0:
            return
        draft.wallet_minutes = draft.remaining
        draft.wallet_amount = draft.remaining * wallet_rate
        draft.remaining = _ZERO

    def apply(self, account: Account, plan: FundingPlan) -> None:
        if plan.wallet_amount <= 0:
            return
        account.wallet_balance -= plan.wallet_amount


DEFAULT_FUNDING_SOURCES: tuple[FundingSource, ...] = (FreeTrialSource(), PackageSource(), WalletSource())


def plan_funding(
    account: Account,
    *,
    mode: TranscriptionMode,
    minutes: Decimal,
    wallet_rate: Decimal,
    now: datetime,
    sources: tuple[FundingSource, ...] = DEFAULT_FUNDING_SOURCES,
) -> FundingPlan:
    draft = _PlanDraft(remaining=minutes)
    for source in sources:
        if draft.remaining <= 0:
            break
        source.allocate(account, draft, mode=mode, wallet_rate=wallet_rate, now=now)

    return FundingPlan(
        mode=mode,
        minutes=minutes,
        trial_minutes=draft.trial_minutes,
        package_allocations=tuple(draft.package_allocations),
        wallet_minutes=draft.wallet_minutes,
        wallet_rate=wallet_rate,
        wallet_amount=draft.wallet_amount,
        wallet_balance=account.wallet_balance,
    )


def apply_funding_plan(
    account: Account,
    plan: FundingPlan,
    *,
    now: datetime,
    sources: tuple[FundingSource, ...] = DEFAULT_FUNDING_SOURCES,
) -> Account:
    """Return a new account with ``plan`` applied; ``account`` itself is never mutated."""
    if not plan.sufficient:
        raise InsufficientFundsError(required=plan.wallet_amount, available=account.wallet_balance)

    updated = account.model_copy(deep=True)
    for source in sources:
        source.apply(updated, plan)
    refresh_package_activity(updated, now=now)
    updated.updated_at = now
    return updated


def refresh_package_activity(account: Account, *, now: datetime) -> bool:
    """Deactivate expired or exhausted packages in place; return whether anything changed."""
    changed = False
    for package in account.packages:
        if package.active and (package.minutes_remaining <= 0 or now >= package.expires_at):
            package.active = False
            changed = True
    return changed
