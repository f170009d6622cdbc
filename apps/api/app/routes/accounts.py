"""Account, balance and pricing routes."""

from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status

from app.domain.pricing import credits_required
from app.routes.dependencies import get_authenticated_principal, get_ledger_service, require_customer
from app.schemas.account import Account, CostEstimate, CreditQuote, TransactionPage, TranscriptionMode
from app.schemas.auth import AuthPrincipal
from app.schemas.error import ErrorResponse, NoLeakNotFoundError
from app.services.ledger import LedgerService

router = APIRouter(tags=["Accounts"])


@router.post(
    "/accounts",
    response_model=Account,
    status_code=status.HTTP_201_CREATED,
    responses={200: {"model": Account}, 401: {"model": ErrorResponse}},
)
async def open_account(
    response: Response,
    principal: Annotated[AuthPrincipal, Depends(require_customer)],
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
) -> Account:
    account, created = ledger.open_account(account_id=principal.user_id)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return account


@router.get(
    "/accounts/me",
    response_model=Account,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def get_my_account(
    principal: Annotated[AuthPrincipal, Depends(require_customer)],
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
) -> Account:
    return ledger.get_account(account_id=principal.user_id)


@router.get(
    "/accounts/me/estimate",
    response_model=CostEstimate,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def estimate_cost(
    mode: TranscriptionMode,
    minutes: Annotated[Decimal, Query(gt=0)],
    principal: Annotated[AuthPrincipal, Depends(require_customer)],
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
) -> CostEstimate:
    return ledger.estimate_cost(account_id=principal.user_id, mode=mode, minutes=minutes)


@router.get(
    "/accounts/me/transactions",
    response_model=TransactionPage,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def list_transactions(
    principal: Annotated[AuthPrincipal, Depends(require_customer)],
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> TransactionPage:
    items = ledger.list_transactions(account_id=principal.user_id, limit=limit)
    return TransactionPage(items=items, limit=limit)


@router.get("/pricing/quote", response_model=CreditQuote, tags=["Pricing"])
async def quote(
    mode: TranscriptionMode,
    minutes: Annotated[Decimal, Query(gt=0)],
    _: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
) -> CreditQuote:
    rate = ledger.standard_rate(mode)
    return CreditQuote(
        mode=mode,
        minutes=minutes,
        credits_required=credits_required(mode, minutes),
        standard_rate=rate,
        standard_cost=minutes * rate,
    )
