"""Administrative routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path, status

from app.routes.dependencies import (
    get_job_service,
    get_ledger_service,
    get_transcriber_service,
    require_admin,
)
from app.schemas.account import Account, FreeTrialUpdateRequest, Transaction, WalletAdjustmentRequest
from app.schemas.assignment import (
    DispatchQueuedResponse,
    RegisterTranscriberRequest,
    Transcriber,
    TranscriberStatusUpdate,
)
from app.schemas.auth import AuthPrincipal
from app.schemas.error import ErrorResponse, InsufficientFundsError as InsufficientFundsErrorResponse, NoLeakNotFoundError
from app.schemas.job import Job, ResetRetryRequest
from app.services.jobs import JobService
from app.services.ledger import LedgerService
from app.services.transcribers import TranscriberService

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.post(
    "/jobs/{jobId}/reset-retries",
    response_model=Job,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": NoLeakNotFoundError},
        409: {"model": ErrorResponse},
    },
)
def reset_retries(
    job_id: Annotated[str, Path(alias="jobId")],
    payload: ResetRetryRequest,
    principal: Annotated[AuthPrincipal, Depends(require_admin)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> Job:
    return service.reset_retry_count(job_id=job_id, actor_id=principal.user_id, reason=payload.reason)


@router.post("/jobs/dispatch-queued", response_model=DispatchQueuedResponse)
def dispatch_queued(
    _: Annotated[AuthPrincipal, Depends(require_admin)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> DispatchQueuedResponse:
    return DispatchQueuedResponse(assigned_job_ids=service.dispatch_queued_jobs())


@router.post(
    "/accounts/{accountId}/adjustments",
    response_model=Transaction,
    status_code=status.HTTP_201_CREATED,
    responses={402: {"model": InsufficientFundsErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
async def adjust_wallet(
    account_id: Annotated[str, Path(alias="accountId")],
    payload: WalletAdjustmentRequest,
    principal: Annotated[AuthPrincipal, Depends(require_admin)],
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
) -> Transaction:
    return ledger.adjust_wallet(
        account_id=account_id,
        amount=payload.amount,
        reason=payload.reason,
        actor_id=principal.user_id,
    )


@router.put(
    "/accounts/{accountId}/free-trial",
    response_model=Account,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def set_free_trial(
    account_id: Annotated[str, Path(alias="accountId")],
    payload: FreeTrialUpdateRequest,
    principal: Annotated[AuthPrincipal, Depends(require_admin)],
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
) -> Account:
    return ledger.set_free_trial(
        account_id=account_id,
        remaining_minutes=payload.remaining_minutes,
        reason=payload.reason,
        actor_id=principal.user_id,
    )


@router.post(
    "/transcribers",
    response_model=Transcriber,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}},
)
def register_transcriber(
    payload: RegisterTranscriberRequest,
    _: Annotated[AuthPrincipal, Depends(require_admin)],
    service: Annotated[TranscriberService, Depends(get_transcriber_service)],
) -> Transcriber:
    return service.register_transcriber(
        user_id=payload.user_id,
        name=payload.name,
        rating=payload.rating,
        status=payload.status,
    )


@router.put(
    "/transcribers/{workerId}/status",
    response_model=Transcriber,
    responses={404: {"model": NoLeakNotFoundError}},
)
def set_transcriber_status(
    worker_id: Annotated[str, Path(alias="workerId")],
    payload: TranscriberStatusUpdate,
    _: Annotated[AuthPrincipal, Depends(require_admin)],
    service: Annotated[TranscriberService, Depends(get_transcriber_service)],
) -> Transcriber:
    return service.set_transcriber_status(worker_id=worker_id, status=payload.status)
