"""Job routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query, status

from app.routes.dependencies import get_job_service, require_customer
from app.schemas.account import TranscriptionMode
from app.schemas.auth import AuthPrincipal
from app.schemas.error import (
    ErrorResponse,
    FsmTransitionError,
    InsufficientFundsError as InsufficientFundsErrorResponse,
    NoLeakNotFoundError,
    RetryStateConflictError,
)
from app.schemas.job import CreateJobRequest, Job, JobList, JobStatus
from app.services.jobs import JobService

router = APIRouter(tags=["Jobs"])

# Handlers that reach the engine or take job locks are plain functions so FastAPI
# runs them in its threadpool instead of on the event loop.


@router.post(
    "/jobs",
    response_model=Job,
    status_code=status.HTTP_201_CREATED,
    responses={
        401: {"model": ErrorResponse},
        402: {"model": InsufficientFundsErrorResponse},
        404: {"model": NoLeakNotFoundError},
    },
)
def create_job(
    payload: CreateJobRequest,
    principal: Annotated[AuthPrincipal, Depends(require_customer)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> Job:
    return service.create_job(
        account_id=principal.user_id,
        mode=payload.mode,
        audio_ref=payload.audio_ref,
        duration_minutes=payload.duration_minutes,
        priority=payload.priority,
        language=payload.language,
        diarization=payload.diarization,
    )


@router.get("/jobs", response_model=JobList)
async def list_jobs(
    principal: Annotated[AuthPrincipal, Depends(require_customer)],
    service: Annotated[JobService, Depends(get_job_service)],
    mode: TranscriptionMode | None = None,
    status_filter: Annotated[JobStatus | None, Query(alias="status")] = None,
) -> JobList:
    return JobList(items=service.list_jobs(account_id=principal.user_id, mode=mode, status=status_filter))


@router.get(
    "/jobs/{jobId}",
    response_model=Job,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def get_job(
    job_id: Annotated[str, Path(alias="jobId")],
    principal: Annotated[AuthPrincipal, Depends(require_customer)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> Job:
    return service.get_job(account_id=principal.user_id, job_id=job_id)


@router.post(
    "/jobs/{jobId}/retry",
    response_model=Job,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        402: {"model": InsufficientFundsErrorResponse},
        404: {"model": NoLeakNotFoundError},
        409: {"model": RetryStateConflictError},
    },
)
def retry_job(
    job_id: Annotated[str, Path(alias="jobId")],
    principal: Annotated[AuthPrincipal, Depends(require_customer)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> Job:
    return service.retry_job(account_id=principal.user_id, job_id=job_id)


@router.post(
    "/jobs/{jobId}/cancel",
    response_model=Job,
    responses={
        404: {"model": NoLeakNotFoundError},
        409: {"model": FsmTransitionError},
    },
)
def cancel_job(
    job_id: Annotated[str, Path(alias="jobId")],
    principal: Annotated[AuthPrincipal, Depends(require_customer)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> Job:
    return service.cancel_job(account_id=principal.user_id, job_id=job_id)
