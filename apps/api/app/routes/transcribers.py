"""Transcriber workspace routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path

from app.routes.dependencies import get_job_service, get_transcriber_service, require_transcriber
from app.schemas.assignment import Assignment, AssignmentList, SubmitTranscriptRequest, TranscriberStats
from app.schemas.auth import AuthPrincipal
from app.schemas.error import ErrorResponse, FsmTransitionError, NoLeakNotFoundError
from app.services.jobs import JobService
from app.services.transcribers import TranscriberService

router = APIRouter(tags=["Transcribers"])


@router.get(
    "/transcribers/me/assignments",
    response_model=AssignmentList,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def list_my_assignments(
    principal: Annotated[AuthPrincipal, Depends(require_transcriber)],
    service: Annotated[TranscriberService, Depends(get_transcriber_service)],
    active_only: bool = False,
) -> AssignmentList:
    worker = service.worker_for_user(principal.user_id)
    return AssignmentList(items=service.list_assignments_for_worker(worker_id=worker.id, active_only=active_only))


@router.get(
    "/transcribers/me/stats",
    response_model=TranscriberStats,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def get_my_stats(
    principal: Annotated[AuthPrincipal, Depends(require_transcriber)],
    service: Annotated[TranscriberService, Depends(get_transcriber_service)],
) -> TranscriberStats:
    worker = service.worker_for_user(principal.user_id)
    return service.transcriber_stats(worker_id=worker.id)


@router.post(
    "/assignments/{assignmentId}/start",
    response_model=Assignment,
    responses={404: {"model": NoLeakNotFoundError}, 409: {"model": ErrorResponse}},
)
def start_assignment(
    assignment_id: Annotated[str, Path(alias="assignmentId")],
    principal: Annotated[AuthPrincipal, Depends(require_transcriber)],
    transcribers: Annotated[TranscriberService, Depends(get_transcriber_service)],
    jobs: Annotated[JobService, Depends(get_job_service)],
) -> Assignment:
    worker = transcribers.worker_for_user(principal.user_id)
    return jobs.start_assignment(assignment_id=assignment_id, worker_id=worker.id)


@router.post(
    "/assignments/{assignmentId}/transcript",
    response_model=Assignment,
    responses={404: {"model": NoLeakNotFoundError}, 409: {"model": FsmTransitionError}},
)
def submit_transcript(
    assignment_id: Annotated[str, Path(alias="assignmentId")],
    payload: SubmitTranscriptRequest,
    principal: Annotated[AuthPrincipal, Depends(require_transcriber)],
    transcribers: Annotated[TranscriberService, Depends(get_transcriber_service)],
    jobs: Annotated[JobService, Depends(get_job_service)],
) -> Assignment:
    worker = transcribers.worker_for_user(principal.user_id)
    return jobs.submit_transcript(
        assignment_id=assignment_id,
        worker_id=worker.id,
        text=payload.text,
        notes=payload.notes,
    )
