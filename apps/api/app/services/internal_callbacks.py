"""Internal engine callback service layer."""

import logging

from app.adapters.engine import EnginePollResult, TranscriptionEngine
from app.core.logging_safety import safe_log_identifier
from app.errors import NotFoundError
from app.repositories.memory import InMemoryStore
from app.schemas.internal import EngineCallbackRequest, EngineCallbackResponse, EngineJobStatus
from app.services.jobs import JobService

logger = logging.getLogger(__name__)


class InternalCallbackService:
    def __init__(self, store: InMemoryStore, engine: TranscriptionEngine, jobs: JobService) -> None:
        self._store = store
        self._engine = engine
        self._jobs = jobs

    def process_engine_callback(self, *, token: str, payload: EngineCallbackRequest) -> EngineCallbackResponse:
        safe_token = safe_log_identifier(token, prefix="cbt")
        job = self._store.get_job_by_callback_token(token)
        if job is None:
            logger.warning("callback.rejected token=%s code=RESOURCE_NOT_FOUND", safe_token)
            raise NotFoundError()

        safe_job_id = safe_log_identifier(job.id, prefix="jid")
        superseded = token != job.callback_token or (
            payload.engine_job_id is not None and payload.engine_job_id != job.external_ref
        )
        if superseded or job.external_ref is None:
            logger.info(
                "callback.ignored job_id=%s engine_status=%s current_status=%s reason=superseded_submission",
                safe_job_id,
                payload.status.value,
                job.status.value,
            )
            return EngineCallbackResponse(job_id=job.id, applied=False, current_status=job.status)

        external_ref = job.external_ref
        result = EnginePollResult(status=payload.status, transcript=payload.transcript)
        if payload.status is EngineJobStatus.DONE and payload.transcript is None:
            # Notification without contents; fetch the transcript from the engine.
            result = self._engine.poll(external_ref)

        applied = self._jobs.apply_engine_result(
            job_id=job.id,
            external_ref=external_ref,
            result=result,
            actor_type="engine",
        )
        logger.info(
            "callback.processed job_id=%s engine_status=%s applied=%s current_status=%s",
            safe_job_id,
            result.status.value,
            applied,
            job.status.value,
        )
        return EngineCallbackResponse(job_id=job.id, applied=applied, current_status=job.status)
