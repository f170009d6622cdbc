"""Engine status synchronization: durable poll tasks and the background poller."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import logging

from app.adapters.engine import EnginePollResult, TranscriptionEngine
from app.core.config import Settings
from app.core.logging_safety import safe_log_identifier
from app.errors import ExternalServiceError
from app.repositories.memory import InMemoryStore, PollTaskRecord
from app.schemas.internal import EngineJobStatus
from app.schemas.job import JobStatus
from app.services.jobs import JobService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class SyncReport:
    polled: int = 0
    applied: int = 0
    deferred: int = 0
    timed_out: int = 0
    dropped: int = 0


class StatusSyncService:
    """Polls the engine for every due task and folds results into jobs."""

    def __init__(
        self,
        store: InMemoryStore,
        engine: TranscriptionEngine,
        jobs: JobService,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._engine = engine
        self._jobs = jobs
        self._interval = timedelta(seconds=settings.poll_interval_seconds)
        self._max_attempts = settings.poll_max_attempts
        self._clock = clock

    def run_due(self, now: datetime | None = None) -> SyncReport:
        now = now or self._clock()
        report = SyncReport()
        for task in self._store.due_poll_tasks(now):
            job = self._store.get_job(task.job_id)
            if job is None or job.external_ref != task.external_ref or job.status is not JobStatus.PROCESSING:
                self._drop(task)
                report.dropped += 1
                continue

            report.polled += 1
            result = self._poll(task)
            if result is not None and result.status is not EngineJobStatus.RUNNING:
                if self._jobs.apply_engine_result(job_id=task.job_id, external_ref=task.external_ref, result=result):
                    report.applied += 1
                else:
                    self._drop(task)
                    report.dropped += 1
                continue

            if self._store.get_poll_task(task.job_id) is not task:
                continue
            task.attempts += 1
            if task.attempts >= self._max_attempts:
                logger.warning(
                    "status_sync.timeout job_id=%s attempts=%s",
                    safe_log_identifier(task.job_id, prefix="jid"),
                    task.attempts,
                )
                if self._jobs.mark_polling_timeout(job_id=task.job_id, external_ref=task.external_ref):
                    report.timed_out += 1
                continue
            task.next_run_at = now + self._interval
            report.deferred += 1
        return report

    def _poll(self, task: PollTaskRecord) -> EnginePollResult | None:
        try:
            return self._engine.poll(task.external_ref)
        except ExternalServiceError as exc:
            logger.warning(
                "status_sync.poll_failed job_id=%s attempt=%s transient=%s",
                safe_log_identifier(task.job_id, prefix="jid"),
                task.attempts + 1,
                exc.transient,
            )
            if exc.transient:
                return None
            return EnginePollResult(status=EngineJobStatus.REJECTED, detail=exc.payload.message)

    def _drop(self, task: PollTaskRecord) -> None:
        if self._store.get_poll_task(task.job_id) is task:
            self._store.cancel_poll(task.job_id)


class StatusPoller:
    """Background asyncio loop that runs ``StatusSyncService.run_due`` every tick."""

    def __init__(self, sync: StatusSyncService, *, tick_seconds: float) -> None:
        self._sync = sync
        self._tick_seconds = tick_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("status_poller.started tick_seconds=%s", self._tick_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("status_poller.stopped")

    async def _run(self) -> None:
        while True:
            try:
                # Engine calls block, so each sweep runs off the event loop.
                report = await asyncio.to_thread(self._sync.run_due)
            except Exception:
                logger.exception("status_poller.sweep_failed")
            else:
                if report.polled or report.dropped:
                    logger.info(
                        "status_poller.swept polled=%s applied=%s deferred=%s timed_out=%s dropped=%s",
                        report.polled,
                        report.applied,
                        report.deferred,
                        report.timed_out,
                        report.dropped,
                    )
            await asyncio.sleep(self._tick_seconds)
