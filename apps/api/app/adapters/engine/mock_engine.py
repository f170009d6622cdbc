"""Scriptable in-process engine for local development and tests."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import threading

from app.adapters.engine.base import EngineJobConfig, EnginePollResult, TranscriptionEngine
from app.errors import ExternalServiceError
from app.schemas.internal import EngineJobStatus


@dataclass(slots=True)
class SubmittedEngineJob:
    external_ref: str
    audio_ref: str
    config: EngineJobConfig
    status: EngineJobStatus = EngineJobStatus.RUNNING
    transcript: str | None = None


@dataclass(slots=True)
class MockTranscriptionEngine(TranscriptionEngine):
    """Records submissions and answers polls from scripted state.

    Failures are queued: ``fail_next_submit(transient=True)`` makes the next
    ``submit`` raise, ``fail_next_poll`` does the same for ``poll``.
    """

    jobs: dict[str, SubmittedEngineJob] = field(default_factory=dict)
    _submit_failures: deque[bool] = field(default_factory=deque)
    _poll_failures: deque[bool] = field(default_factory=deque)
    _counter: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def submit(self, audio_ref: str, config: EngineJobConfig) -> str:
        with self._lock:
            if self._submit_failures:
                transient = self._submit_failures.popleft()
                raise ExternalServiceError("Mock engine refused submission", transient=transient)
            self._counter += 1
            external_ref = f"eng-{self._counter:04d}"
            self.jobs[external_ref] = SubmittedEngineJob(
                external_ref=external_ref,
                audio_ref=audio_ref,
                config=config,
            )
            return external_ref

    def poll(self, external_ref: str) -> EnginePollResult:
        with self._lock:
            if self._poll_failures:
                transient = self._poll_failures.popleft()
                raise ExternalServiceError("Mock engine poll failed", transient=transient)
            job = self.jobs.get(external_ref)
            if job is None:
                raise ExternalServiceError(f"Unknown engine job {external_ref}", transient=False)
            return EnginePollResult(status=job.status, transcript=job.transcript)

    def complete(self, external_ref: str, transcript: str) -> None:
        with self._lock:
            job = self.jobs[external_ref]
            job.status = EngineJobStatus.DONE
            job.transcript = transcript

    def reject(self, external_ref: str) -> None:
        with self._lock:
            self.jobs[external_ref].status = EngineJobStatus.REJECTED

    def fail_next_submit(self, *, transient: bool = True) -> None:
        self._submit_failures.append(transient)

    def fail_next_poll(self, *, transient: bool = True) -> None:
        self._poll_failures.append(transient)

    @property
    def submissions(self) -> list[SubmittedEngineJob]:
        return list(self.jobs.values())


__all__ = ["MockTranscriptionEngine", "SubmittedEngineJob"]
