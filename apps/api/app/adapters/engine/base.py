"""Transcription engine provider interfaces."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from app.schemas.internal import EngineJobStatus


@dataclass(frozen=True, slots=True)
class EngineJobConfig:
    language: str = "en"
    diarization: bool = False
    callback_url: str | None = None


@dataclass(frozen=True, slots=True)
class EnginePollResult:
    status: EngineJobStatus
    transcript: str | None = None
    detail: str | None = None


class TranscriptionEngine(ABC):
    """Provider-neutral asynchronous speech-to-text engine.

    Implementations raise ``app.errors.ExternalServiceError`` with ``transient=True``
    for failures worth retrying (timeouts, 5xx, throttling) and ``transient=False``
    when the engine refuses the request outright.
    """

    @abstractmethod
    def submit(self, audio_ref: str, config: EngineJobConfig) -> str:
        """Start a transcription and return the engine's job reference."""

    @abstractmethod
    def poll(self, external_ref: str) -> EnginePollResult:
        """Return the current state of a previously submitted job."""


__all__ = ["EngineJobConfig", "EnginePollResult", "TranscriptionEngine"]
