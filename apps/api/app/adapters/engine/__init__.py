"""Transcription engine adapters."""

from app.core.config import Settings

from .base import EngineJobConfig, EnginePollResult, TranscriptionEngine
from .mock_engine import MockTranscriptionEngine
from .speechmatics import SpeechmaticsEngine


def build_engine(settings: Settings) -> TranscriptionEngine:
    """Resolve provider adapter from configuration."""
    if settings.engine_provider == "mock":
        return MockTranscriptionEngine()
    return SpeechmaticsEngine(
        api_key=settings.speechmatics_api_key,
        api_url=settings.speechmatics_api_url,
        timeout_seconds=settings.engine_timeout_seconds,
    )


__all__ = [
    "EngineJobConfig",
    "EnginePollResult",
    "MockTranscriptionEngine",
    "SpeechmaticsEngine",
    "TranscriptionEngine",
    "build_engine",
]
