"""Speechmatics batch API adapter."""

from __future__ import annotations

import json
import logging

import requests

from app.adapters.engine.base import EngineJobConfig, EnginePollResult, TranscriptionEngine
from app.core.logging_safety import safe_log_identifier
from app.errors import ExternalServiceError
from app.schemas.internal import EngineJobStatus

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
_STATUS_MAP: dict[str, EngineJobStatus] = {
    "running": EngineJobStatus.RUNNING,
    "done": EngineJobStatus.DONE,
    "rejected": EngineJobStatus.REJECTED,
    "deleted": EngineJobStatus.REJECTED,
    "expired": EngineJobStatus.REJECTED,
}


class SpeechmaticsEngine(TranscriptionEngine):
    """Submits fetch-URL jobs and reads status and plain-text transcripts."""

    def __init__(
        self,
        *,
        api_key: str | None,
        api_url: str,
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._api_key = api_key or ""
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def submit(self, audio_ref: str, config: EngineJobConfig) -> str:
        self._require_key()
        job_config: dict = {
            "type": "transcription",
            "fetch_data": {"url": audio_ref},
            "transcription_config": {"language": config.language, "operating_point": "enhanced"},
        }
        if config.diarization:
            job_config["transcription_config"]["diarization"] = "speaker"
        if config.callback_url:
            job_config["notification_config"] = [{"url": config.callback_url, "contents": ["transcript"]}]

        response = self._request(
            "POST",
            f"{self._api_url}/jobs",
            files={"config": (None, json.dumps(job_config), "application/json")},
        )
        external_ref = str(response.json().get("id") or "").strip()
        if not external_ref:
            raise ExternalServiceError("Speechmatics response is missing a job id", transient=True)

        logger.info("engine.submitted provider=speechmatics external_ref=%s", safe_log_identifier(external_ref, prefix="ext"))
        return external_ref

    def poll(self, external_ref: str) -> EnginePollResult:
        self._require_key()
        response = self._request("GET", f"{self._api_url}/jobs/{external_ref}")
        raw_status = str(response.json().get("job", {}).get("status", "")).lower()
        status = _STATUS_MAP.get(raw_status)
        if status is None:
            raise ExternalServiceError(f"Unexpected Speechmatics job status {raw_status!r}", transient=True)
        if status is not EngineJobStatus.DONE:
            return EnginePollResult(status=status, detail=raw_status)

        transcript = self._request(
            "GET",
            f"{self._api_url}/jobs/{external_ref}/transcript",
            params={"format": "txt"},
        ).text
        return EnginePollResult(status=status, transcript=transcript)

    def _require_key(self) -> None:
        if not self._api_key:
            raise ExternalServiceError("Speechmatics API key is not configured", transient=False)

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            response = self._session.request(method, url, headers=headers, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("engine.request_failed provider=speechmatics method=%s reason=%s", method, type(exc).__name__)
            raise ExternalServiceError("Speechmatics request failed", transient=True) from exc

        if response.status_code >= 400:
            transient = response.status_code in _RETRYABLE_STATUS_CODES
            logger.warning(
                "engine.request_rejected provider=speechmatics method=%s status_code=%s transient=%s",
                method,
                response.status_code,
                transient,
            )
            raise ExternalServiceError(
                f"Speechmatics returned HTTP {response.status_code}",
                transient=transient,
            )
        return response


__all__ = ["SpeechmaticsEngine"]
