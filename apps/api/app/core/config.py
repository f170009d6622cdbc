"""Application configuration."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from app.schemas.account import TranscriptionMode


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables."""

    auth_provider: Literal["mock", "firebase"] = "firebase"
    firebase_project_id: str | None = None
    firebase_audience: str | None = None
    callback_secret: str

    engine_provider: Literal["mock", "speechmatics"] = "speechmatics"
    speechmatics_api_key: str | None = None
    speechmatics_api_url: str = "https://asr.api.speechmatics.com/v2"
    engine_callback_base_url: str | None = None
    engine_timeout_seconds: float = 30.0

    automated_rate: Decimal = Decimal("0.40")
    hybrid_rate: Decimal = Decimal("1.50")
    manual_rate: Decimal = Decimal("2.50")
    default_free_trial_minutes: Decimal = Decimal("0")
    package_validity_days: int = 30
    ledger_max_conflict_retries: int = 5

    max_retries: int = 3
    poll_interval_seconds: int = 30
    poll_max_attempts: int = 60
    status_poller_enabled: bool = True
    status_poller_tick_seconds: float = 5.0
    review_overhead_factor: Decimal = Decimal("3.5")

    model_config = SettingsConfigDict(env_prefix="TALKLEDGER_", extra="ignore")

    def standard_rates(self) -> dict[TranscriptionMode, Decimal]:
        return {
            TranscriptionMode.AUTOMATED: self.automated_rate,
            TranscriptionMode.HYBRID: self.hybrid_rate,
            TranscriptionMode.MANUAL: self.manual_rate,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
