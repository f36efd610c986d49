"""
Engine settings (pydantic-settings).

Every value can be overridden with an ``ENGINE_``-prefixed environment variable,
e.g. ``ENGINE_T_NOW=0.8`` or ``ENGINE_CHANNEL_CAPS='{"push": 10}'``.
"""

from typing import Dict, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    STORE_BACKEND: str = "memory"          # memory / redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Disposition thresholds, score scale 0..1
    T_NOW: float = 0.75
    T_LATER: float = 0.35

    # Duplicate detection
    DEDUPE_TTL_SECONDS: int = 86400
    DEDUPE_BUCKET_SECONDS: int = 300
    NEAR_DUP_WINDOW_SECONDS: int = 3600
    NEAR_DUP_THRESHOLD: float = 0.9
    DIGEST_MIN_EVENTS: int = 3

    # Fatigue
    FATIGUE_WINDOW_SECONDS: int = 86400
    CHANNEL_CAPS: Dict[str, int] = Field(
        default_factory=lambda: {"push": 20, "sms": 5, "email": 10, "in_app": 50}
    )
    CHANNEL_COOLDOWNS: Dict[str, int] = Field(
        default_factory=lambda: {"push": 60, "sms": 300, "email": 120, "in_app": 0}
    )
    BYPASS_CAP: int = 3
    BYPASS_WINDOW_SECONDS: int = 3600

    # AI scorer
    AI_SCORER: str = "heuristic"           # none / heuristic / http
    AI_URL: Optional[str] = None
    AI_TIMEOUT_MS: int = 50
    AI_MAX_DELTA: float = 0.15
    AI_WORKERS: int = 8
    BREAKER_FAILURES: int = 5
    BREAKER_RESET_SECONDS: float = 30.0

    # Defer queue
    DEFER_DEFAULT_DELAY_SECONDS: int = 900
    DEFER_MAX_RETRIES: int = 5
    DEFER_BACKOFF_BASE_SECONDS: int = 300
    DEFER_BACKOFF_MAX_SECONDS: int = 86400
    DEFER_POLL_SECONDS: float = 1.0
    DEGRADED_RETRY_SECONDS: int = 60

    RULES_FILE: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_thresholds(self):
        if self.T_LATER > self.T_NOW:
            raise ValueError("T_LATER must be <= T_NOW")
        if self.AI_SCORER == "http" and not self.AI_URL:
            raise ValueError("AI_URL is required when AI_SCORER=http")
        return self


settings = Settings()
