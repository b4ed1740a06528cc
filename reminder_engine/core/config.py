from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REMINDER_", env_file=".env", extra="ignore")

    # Store
    DATABASE_URL: str = "sqlite:///./reminders.db"

    # Scanning / dispatch
    SCAN_INTERVAL_SECONDS: int = 120
    LOOKBACK_MINUTES: int = 20
    BATCH_SIZE: int = 500
    WORKER_CONCURRENCY: int = 4

    # Messaging gateway (WAHA-style WhatsApp HTTP bridge)
    GATEWAY_BASE_URL: str = "http://localhost:3000"
    GATEWAY_SESSION: str = "default"
    GATEWAY_API_KEY: Optional[str] = None
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_POLL_SECONDS: int = 30
    DEFAULT_COUNTRY_CODE: str = "55"

    # Timezone used for month periods, digests and message formatting
    DEFAULT_TIMEZONE: str = "America/Sao_Paulo"

    # Plans
    PLUS_PRICE_ID: Optional[str] = None
    PREMIUM_PRICE_ID: Optional[str] = None
    PLUS_MONTHLY_CAP: int = 30

    # Auxiliary jobs
    DAILY_DIGEST_CRON: str = "0 8 * * *"
    QUOTA_RESET_CRON: str = "0 7 * * *"
    PREMIUM_TIPS_CRON: str = "0 8,12,16,18,21 * * *"

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: Optional[str] = None

    # Metrics
    METRICS_ENABLED: bool = False
    METRICS_PORT: int = 9108

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    @field_validator("DEFAULT_TIMEZONE")
    @classmethod
    def _timezone_must_resolve(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except ZoneInfoNotFoundError:
            raise ValueError(f"unknown timezone: {v}")
        return v

    @field_validator("DEFAULT_COUNTRY_CODE")
    @classmethod
    def _country_code_digits(cls, v: str) -> str:
        v = v.strip().lstrip("+")
        if not v.isdigit():
            raise ValueError("DEFAULT_COUNTRY_CODE must be numeric")
        return v

    @model_validator(mode="after")
    def _lookback_covers_poll_interval(self) -> "Settings":
        # A window shorter than the poll interval would drop reminders between ticks
        if self.LOOKBACK_MINUTES * 60 <= self.SCAN_INTERVAL_SECONDS:
            raise ValueError("LOOKBACK_MINUTES must be longer than SCAN_INTERVAL_SECONDS")
        if self.WORKER_CONCURRENCY < 1:
            raise ValueError("WORKER_CONCURRENCY must be at least 1")
        return self

    @property
    def zoneinfo(self) -> ZoneInfo:
        return ZoneInfo(self.DEFAULT_TIMEZONE)


settings = Settings()
