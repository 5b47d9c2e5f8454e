from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./cardpool.db"

    # Allocation engine
    allocation_max_retries: int = 3
    allocation_retry_backoff_seconds: float = 0.01
    allocation_retry_backoff_multiplier: float = 2.0

    # Pending transaction reconciliation
    pending_reconciler_enabled: bool = False
    pending_reconciler_interval_seconds: int = 60
    pending_timeout_minutes: int = 10
    pending_batch_grace_minutes: int = 60
    pending_sweep_batch_size: int = 100
    pending_duplicate_timeout_minutes: int = 5

    # Account lifecycle sweep
    lifecycle_sweep_enabled: bool = False
    lifecycle_sweep_interval_seconds: int = 60
    lifecycle_locking_grace_seconds: int = 30
    lifecycle_final_day_timeout_hours: int = 48
    lifecycle_default_exchange_interval_minutes: int = 5
    lifecycle_default_day_interval_hours: int = 24

    # Cron scheduler
    job_scheduler_enabled: bool = False
    job_schedule_path: str = "config/schedules.toml"

    # Outbound collaborators
    session_gateway_url: str | None = None
    session_gateway_timeout_seconds: float = 10.0
    completion_webhook_url: str | None = None
    completion_webhook_channels: list[str] = Field(default_factory=list)

    @field_validator("completion_webhook_channels", mode="before")
    @classmethod
    def _parse_channel_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
