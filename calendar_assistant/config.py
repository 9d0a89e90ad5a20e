"""Application configuration."""

from __future__ import annotations

from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from calendar_assistant.scheduling.slots import WorkingHours


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    openrouter_api_key: str = Field(..., alias="OPENROUTER_API_KEY")
    openrouter_model: str = Field(..., alias="OPENROUTER_MODEL")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        alias="OPENROUTER_BASE_URL",
    )
    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT_SECONDS")
    # Unset means the caller enforces its own timeout.
    model_call_deadline_seconds: float | None = Field(default=None, alias="MODEL_CALL_DEADLINE_SECONDS")
    tool_call_deadline_seconds: float | None = Field(default=None, alias="TOOL_CALL_DEADLINE_SECONDS")
    max_tool_iterations: int = Field(default=5, alias="MAX_TOOL_ITERATIONS")
    history_window_messages: int = Field(default=40, alias="HISTORY_WINDOW_MESSAGES")

    database_path: Path = Field(default=Path("calendar_assistant.db"), alias="DATABASE_PATH")
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    cache_ttl_seconds: int = Field(default=300, alias="CACHE_TTL_SECONDS")
    local_cache_ttl_seconds: float = Field(default=10.0, alias="LOCAL_CACHE_TTL_SECONDS")

    user_timezone: str = Field(default="UTC", alias="USER_TIMEZONE")
    working_hours_start: int = Field(default=9, alias="WORKING_HOURS_START")
    working_hours_end: int = Field(default=17, alias="WORKING_HOURS_END")
    # Comma-separated ISO weekdays (1 = Monday).
    working_days: str = Field(default="1,2,3,4,5", alias="WORKING_DAYS")

    google_calendar_base_url: str = Field(
        default="https://www.googleapis.com/calendar/v3",
        alias="GOOGLE_CALENDAR_BASE_URL",
    )
    google_access_token: str | None = Field(default=None, alias="GOOGLE_ACCESS_TOKEN")
    user_id: str = Field(default="local-user", alias="ASSISTANT_USER_ID")

    @field_validator("user_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def user_zone(settings: Settings) -> ZoneInfo:
    return ZoneInfo(settings.user_timezone)


def working_hours(settings: Settings) -> WorkingHours:
    """Build the working-hours window used for slot generation."""
    days = frozenset(int(d.strip()) for d in settings.working_days.split(",") if d.strip())
    return WorkingHours(
        start_hour=settings.working_hours_start,
        end_hour=settings.working_hours_end,
        work_days=days,
    )
