"""expensebot configuration schema — YAML + Pydantic + env override."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class SchedulingConfig(BaseModel):
    """Execution queue + master timer (scheduling.*)."""

    timer_name: str = "expensebot_master_scheduler"
    timer_period_minutes: int = 1
    max_retries: int = 3
    retention_hours: int = 24
    startup_grace_minutes: int = 5
    history_limit: int = 50

    @field_validator("timer_period_minutes")
    @classmethod
    def _floor_period(cls, v: int) -> int:
        # Host timers cannot fire more often than once a minute
        return max(1, v)

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.retention_hours)

    @property
    def startup_grace(self) -> timedelta:
        return timedelta(minutes=self.startup_grace_minutes)


class RetryConfig(BaseModel):
    """Backoff tuning. All delays in milliseconds."""

    base_delay_ms: int = 1_000
    max_delay_ms: int = 300_000
    backoff_multiplier: float = 2.0
    network_delay_ms: int = 30_000
    authentication_delay_ms: int = 60_000
    rate_limit_delay_ms: int = 300_000


class AuthConfig(BaseModel):
    """Authentication-validity cache and stored API token."""

    cache_ttl_s: int = 300
    token_ttl_hours: int = 24


class ApiConfig(BaseModel):
    """Remote expense API."""

    base_url: str = "https://app.navan.com/api/liquid/user"
    timezone: str = "America/Los_Angeles"
    timeout_s: float = 30.0


class NotificationsConfig(BaseModel):
    """Notification history + optional Telegram push (empty token = no push)."""

    enabled: bool = True
    history_limit: int = 50
    retention_days: int = 7
    telegram_token: str = ""
    telegram_chat_id: str = ""


class DatabaseConfig(BaseModel):
    path: str = "data/expensebot.db"


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings — env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        EXPENSEBOT_SCHEDULING__MAX_RETRIES=5
        EXPENSEBOT_DATABASE__PATH=data/prod.db
        EXPENSEBOT_API__BASE_URL=https://sandbox.example.com/api
    """

    model_config = SettingsConfigDict(
        env_prefix="EXPENSEBOT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    scheduling: SchedulingConfig = Field(default_factory=SchedulingConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # ── Computed properties ─────────────────────────────────

    @property
    def db_path(self) -> Path:
        return Path(self.database.path)

    @property
    def telegram_enabled(self) -> bool:
        """True when both bot token and chat id are configured."""
        return bool(
            self.notifications.telegram_token and self.notifications.telegram_chat_id
        )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # YAML arrives as init kwargs; environment wins over it
        return env_settings, dotenv_settings, init_settings, file_secret_settings
