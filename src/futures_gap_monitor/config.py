"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
futures gap monitor, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from datetime import time
from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class VendorSettings(BaseSettings):
    """Tick-history vendor API settings."""

    model_config = SettingsConfigDict(env_prefix="VENDOR_", extra="ignore")

    history_url: str = Field(
        default="https://history.truedata.in",
        alias="VENDOR_HISTORY_URL",
        description="Base URL of the tick history API",
    )
    auth_url: str = Field(
        default="https://auth.truedata.in/token",
        alias="VENDOR_AUTH_URL",
        description="Password-grant token endpoint",
    )
    username: str | None = Field(
        default=None,
        alias="VENDOR_USERNAME",
        description="Vendor account username",
    )
    password: SecretStr | None = Field(
        default=None,
        alias="VENDOR_PASSWORD",
        description="Vendor account password",
    )
    timeout_seconds: float = Field(
        default=30.0,
        alias="VENDOR_TIMEOUT_SECONDS",
        ge=1.0,
        le=300.0,
        description="HTTP timeout per vendor request",
    )
    max_retries: int = Field(
        default=3,
        alias="VENDOR_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retries for transient tick fetch failures",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        alias="VENDOR_RETRY_BASE_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Base delay for exponential backoff",
    )
    auth_max_attempts: int = Field(
        default=5,
        alias="VENDOR_AUTH_MAX_ATTEMPTS",
        ge=1,
        le=20,
        description="Login attempts before giving up and notifying operators",
    )

    @field_validator("history_url", "auth_url")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        """Validate vendor URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Vendor URLs must be HTTP(S) endpoints")
        return v.rstrip("/")

    @property
    def has_credentials(self) -> bool:
        """Check if vendor credentials are configured."""
        return bool(self.username) and self.password is not None


class RateLimitSettings(BaseSettings):
    """Outbound vendor call budgets."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_", extra="ignore")

    per_second: int = Field(
        default=5,
        alias="RATE_LIMIT_PER_SECOND",
        ge=1,
        le=1000,
        description="Maximum vendor calls in any rolling second",
    )
    per_minute: int = Field(
        default=300,
        alias="RATE_LIMIT_PER_MINUTE",
        ge=1,
        le=60_000,
        description="Maximum vendor calls in any rolling minute",
    )
    per_hour: int = Field(
        default=18_000,
        alias="RATE_LIMIT_PER_HOUR",
        ge=1,
        le=3_600_000,
        description="Maximum vendor calls in any rolling hour",
    )


class AlignmentSettings(BaseSettings):
    """Leg alignment thresholds."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    min_volume: int = Field(
        default=10,
        alias="MIN_VOLUME_THRESHOLD",
        ge=0,
        description="Ticks below this volume are not considered for alignment",
    )
    tolerance_seconds: int = Field(
        default=15,
        alias="ALIGNMENT_TOLERANCE_SECONDS",
        ge=0,
        le=3600,
        description="Maximum timestamp distance between aligned legs",
    )
    backfill_sample_size: int = Field(
        default=30,
        alias="BACKFILL_SAMPLE_SIZE",
        ge=1,
        le=10_000,
        description="Maximum aligned points kept per instrument-day in backfill",
    )


class MarketSettings(BaseSettings):
    """Exchange session settings."""

    model_config = SettingsConfigDict(env_prefix="MARKET_", extra="ignore")

    timezone: str = Field(
        default="Asia/Kolkata",
        alias="MARKET_TIMEZONE",
        description="Exchange-local timezone used for time slots and dates",
    )
    session_open: time = Field(
        default=time(9, 0),
        alias="MARKET_SESSION_OPEN",
        description="Trading session open (exchange-local)",
    )
    session_close: time = Field(
        default=time(15, 30),
        alias="MARKET_SESSION_CLOSE",
        description="Trading session close (exchange-local)",
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown MARKET_TIMEZONE: {v}") from e
        return v

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class BaselineSettings(BaseSettings):
    """Trailing-window gap baselines."""

    model_config = SettingsConfigDict(env_prefix="GAP_BASELINE_", extra="ignore")

    days_min: int = Field(
        default=10,
        alias="GAP_BASELINE_DAYS_MIN",
        ge=0,
        le=3650,
        description="Lower end of the baseline window pair (sorted against GAP_BASELINE_DAYS_MAX)",
    )
    days_max: int = Field(
        default=20,
        alias="GAP_BASELINE_DAYS_MAX",
        ge=0,
        le=3650,
        description="Trailing window length (days) averaged into the baseline",
    )
    refresh_interval_seconds: int = Field(
        default=3600,
        alias="GAP_BASELINE_REFRESH_INTERVAL_SECONDS",
        ge=60,
        le=86_400,
        description="How often the baseline cache is rebuilt",
    )

    def window(self) -> tuple[int, int]:
        """Return ``(min_days, max_days)``, swapped if configured backwards."""
        low, high = sorted((self.days_min, self.days_max))
        return low, high


class AlertSettings(BaseSettings):
    """Gap deviation alert defaults."""

    model_config = SettingsConfigDict(env_prefix="GAP_ALERT_", extra="ignore")

    percent_threshold: float = Field(
        default=15.0,
        alias="GAP_ALERT_PERCENT",
        ge=0.0,
        description="Default deviation threshold (percent) when no config row applies",
    )
    cooldown_minutes: int = Field(
        default=30,
        alias="GAP_ALERT_COOLDOWN",
        ge=0,
        le=24 * 60,
        description="Default cooldown between alerts for the same instrument and gap",
    )
    event_name: str = Field(
        default="gap-alert",
        alias="GAP_ALERT_EVENT_NAME",
        description="Event name used on the real-time channel",
    )


class RetentionSettings(BaseSettings):
    """Gap history retention."""

    model_config = SettingsConfigDict(env_prefix="GAP_HISTORY_", extra="ignore")

    retention_days: int = Field(
        default=20,
        alias="GAP_HISTORY_RETENTION_DAYS",
        ge=1,
        le=3650,
        description="Gap observations older than this many days are deleted",
    )
    sweep_interval_seconds: int = Field(
        default=24 * 3600,
        alias="GAP_HISTORY_SWEEP_INTERVAL_SECONDS",
        ge=60,
        le=7 * 24 * 3600,
        description="How often the retention sweep runs",
    )


class ScheduleSettings(BaseSettings):
    """Evaluation cycle timing."""

    model_config = SettingsConfigDict(env_prefix="CYCLE_", extra="ignore")

    interval_seconds: int = Field(
        default=300,
        alias="CYCLE_INTERVAL_SECONDS",
        ge=5,
        le=3600,
        description="Interval between live evaluation cycles",
    )
    deadline_seconds: float = Field(
        default=240.0,
        alias="CYCLE_DEADLINE_SECONDS",
        ge=1.0,
        le=3600.0,
        description="Wall-clock budget per cycle; remaining instruments are skipped",
    )


class DiscordSettings(BaseSettings):
    """Discord notification settings."""

    model_config = SettingsConfigDict(env_prefix="DISCORD_", extra="ignore")

    webhook_url: SecretStr | None = Field(
        default=None,
        alias="DISCORD_WEBHOOK_URL",
        description="Discord webhook URL for operator notifications",
    )

    @property
    def enabled(self) -> bool:
        """Check if Discord notifications are enabled."""
        return self.webhook_url is not None


class TelegramSettings(BaseSettings):
    """Telegram notification settings."""

    model_config = SettingsConfigDict(env_prefix="TELEGRAM_", extra="ignore")

    bot_token: SecretStr | None = Field(
        default=None,
        alias="TELEGRAM_BOT_TOKEN",
        description="Telegram bot token",
    )
    chat_id: str | None = Field(
        default=None,
        alias="TELEGRAM_CHAT_ID",
        description="Default Telegram chat ID for operator notifications",
    )

    @property
    def enabled(self) -> bool:
        """Check if Telegram notifications are enabled."""
        return self.bot_token is not None and self.chat_id is not None


def _nested(cls: type[BaseSettings]) -> BaseSettings:
    return cls(_env_file=_ENV_FILE, _env_file_encoding=_ENV_FILE_ENCODING)


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from futures_gap_monitor.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.alert.percent_threshold)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(default_factory=lambda: _nested(DatabaseSettings))
    redis: RedisSettings = Field(default_factory=lambda: _nested(RedisSettings))
    vendor: VendorSettings = Field(default_factory=lambda: _nested(VendorSettings))
    rate_limit: RateLimitSettings = Field(default_factory=lambda: _nested(RateLimitSettings))
    alignment: AlignmentSettings = Field(default_factory=lambda: _nested(AlignmentSettings))
    market: MarketSettings = Field(default_factory=lambda: _nested(MarketSettings))
    baseline: BaselineSettings = Field(default_factory=lambda: _nested(BaselineSettings))
    alert: AlertSettings = Field(default_factory=lambda: _nested(AlertSettings))
    retention: RetentionSettings = Field(default_factory=lambda: _nested(RetentionSettings))
    schedule: ScheduleSettings = Field(default_factory=lambda: _nested(ScheduleSettings))
    discord: DiscordSettings = Field(default_factory=lambda: _nested(DiscordSettings))
    telegram: TelegramSettings = Field(default_factory=lambda: _nested(TelegramSettings))

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Evaluate and persist alerts without publishing them",
    )
    operator_recipients_raw: str = Field(
        default="",
        alias="OPERATOR_RECIPIENTS",
        description="Comma-separated extra recipients (e.g. Telegram chat IDs) for operator notifications",
    )

    @property
    def operator_recipients(self) -> tuple[str, ...]:
        return tuple(p.strip() for p in self.operator_recipients_raw.split(",") if p.strip())

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        min_days, max_days = self.baseline.window()
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "vendor": {
                "history_url": self.vendor.history_url,
                "auth_url": self.vendor.auth_url,
                "username": self.vendor.username or "(not set)",
                "password": "(set)" if self.vendor.password else "(not set)",
            },
            "rate_limit": {
                "per_second": str(self.rate_limit.per_second),
                "per_minute": str(self.rate_limit.per_minute),
                "per_hour": str(self.rate_limit.per_hour),
            },
            "alignment": {
                "min_volume": str(self.alignment.min_volume),
                "tolerance_seconds": str(self.alignment.tolerance_seconds),
            },
            "baseline": {
                "min_days": str(min_days),
                "max_days": str(max_days),
            },
            "alert": {
                "percent_threshold": str(self.alert.percent_threshold),
                "cooldown_minutes": str(self.alert.cooldown_minutes),
            },
            "retention_days": str(self.retention.retention_days),
            "market_timezone": self.market.timezone,
            "discord_enabled": str(self.discord.enabled),
            "telegram_enabled": str(self.telegram.enabled),
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(self) -> None:
        """Refuse to start a live monitor without vendor credentials."""
        if not self.vendor.has_credentials:
            raise ValueError("VENDOR_USERNAME and VENDOR_PASSWORD are required to fetch ticks")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
