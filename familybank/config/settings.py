"""
Family Bank settings.

DESIGN DECISION: Configuration lives in one module, read from the
environment (and an optional .env file) by pydantic-settings.
Each concern reads its own environment prefix (DATABASE_, LEDGER_,
NOTIFICATIONS_).
"""

from decimal import Decimal
from functools import lru_cache
from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        extra="ignore"
    )

    url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy async URL (e.g. postgresql+asyncpg://...). "
                    "Unset means the in-memory store."
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements"
    )
    connect_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts when connecting and creating the schema"
    )

    @field_validator('url')
    @classmethod
    def validate_async_driver(cls, v: Optional[str]) -> Optional[str]:
        """The storage layer is async-only, so the URL must name an async driver."""
        if v and "+" not in v.split("://", 1)[0]:
            raise ValueError(
                "DATABASE_URL must name an async driver, "
                "e.g. postgresql+asyncpg:// or sqlite+aiosqlite://"
            )
        return v


class LedgerSettings(BaseSettings):
    """Money movement rules and limits."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        extra="ignore"
    )

    atomic_settlement: bool = Field(
        default=True,
        description="Apply the debit and credit of a settlement as one unit. "
                    "False restores the two-step debit-then-credit behavior."
    )
    max_transaction_amount: Decimal = Field(
        default=Decimal("10000"),
        gt=0,
        description="Largest amount a single transaction may move"
    )
    max_allowance_amount: Decimal = Field(
        default=Decimal("1000"),
        gt=0,
        description="Largest recurring allowance amount"
    )
    max_goal_amount: Decimal = Field(
        default=Decimal("100000"),
        gt=0,
        description="Largest savings goal target"
    )
    default_page_size: int = Field(
        default=50,
        ge=1,
        description="Transactions returned per listing by default"
    )
    max_page_size: int = Field(
        default=100,
        ge=1,
        description="Upper bound on a listing page"
    )


class NotificationSettings(BaseSettings):
    """Notification delivery configuration."""

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATIONS_",
        extra="ignore"
    )

    enabled: bool = Field(
        default=True,
        description="Deliver notifications for domain events"
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Delivery attempts per notification"
    )
    retry_wait_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="Base wait between delivery attempts (exponential)"
    )


class AppSettings(BaseSettings):
    """Process-wide switches: environment name, debug flag, log level."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Log level for the structured logger"
    )

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """
    One property per settings group.

    Groups are built on access, so they always reflect the current
    environment.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def notifications(self) -> NotificationSettings:
        return NotificationSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """The process-wide Settings; `get_settings.cache_clear()` drops it."""
    return Settings()


def validate_all_settings() -> dict[str, Any]:
    """
    Load every settings group once.

    Returns a dict of {setting_name: is_valid}, plus a
    `<name>_error` entry for each group that failed to load.
    """
    results = {}
    settings = get_settings()

    for name in ("database", "ledger", "notifications", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
