"""Configuration package."""

from familybank.config.settings import (
    AppSettings,
    DatabaseSettings,
    LedgerSettings,
    NotificationSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "LedgerSettings",
    "NotificationSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
