"""Configuration package."""

from budget_control.config.settings import (
    AppSettings,
    GoogleSheetsSettings,
    Settings,
    get_settings,
)

__all__ = [
    "AppSettings",
    "GoogleSheetsSettings",
    "Settings",
    "get_settings",
]
