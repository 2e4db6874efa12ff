"""Configuration loading utilities for mailsync."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    Settings,
    SyncSettings,
    bootstrap_settings,
    load_settings,
    save_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "Settings",
    "SyncSettings",
    "bootstrap_settings",
    "load_settings",
    "save_settings",
]
