"""VendorSign core module.

Shared configuration used across the services and the worker.
"""

from vendorsign.core.config import (
    CASettings,
    CATransport,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    KeyStoreSettings,
    S3Settings,
    Settings,
    StampSettings,
    WorkerSettings,
)
from vendorsign.core.settings import clear_settings_cache, get_settings

__all__ = [
    "CASettings",
    "CATransport",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "KeyStoreSettings",
    "S3Settings",
    "Settings",
    "StampSettings",
    "WorkerSettings",
    "clear_settings_cache",
    "get_settings",
]
