"""Member portal core module.

Shared components used across all services:
- Configuration management
- Logging setup
- Domain types
"""

from memberportal.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    S3Settings,
    Settings,
    SyncSettings,
)
from memberportal.core.settings import (
    clear_settings_cache,
    configure_logging,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "S3Settings",
    "Settings",
    "SyncSettings",
    "clear_settings_cache",
    "configure_logging",
    "get_settings",
    "get_settings_safe",
]
