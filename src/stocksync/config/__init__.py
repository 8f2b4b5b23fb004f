"""Configuration package for the stock sync connector."""

from .settings import (
    SessionSettings,
    QBXMLSettings,
    CommerceSettings,
    RateLimitSettings,
    SyncSettings,
    AutoSyncSettings,
    StorageSettings,
    LoggingSettings,
    AppSettings,
    load_settings
)

from .loader import (
    ConfigLoader,
    ConfigurationError,
    load_config_from_env
)

__all__ = [
    "SessionSettings",
    "QBXMLSettings",
    "CommerceSettings",
    "RateLimitSettings",
    "SyncSettings",
    "AutoSyncSettings",
    "StorageSettings",
    "LoggingSettings",
    "AppSettings",
    "load_settings",
    "ConfigLoader",
    "ConfigurationError",
    "load_config_from_env",
]
