"""Application configuration settings."""

from typing import Optional, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SessionSettings(BaseSettings):
    """Session protocol credentials and behaviour."""

    username: str = Field(default="admin")
    password: str = Field(default="password")
    # Empty means "use the company file currently open"
    company_file: str = Field(default="")
    server_version: str = Field(default="1.0.0")
    seed_query_on_auth: bool = Field(default=False)
    max_dispatch_attempts: int = Field(default=50, ge=1)

    model_config = SettingsConfigDict(env_prefix="WC_")


class QBXMLSettings(BaseSettings):
    """Accounting XML request defaults."""

    version: str = Field(default="16.0")
    adjust_account: str = Field(default="Inventory Adjustment")
    max_returned: Optional[int] = Field(default=None, ge=1)

    model_config = SettingsConfigDict(env_prefix="QBXML_")


class CommerceSettings(BaseSettings):
    """Commerce platform REST API configuration."""

    store: str = Field(default="")
    token: str = Field(default="")
    api_version: str = Field(default="2024-01")
    location_id: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(env_prefix="SHOPIFY_")

    @property
    def is_configured(self) -> bool:
        return bool(self.store and self.token)

    @property
    def base_url(self) -> str:
        store = self.store.strip().rstrip("/")
        if not store.startswith("http"):
            store = f"https://{store}"
        return f"{store}/admin/api/{self.api_version}"


class RateLimitSettings(BaseSettings):
    """Outbound REST pacing and retry bounds."""

    min_interval_ms: int = Field(default=500, ge=0)
    max_retries: int = Field(default=5, ge=0)
    base_backoff_ms: int = Field(default=750, ge=0)
    max_backoff_ms: int = Field(default=5000, ge=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    max_pages: int = Field(default=200, ge=1)

    model_config = SettingsConfigDict(env_prefix="SHOPIFY_RATE_")


class SyncSettings(BaseSettings):
    """Reconciliation behaviour."""

    sku_fields: str = Field(default="Name")
    auto_push: bool = Field(default=True)
    initial_sweep_enabled: bool = Field(default=False)

    model_config = SettingsConfigDict(env_prefix="SYNC_")

    @property
    def sku_field_list(self) -> List[str]:
        """Ordered candidate fields for SKU lookup, first non-empty wins."""
        fields = [part.strip() for part in self.sku_fields.split(",") if part.strip()]
        return fields or ["Name"]


class AutoSyncSettings(BaseSettings):
    """Periodic inbound sync timer."""

    enabled: bool = Field(default=True)
    interval_seconds: int = Field(default=300, ge=1)
    run_immediately: bool = Field(default=True)
    initial_delay_seconds: float = Field(default=1.0, ge=0)

    model_config = SettingsConfigDict(env_prefix="AUTO_SYNC_")


class StorageSettings(BaseSettings):
    """Durable file storage configuration."""

    data_dir: str = Field(default="./data")
    lock_poll_interval_ms: int = Field(default=50, ge=1)
    lock_max_wait_seconds: float = Field(default=10.0, gt=0)
    lock_stale_seconds: float = Field(default=30.0, gt=0)
    response_history: int = Field(default=20, ge=0)

    model_config = SettingsConfigDict(env_prefix="STORAGE_")


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO")
    format: str = Field(default="json")
    file_path: Optional[str] = Field(default="./logs/stocksync.log")

    model_config = SettingsConfigDict(env_prefix="LOG_")

    @field_validator("format")
    @classmethod
    def _check_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "console"):
            raise ValueError("log format must be 'json' or 'console'")
        return value


class AppSettings(BaseSettings):
    """Main application settings."""

    name: str = Field(default="Stock Sync Connector")
    version: str = Field(default="1.0.0")
    environment: str = Field(default="development")

    # Sub-settings
    session: SessionSettings = Field(default_factory=SessionSettings)
    qbxml: QBXMLSettings = Field(default_factory=QBXMLSettings)
    commerce: CommerceSettings = Field(default_factory=CommerceSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    auto_sync: AutoSyncSettings = Field(default_factory=AutoSyncSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


def load_settings(**overrides) -> AppSettings:
    """Build application settings from the environment.

    Keyword overrides replace whole sub-settings sections, which keeps tests
    independent of the process environment.
    """
    return AppSettings(**overrides)
