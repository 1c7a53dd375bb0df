"""Client settings and configuration.

This module defines every configuration option for the Ourdm sync core.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files. Services
    accept an explicit instance so tests can run with tightened windows.
    """

    # Application metadata
    app_name: str = Field(default="Ourdm Sync", alias="OURDM_APP_NAME")
    log_level: str = Field(default="INFO", alias="OURDM_LOG_LEVEL")

    # Local durable store
    database_url: str = Field(default="sqlite:///./ourdm.db", alias="OURDM_DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="OURDM_SQL_DEBUG")

    # Device encryption key (url-safe base64, 32 bytes). Generated on first use if unset.
    encryption_key: str | None = Field(default=None, alias="OURDM_ENCRYPTION_KEY")

    # Transient relay and blob storage
    relay_base_url: str | None = Field(default=None, alias="OURDM_RELAY_URL")
    relay_api_key: str | None = Field(default=None, alias="OURDM_RELAY_API_KEY")
    relay_access_token: str | None = Field(default=None, alias="OURDM_RELAY_ACCESS_TOKEN")
    relay_table: str = Field(default="pending_messages", alias="OURDM_RELAY_TABLE")
    receipts_table: str = Field(default="delivery_receipts", alias="OURDM_RECEIPTS_TABLE")
    media_bucket: str = Field(default="media", alias="OURDM_MEDIA_BUCKET")
    relay_http_timeout_seconds: float = Field(
        default=10.0,
        alias="OURDM_RELAY_HTTP_TIMEOUT_SECONDS",
    )
    relay_message_ttl_days: int = Field(default=30, alias="OURDM_RELAY_MESSAGE_TTL_DAYS")

    # Annotation rules
    edit_window_seconds: int = Field(default=15 * 60, alias="OURDM_EDIT_WINDOW_SECONDS")
    delete_window_seconds: int = Field(default=60 * 60, alias="OURDM_DELETE_WINDOW_SECONDS")
    pin_limit: int = Field(default=3, alias="OURDM_PIN_LIMIT")
    deleted_placeholder: str = Field(
        default="This message was deleted",
        alias="OURDM_DELETED_PLACEHOLDER",
    )
    undecryptable_placeholder: str = Field(
        default="[Unable to decrypt message]",
        alias="OURDM_UNDECRYPTABLE_PLACEHOLDER",
    )
    reply_snippet_length: int = Field(default=100, alias="OURDM_REPLY_SNIPPET_LENGTH")

    # Background sync
    sync_interval_seconds: float = Field(default=5.0, alias="OURDM_SYNC_INTERVAL_SECONDS")
    sync_max_retries: int = Field(default=5, alias="OURDM_SYNC_MAX_RETRIES")
    sync_batch_size: int = Field(default=50, alias="OURDM_SYNC_BATCH_SIZE")

    # Storage eviction
    eviction_interval_seconds: float = Field(
        default=3600.0,
        alias="OURDM_EVICTION_INTERVAL_SECONDS",
    )
    media_retention_hours: int = Field(default=24, alias="OURDM_MEDIA_RETENTION_HOURS")
    eviction_batch_size: int = Field(default=100, alias="OURDM_EVICTION_BATCH_SIZE")
    eviction_purge_expired_rows: bool = Field(
        default=False,
        alias="OURDM_EVICTION_PURGE_EXPIRED_ROWS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def relay_enabled(self) -> bool:
        """Return True when a relay endpoint has been configured."""
        return bool(self.relay_base_url)

    @property
    def edit_window_ms(self) -> int:
        return self.edit_window_seconds * 1000

    @property
    def delete_window_ms(self) -> int:
        return self.delete_window_seconds * 1000

    @property
    def relay_message_ttl_ms(self) -> int:
        return self.relay_message_ttl_days * 24 * 60 * 60 * 1000

    @property
    def media_retention_ms(self) -> int:
        return self.media_retention_hours * 60 * 60 * 1000


settings = Settings()
