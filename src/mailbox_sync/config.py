"""Configuration management for the mailbox sync engine.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.

OAuth client credentials are deliberately *not* read by the token manager
itself: callers build an :class:`OAuthClientConfig` (usually via
:meth:`Settings.oauth_client`) and inject it, so several credential sets can
coexist in one process.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

GMAIL_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.modify",
)

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URI = "https://oauth2.googleapis.com/revoke"

# Provider-documented ceilings.
GMAIL_MAX_LIST_RESULTS = 500
GMAIL_MAX_BATCH_SIZE = 100
GMAIL_MAX_BATCH_MODIFY_IDS = 1000


class OAuthClientConfig(BaseModel):
    """OAuth client credentials injected into the token manager."""

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(description="Google OAuth client ID")
    client_secret: str = Field(description="Google OAuth client secret")

    @property
    def is_complete(self) -> bool:
        return bool(self.client_id.strip() and self.client_secret.strip())


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the MAILBOX_SYNC_ prefix (e.g., MAILBOX_SYNC_GOOGLE_CLIENT_ID).
    """

    model_config = SettingsConfigDict(
        env_prefix="MAILBOX_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # OAuth Configuration
    google_client_id: str | None = Field(
        default=None,
        description="Google OAuth client ID",
    )
    google_client_secret: str | None = Field(
        default=None,
        description="Google OAuth client secret",
    )
    gmail_scopes: list[str] = Field(
        default_factory=lambda: list(GMAIL_SCOPES),
        description="OAuth scopes requested during authorization",
    )
    token_refresh_buffer_seconds: int = Field(
        default=300,
        description="Refresh access tokens this many seconds before they expire",
    )
    default_token_lifetime_seconds: int = Field(
        default=3600,
        description="Token lifetime assumed when the provider omits an expiry",
    )

    # Gmail Configuration
    gmail_user_id: str = Field(
        default="me",
        description="Gmail user id used in API paths",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        description="Socket timeout for Gmail API requests in seconds",
    )
    sync_max_results: int = Field(
        default=100,
        ge=1,
        le=GMAIL_MAX_LIST_RESULTS,
        description="Maximum number of messages fetched per sync call",
    )
    sync_batch_size: int = Field(
        default=GMAIL_MAX_BATCH_SIZE,
        ge=1,
        le=GMAIL_MAX_BATCH_SIZE,
        description="Number of message detail fetches per batch request",
    )
    sync_max_concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum number of detail batches in flight at once",
    )

    # Push notifications
    pubsub_topic: str | None = Field(
        default=None,
        description="Cloud Pub/Sub topic used for Gmail watch requests",
    )
    push_webhook_secret: str | None = Field(
        default=None,
        description="Shared secret used to verify inbound push webhook signatures",
    )

    # Local store
    store_db_path: Path = Field(
        default=Path("mailbox_sync.sqlite3"),
        description="Path to the SQLite file holding tokens and sync cursors",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    max_retries: int = Field(
        default=3,
        description="Maximum number of retries for transient failures",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        description="Initial backoff delay for transient failures",
    )

    def oauth_client(self) -> OAuthClientConfig | None:
        """Build the OAuth client config, or None when credentials are unset."""
        if not self.google_client_id or not self.google_client_secret:
            return None
        return OAuthClientConfig(
            client_id=self.google_client_id,
            client_secret=self.google_client_secret,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
