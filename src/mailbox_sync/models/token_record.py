"""OAuth token record passed between the caller's store and the token manager.

The engine never persists this record; it receives it by value and hands back
a new one whenever a refresh happens.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TokenRecord(BaseModel):
    """Access/refresh token pair with expiry and granted scopes."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(description="Opaque bearer token")
    refresh_token: str | None = Field(
        default=None,
        description="Opaque refresh token; absent records must re-authorize once expired",
    )
    expires_at: datetime = Field(description="Absolute expiry timestamp (UTC)")
    scope: frozenset[str] = Field(
        default_factory=frozenset,
        description="Granted capability strings",
    )

    @field_validator("expires_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        # google-auth reports naive UTC datetimes.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("scope", mode="before")
    @classmethod
    def _split_scope(cls, value: object) -> object:
        if isinstance(value, str):
            return frozenset(value.split())
        return value

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    @property
    def scope_string(self) -> str:
        return " ".join(sorted(self.scope))
