"""OAuth2 token lifecycle for Gmail access.

The manager builds authorization URLs, exchanges authorization codes, refreshes
and revokes tokens, and decides when a token is due for renewal. It owns no
state: token records come in and go out by value, and the caller persists them.

Every component that needs a bearer token must go through
:meth:`TokenManager.get_valid_access_token`, which is the only place the expiry
policy is applied.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import structlog
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from mailbox_sync.config import (
    GMAIL_SCOPES,
    GOOGLE_AUTH_URI,
    GOOGLE_REVOKE_URI,
    GOOGLE_TOKEN_URI,
    OAuthClientConfig,
)
from mailbox_sync.exceptions import (
    ConfigError,
    InvalidRequestError,
    InvalidTokenError,
    TokenRefreshFailedError,
)
from mailbox_sync.models import TokenRecord

logger = structlog.get_logger()

DEFAULT_REFRESH_BUFFER_SECONDS = 300
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """Acquires, refreshes, evaluates and revokes OAuth2 tokens."""

    def __init__(
        self,
        client_config: OAuthClientConfig | None,
        *,
        scopes: Iterable[str] = GMAIL_SCOPES,
        refresh_buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
        default_lifetime_seconds: int = DEFAULT_TOKEN_LIFETIME_SECONDS,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Create a token manager.

        Args:
            client_config: OAuth client credentials. May be None; operations
                that need it raise ConfigError at call time.
            scopes: Scopes requested during authorization.
            refresh_buffer_seconds: Tokens expiring within this window are
                treated as already expired.
            default_lifetime_seconds: Lifetime assumed when the provider does
                not report one.
            now: Clock, injectable for tests.
        """

        self._client_config = client_config
        self.scopes: tuple[str, ...] = tuple(scopes)
        self.refresh_buffer_seconds = refresh_buffer_seconds
        self.default_lifetime_seconds = default_lifetime_seconds
        self._now = now

    @property
    def required_scopes(self) -> list[str]:
        return list(self.scopes)

    def has_required_scopes(self, record: TokenRecord) -> bool:
        return set(self.scopes).issubset(record.scope)

    def _require_client(self) -> OAuthClientConfig:
        config = self._client_config
        if config is None or not config.is_complete:
            raise ConfigError(
                "Missing Google OAuth credentials. Set MAILBOX_SYNC_GOOGLE_CLIENT_ID and "
                "MAILBOX_SYNC_GOOGLE_CLIENT_SECRET or pass an OAuthClientConfig."
            )
        return config

    # -- authorization -----------------------------------------------------

    def build_authorization_url(self, redirect_uri: str, *, state: str | None = None) -> str:
        """Build the consent URL the user is redirected to.

        Offline access plus forced consent guarantees a refresh token on the
        first authorization. The URL depends only on the inputs.
        """

        config = self._require_client()
        if not redirect_uri:
            raise InvalidRequestError("redirect_uri is required")

        params = {
            "client_id": config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        if state is not None:
            params["state"] = state
        return f"{GOOGLE_AUTH_URI}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenRecord:
        """Exchange an authorization code for a token record.

        Raises:
            ConfigError: If client credentials are missing.
            TokenRefreshFailedError: If the exchange fails or yields no access token.
        """

        config = self._require_client()
        if not code:
            raise InvalidRequestError("authorization code is required")

        logger.info("oauth_code_exchange_started", redirect_uri=redirect_uri)
        try:
            token = await asyncio.to_thread(self._fetch_token_sync, config, code, redirect_uri)
        except Exception as exc:  # noqa: BLE001
            logger.warning("oauth_code_exchange_failed", error=str(exc))
            raise TokenRefreshFailedError(f"Failed to exchange authorization code: {exc}") from exc

        access_token = token.get("access_token")
        if not access_token:
            raise TokenRefreshFailedError("No access token received from Google")

        record = TokenRecord(
            access_token=access_token,
            refresh_token=token.get("refresh_token") or None,
            expires_at=self._expiry_from_response(token),
            scope=self._scope_from_response(token.get("scope")),
        )
        logger.info(
            "oauth_code_exchange_completed",
            has_refresh_token=record.can_refresh,
            expires_at=record.expires_at.isoformat(),
        )
        return record

    def _fetch_token_sync(
        self, config: OAuthClientConfig, code: str, redirect_uri: str
    ) -> dict[str, Any]:
        flow = Flow.from_client_config(
            {
                "web": {
                    "client_id": config.client_id,
                    "client_secret": config.client_secret,
                    "auth_uri": GOOGLE_AUTH_URI,
                    "token_uri": GOOGLE_TOKEN_URI,
                }
            },
            scopes=list(self.scopes),
            redirect_uri=redirect_uri,
            autogenerate_code_verifier=False,
        )
        try:
            return dict(flow.fetch_token(code=code))
        except Warning as scope_change:
            # oauthlib rejects a granted scope set that differs from the
            # requested one. Google widens it with include_granted_scopes and
            # narrows it under granular consent; the record keeps what was granted.
            token = getattr(scope_change, "token", None)
            if token is None:
                raise
            logger.info(
                "oauth_scope_changed",
                requested=sorted(self.scopes),
                granted=sorted(getattr(scope_change, "new_scope", None) or []),
            )
            return dict(token)

    # -- refresh -----------------------------------------------------------

    async def refresh(
        self,
        refresh_token: str,
        *,
        scope: Iterable[str] | None = None,
    ) -> TokenRecord:
        """Obtain a new access token.

        The returned record keeps ``refresh_token`` when the provider does not
        issue a new one.

        Raises:
            ConfigError: If client credentials are missing.
            TokenRefreshFailedError: On any failure.
        """

        config = self._require_client()
        if not refresh_token:
            raise TokenRefreshFailedError("No refresh token available")

        logger.info("oauth_token_refresh_started")
        try:
            creds = await asyncio.to_thread(self._refresh_sync, config, refresh_token)
        except Exception as exc:  # noqa: BLE001
            logger.warning("oauth_token_refresh_failed", error=str(exc))
            raise TokenRefreshFailedError(f"Failed to refresh access token: {exc}") from exc

        if not creds.token:
            raise TokenRefreshFailedError("No access token received during refresh")

        expires_at = creds.expiry or (
            self._now() + timedelta(seconds=self.default_lifetime_seconds)
        )
        granted = getattr(creds, "granted_scopes", None)
        record = TokenRecord(
            access_token=creds.token,
            refresh_token=creds.refresh_token or refresh_token,
            expires_at=expires_at,
            scope=frozenset(granted or scope or self.scopes),
        )
        logger.info("oauth_token_refresh_completed", expires_at=record.expires_at.isoformat())
        return record

    def _refresh_sync(self, config: OAuthClientConfig, refresh_token: str) -> Credentials:
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=config.client_id,
            client_secret=config.client_secret,
        )
        creds.refresh(Request())
        return creds

    # -- expiry ------------------------------------------------------------

    def is_expired(self, expires_at: datetime, buffer_seconds: int | None = None) -> bool:
        """Whether a token expiring at ``expires_at`` should be treated as expired.

        Compares against ``now + buffer`` so tokens are renewed before they
        can lapse in the middle of a request.
        """

        buffer = self.refresh_buffer_seconds if buffer_seconds is None else buffer_seconds
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return self._now() + timedelta(seconds=buffer) >= expires_at

    async def get_valid_access_token(
        self, record: TokenRecord
    ) -> tuple[str, TokenRecord | None]:
        """Return a usable access token, refreshing first when needed.

        Returns:
            ``(access_token, refreshed_record)``; ``refreshed_record`` is None
            when the input record was still valid. A refreshed record must be
            persisted by the caller.

        Raises:
            InvalidTokenError: If the record is expired and cannot be refreshed.
            TokenRefreshFailedError: If the refresh call fails.
        """

        if not self.is_expired(record.expires_at):
            return record.access_token, None

        if not record.can_refresh:
            raise InvalidTokenError(
                "Access token expired and no refresh token is available; re-authorization required"
            )

        refreshed = await self.refresh(record.refresh_token or "", scope=record.scope)
        return refreshed.access_token, refreshed

    # -- revocation --------------------------------------------------------

    async def revoke(self, token: str) -> None:
        """Revoke a token. Failures are logged and swallowed."""

        if not token:
            return
        try:
            status = await asyncio.to_thread(self._revoke_sync, token)
        except Exception as exc:  # noqa: BLE001
            logger.warning("oauth_token_revoke_failed", error=str(exc))
            return
        if status != 200:
            logger.warning("oauth_token_revoke_rejected", http_status=status)
            return
        logger.info("oauth_token_revoked")

    def _revoke_sync(self, token: str) -> int:
        response = Request()(
            url=GOOGLE_REVOKE_URI,
            method="POST",
            body=urlencode({"token": token}),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return int(response.status)

    # -- helpers -----------------------------------------------------------

    def _expiry_from_response(self, token: dict[str, Any]) -> datetime:
        # expires_in is measured on our clock; oauthlib stamps expires_at from its own.
        expires_in = token.get("expires_in")
        if expires_in:
            return self._now() + timedelta(seconds=float(expires_in))
        expires_at = token.get("expires_at")
        if expires_at:
            return datetime.fromtimestamp(float(expires_at), tz=timezone.utc)
        return self._now() + timedelta(seconds=self.default_lifetime_seconds)

    def _scope_from_response(self, scope: Any) -> frozenset[str]:
        if isinstance(scope, str) and scope.strip():
            return frozenset(scope.split())
        if isinstance(scope, (list, tuple, set, frozenset)) and scope:
            return frozenset(str(s) for s in scope)
        return frozenset(self.scopes)

