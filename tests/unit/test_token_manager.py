"""Unit tests for the OAuth token manager."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from mailbox_sync.auth import TokenManager
from mailbox_sync.config import GMAIL_SCOPES, GOOGLE_TOKEN_URI, OAuthClientConfig
from mailbox_sync.exceptions import ConfigError, InvalidTokenError, TokenRefreshFailedError
from mailbox_sync.models import TokenRecord

MODULE = "mailbox_sync.auth.token_manager"

TOKEN_PAYLOAD = {
    "access_token": "access",
    "refresh_token": "refresh",
    "expires_in": 3599,
    "token_type": "Bearer",
}


@pytest.fixture
def manager(fixed_now: datetime) -> TokenManager:
    return TokenManager(
        OAuthClientConfig(client_id="client-id", client_secret="client-secret"),
        now=lambda: fixed_now,
    )


def token_response(payload: dict, status: int = 200) -> requests.Response:
    """A token endpoint response as requests would return it."""
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(payload).encode("utf-8")
    response.headers["Content-Type"] = "application/json"
    response.encoding = "utf-8"
    response.request = requests.Request("POST", GOOGLE_TOKEN_URI).prepare()
    return response


def refreshed_credentials(token: str = "new-access", refresh_token: str | None = None) -> MagicMock:
    creds = MagicMock()
    creds.token = token
    creds.refresh_token = refresh_token
    # google-auth reports naive UTC expiries.
    creds.expiry = datetime(2024, 1, 1, 13, 0, 0)
    creds.granted_scopes = None
    return creds


class TestAuthorizationUrl:
    """Test suite for consent URL construction."""

    def test_url_requests_offline_access(self, manager: TokenManager) -> None:
        url = manager.build_authorization_url("https://app.example.com/cb", state="xyz")
        query = parse_qs(urlparse(url).query)

        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert query["client_id"] == ["client-id"]
        assert query["redirect_uri"] == ["https://app.example.com/cb"]
        assert query["response_type"] == ["code"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["include_granted_scopes"] == ["true"]
        assert query["state"] == ["xyz"]
        assert query["scope"] == [" ".join(GMAIL_SCOPES)]

    def test_url_is_deterministic(self, manager: TokenManager) -> None:
        first = manager.build_authorization_url("https://app.example.com/cb")

        assert first == manager.build_authorization_url("https://app.example.com/cb")
        assert "state=" not in first

    def test_missing_client_config(self) -> None:
        with pytest.raises(ConfigError):
            TokenManager(None).build_authorization_url("https://app.example.com/cb")

    def test_blank_client_config(self) -> None:
        manager = TokenManager(OAuthClientConfig(client_id="", client_secret="s"))

        with pytest.raises(ConfigError):
            manager.build_authorization_url("https://app.example.com/cb")


class TestExpiry:
    """Test suite for the expiry policy."""

    def test_within_buffer_is_expired(self, manager: TokenManager, fixed_now: datetime) -> None:
        assert manager.is_expired(fixed_now + timedelta(seconds=120))

    def test_exactly_at_buffer_is_expired(self, manager: TokenManager, fixed_now: datetime) -> None:
        assert manager.is_expired(fixed_now + timedelta(seconds=300))

    def test_outside_buffer_is_valid(self, manager: TokenManager, fixed_now: datetime) -> None:
        assert not manager.is_expired(fixed_now + timedelta(seconds=301))

    def test_custom_buffer(self, manager: TokenManager, fixed_now: datetime) -> None:
        assert not manager.is_expired(fixed_now + timedelta(seconds=120), buffer_seconds=60)

    def test_naive_expiry_is_treated_as_utc(self, manager: TokenManager) -> None:
        assert manager.is_expired(datetime(2024, 1, 1, 12, 1, 0))


class TestRefresh:
    """Test suite for refresh and get_valid_access_token."""

    @pytest.mark.asyncio
    async def test_token_expiring_in_two_minutes_is_refreshed_once(
        self, manager: TokenManager, fixed_now: datetime
    ) -> None:
        """Test that a token inside the 5 minute buffer triggers exactly one refresh."""
        record = TokenRecord(
            access_token="old-access",
            refresh_token="refresh-1",
            expires_at=fixed_now + timedelta(seconds=120),
            scope=set(GMAIL_SCOPES),
        )
        creds = refreshed_credentials()

        with patch(f"{MODULE}.Credentials", return_value=creds) as credentials_cls, patch(f"{MODULE}.Request"):
            token, refreshed = await manager.get_valid_access_token(record)

        assert token == "new-access"
        creds.refresh.assert_called_once()
        assert credentials_cls.call_args.kwargs["refresh_token"] == "refresh-1"
        assert refreshed is not None
        assert refreshed.refresh_token == "refresh-1"
        assert refreshed.expires_at == datetime(2024, 1, 1, 13, 0, 0, tzinfo=timezone.utc)
        assert refreshed.scope == frozenset(GMAIL_SCOPES)

    @pytest.mark.asyncio
    async def test_valid_token_is_returned_without_refresh(
        self, manager: TokenManager, fixed_now: datetime
    ) -> None:
        record = TokenRecord(
            access_token="still-good",
            refresh_token="refresh-1",
            expires_at=fixed_now + timedelta(hours=1),
        )

        with patch(f"{MODULE}.Credentials") as credentials_cls:
            token, refreshed = await manager.get_valid_access_token(record)

        assert token == "still-good"
        assert refreshed is None
        credentials_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_kept(self, manager: TokenManager) -> None:
        creds = refreshed_credentials(refresh_token="refresh-2")

        with patch(f"{MODULE}.Credentials", return_value=creds), patch(f"{MODULE}.Request"):
            record = await manager.refresh("refresh-1")

        assert record.refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self, manager: TokenManager, fixed_now: datetime) -> None:
        record = TokenRecord(access_token="old", expires_at=fixed_now - timedelta(seconds=1))

        with pytest.raises(InvalidTokenError):
            await manager.get_valid_access_token(record)

    @pytest.mark.asyncio
    async def test_refresh_failure_is_classified(self, manager: TokenManager) -> None:
        creds = refreshed_credentials()
        creds.refresh.side_effect = RuntimeError("invalid_grant")

        with patch(f"{MODULE}.Credentials", return_value=creds), patch(f"{MODULE}.Request"):
            with pytest.raises(TokenRefreshFailedError):
                await manager.refresh("refresh-1")

    @pytest.mark.asyncio
    async def test_refresh_requires_client_config(self) -> None:
        with pytest.raises(ConfigError):
            await TokenManager(None).refresh("refresh-1")


class TestExchangeAndRevoke:
    """Test suite for code exchange and revocation."""

    @pytest.mark.asyncio
    async def test_exchange_code(self, manager: TokenManager, fixed_now: datetime) -> None:
        response = token_response({**TOKEN_PAYLOAD, "scope": " ".join(GMAIL_SCOPES)})

        with patch("requests.Session.request", return_value=response) as request:
            record = await manager.exchange_code("auth-code", "https://app.example.com/cb")

        method, url = request.call_args.args[:2]
        sent = request.call_args.kwargs["data"]
        assert (method, url) == ("POST", GOOGLE_TOKEN_URI)
        assert sent["code"] == "auth-code"
        assert sent["redirect_uri"] == "https://app.example.com/cb"
        assert "code_verifier" not in sent
        assert record.access_token == "access"
        assert record.refresh_token == "refresh"
        assert record.expires_at == fixed_now + timedelta(seconds=3599)
        assert manager.has_required_scopes(record)

    @pytest.mark.asyncio
    async def test_exchange_keeps_previously_granted_scopes(self, manager: TokenManager) -> None:
        """Test that a wider grant from incremental authorization is accepted."""
        granted = [*GMAIL_SCOPES, "openid", "https://www.googleapis.com/auth/userinfo.email"]
        response = token_response({**TOKEN_PAYLOAD, "scope": " ".join(granted)})

        with patch("requests.Session.request", return_value=response):
            record = await manager.exchange_code("auth-code", "https://app.example.com/cb")

        assert record.access_token == "access"
        assert record.scope == frozenset(granted)
        assert manager.has_required_scopes(record)

    @pytest.mark.asyncio
    async def test_exchange_with_narrowed_grant(self, manager: TokenManager) -> None:
        """Test that a partial grant is returned so the caller can detect it."""
        readonly = "https://www.googleapis.com/auth/gmail.readonly"
        response = token_response({**TOKEN_PAYLOAD, "scope": readonly})

        with patch("requests.Session.request", return_value=response):
            record = await manager.exchange_code("auth-code", "https://app.example.com/cb")

        assert record.scope == frozenset({readonly})
        assert not manager.has_required_scopes(record)

    @pytest.mark.asyncio
    async def test_exchange_without_access_token(self, manager: TokenManager) -> None:
        with patch("requests.Session.request", return_value=token_response({"token_type": "Bearer"})):
            with pytest.raises(TokenRefreshFailedError):
                await manager.exchange_code("auth-code", "https://app.example.com/cb")

    @pytest.mark.asyncio
    async def test_exchange_rejected_code(self, manager: TokenManager) -> None:
        response = token_response({"error": "invalid_grant", "error_description": "Bad Request"}, status=400)

        with patch("requests.Session.request", return_value=response):
            with pytest.raises(TokenRefreshFailedError):
                await manager.exchange_code("auth-code", "https://app.example.com/cb")

    @pytest.mark.asyncio
    async def test_exchange_failure(self, manager: TokenManager) -> None:
        with patch(f"{MODULE}.Flow") as flow_cls:
            flow_cls.from_client_config.return_value.fetch_token.side_effect = ValueError("bad code")
            with pytest.raises(TokenRefreshFailedError):
                await manager.exchange_code("auth-code", "https://app.example.com/cb")

    @pytest.mark.asyncio
    async def test_revoke_posts_token(self, manager: TokenManager) -> None:
        with patch(f"{MODULE}.Request") as request_cls:
            request_cls.return_value.return_value.status = 200
            await manager.revoke("refresh-1")

        kwargs = request_cls.return_value.call_args.kwargs
        assert kwargs["url"] == "https://oauth2.googleapis.com/revoke"
        assert kwargs["method"] == "POST"
        assert kwargs["body"] == "token=refresh-1"

    @pytest.mark.asyncio
    async def test_revoke_swallows_failures(self, manager: TokenManager) -> None:
        with patch(f"{MODULE}.Request") as request_cls:
            request_cls.return_value.side_effect = OSError("connection reset")
            await manager.revoke("refresh-1")

    @pytest.mark.asyncio
    async def test_revoke_swallows_rejection(self, manager: TokenManager) -> None:
        with patch(f"{MODULE}.Request") as request_cls:
            request_cls.return_value.return_value.status = 400
            await manager.revoke("refresh-1")
