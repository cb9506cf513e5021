"""Unit tests for data models."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from mailbox_sync.exceptions import (
    ErrorKind,
    HistoryExpiredError,
    InsufficientScopeError,
    RateLimitedError,
    error_for_kind,
)
from mailbox_sync.models import EmailData, SendRequest, TokenRecord


class TestTokenRecord:
    """Test suite for TokenRecord model."""

    def test_naive_expiry_becomes_utc(self) -> None:
        record = TokenRecord(access_token="a", expires_at=datetime(2024, 1, 1, 12, 0))

        assert record.expires_at.tzinfo == timezone.utc
        assert record.can_refresh is False

    def test_scope_string_is_split(self) -> None:
        record = TokenRecord(access_token="a", expires_at=datetime.now(timezone.utc), scope="b a")

        assert record.scope == frozenset({"a", "b"})
        assert record.scope_string == "a b"

    def test_record_is_immutable(self) -> None:
        record = TokenRecord(access_token="a", expires_at=datetime.now(timezone.utc))

        with pytest.raises(ValidationError):
            record.access_token = "b"


class TestEmailData:
    """Test suite for EmailData model."""

    def test_email_data_creation(self) -> None:
        """Test creating an EmailData instance."""
        email = EmailData(
            id="msg123",
            thread_id="thread456",
            subject="Test Email",
            from_address="sender@example.com",
            date=datetime.now(timezone.utc),
        )

        assert email.is_read is True
        assert email.to == []
        assert email.headers.message_id is None


class TestSendRequest:
    """Test suite for SendRequest model."""

    def test_requires_a_recipient(self) -> None:
        with pytest.raises(ValidationError):
            SendRequest(to=[], subject="s", body="b")


class TestErrors:
    """Test suite for the error taxonomy."""

    def test_retryable_and_reauth_flags(self) -> None:
        assert RateLimitedError("x").retryable
        assert not HistoryExpiredError("x").retryable
        assert InsufficientScopeError("x").requires_reauth

    def test_error_for_kind(self) -> None:
        error = error_for_kind(ErrorKind.RATE_LIMITED, "slow", http_status=429, retry_after=5.0)

        assert isinstance(error, RateLimitedError)
        assert error.retry_after == 5.0
        assert "RATE_LIMITED" in repr(error)
