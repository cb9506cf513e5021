"""Unit tests for Gmail error classification."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httplib2
import pytest
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.errors import HttpError

from mailbox_sync.exceptions import ErrorKind, MailboxError, NotFoundError
from mailbox_sync.gmail.errors import map_exception, map_http_error, parse_retry_after


def http_error(status: int, reason: str | None = None, message: str = "boom", **headers: str) -> HttpError:
    resp = httplib2.Response({"status": status, **headers})
    error: dict = {"code": status, "message": message}
    if reason:
        error["errors"] = [{"reason": reason, "message": message}]
    return HttpError(resp, json.dumps({"error": error}).encode("utf-8"))


class TestMapHttpError:
    """Test suite for map_http_error."""

    @pytest.mark.parametrize(
        ("status", "reason", "kind"),
        [
            (401, None, ErrorKind.INVALID_TOKEN),
            (403, "insufficientPermissions", ErrorKind.INSUFFICIENT_SCOPE),
            (403, "ACCESS_TOKEN_SCOPE_INSUFFICIENT", ErrorKind.INSUFFICIENT_SCOPE),
            (403, "forbidden", ErrorKind.API_ERROR),
            (404, "notFound", ErrorKind.NOT_FOUND),
            (429, "rateLimitExceeded", ErrorKind.RATE_LIMITED),
            (410, "historyIdExpired", ErrorKind.HISTORY_EXPIRED),
            (500, "backendError", ErrorKind.API_ERROR),
            (503, None, ErrorKind.API_ERROR),
            (400, "invalidArgument", ErrorKind.INVALID_REQUEST),
            (409, None, ErrorKind.API_ERROR),
        ],
    )
    def test_status_and_reason_classification(self, status: int, reason: str | None, kind: ErrorKind) -> None:
        """Test that status codes and reasons map to the documented kinds."""
        error = map_http_error(http_error(status, reason))

        assert error.kind is kind
        assert error.http_status == status

    def test_provider_message_is_kept_verbatim(self) -> None:
        error = map_http_error(http_error(500, message="Backend Error: try later"))

        assert error.message == "Backend Error: try later"

    def test_rate_limit_reads_retry_after_seconds(self) -> None:
        """Test that a 429 carries the Retry-After hint."""
        error = map_http_error(http_error(429, "rateLimitExceeded", **{"retry-after": "30"}))

        assert error.retry_after == 30.0
        assert error.retryable

    def test_rate_limit_without_retry_after(self) -> None:
        error = map_http_error(http_error(429))

        assert error.retry_after is None


class TestParseRetryAfter:
    """Test suite for Retry-After parsing."""

    def test_seconds(self) -> None:
        assert parse_retry_after("120") == 120.0

    def test_http_date(self) -> None:
        now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

        assert parse_retry_after("Mon, 01 Jan 2024 12:01:00 GMT", now=now) == 60.0

    def test_past_date_is_zero(self) -> None:
        now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

        assert parse_retry_after("Mon, 01 Jan 2024 11:00:00 GMT", now=now) == 0.0

    def test_garbage_is_none(self) -> None:
        assert parse_retry_after("soon") is None
        assert parse_retry_after(None) is None


class TestMapException:
    """Test suite for map_exception."""

    def test_network_failures(self) -> None:
        assert map_exception(TimeoutError("timed out")).kind is ErrorKind.NETWORK_ERROR
        assert map_exception(ConnectionRefusedError()).kind is ErrorKind.NETWORK_ERROR
        assert map_exception(httplib2.ServerNotFoundError("dns")).kind is ErrorKind.NETWORK_ERROR
        assert map_exception(TransportError("reset")).kind is ErrorKind.NETWORK_ERROR

    def test_refresh_error_means_invalid_token(self) -> None:
        assert map_exception(RefreshError("invalid_grant")).kind is ErrorKind.INVALID_TOKEN

    def test_classified_errors_pass_through(self) -> None:
        original = NotFoundError("gone", http_status=404)

        assert map_exception(original) is original

    def test_unknown_exception_is_api_error(self) -> None:
        error = map_exception(RuntimeError("weird"))

        assert isinstance(error, MailboxError)
        assert error.kind is ErrorKind.API_ERROR
        assert error.message == "weird"
