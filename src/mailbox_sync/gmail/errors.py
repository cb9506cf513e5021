"""Classify Gmail transport failures into :class:`~mailbox_sync.exceptions.ErrorKind`.

Rules are applied in priority order:

1. 401 -> INVALID_TOKEN
2. 403 with an insufficient-permission reason -> INSUFFICIENT_SCOPE
3. other 403 -> API_ERROR
4. 404 -> NOT_FOUND
5. 429 -> RATE_LIMITED (``retry_after`` from the Retry-After header)
6. 410 with a history-expired reason -> HISTORY_EXPIRED
7. >= 500 -> API_ERROR
8. connection failures -> NETWORK_ERROR
9. anything else -> API_ERROR, provider message kept verbatim

The provider also answers malformed parameters with 400; those map to
INVALID_REQUEST.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httplib2
from google.auth import exceptions as google_auth_exceptions
from googleapiclient.errors import HttpError

from mailbox_sync.exceptions import (
    ApiError,
    HistoryExpiredError,
    InsufficientScopeError,
    InvalidRequestError,
    InvalidTokenError,
    MailboxError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
)

INSUFFICIENT_SCOPE_REASONS = frozenset(
    {"insufficientPermissions", "ACCESS_TOKEN_SCOPE_INSUFFICIENT"}
)
HISTORY_EXPIRED_REASONS = frozenset({"historyIdExpired"})

_NETWORK_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    OSError,
    httplib2.HttpLib2Error,
    google_auth_exceptions.TransportError,
)


def _error_body(err: HttpError) -> dict[str, Any]:
    content = getattr(err, "content", b"") or b""
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8")
        except UnicodeDecodeError:
            return {}
    try:
        data = json.loads(content)
    except (TypeError, ValueError):
        return {}
    if not isinstance(data, dict):
        return {}
    error = data.get("error")
    return error if isinstance(error, dict) else {}


def error_reasons(err: HttpError) -> list[str]:
    """Collect every provider reason code attached to an HttpError."""

    body = _error_body(err)
    reasons: list[str] = []
    for key in ("errors", "details"):
        for item in body.get(key) or []:
            if isinstance(item, dict) and isinstance(item.get("reason"), str):
                reasons.append(item["reason"])
    return reasons


def error_message(err: HttpError) -> str:
    body = _error_body(err)
    message = body.get("message")
    if isinstance(message, str) and message:
        return message
    reason = getattr(err, "reason", None)
    if isinstance(reason, str) and reason:
        return reason
    return str(err)


def http_status(err: HttpError) -> int | None:
    resp = getattr(err, "resp", None)
    status = getattr(resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header given either as seconds or as an HTTP date."""

    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (when - current).total_seconds())


def map_http_error(err: HttpError) -> MailboxError:
    """Convert a Gmail HttpError into a classified MailboxError."""

    status = http_status(err)
    reasons = set(error_reasons(err))
    message = error_message(err)

    if status == 401:
        return InvalidTokenError(message, http_status=401)
    if status == 403:
        if reasons & INSUFFICIENT_SCOPE_REASONS:
            return InsufficientScopeError(message, http_status=403)
        return ApiError(message, http_status=403)
    if status == 404:
        return NotFoundError(message, http_status=404)
    if status == 429:
        resp = getattr(err, "resp", None) or {}
        retry_after = parse_retry_after(resp.get("retry-after") if hasattr(resp, "get") else None)
        return RateLimitedError(message, http_status=429, retry_after=retry_after)
    if status == 410 and reasons & HISTORY_EXPIRED_REASONS:
        return HistoryExpiredError(message, http_status=410)
    if status is not None and status >= 500:
        return ApiError(message, http_status=status)
    if status == 400:
        return InvalidRequestError(message, http_status=400)
    return ApiError(message, http_status=status)


def map_exception(exc: BaseException) -> MailboxError:
    """Classify any exception raised while talking to Gmail."""

    if isinstance(exc, MailboxError):
        return exc
    if isinstance(exc, HttpError):
        return map_http_error(exc)
    if isinstance(exc, google_auth_exceptions.RefreshError):
        # The transport never holds a refresh token; a refresh attempt means
        # the bearer token was rejected.
        return InvalidTokenError(str(exc), http_status=401)
    if isinstance(exc, _NETWORK_EXCEPTIONS):
        return NetworkError(str(exc) or type(exc).__name__)
    return ApiError(str(exc) or type(exc).__name__)
