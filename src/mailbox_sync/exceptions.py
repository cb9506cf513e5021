"""Custom exceptions for the mailbox sync engine.

Remote failures are classified into a closed set of :class:`ErrorKind` values.
Every :class:`MailboxError` carries its kind, the HTTP status when known, an
optional retry hint, and the provider's message verbatim. Callers either catch
the concrete subclass or match on ``err.kind``.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Closed taxonomy of failures surfaced to callers."""

    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    API_ERROR = "API_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    INSUFFICIENT_SCOPE = "INSUFFICIENT_SCOPE"
    HISTORY_EXPIRED = "HISTORY_EXPIRED"


RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.NETWORK_ERROR})
REAUTH_KINDS = frozenset({ErrorKind.INSUFFICIENT_SCOPE, ErrorKind.INVALID_TOKEN})


class MailboxSyncError(Exception):
    """Base exception for all mailbox sync errors."""


class MailboxError(MailboxSyncError):
    """A classified failure with an actionable kind."""

    kind: ErrorKind = ErrorKind.API_ERROR

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.http_status = http_status
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def requires_reauth(self) -> bool:
        return self.kind in REAUTH_KINDS

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value}, http_status={self.http_status}, "
            f"retry_after={self.retry_after}, message={self.message!r})"
        )


class InvalidTokenError(MailboxError):
    """Access token rejected, or expired with no way to refresh it."""

    kind = ErrorKind.INVALID_TOKEN


class TokenRefreshFailedError(MailboxError):
    """Code exchange or token refresh failed."""

    kind = ErrorKind.TOKEN_REFRESH_FAILED


class RateLimitedError(MailboxError):
    """Provider quota exceeded; see ``retry_after``."""

    kind = ErrorKind.RATE_LIMITED


class NotFoundError(MailboxError):
    """Referenced resource does not exist."""

    kind = ErrorKind.NOT_FOUND


class InvalidRequestError(MailboxError):
    """Malformed input, either from the caller or an inbound notification."""

    kind = ErrorKind.INVALID_REQUEST


class ApiError(MailboxError):
    """Any other provider failure."""

    kind = ErrorKind.API_ERROR


class NetworkError(MailboxError):
    """Connection-level failure (timeout, refused, DNS)."""

    kind = ErrorKind.NETWORK_ERROR


class ConfigError(MailboxError):
    """OAuth client credentials are missing or incomplete."""

    kind = ErrorKind.CONFIG_ERROR


class InsufficientScopeError(MailboxError):
    """Granted scopes do not cover the operation; re-consent required."""

    kind = ErrorKind.INSUFFICIENT_SCOPE


class HistoryExpiredError(MailboxError):
    """Sync cursor is older than the provider's retained history."""

    kind = ErrorKind.HISTORY_EXPIRED


ERRORS_BY_KIND: dict[ErrorKind, type[MailboxError]] = {
    cls.kind: cls
    for cls in (
        InvalidTokenError,
        TokenRefreshFailedError,
        RateLimitedError,
        NotFoundError,
        InvalidRequestError,
        ApiError,
        NetworkError,
        ConfigError,
        InsufficientScopeError,
        HistoryExpiredError,
    )
}


def error_for_kind(
    kind: ErrorKind,
    message: str,
    *,
    http_status: int | None = None,
    retry_after: float | None = None,
) -> MailboxError:
    """Instantiate the subclass registered for ``kind``."""
    return ERRORS_BY_KIND[kind](message, http_status=http_status, retry_after=retry_after)


class MessageDecodeError(MailboxSyncError):
    """A single provider message could not be decoded."""

    def __init__(self, message: str, *, message_id: str | None = None) -> None:
        super().__init__(message)
        self.message_id = message_id
