"""Data models for the mailbox sync engine.

This module contains Pydantic models for data validation and serialization.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from mailbox_sync.models.email_data import EmailData, ThreadingHeaders
from mailbox_sync.models.token_record import TokenRecord


class SyncMode(str, Enum):
    """How a sync result was produced."""

    FULL = "full"
    INCREMENTAL = "incremental"


class SyncResult(BaseModel):
    """Outcome of one sync call. Consumed by the caller, never retained."""

    emails: list[EmailData] = Field(
        default_factory=list,
        description="Decoded messages in provider order (not necessarily chronological)",
    )
    new_cursor: str = Field(description="History id to persist for the next incremental sync")
    has_more: bool = Field(default=False, description="Whether the provider paginated beyond this call")
    mode: SyncMode = Field(description="Full or incremental sync")
    skipped: int = Field(default=0, description="Messages dropped because they failed to decode")


class SendRequest(BaseModel):
    """A new outbound message."""

    to: list[str] = Field(min_length=1, description="Recipient addresses")
    cc: list[str] = Field(default_factory=list, description="Cc addresses")
    bcc: list[str] = Field(default_factory=list, description="Bcc addresses")
    subject: str = Field(description="Subject line")
    body: str = Field(description="Body content")
    is_html: bool = Field(default=False, description="Send body as text/html")


class ReplyRequest(BaseModel):
    """A reply to the last message of a thread.

    Recipients are not part of the request; they are resolved against the
    thread when the reply is sent.
    """

    body: str = Field(description="Reply body content")
    reply_all: bool = Field(default=False, description="Reply to every participant")
    is_html: bool = Field(default=False, description="Send body as text/html")


class SentMessage(BaseModel):
    """Provider acknowledgement of a sent message."""

    id: str = Field(description="Provider message ID")
    thread_id: str = Field(description="Provider thread ID")
    labels: list[str] = Field(default_factory=list, description="Labels on the sent message")


class ThreadSummary(BaseModel):
    """Thread entry returned by a thread search."""

    id: str
    snippet: str = ""
    history_id: str = ""


class FullThread(BaseModel):
    """A thread with every message decoded."""

    id: str
    history_id: str = ""
    messages: list[EmailData] = Field(default_factory=list)


class MailboxProfile(BaseModel):
    """Account profile, including the current history id."""

    email_address: str
    messages_total: int = 0
    threads_total: int = 0
    history_id: str = ""


class WatchResponse(BaseModel):
    """Result of registering a push notification watch."""

    history_id: str
    expiration: datetime | None = Field(
        default=None,
        description="When the watch lapses; Gmail watches must be renewed within 7 days",
    )


class PushNotification(BaseModel):
    """Decoded mailbox change notification."""

    model_config = ConfigDict(frozen=True)

    email_address: str = Field(description="Mailbox identity the notification belongs to")
    history_id: str = Field(description="History cursor at the time of the change")


__all__ = [
    "EmailData",
    "FullThread",
    "MailboxProfile",
    "PushNotification",
    "ReplyRequest",
    "SendRequest",
    "SentMessage",
    "SyncMode",
    "SyncResult",
    "ThreadSummary",
    "ThreadingHeaders",
    "TokenRecord",
    "WatchResponse",
]
