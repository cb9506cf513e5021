"""Normalized email model.

An :class:`EmailData` is built in one step from a provider payload and is
immutable afterwards. Decoding either produces a complete record or raises, so
a half-populated message never reaches the caller.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ThreadingHeaders(BaseModel):
    """Headers mail clients use to group messages into conversations."""

    model_config = ConfigDict(frozen=True)

    message_id: str | None = Field(default=None, description="Message-ID header")
    in_reply_to: str | None = Field(default=None, description="In-Reply-To header")
    references: str | None = Field(default=None, description="References header")


class EmailData(BaseModel):
    """A fully decoded mailbox message."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Provider message ID")
    thread_id: str = Field(description="Provider thread ID")
    subject: str = Field(description="Subject header, '(No Subject)' when absent")
    body: str = Field(default="", description="Decoded body, HTML preferred over plain text")
    snippet: str = Field(default="", description="Provider-generated preview text")

    from_address: str = Field(description="Sender email address")
    from_name: str | None = Field(default=None, description="Sender display name")

    # Order is not meaningful for recipients.
    to: list[str] = Field(default_factory=list, description="To addresses")
    cc: list[str] = Field(default_factory=list, description="Cc addresses")
    bcc: list[str] = Field(default_factory=list, description="Bcc addresses (sent mail only)")

    date: datetime = Field(description="Message timestamp (UTC)")
    is_read: bool = Field(default=True, description="False while the UNREAD label is present")
    is_starred: bool = Field(default=False, description="Whether the STARRED label is present")
    labels: list[str] = Field(default_factory=list, description="Provider label IDs")

    headers: ThreadingHeaders = Field(
        default_factory=ThreadingHeaders,
        description="Threading headers used when replying",
    )
