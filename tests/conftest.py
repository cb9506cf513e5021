"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import base64
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import pytest

from mailbox_sync.exceptions import MailboxError


def b64url(text: str) -> str:
    """Encode text the way Gmail encodes part bodies (padding stripped)."""
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def make_message(
    message_id: str,
    *,
    thread_id: str = "thread-1",
    subject: str | None = "Hello",
    sender: str = "Alice Example <alice@example.com>",
    to: str = "me@example.com",
    cc: str | None = None,
    body: str = "Hi there",
    labels: Sequence[str] = ("INBOX", "UNREAD"),
    internal_date_ms: int | None = 1_700_000_000_000,
    message_id_header: str | None = None,
    references: str | None = None,
) -> dict[str, Any]:
    """Build a ``format=full`` Gmail message payload."""
    headers = [{"name": "From", "value": sender}, {"name": "To", "value": to}]
    if subject is not None:
        headers.append({"name": "Subject", "value": subject})
    if cc:
        headers.append({"name": "Cc", "value": cc})
    if message_id_header:
        headers.append({"name": "Message-ID", "value": message_id_header})
    if references:
        headers.append({"name": "References", "value": references})

    message: dict[str, Any] = {
        "id": message_id,
        "threadId": thread_id,
        "labelIds": list(labels),
        "snippet": body[:20],
        "payload": {
            "mimeType": "text/plain",
            "headers": headers,
            "body": {"data": b64url(body)},
        },
    }
    if internal_date_ms is not None:
        message["internalDate"] = str(internal_date_ms)
    return message


class FakeGmailClient:
    """In-memory stand-in for :class:`GmailClient` used by engine-level tests."""

    def __init__(
        self,
        *,
        email_address: str = "me@example.com",
        history_id: str = "5000",
        messages: dict[str, dict[str, Any] | MailboxError] | None = None,
        listed_ids: Sequence[str] = (),
        next_page_token: str | None = None,
        history_response: dict[str, Any] | None = None,
        history_error: MailboxError | None = None,
        batch_error: MailboxError | None = None,
        threads: dict[str, dict[str, Any]] | None = None,
        token_valid: bool = True,
    ) -> None:
        self.email_address = email_address
        self.history_id = history_id
        self.messages = messages or {}
        self.listed_ids = list(listed_ids)
        self.next_page_token = next_page_token
        self.history_response = history_response or {"historyId": history_id}
        self.history_error = history_error
        self.batch_error = batch_error
        self.threads = threads or {}
        self.token_valid = token_valid

        self.calls: list[str] = []
        self.batches: list[list[str]] = []
        self.history_calls: list[dict[str, Any]] = []
        self.sent: list[dict[str, Any]] = []
        self.modified: list[dict[str, Any]] = []
        self.batch_modified: list[dict[str, Any]] = []
        self.watch_calls: list[dict[str, Any]] = []

    async def get_profile(self) -> dict[str, Any]:
        self.calls.append("get_profile")
        return {
            "emailAddress": self.email_address,
            "messagesTotal": len(self.messages),
            "threadsTotal": 1,
            "historyId": self.history_id,
        }

    async def is_token_valid(self) -> bool:
        self.calls.append("is_token_valid")
        return self.token_valid

    async def list_message_ids(self, **kwargs: Any) -> tuple[list[str], str | None]:
        self.calls.append("list_message_ids")
        return list(self.listed_ids), self.next_page_token

    async def list_history(self, start_history_id: str, **kwargs: Any) -> dict[str, Any]:
        self.calls.append("list_history")
        self.history_calls.append({"start_history_id": start_history_id, **kwargs})
        if self.history_error is not None:
            raise self.history_error
        return self.history_response

    async def get_messages(
        self, message_ids: Sequence[str], *, format: str = "full"
    ) -> dict[str, dict[str, Any] | MailboxError]:
        self.batches.append(list(message_ids))
        if self.batch_error is not None:
            raise self.batch_error
        return {mid: self.messages[mid] for mid in message_ids if mid in self.messages}

    async def list_threads(self, *, query: str | None = None, max_results: int = 20) -> dict[str, Any]:
        return {"threads": [{"id": tid, "snippet": "", "historyId": "1"} for tid in self.threads]}

    async def get_thread(self, thread_id: str) -> dict[str, Any]:
        return self.threads[thread_id]

    async def send_message(self, raw: str, *, thread_id: str | None = None) -> dict[str, Any]:
        self.sent.append({"raw": raw, "thread_id": thread_id})
        return {"id": "sent-1", "threadId": thread_id or "new-thread", "labelIds": ["SENT"]}

    async def modify_message(self, message_id: str, **kwargs: Any) -> dict[str, Any]:
        self.modified.append({"id": message_id, **kwargs})
        return {"id": message_id}

    async def batch_modify_messages(self, message_ids: Sequence[str], **kwargs: Any) -> None:
        self.batch_modified.append({"ids": list(message_ids), **kwargs})

    async def watch(self, topic_name: str, **kwargs: Any) -> dict[str, Any]:
        self.watch_calls.append({"topic_name": topic_name, **kwargs})
        return {"historyId": self.history_id, "expiration": "1700604800000"}

    async def stop_watch(self) -> None:
        self.calls.append("stop_watch")


@pytest.fixture
def settings():
    """Provide isolated settings for testing (no env file, no retries)."""
    from mailbox_sync.config import Settings

    return Settings(
        _env_file=None,
        google_client_id="client-id",
        google_client_secret="client-secret",
        log_level="DEBUG",
        debug=True,
        max_retries=0,
        pubsub_topic="projects/test/topics/gmail",
    )


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def sample_message() -> dict[str, Any]:
    """Provide a Gmail message with a nested multipart body."""
    return {
        "id": "msg123456",
        "threadId": "thread789",
        "labelIds": ["INBOX", "UNREAD", "STARRED"],
        "snippet": "Weekly Newsletter",
        "internalDate": "1700000000000",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "Subject", "value": "Weekly Newsletter - Python Tips"},
                {"name": "From", "value": "Python News <newsletter@python.org>"},
                {"name": "To", "value": "user@example.com, Other <other@example.com>"},
                {"name": "Message-ID", "value": "<abc@python.org>"},
            ],
            "body": {"size": 0},
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "body": {"size": 0},
                    "parts": [
                        {"mimeType": "text/plain", "body": {"data": b64url("plain text")}},
                        {"mimeType": "text/html", "body": {"data": b64url("<p>html</p>")}},
                    ],
                },
                {"mimeType": "application/pdf", "filename": "a.pdf", "body": {"attachmentId": "x"}},
            ],
        },
    }


@pytest.fixture
def message_factory():
    """Provide the Gmail message payload builder."""
    return make_message


@pytest.fixture
def fake_client_cls():
    """Provide the in-memory Gmail client class."""
    return FakeGmailClient


@pytest.fixture
def encode_body():
    """Provide the base64url body encoder."""
    return b64url
