"""Outbound message construction for send and reply.

Messages are built as RFC 2822 text with CRLF line endings and handed to Gmail
as base64url without padding. Replies carry ``In-Reply-To`` and ``References``
so that every mail client threads them with the original conversation.
"""

from __future__ import annotations

from collections.abc import Sequence
from email.header import Header

import structlog

from mailbox_sync.exceptions import InvalidRequestError, MessageDecodeError
from mailbox_sync.gmail.client import GmailClient
from mailbox_sync.gmail.parsing import (
    encode_base64url,
    profile_from_payload,
    thread_from_payload,
)
from mailbox_sync.models import EmailData, ReplyRequest, SendRequest, SentMessage

logger = structlog.get_logger()

CRLF = "\r\n"


def _clean_header(value: str) -> str:
    # Header values must not be able to start a new header line.
    return " ".join(value.replace("\r", " ").replace("\n", " ").split())


def _encode_subject(subject: str) -> str:
    subject = _clean_header(subject)
    if subject.isascii():
        return subject
    return Header(subject, "utf-8").encode(linesep=CRLF)


def build_raw_email(
    from_address: str,
    to: Sequence[str],
    subject: str,
    body: str,
    *,
    cc: Sequence[str] = (),
    bcc: Sequence[str] = (),
    is_html: bool = False,
    in_reply_to: str | None = None,
    references: str | None = None,
) -> str:
    """Build an RFC 2822 message as text."""

    content_type = "text/html" if is_html else "text/plain"
    lines = [
        f"From: {_clean_header(from_address)}",
        f"To: {', '.join(_clean_header(a) for a in to)}",
    ]
    if cc:
        lines.append(f"Cc: {', '.join(_clean_header(a) for a in cc)}")
    if bcc:
        lines.append(f"Bcc: {', '.join(_clean_header(a) for a in bcc)}")
    lines.append(f"Subject: {_encode_subject(subject)}")
    lines.append("MIME-Version: 1.0")
    lines.append(f'Content-Type: {content_type}; charset="UTF-8"')
    if in_reply_to:
        lines.append(f"In-Reply-To: {_clean_header(in_reply_to)}")
    if references:
        lines.append(f"References: {_clean_header(references)}")

    return CRLF.join(lines) + CRLF + CRLF + body


def encode_raw_email(*args, **kwargs) -> str:
    """Same arguments as :func:`build_raw_email`; returns the wire form."""

    return encode_base64url(build_raw_email(*args, **kwargs).encode("utf-8"))


def build_references(prior: EmailData) -> str | None:
    """``References`` for a reply: prior References plus prior Message-ID."""

    message_id = prior.headers.message_id
    references = prior.headers.references
    if references and message_id:
        return f"{references} {message_id}"
    return message_id or references


def reply_subject(subject: str) -> str:
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}"


def resolve_reply_recipients(
    last_message: EmailData,
    own_address: str,
    *,
    reply_all: bool,
) -> tuple[list[str], list[str]]:
    """Work out ``(to, cc)`` for a reply to ``last_message``.

    A plain reply goes to the sender only. Reply-all addresses the sender plus
    every To and Cc recipient, minus the replying account; the sender (or, when
    the account sent the last message, the first remaining participant) is the
    primary recipient and everybody else is copied.
    """

    if not reply_all:
        if not last_message.from_address:
            raise InvalidRequestError("Last message in thread has no sender to reply to")
        return [last_message.from_address], []

    own = own_address.strip().lower()
    participants: list[str] = []
    seen: set[str] = set()
    for address in [last_message.from_address, *last_message.to, *last_message.cc]:
        key = address.strip().lower()
        if not key or key == own or key in seen:
            continue
        seen.add(key)
        participants.append(address.strip())

    if not participants:
        raise InvalidRequestError("Reply-all has no recipients other than the account itself")

    return participants[:1], participants[1:]


class MessageComposer:
    """Sends new messages and threaded replies through a :class:`GmailClient`."""

    def __init__(self, client: GmailClient) -> None:
        self.client = client

    async def _own_address(self) -> str:
        # Looked up on every send so a reconnected account is never stale.
        profile = profile_from_payload(await self.client.get_profile())
        if not profile.email_address:
            raise InvalidRequestError("Account profile has no email address")
        return profile.email_address

    async def send(self, request: SendRequest) -> SentMessage:
        from_address = await self._own_address()
        raw = encode_raw_email(
            from_address,
            request.to,
            request.subject,
            request.body,
            cc=request.cc,
            bcc=request.bcc,
            is_html=request.is_html,
        )
        response = await self.client.send_message(raw)
        logger.info("email_sent", message_id=response.get("id"), recipients=len(request.to))
        return SentMessage(
            id=str(response.get("id") or ""),
            thread_id=str(response.get("threadId") or ""),
            labels=list(response.get("labelIds") or ["SENT"]),
        )

    async def reply(self, thread_id: str, request: ReplyRequest) -> SentMessage:
        try:
            thread = thread_from_payload(await self.client.get_thread(thread_id), thread_id)
        except MessageDecodeError as exc:
            raise InvalidRequestError(
                f"Thread {thread_id} contains an undecodable message: {exc}"
            ) from exc
        if not thread.messages:
            raise InvalidRequestError(f"Cannot reply to empty thread {thread_id}")

        last = thread.messages[-1]
        own_address = await self._own_address()
        to, cc = resolve_reply_recipients(last, own_address, reply_all=request.reply_all)

        raw = encode_raw_email(
            own_address,
            to,
            reply_subject(last.subject),
            request.body,
            cc=cc,
            is_html=request.is_html,
            in_reply_to=last.headers.message_id,
            references=build_references(last),
        )
        response = await self.client.send_message(raw, thread_id=thread_id)
        logger.info(
            "email_reply_sent",
            thread_id=thread_id,
            message_id=response.get("id"),
            reply_all=request.reply_all,
            recipients=len(to) + len(cc),
        )
        return SentMessage(
            id=str(response.get("id") or ""),
            thread_id=str(response.get("threadId") or thread_id),
            labels=list(response.get("labelIds") or ["SENT"]),
        )
