"""Helpers for decoding Gmail message payloads into :class:`EmailData`.

Gmail returns messages as a header list plus a (possibly nested) part tree
whose leaf bodies are base64url encoded with padding stripped. Anything that
prevents a complete record from being built raises
:class:`~mailbox_sync.exceptions.MessageDecodeError`; callers drop that one
message and carry on.
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage as MimeMessage
from email.parser import BytesParser
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from typing import Any

from mailbox_sync.exceptions import MessageDecodeError
from mailbox_sync.models import (
    EmailData,
    FullThread,
    MailboxProfile,
    ThreadingHeaders,
    ThreadSummary,
    WatchResponse,
)

MAX_PART_DEPTH = 10
NO_SUBJECT = "(No Subject)"


def decode_base64url(data: str) -> bytes:
    """Decode URL-safe base64, tolerating stripped padding."""

    cleaned = "".join(data.split())
    padded = cleaned + "=" * (-len(cleaned) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise MessageDecodeError(f"invalid base64url data: {exc}") from exc


def encode_base64url(data: bytes) -> str:
    """Encode bytes as URL-safe base64 with padding removed."""

    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode_text(data: str) -> str:
    return decode_base64url(data).decode("utf-8", errors="replace")


def _mime_type(part: dict[str, Any]) -> str:
    return str(part.get("mimeType") or "").split(";", 1)[0].strip().lower()


def _body_data(part: dict[str, Any]) -> str | None:
    body = part.get("body") or {}
    data = body.get("data")
    return data if isinstance(data, str) and data else None


def extract_body(part: dict[str, Any] | None, depth: int = 0) -> str:
    """Extract the display body from a message part tree.

    The part's own body wins when present on the top-level payload or on a
    ``text/*`` part, so attachments with inline data are passed over.
    Otherwise ``text/html`` is preferred over ``text/plain`` among the
    direct children, and nested multipart containers are searched
    depth-first until something is found.

    Returns:
        The decoded body, or an empty string when the tree holds no text.
    """

    if not part:
        return ""
    if depth > MAX_PART_DEPTH:
        raise MessageDecodeError(f"MIME part tree deeper than {MAX_PART_DEPTH} levels")

    own = _body_data(part)
    if own is not None and (depth == 0 or _mime_type(part).startswith("text/")):
        return _decode_text(own)

    children = [p for p in part.get("parts") or [] if isinstance(p, dict)]
    for wanted in ("text/html", "text/plain"):
        for child in children:
            data = _body_data(child)
            if _mime_type(child) == wanted and data is not None:
                return _decode_text(data)

    for child in children:
        body = extract_body(child, depth + 1)
        if body:
            return body
    return ""


def header_map(payload: dict[str, Any]) -> dict[str, str]:
    """Case-insensitive header lookup table (first occurrence wins)."""

    result: dict[str, str] = {}
    for h in payload.get("headers") or []:
        name = h.get("name")
        value = h.get("value")
        if isinstance(name, str) and isinstance(value, str):
            result.setdefault(name.lower(), value)
    return result


def get_header(payload: dict[str, Any], name: str) -> str | None:
    return header_map(payload).get(name.lower()) or None


def parse_address(value: str | None) -> tuple[str | None, str]:
    """Split ``"Name <addr>"`` into ``(name or None, addr)``."""

    if not value:
        return None, ""
    name, addr = parseaddr(value)
    return (name.strip() or None), (addr.strip() or value.strip())


def parse_address_list(value: str | None) -> list[str]:
    """Parse a comma-separated address header into bare addresses."""

    if not value:
        return []
    # getaddresses returns list[(name, addr)]
    return [addr.strip() for _, addr in getaddresses([value]) if addr.strip()]


def _parse_date(message: dict[str, Any], headers: dict[str, str]) -> datetime:
    internal_date_raw = message.get("internalDate")
    if internal_date_raw is not None:
        try:
            return datetime.fromtimestamp(int(internal_date_raw) / 1000.0, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            pass

    date_header = headers.get("date")
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError, IndexError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)

    raise MessageDecodeError("message has neither internalDate nor a valid Date header")


def message_to_email_data(message: dict[str, Any]) -> EmailData:
    """Convert a Gmail API message (format=full) to :class:`EmailData`.

    Raises:
        MessageDecodeError: If the message cannot be decoded completely.
    """

    message_id = message.get("id")
    if not isinstance(message_id, str) or not message_id:
        raise MessageDecodeError("message has no id")

    try:
        payload = message.get("payload") or {}
        hm = header_map(payload)

        label_ids = message.get("labelIds") or []
        if not isinstance(label_ids, list):
            label_ids = []
        labels = [str(x) for x in label_ids if isinstance(x, str)]

        from_name, from_address = parse_address(hm.get("from"))

        return EmailData(
            id=message_id,
            thread_id=str(message.get("threadId") or ""),
            subject=hm.get("subject") or NO_SUBJECT,
            body=extract_body(payload),
            snippet=str(message.get("snippet") or ""),
            from_address=from_address,
            from_name=from_name,
            to=parse_address_list(hm.get("to")),
            cc=parse_address_list(hm.get("cc")),
            bcc=parse_address_list(hm.get("bcc")),
            date=_parse_date(message, hm),
            is_read="UNREAD" not in labels,
            is_starred="STARRED" in labels,
            labels=labels,
            headers=ThreadingHeaders(
                message_id=hm.get("message-id") or None,
                in_reply_to=hm.get("in-reply-to") or None,
                references=hm.get("references") or None,
            ),
        )
    except MessageDecodeError as exc:
        exc.message_id = message_id
        raise
    except (AttributeError, TypeError, ValueError) as exc:
        raise MessageDecodeError(str(exc), message_id=message_id) from exc


def _mime_to_part(mime: MimeMessage, depth: int = 0) -> dict[str, Any]:
    if depth > MAX_PART_DEPTH:
        raise MessageDecodeError(f"MIME part tree deeper than {MAX_PART_DEPTH} levels")

    part: dict[str, Any] = {
        "mimeType": mime.get_content_type(),
        "headers": [{"name": name, "value": str(value)} for name, value in mime.items()],
    }
    if mime.is_multipart():
        part["body"] = {"size": 0}
        part["parts"] = [_mime_to_part(child, depth + 1) for child in mime.iter_parts()]
    else:
        data = mime.get_payload(decode=True) or b""
        part["body"] = {"size": len(data), "data": encode_base64url(data)}
    return part


def raw_to_message(
    raw: str,
    *,
    message_id: str,
    thread_id: str = "",
    label_ids: list[str] | None = None,
    internal_date_ms: int | None = None,
) -> dict[str, Any]:
    """Turn a base64url RFC 2822 message into the ``format=full`` payload shape.

    This lets raw messages (Gmail ``format=raw`` responses, or messages we
    composed ourselves) decode through :func:`message_to_email_data`.
    """

    mime = BytesParser(policy=policy.default).parsebytes(decode_base64url(raw))
    message: dict[str, Any] = {
        "id": message_id,
        "threadId": thread_id,
        "labelIds": list(label_ids or []),
        "payload": _mime_to_part(mime),  # type: ignore[arg-type]
    }
    if internal_date_ms is not None:
        message["internalDate"] = str(internal_date_ms)
    return message


def profile_from_payload(data: dict[str, Any]) -> MailboxProfile:
    return MailboxProfile(
        email_address=str(data.get("emailAddress") or ""),
        messages_total=int(data.get("messagesTotal") or 0),
        threads_total=int(data.get("threadsTotal") or 0),
        history_id=str(data.get("historyId") or ""),
    )


def thread_summaries_from_payload(data: dict[str, Any]) -> list[ThreadSummary]:
    return [
        ThreadSummary(
            id=str(t.get("id") or ""),
            snippet=str(t.get("snippet") or ""),
            history_id=str(t.get("historyId") or ""),
        )
        for t in data.get("threads", []) or []
        if t.get("id")
    ]


def thread_from_payload(data: dict[str, Any], thread_id: str) -> FullThread:
    """Decode every message of a thread; an undecodable message fails the thread."""

    return FullThread(
        id=str(data.get("id") or thread_id),
        history_id=str(data.get("historyId") or ""),
        messages=[message_to_email_data(m) for m in data.get("messages", []) or []],
    )


def watch_from_payload(data: dict[str, Any]) -> WatchResponse:
    expiration_raw = data.get("expiration")
    expiration = None
    if expiration_raw:
        expiration = datetime.fromtimestamp(int(expiration_raw) / 1000.0, tz=timezone.utc)
    return WatchResponse(history_id=str(data.get("historyId") or ""), expiration=expiration)
