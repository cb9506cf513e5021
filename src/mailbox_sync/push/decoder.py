"""Decoding and verification of mailbox change notifications.

Gmail publishes change notifications to Cloud Pub/Sub. A push subscription
delivers them as ``{"message": {"data": "<base64 json>", ...}}`` where the
decoded JSON carries ``emailAddress`` and ``historyId``. A notification only
says *that* something changed; the receiver runs an incremental sync from its
stored cursor to find out *what*.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from typing import Any

import structlog

from mailbox_sync.exceptions import InvalidRequestError
from mailbox_sync.models import PushNotification

logger = structlog.get_logger()

SIGNATURE_PREFIX = "sha256="


def _b64decode(data: str) -> bytes:
    cleaned = "".join(data.split())
    padded = cleaned + "=" * (-len(cleaned) % 4)
    if "-" in padded or "_" in padded:
        return base64.urlsafe_b64decode(padded)
    return base64.b64decode(padded, validate=True)


def decode_push(envelope: str) -> PushNotification:
    """Decode a base64 notification payload.

    Raises:
        InvalidRequestError: If the payload is not base64 JSON or lacks
            ``emailAddress`` or ``historyId``.
    """

    if not envelope or not isinstance(envelope, str):
        raise InvalidRequestError("Push notification payload is empty")

    try:
        decoded = json.loads(_b64decode(envelope).decode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        raise InvalidRequestError(f"Push notification payload is not base64 JSON: {exc}") from exc

    if not isinstance(decoded, dict):
        raise InvalidRequestError("Push notification payload must be a JSON object")

    email_address = decoded.get("emailAddress")
    history_id = decoded.get("historyId")
    if not isinstance(email_address, str) or not email_address:
        raise InvalidRequestError("Push notification is missing emailAddress")
    if isinstance(history_id, bool) or not isinstance(history_id, (int, str)) or history_id == "":
        raise InvalidRequestError("Push notification is missing historyId")

    return PushNotification(email_address=email_address, history_id=str(history_id))


def sign_push_body(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``body`` under ``secret``."""

    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_push_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Check a webhook signature in constant time.

    ``signature`` is the hex digest, optionally prefixed with ``sha256=``.
    A missing secret or signature never verifies.
    """

    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX) :]
    expected = sign_push_body(body, secret)
    return hmac.compare_digest(expected, provided.lower())


def decode_verified_push(body: bytes, signature: str | None, secret: str | None) -> PushNotification:
    """Verify a Pub/Sub push request body and decode the notification inside.

    Raises:
        InvalidRequestError: On a missing or mismatching signature, or a
            malformed body.
    """

    if not verify_push_signature(body, signature, secret):
        logger.warning("push_signature_rejected", has_signature=bool(signature), has_secret=bool(secret))
        raise InvalidRequestError("Push notification signature verification failed")

    try:
        envelope: Any = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise InvalidRequestError(f"Push request body is not JSON: {exc}") from exc

    message = envelope.get("message") if isinstance(envelope, dict) else None
    data = message.get("data") if isinstance(message, dict) else None
    if not isinstance(data, str):
        raise InvalidRequestError("Push request body has no message.data")

    notification = decode_push(data)
    logger.info(
        "push_notification_decoded",
        email_address=notification.email_address,
        history_id=notification.history_id,
    )
    return notification
