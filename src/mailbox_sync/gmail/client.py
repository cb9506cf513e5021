"""Gmail API transport client.

This module provides a thin authenticated client for the Gmail REST API. It
returns provider JSON as plain dictionaries and raises classified
:class:`~mailbox_sync.exceptions.MailboxError` instances on failure.

Notes:
    The Google API client is synchronous. This project wraps those calls using
    `asyncio.to_thread` so the rest of the codebase can remain async-friendly.
    httplib2 connections are not thread-safe, so every request executes on its
    own ``AuthorizedHttp``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

import httplib2
import structlog
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp

from mailbox_sync.config import (
    GMAIL_MAX_BATCH_MODIFY_IDS,
    GMAIL_MAX_BATCH_SIZE,
    GMAIL_MAX_LIST_RESULTS,
    Settings,
)
from mailbox_sync.exceptions import (
    HistoryExpiredError,
    InvalidRequestError,
    InvalidTokenError,
    MailboxError,
    NotFoundError,
)
from mailbox_sync.gmail.errors import map_exception

logger = structlog.get_logger()

T = TypeVar("T")

HISTORY_TYPES: tuple[str, ...] = ("messageAdded", "labelAdded", "labelRemoved")


class GmailClient:
    """Gmail API client bound to a single bearer access token.

    Instances are cheap; build one per access token and discard it once the
    logical operation is done.
    """

    def __init__(
        self,
        access_token: str,
        settings: Settings | None = None,
        *,
        service: Any | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            access_token: OAuth2 bearer token. Obtain it through
                ``TokenManager.get_valid_access_token``.
            settings: Application settings. If None, uses default settings.
            service: Prebuilt ``googleapiclient`` resource (used by tests).
        """
        from mailbox_sync.config import get_settings

        if not access_token:
            raise InvalidRequestError("An access token is required")

        self.settings = settings or get_settings()
        self._credentials = Credentials(token=access_token)
        self._user_id = self.settings.gmail_user_id
        self._service = service

    @property
    def service(self) -> Any:
        if self._service is None:
            # Imported lazily to keep import-time cost low and tests fast.
            from googleapiclient.discovery import build

            # cache_discovery=False prevents writing discovery docs to disk.
            self._service = build(
                "gmail",
                "v1",
                credentials=self._credentials,
                cache_discovery=False,
            )
        return self._service

    # -- profile -----------------------------------------------------------

    async def get_profile(self) -> dict[str, Any]:
        """Return the account profile, including the current ``historyId``."""

        return await self._call(
            "get_profile",
            lambda: self._execute(self.service.users().getProfile(userId=self._user_id)),
        )

    async def is_token_valid(self) -> bool:
        """Check the bound access token with a profile read.

        Only a rejected token yields False; other failures propagate.
        """

        try:
            await self.get_profile()
        except InvalidTokenError:
            return False
        return True

    # -- messages ----------------------------------------------------------

    async def list_message_ids(
        self,
        *,
        label_ids: Sequence[str] | None = None,
        max_results: int = 100,
        page_token: str | None = None,
        query: str | None = None,
    ) -> tuple[list[str], str | None]:
        """List one page of message identifiers.

        Returns:
            ``(ids, next_page_token)``; the token is None on the last page.
        """

        per_page = max(1, min(max_results, GMAIL_MAX_LIST_RESULTS))
        params: dict[str, Any] = {"userId": self._user_id, "maxResults": per_page}
        if label_ids:
            params["labelIds"] = list(label_ids)
        if page_token:
            params["pageToken"] = page_token
        if query:
            params["q"] = query

        logger.info("listing_messages", max_results=per_page, label_ids=label_ids, query=query)
        response = await self._call(
            "list_messages",
            lambda: self._execute(self.service.users().messages().list(**params)),
        )
        ids = [m["id"] for m in response.get("messages", []) or [] if m.get("id")]
        return ids, response.get("nextPageToken")

    async def get_message(self, message_id: str, *, format: str = "full") -> dict[str, Any]:
        """Get a specific message by ID."""

        return await self._call(
            "get_message",
            lambda: self._execute(
                self.service.users()
                .messages()
                .get(userId=self._user_id, id=message_id, format=format)
            ),
            message_id=message_id,
        )

    async def get_messages(
        self,
        message_ids: Sequence[str],
        *,
        format: str = "full",
    ) -> dict[str, dict[str, Any] | MailboxError]:
        """Fetch up to 100 messages in one HTTP batch request.

        Per-message failures do not raise; they are returned as classified
        errors keyed by message id. A failure of the batch request itself
        raises.
        """

        unique_ids = list(dict.fromkeys(message_ids))
        if len(unique_ids) > GMAIL_MAX_BATCH_SIZE:
            raise InvalidRequestError(
                f"A batch may hold at most {GMAIL_MAX_BATCH_SIZE} requests, got {len(unique_ids)}"
            )
        if not unique_ids:
            return {}

        logger.debug("getting_message_batch", batch_size=len(unique_ids), format=format)
        return await self._call(
            "get_messages",
            lambda: self._get_messages_sync(unique_ids, format),
            batch_size=len(unique_ids),
        )

    async def send_message(self, raw: str, *, thread_id: str | None = None) -> dict[str, Any]:
        """Send a base64url-encoded RFC 2822 message."""

        body: dict[str, Any] = {"raw": raw}
        if thread_id:
            body["threadId"] = thread_id
        return await self._call(
            "send_message",
            lambda: self._execute(
                self.service.users().messages().send(userId=self._user_id, body=body)
            ),
            thread_id=thread_id,
        )

    async def modify_message(
        self,
        message_id: str,
        *,
        add_label_ids: Sequence[str] = (),
        remove_label_ids: Sequence[str] = (),
    ) -> dict[str, Any]:
        body = {"addLabelIds": list(add_label_ids), "removeLabelIds": list(remove_label_ids)}
        return await self._call(
            "modify_message",
            lambda: self._execute(
                self.service.users()
                .messages()
                .modify(userId=self._user_id, id=message_id, body=body)
            ),
            message_id=message_id,
        )

    async def batch_modify_messages(
        self,
        message_ids: Sequence[str],
        *,
        add_label_ids: Sequence[str] = (),
        remove_label_ids: Sequence[str] = (),
    ) -> None:
        if len(message_ids) > GMAIL_MAX_BATCH_MODIFY_IDS:
            raise InvalidRequestError(
                f"batchModify accepts at most {GMAIL_MAX_BATCH_MODIFY_IDS} ids, got {len(message_ids)}"
            )
        body = {
            "ids": list(message_ids),
            "addLabelIds": list(add_label_ids),
            "removeLabelIds": list(remove_label_ids),
        }
        await self._call(
            "batch_modify_messages",
            lambda: self._execute(
                self.service.users().messages().batchModify(userId=self._user_id, body=body)
            ),
            message_count=len(message_ids),
        )

    # -- history -----------------------------------------------------------

    async def list_history(
        self,
        start_history_id: str,
        *,
        label_id: str | None = None,
        history_types: Sequence[str] = HISTORY_TYPES,
        max_results: int = 100,
        page_token: str | None = None,
    ) -> dict[str, Any]:
        """List mailbox changes recorded after ``start_history_id``.

        Gmail answers 404 when the start id predates the retained history;
        that case is raised as :class:`HistoryExpiredError`.
        """

        params: dict[str, Any] = {
            "userId": self._user_id,
            "startHistoryId": start_history_id,
            "historyTypes": list(history_types),
            "maxResults": max(1, min(max_results, GMAIL_MAX_LIST_RESULTS)),
        }
        if label_id:
            params["labelId"] = label_id
        if page_token:
            params["pageToken"] = page_token

        logger.info("listing_history", start_history_id=start_history_id, label_id=label_id)
        try:
            return await self._call(
                "list_history",
                lambda: self._execute(self.service.users().history().list(**params)),
                start_history_id=start_history_id,
            )
        except NotFoundError as exc:
            raise HistoryExpiredError(
                f"History {start_history_id} is no longer available: {exc.message}",
                http_status=exc.http_status,
            ) from exc

    # -- threads -----------------------------------------------------------

    async def list_threads(self, *, query: str | None = None, max_results: int = 20) -> dict[str, Any]:
        params: dict[str, Any] = {
            "userId": self._user_id,
            "maxResults": max(1, min(max_results, GMAIL_MAX_LIST_RESULTS)),
        }
        if query:
            params["q"] = query
        return await self._call(
            "list_threads",
            lambda: self._execute(self.service.users().threads().list(**params)),
        )

    async def get_thread(self, thread_id: str) -> dict[str, Any]:
        return await self._call(
            "get_thread",
            lambda: self._execute(
                self.service.users()
                .threads()
                .get(userId=self._user_id, id=thread_id, format="full")
            ),
            thread_id=thread_id,
        )

    # -- push subscription -------------------------------------------------

    async def watch(
        self,
        topic_name: str,
        *,
        label_ids: Sequence[str] = ("INBOX",),
        label_filter_action: str = "include",
    ) -> dict[str, Any]:
        """Subscribe the mailbox to push notifications on a Pub/Sub topic."""

        body = {
            "topicName": topic_name,
            "labelIds": list(label_ids),
            "labelFilterAction": label_filter_action,
        }
        return await self._call(
            "watch",
            lambda: self._execute(self.service.users().watch(userId=self._user_id, body=body)),
        )

    async def stop_watch(self) -> None:
        await self._call(
            "stop_watch",
            lambda: self._execute(self.service.users().stop(userId=self._user_id)),
        )

    # -- internals ---------------------------------------------------------

    async def _call(self, operation: str, fn: Callable[[], T], **context: Any) -> T:
        try:
            return await asyncio.to_thread(fn)
        except Exception as exc:  # noqa: BLE001
            error = map_exception(exc)
            logger.warning(
                "gmail_request_failed",
                operation=operation,
                kind=error.kind.value,
                http_status=error.http_status,
                error=error.message,
                **context,
            )
            raise error from exc

    def _new_http(self) -> AuthorizedHttp:
        # No refresh on 401: token renewal belongs to the token manager.
        return AuthorizedHttp(
            self._credentials,
            http=httplib2.Http(timeout=self.settings.http_timeout_seconds),
            refresh_status_codes=(),
        )

    def _execute(self, request: Any) -> Any:
        return request.execute(http=self._new_http())

    def _get_messages_sync(
        self,
        message_ids: list[str],
        format: str,
    ) -> dict[str, dict[str, Any] | MailboxError]:
        results: dict[str, dict[str, Any] | MailboxError] = {}

        def _on_response(request_id: str, response: Any, exception: Exception | None) -> None:
            if exception is not None:
                results[request_id] = map_exception(exception)
            else:
                results[request_id] = response

        batch = self.service.new_batch_http_request(callback=_on_response)
        for message_id in message_ids:
            batch.add(
                self.service.users()
                .messages()
                .get(userId=self._user_id, id=message_id, format=format),
                request_id=message_id,
            )
        batch.execute(http=self._new_http())
        return results
