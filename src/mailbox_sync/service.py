"""Account-level orchestration on top of the stateless engine components.

:class:`MailboxService` ties together the token manager, a store and the
Gmail-facing components. It is the piece that:

* persists token records whenever a refresh happens,
* serializes syncs per account so two callers never race on one cursor,
* falls back to a full sync when a stored cursor has expired,
* retries transient failures and recovers once from a rejected access token.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import structlog

from mailbox_sync.auth import TokenManager
from mailbox_sync.config import Settings
from mailbox_sync.exceptions import ConfigError, HistoryExpiredError, InvalidTokenError
from mailbox_sync.gmail import GmailClient, LabelMutator, MessageComposer
from mailbox_sync.gmail.parsing import watch_from_payload
from mailbox_sync.models import (
    FullThread,
    PushNotification,
    ReplyRequest,
    SendRequest,
    SentMessage,
    SyncResult,
    ThreadSummary,
    TokenRecord,
    WatchResponse,
)
from mailbox_sync.push import decode_verified_push
from mailbox_sync.store import CursorStore, TokenStore
from mailbox_sync.sync import SyncEngine
from mailbox_sync.utils import retry_async

logger = structlog.get_logger()

T = TypeVar("T")


class MailboxService:
    """Per-account mailbox operations with token and cursor bookkeeping."""

    def __init__(
        self,
        token_manager: TokenManager,
        store: Any,
        settings: Settings | None = None,
        *,
        client_factory: Callable[[str], GmailClient] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Create the service.

        Args:
            token_manager: Token lifecycle manager.
            store: Object implementing both ``TokenStore`` and ``CursorStore``.
            settings: Application settings. If None, uses default settings.
            client_factory: Builds a client for an access token (used by tests).
            sleep: Awaitable sleep used between retries.
        """
        from mailbox_sync.config import get_settings

        if not isinstance(store, TokenStore) or not isinstance(store, CursorStore):
            raise ConfigError("store must implement both TokenStore and CursorStore")

        self.token_manager = token_manager
        self.store = store
        self.settings = settings or get_settings()
        self._client_factory = client_factory or (lambda token: GmailClient(token, self.settings))
        self._sleep = sleep
        self._locks: dict[str, asyncio.Lock] = {}

    # -- account lifecycle -------------------------------------------------

    def authorization_url(self, redirect_uri: str, *, state: str | None = None) -> str:
        return self.token_manager.build_authorization_url(redirect_uri, state=state)

    async def connect(self, account_id: str, code: str, redirect_uri: str) -> TokenRecord:
        """Exchange an authorization code and store the resulting tokens.

        Any cursor left over from a previous connection is discarded so the
        next sync starts with a full listing.
        """

        record = await self.token_manager.exchange_code(code, redirect_uri)
        self.store.save(account_id, record)
        self.store.delete_cursor(account_id)
        if not self.token_manager.has_required_scopes(record):
            logger.warning(
                "account_missing_scopes",
                account_id=account_id,
                granted=sorted(record.scope),
                required=self.token_manager.required_scopes,
            )
        logger.info("account_connected", account_id=account_id)
        return record

    async def disconnect(self, account_id: str) -> None:
        """Revoke (best effort) and forget the account's tokens and cursor."""

        record = self.store.load(account_id)
        if record is not None:
            await self.token_manager.revoke(record.refresh_token or record.access_token)
        self.store.delete(account_id)
        self.store.delete_cursor(account_id)
        logger.info("account_disconnected", account_id=account_id)

    async def access_token(self, account_id: str, *, force_refresh: bool = False) -> str:
        """Return a valid access token, persisting any refreshed record.

        Raises:
            InvalidTokenError: If the account is not connected or cannot refresh.
            TokenRefreshFailedError: If the refresh call fails.
        """

        record = self.store.load(account_id)
        if record is None:
            raise InvalidTokenError(f"Account {account_id} is not connected")

        if force_refresh:
            if not record.can_refresh:
                raise InvalidTokenError(
                    "Access token rejected and no refresh token is available; re-authorization required"
                )
            refreshed: TokenRecord | None = await self.token_manager.refresh(
                record.refresh_token or "", scope=record.scope
            )
            token = refreshed.access_token
        else:
            token, refreshed = await self.token_manager.get_valid_access_token(record)

        if refreshed is not None:
            self.store.save(account_id, refreshed)
            logger.info("account_token_refreshed", account_id=account_id)
        return token

    async def verify_access(self, account_id: str) -> bool:
        """Whether the account's stored credentials are still accepted by Gmail."""

        if self.store.load(account_id) is None:
            return False
        try:
            token = await self.access_token(account_id)
        except InvalidTokenError:
            return False
        valid = await self._client_factory(token).is_token_valid()
        if not valid:
            logger.warning("account_access_rejected", account_id=account_id)
        return valid

    # -- sync --------------------------------------------------------------

    def _lock(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    async def sync(
        self,
        account_id: str,
        *,
        label_ids: Sequence[str] = ("INBOX",),
        max_results: int | None = None,
        full: bool = False,
    ) -> SyncResult:
        """Sync one account from its stored cursor and store the new cursor.

        Concurrent calls for the same account run one after another.
        """

        async with self._lock(account_id):
            cursor = None if full else self.store.load_cursor(account_id)

            async def _sync(client: GmailClient) -> SyncResult:
                engine = SyncEngine(client, self.settings)
                try:
                    return await engine.sync(cursor, label_ids=label_ids, max_results=max_results)
                except HistoryExpiredError:
                    logger.warning(
                        "sync_cursor_expired_falling_back",
                        account_id=account_id,
                        expired_cursor=cursor,
                    )
                    return await engine.full_sync(label_ids=label_ids, max_results=max_results)

            result = await self._run(account_id, _sync)
            if result.new_cursor:
                self.store.save_cursor(account_id, result.new_cursor)
            logger.info(
                "account_synced",
                account_id=account_id,
                mode=result.mode.value,
                email_count=len(result.emails),
                has_more=result.has_more,
            )
            return result

    async def handle_push(
        self,
        notification: PushNotification,
        account_id: str | None = None,
    ) -> SyncResult:
        """Run an incremental sync for the account a notification belongs to."""

        account = account_id or notification.email_address
        logger.info(
            "push_notification_received",
            account_id=account,
            history_id=notification.history_id,
        )
        return await self.sync(account)

    async def handle_push_request(
        self,
        body: bytes,
        signature: str | None,
        account_id: str | None = None,
    ) -> SyncResult:
        """Verify a raw Pub/Sub push request, then sync the notified account.

        Raises:
            InvalidRequestError: If the signature does not match
                ``push_webhook_secret`` or the body is malformed.
        """

        notification = decode_verified_push(body, signature, self.settings.push_webhook_secret)
        return await self.handle_push(notification, account_id)

    # -- messages ----------------------------------------------------------

    async def send(self, account_id: str, request: SendRequest) -> SentMessage:
        return await self._run(account_id, lambda client: MessageComposer(client).send(request))

    async def reply(self, account_id: str, thread_id: str, request: ReplyRequest) -> SentMessage:
        return await self._run(
            account_id, lambda client: MessageComposer(client).reply(thread_id, request)
        )

    async def list_threads(
        self, account_id: str, query: str | None = None, max_results: int = 20
    ) -> list[ThreadSummary]:
        return await self._run(
            account_id,
            lambda client: SyncEngine(client, self.settings).list_threads(query, max_results),
        )

    async def get_thread(self, account_id: str, thread_id: str) -> FullThread:
        return await self._run(
            account_id, lambda client: SyncEngine(client, self.settings).fetch_thread(thread_id)
        )

    # -- labels ------------------------------------------------------------

    async def modify_labels(
        self,
        account_id: str,
        message_ids: Sequence[str],
        add_labels: Sequence[str] = (),
        remove_labels: Sequence[str] = (),
    ) -> None:
        await self._run(
            account_id,
            lambda client: LabelMutator(client).batch_modify_labels(
                message_ids, add_labels, remove_labels
            ),
        )

    async def mark_read(self, account_id: str, message_ids: str | Sequence[str]) -> None:
        await self._run(account_id, lambda client: LabelMutator(client).mark_read(message_ids))

    async def mark_unread(self, account_id: str, message_ids: str | Sequence[str]) -> None:
        await self._run(account_id, lambda client: LabelMutator(client).mark_unread(message_ids))

    async def star(self, account_id: str, message_ids: str | Sequence[str]) -> None:
        await self._run(account_id, lambda client: LabelMutator(client).star(message_ids))

    async def unstar(self, account_id: str, message_ids: str | Sequence[str]) -> None:
        await self._run(account_id, lambda client: LabelMutator(client).unstar(message_ids))

    # -- push subscription -------------------------------------------------

    async def watch(
        self,
        account_id: str,
        *,
        topic_name: str | None = None,
        label_ids: Sequence[str] = ("INBOX",),
    ) -> WatchResponse:
        """Register a push watch. Gmail expires watches after 7 days."""

        topic = topic_name or self.settings.pubsub_topic
        if not topic:
            raise ConfigError("No Pub/Sub topic configured. Set MAILBOX_SYNC_PUBSUB_TOPIC.")

        async def _watch(client: GmailClient) -> WatchResponse:
            return watch_from_payload(await client.watch(topic, label_ids=label_ids))

        response = await self._run(account_id, _watch)
        logger.info(
            "push_watch_registered",
            account_id=account_id,
            history_id=response.history_id,
            expiration=response.expiration.isoformat() if response.expiration else None,
        )
        return response

    async def stop_watch(self, account_id: str) -> None:
        await self._run(account_id, lambda client: client.stop_watch())
        logger.info("push_watch_stopped", account_id=account_id)

    # -- internals ---------------------------------------------------------

    async def _run(
        self,
        account_id: str,
        operation: Callable[[GmailClient], Awaitable[T]],
    ) -> T:
        """Run ``operation`` with a fresh client, retrying transient failures.

        A rejected access token triggers exactly one forced refresh and one
        more attempt; a second rejection propagates.
        """

        client = self._client_factory(await self.access_token(account_id))
        try:
            return await self._with_retries(lambda: operation(client))
        except InvalidTokenError:
            logger.warning("access_token_rejected_refreshing", account_id=account_id)

        client = self._client_factory(await self.access_token(account_id, force_refresh=True))
        return await self._with_retries(lambda: operation(client))

    async def _with_retries(self, func: Callable[[], Awaitable[T]]) -> T:
        return await retry_async(
            func,
            max_retries=self.settings.max_retries,
            delay=self.settings.retry_base_delay_seconds,
            sleep=self._sleep,
        )
