"""Mailbox synchronization: full listing and history-delta sync.

State machine::

    idle -> full_sync_in_progress -> idle
    idle -> incremental_sync_in_progress -> idle
                                         -> (HistoryExpiredError raised)

The engine never falls back on its own. When the cursor is too old the
``HistoryExpiredError`` reaches the caller, who re-invokes without a cursor and
can count or alert on fallbacks.

The engine is stateless between calls. Two syncs for the same account must be
serialized by the caller, otherwise both may start from the same cursor and
race to store different results.

History filtering limitation:
    Gmail's ``history.list`` accepts a single ``labelId``. When several labels
    are requested for an incremental sync only the first one filters the
    history; the rest are ignored and a warning is logged.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from enum import Enum
from typing import Any

import structlog

from mailbox_sync.config import GMAIL_MAX_BATCH_SIZE, GMAIL_MAX_LIST_RESULTS, Settings
from mailbox_sync.exceptions import InvalidRequestError, MailboxError, MessageDecodeError, NotFoundError
from mailbox_sync.gmail.client import HISTORY_TYPES, GmailClient
from mailbox_sync.gmail.parsing import (
    message_to_email_data,
    profile_from_payload,
    thread_from_payload,
    thread_summaries_from_payload,
)
from mailbox_sync.models import (
    EmailData,
    FullThread,
    MailboxProfile,
    SyncMode,
    SyncResult,
    ThreadSummary,
)

logger = structlog.get_logger()

DEFAULT_LABELS: tuple[str, ...] = ("INBOX",)


class SyncState(str, Enum):
    IDLE = "idle"
    FULL_SYNC_IN_PROGRESS = "full_sync_in_progress"
    INCREMENTAL_SYNC_IN_PROGRESS = "incremental_sync_in_progress"


def collect_history_message_ids(history: Iterable[dict[str, Any]]) -> list[str]:
    """Message ids referenced by added/label-added/label-removed records.

    Ids are deduplicated and kept in first-seen order.
    """

    ids: dict[str, None] = {}
    for record in history:
        for key in ("messagesAdded", "labelsAdded", "labelsRemoved"):
            for entry in record.get(key) or []:
                message_id = (entry.get("message") or {}).get("id")
                if message_id:
                    ids.setdefault(message_id, None)
    return list(ids)


def _chunks(items: Sequence[str], size: int) -> list[list[str]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def _log_transition(previous: SyncState, state: SyncState) -> None:
    logger.debug("sync_state_changed", previous=previous.value, state=state.value)


class SyncEngine:
    """Synchronizes one mailbox through a token-bound :class:`GmailClient`."""

    def __init__(
        self,
        client: GmailClient,
        settings: Settings | None = None,
        *,
        batch_size: int | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        from mailbox_sync.config import get_settings

        self.client = client
        self.settings = settings or get_settings()
        self.batch_size = min(batch_size or self.settings.sync_batch_size, GMAIL_MAX_BATCH_SIZE)
        self.max_concurrency = max(1, max_concurrency or self.settings.sync_max_concurrency)

    async def sync(
        self,
        cursor: str | None = None,
        *,
        label_ids: Sequence[str] = DEFAULT_LABELS,
        max_results: int | None = None,
    ) -> SyncResult:
        """Full sync without a cursor, incremental sync with one.

        Raises:
            HistoryExpiredError: If ``cursor`` is too old; retry without it.
            MailboxError: For any other remote failure.
        """

        if cursor:
            return await self.incremental_sync(cursor, label_ids=label_ids, max_results=max_results)
        return await self.full_sync(label_ids=label_ids, max_results=max_results)

    async def full_sync(
        self,
        *,
        label_ids: Sequence[str] = DEFAULT_LABELS,
        max_results: int | None = None,
    ) -> SyncResult:
        limit = self._limit(max_results)
        _log_transition(SyncState.IDLE, SyncState.FULL_SYNC_IN_PROGRESS)
        try:
            # Read the cursor before listing so it can never run ahead of the
            # messages returned with it.
            profile = profile_from_payload(await self.client.get_profile())
            message_ids, next_page_token = await self.client.list_message_ids(
                label_ids=label_ids,
                max_results=limit,
            )
            logger.info(
                "full_sync_listed",
                message_count=len(message_ids),
                label_ids=list(label_ids),
                has_more=next_page_token is not None,
            )
            emails, skipped = await self._fetch_and_decode(message_ids)
        finally:
            _log_transition(SyncState.FULL_SYNC_IN_PROGRESS, SyncState.IDLE)

        logger.info(
            "full_sync_completed",
            email_count=len(emails),
            skipped=skipped,
            new_cursor=profile.history_id,
        )
        return SyncResult(
            emails=emails,
            new_cursor=profile.history_id,
            has_more=next_page_token is not None,
            mode=SyncMode.FULL,
            skipped=skipped,
        )

    async def incremental_sync(
        self,
        cursor: str,
        *,
        label_ids: Sequence[str] = DEFAULT_LABELS,
        max_results: int | None = None,
    ) -> SyncResult:
        if not cursor:
            raise InvalidRequestError("incremental sync requires a cursor")

        label_id = label_ids[0] if label_ids else None
        if len(label_ids) > 1:
            logger.warning(
                "history_label_filter_truncated",
                used_label=label_id,
                ignored_labels=list(label_ids[1:]),
            )

        _log_transition(SyncState.IDLE, SyncState.INCREMENTAL_SYNC_IN_PROGRESS)
        try:
            response = await self.client.list_history(
                cursor,
                label_id=label_id,
                history_types=HISTORY_TYPES,
                max_results=self._limit(max_results),
            )
            history = response.get("history", []) or []
            has_more = bool(response.get("nextPageToken"))
            message_ids = collect_history_message_ids(history)
            logger.info(
                "incremental_sync_listed",
                start_history_id=cursor,
                history_records=len(history),
                message_count=len(message_ids),
                has_more=has_more,
            )
            emails, skipped = await self._fetch_and_decode(message_ids)
        finally:
            _log_transition(SyncState.INCREMENTAL_SYNC_IN_PROGRESS, SyncState.IDLE)

        if has_more and history and history[-1].get("id"):
            # Resume from the last record we actually saw on the next call.
            new_cursor = str(history[-1]["id"])
        else:
            new_cursor = str(response.get("historyId") or cursor)

        logger.info(
            "incremental_sync_completed",
            email_count=len(emails),
            skipped=skipped,
            new_cursor=new_cursor,
        )
        return SyncResult(
            emails=emails,
            new_cursor=new_cursor,
            has_more=has_more,
            mode=SyncMode.INCREMENTAL,
            skipped=skipped,
        )

    # -- supplementary reads ----------------------------------------------

    async def get_profile(self) -> MailboxProfile:
        return profile_from_payload(await self.client.get_profile())

    async def list_threads(self, query: str | None = None, max_results: int = 20) -> list[ThreadSummary]:
        return thread_summaries_from_payload(
            await self.client.list_threads(query=query, max_results=max_results)
        )

    async def fetch_thread(self, thread_id: str) -> FullThread:
        payload = await self.client.get_thread(thread_id)
        try:
            return thread_from_payload(payload, thread_id)
        except MessageDecodeError as exc:
            raise InvalidRequestError(
                f"Thread {thread_id} contains an undecodable message: {exc}"
            ) from exc

    # -- internals ---------------------------------------------------------

    def _limit(self, max_results: int | None) -> int:
        requested = max_results or self.settings.sync_max_results
        return max(1, min(requested, GMAIL_MAX_LIST_RESULTS))

    async def _fetch_and_decode(self, message_ids: Sequence[str]) -> tuple[list[EmailData], int]:
        """Fetch details in batches with bounded fan-out and decode them.

        A message that fails to fetch or decode is logged and skipped so one
        bad message cannot fail the whole sync. Deleted messages are dropped
        without counting as skipped. A failed batch call propagates.
        """

        if not message_ids:
            return [], 0

        semaphore = asyncio.Semaphore(self.max_concurrency)
        batches = _chunks(list(dict.fromkeys(message_ids)), self.batch_size)

        async def _run(batch: list[str]) -> dict[str, dict[str, Any] | MailboxError]:
            async with semaphore:
                return await self.client.get_messages(batch, format="full")

        results = await asyncio.gather(*(_run(batch) for batch in batches))
        logger.debug("message_batches_fetched", batches=len(batches), batch_size=self.batch_size)

        emails: list[EmailData] = []
        skipped = 0
        for batch, batch_result in zip(batches, results):
            for message_id in batch:
                outcome = batch_result.get(message_id)
                if outcome is None or isinstance(outcome, NotFoundError):
                    # Deleted between listing and fetch.
                    logger.debug("message_vanished", message_id=message_id)
                    continue
                if isinstance(outcome, MailboxError):
                    skipped += 1
                    logger.warning(
                        "message_fetch_failed",
                        message_id=message_id,
                        error_kind=outcome.kind.value,
                        error=str(outcome),
                    )
                    continue
                try:
                    emails.append(message_to_email_data(outcome))
                except MessageDecodeError as exc:
                    skipped += 1
                    logger.warning("message_decode_failed", message_id=message_id, error=str(exc))
        return emails, skipped
