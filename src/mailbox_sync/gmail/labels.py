"""Label and read/star state mutation.

Mutations return nothing. Callers re-sync to observe the resulting state
rather than applying an optimistic local update, since label changes race
with whatever else is modifying the mailbox.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from mailbox_sync.config import GMAIL_MAX_BATCH_MODIFY_IDS
from mailbox_sync.exceptions import InvalidRequestError
from mailbox_sync.gmail.client import GmailClient

logger = structlog.get_logger()

UNREAD = "UNREAD"
STARRED = "STARRED"


def _ids(message_ids: str | Sequence[str]) -> list[str]:
    if isinstance(message_ids, str):
        return [message_ids]
    return list(dict.fromkeys(message_ids))


class LabelMutator:
    """Applies label changes to one message or many."""

    def __init__(self, client: GmailClient) -> None:
        self.client = client

    async def modify_labels(
        self,
        message_id: str,
        add_labels: Sequence[str] = (),
        remove_labels: Sequence[str] = (),
    ) -> None:
        if not add_labels and not remove_labels:
            raise InvalidRequestError("No labels to add or remove")
        await self.client.modify_message(
            message_id,
            add_label_ids=add_labels,
            remove_label_ids=remove_labels,
        )
        logger.info(
            "labels_modified",
            message_id=message_id,
            added=list(add_labels),
            removed=list(remove_labels),
        )

    async def batch_modify_labels(
        self,
        message_ids: Sequence[str],
        add_labels: Sequence[str] = (),
        remove_labels: Sequence[str] = (),
    ) -> None:
        """Apply the same change to many messages, chunked to the provider limit."""

        if not add_labels and not remove_labels:
            raise InvalidRequestError("No labels to add or remove")
        ids = _ids(message_ids)
        if not ids:
            return

        for start in range(0, len(ids), GMAIL_MAX_BATCH_MODIFY_IDS):
            chunk = ids[start : start + GMAIL_MAX_BATCH_MODIFY_IDS]
            await self.client.batch_modify_messages(
                chunk,
                add_label_ids=add_labels,
                remove_label_ids=remove_labels,
            )
        logger.info(
            "labels_batch_modified",
            message_count=len(ids),
            added=list(add_labels),
            removed=list(remove_labels),
        )

    async def _apply(
        self,
        message_ids: str | Sequence[str],
        *,
        add: Sequence[str] = (),
        remove: Sequence[str] = (),
    ) -> None:
        ids = _ids(message_ids)
        if len(ids) == 1:
            await self.modify_labels(ids[0], add, remove)
        else:
            await self.batch_modify_labels(ids, add, remove)

    async def mark_read(self, message_ids: str | Sequence[str]) -> None:
        await self._apply(message_ids, remove=[UNREAD])

    async def mark_unread(self, message_ids: str | Sequence[str]) -> None:
        await self._apply(message_ids, add=[UNREAD])

    async def star(self, message_ids: str | Sequence[str]) -> None:
        await self._apply(message_ids, add=[STARRED])

    async def unstar(self, message_ids: str | Sequence[str]) -> None:
        await self._apply(message_ids, remove=[STARRED])
