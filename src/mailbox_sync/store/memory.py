"""Process-local store for tests and short-lived scripts."""

from __future__ import annotations

from mailbox_sync.models import TokenRecord


class InMemoryMailboxStore:
    """Dict-backed token and cursor store."""

    def __init__(self) -> None:
        self._tokens: dict[str, TokenRecord] = {}
        self._cursors: dict[str, str] = {}

    def load(self, account_id: str) -> TokenRecord | None:
        return self._tokens.get(account_id)

    def save(self, account_id: str, record: TokenRecord) -> None:
        self._tokens[account_id] = record

    def delete(self, account_id: str) -> None:
        self._tokens.pop(account_id, None)

    def load_cursor(self, account_id: str) -> str | None:
        return self._cursors.get(account_id)

    def save_cursor(self, account_id: str, cursor: str) -> None:
        self._cursors[account_id] = cursor

    def delete_cursor(self, account_id: str) -> None:
        self._cursors.pop(account_id, None)
