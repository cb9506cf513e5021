"""Persistence contracts for token records and sync cursors.

The engine itself is stateless. Whatever owns an account keeps its token
record and its last history cursor somewhere that implements these protocols.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from mailbox_sync.models import TokenRecord


@runtime_checkable
class TokenStore(Protocol):
    def load(self, account_id: str) -> TokenRecord | None: ...

    def save(self, account_id: str, record: TokenRecord) -> None: ...

    def delete(self, account_id: str) -> None: ...


@runtime_checkable
class CursorStore(Protocol):
    def load_cursor(self, account_id: str) -> str | None: ...

    def save_cursor(self, account_id: str, cursor: str) -> None: ...

    def delete_cursor(self, account_id: str) -> None: ...
