"""Full and incremental mailbox synchronization."""

from .engine import SyncEngine, SyncState, collect_history_message_ids

__all__ = ["SyncEngine", "SyncState", "collect_history_message_ids"]
