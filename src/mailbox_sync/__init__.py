"""Mailbox Sync Engine - Gmail synchronization and OAuth token lifecycle.

This package keeps a local view of a Gmail mailbox current through full
listings, history deltas and push notifications, and owns the OAuth token
lifecycle needed to do so.
"""

__version__ = "0.1.0"

from mailbox_sync.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
