"""Gmail transport, message codec and label mutation."""

from .client import GmailClient
from .composer import MessageComposer
from .labels import LabelMutator

__all__ = ["GmailClient", "LabelMutator", "MessageComposer"]
