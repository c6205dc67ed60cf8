"""Conversation persistence."""

from parley.store.conversations import (
    ConversationStore,
    generate_name,
    normalize_name,
    slugify,
)
from parley.store.types import ChatMessage, ConversationInfo, Origin, Role

__all__ = [
    "ChatMessage",
    "ConversationInfo",
    "ConversationStore",
    "Origin",
    "Role",
    "generate_name",
    "normalize_name",
    "slugify",
]
