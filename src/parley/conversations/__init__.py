"""Conversations: per-conversation state machines and the registry."""

from parley.conversations.errors import (
    ClientNotSubscribedError,
    ConversationClosedError,
    ConversationNotFoundError,
    InvalidConversationNameError,
    ParleyError,
)
from parley.conversations.events import (
    AssistantMessageEvent,
    CompactedEvent,
    CompactingEvent,
    ContextUpdateEvent,
    ConversationEvent,
    ErrorEvent,
    FileDeliveryEvent,
    ResultEvent,
    ToolUseEvent,
    UserMessageEvent,
)
from parley.conversations.outbox import OutboxWatcher, OutputFile, classify_file
from parley.conversations.registry import ConversationRegistry
from parley.conversations.state import (
    BUSY_MESSAGE,
    ClientType,
    ConversationState,
    ConversationStatus,
    EventCallback,
)

__all__ = [
    "AssistantMessageEvent",
    "BUSY_MESSAGE",
    "ClientNotSubscribedError",
    "ClientType",
    "CompactedEvent",
    "CompactingEvent",
    "ContextUpdateEvent",
    "ConversationClosedError",
    "ConversationEvent",
    "ConversationNotFoundError",
    "ConversationRegistry",
    "ConversationState",
    "ConversationStatus",
    "ErrorEvent",
    "InvalidConversationNameError",
    "EventCallback",
    "FileDeliveryEvent",
    "OutboxWatcher",
    "OutputFile",
    "ParleyError",
    "ResultEvent",
    "ToolUseEvent",
    "UserMessageEvent",
    "classify_file",
]
