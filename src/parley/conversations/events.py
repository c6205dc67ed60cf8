"""Events broadcast from a conversation to its subscribers.

Each event serializes to the JSON envelope web clients receive, e.g.
``{"type": "tool_use", "sessionName": "default", "toolName": "Bash", ...}``.
"""

from typing import Annotated, Any, Literal

from pydantic import Field, TypeAdapter

from parley.store.types import Origin, WireModel


class _ConversationEvent(WireModel):
    session_name: str


class UserMessageEvent(_ConversationEvent):
    type: Literal["user_message"] = "user_message"
    content: str
    source: Origin


class AssistantMessageEvent(_ConversationEvent):
    type: Literal["assistant_message"] = "assistant_message"
    content: str


class ToolUseEvent(_ConversationEvent):
    type: Literal["tool_use"] = "tool_use"
    tool_name: str
    tool_id: str
    tool_input: dict[str, Any] = Field(default_factory=dict)


class ContextUpdateEvent(_ConversationEvent):
    type: Literal["context_update"] = "context_update"
    used_tokens: int
    max_tokens: int
    used_percentage: int


class ResultEvent(_ConversationEvent):
    type: Literal["result"] = "result"
    success: bool
    cost: float | None = None
    duration: int | None = None


class ErrorEvent(_ConversationEvent):
    type: Literal["error"] = "error"
    error: str


class CompactingEvent(_ConversationEvent):
    type: Literal["compacting"] = "compacting"


class CompactedEvent(_ConversationEvent):
    type: Literal["compacted"] = "compacted"
    pre_tokens: int | None = None
    trigger: str | None = None


FileType = Literal["image", "video", "audio", "voice", "document"]


class FileDeliveryEvent(_ConversationEvent):
    type: Literal["file_delivery"] = "file_delivery"
    file_path: str
    filename: str
    file_type: FileType
    url: str | None = None
    caption: str | None = None


ConversationEvent = Annotated[
    UserMessageEvent
    | AssistantMessageEvent
    | ToolUseEvent
    | ContextUpdateEvent
    | ResultEvent
    | ErrorEvent
    | CompactingEvent
    | CompactedEvent
    | FileDeliveryEvent,
    Field(discriminator="type"),
]

conversation_event_adapter: TypeAdapter[ConversationEvent] = TypeAdapter(
    ConversationEvent
)
