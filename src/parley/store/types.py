"""Records returned by the conversation store.

These are also the shapes sent to web clients, so they serialize with
camelCase field names.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Role = Literal["user", "assistant"]
Origin = Literal["web", "bot", "engine"]


class WireModel(BaseModel):
    """Base for models that travel over the wire in camelCase."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ConversationInfo(WireModel):
    id: str
    name: str
    title: str | None = None
    created_by: str = "web"
    archived: bool = False
    pinned: bool = False
    created_at: datetime
    updated_at: datetime
    resume_token: str | None = Field(default=None, exclude=True)


class ChatMessage(WireModel):
    id: str
    conversation_id: str
    role: Role
    content: str
    origin: Origin
    created_at: datetime
    metadata: dict[str, Any] | None = Field(
        default=None, validation_alias="metadata_"
    )
