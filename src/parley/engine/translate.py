"""Translation from claude-agent-sdk messages to engine events."""

import logging
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
)

from parley.engine.types import (
    AssistantText,
    CompactionFinished,
    CompactionStarted,
    Completion,
    EngineEvent,
    SessionIdentity,
    ToolInvocation,
)

logger = logging.getLogger(__name__)


def _translate_system(message: SystemMessage) -> list[EngineEvent]:
    data: dict[str, Any] = message.data or {}
    if message.subtype == "init":
        token = data.get("session_id")
        return [SessionIdentity(token=token)] if token else []
    if message.subtype == "status" and data.get("status") == "compacting":
        return [CompactionStarted()]
    if message.subtype == "compact_boundary":
        metadata = data.get("compact_metadata") or {}
        return [
            CompactionFinished(
                pre_tokens=metadata.get("pre_tokens"),
                trigger=metadata.get("trigger"),
            )
        ]
    return []


def translate_message(message: Any) -> list[EngineEvent]:
    """Map one SDK message to zero or more engine events.

    Message kinds without a counterpart (user echoes, thinking blocks,
    tool results, stream deltas) produce nothing.
    """
    if isinstance(message, SystemMessage):
        return _translate_system(message)

    if isinstance(message, AssistantMessage):
        events: list[EngineEvent] = []
        for block in message.content:
            if isinstance(block, TextBlock):
                events.append(AssistantText(text=block.text))
            elif isinstance(block, ToolUseBlock):
                events.append(
                    ToolInvocation(
                        tool_id=block.id,
                        name=block.name,
                        input=dict(block.input or {}),
                    )
                )
        return events

    if isinstance(message, ResultMessage):
        return [
            Completion(
                success=message.subtype == "success",
                cost_usd=message.total_cost_usd,
                duration_ms=message.duration_ms,
                usage=message.usage,
            )
        ]

    logger.debug(
        "engine_message_ignored", extra={"engine.message_type": type(message).__name__}
    )
    return []
