"""Agent engine adapter."""

from parley.engine.prompt import load_system_prompt
from parley.engine.session import EngineSession, create_engine_factory
from parley.engine.translate import translate_message
from parley.engine.types import (
    AssistantText,
    CompactionFinished,
    CompactionStarted,
    Completion,
    Engine,
    EngineEvent,
    EngineFactory,
    SessionIdentity,
    ToolInvocation,
)

__all__ = [
    "AssistantText",
    "CompactionFinished",
    "CompactionStarted",
    "Completion",
    "Engine",
    "EngineEvent",
    "EngineFactory",
    "EngineSession",
    "SessionIdentity",
    "ToolInvocation",
    "create_engine_factory",
    "load_system_prompt",
    "translate_message",
]
