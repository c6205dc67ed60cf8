"""Engine-facing types.

The engine is a long-running agent process. It accepts user turns and emits
a stream of typed events which conversations translate into client-facing
events.
"""

from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class AssistantText:
    """A block of assistant text, stored and broadcast as-is."""

    text: str


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    tool_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Completion:
    """End of a turn. ``usage`` is the raw token accounting, when reported."""

    success: bool
    cost_usd: float | None = None
    duration_ms: int | None = None
    usage: dict[str, Any] | None = None

    @property
    def context_tokens(self) -> int:
        """Tokens occupying the context window: fresh input plus cache."""
        if not self.usage:
            return 0
        return sum(
            int(self.usage.get(key) or 0)
            for key in (
                "input_tokens",
                "cache_read_input_tokens",
                "cache_creation_input_tokens",
            )
        )


@dataclass(frozen=True, slots=True)
class SessionIdentity:
    """The engine announced its resume token."""

    token: str


@dataclass(frozen=True, slots=True)
class CompactionStarted:
    pass


@dataclass(frozen=True, slots=True)
class CompactionFinished:
    pre_tokens: int | None = None
    trigger: str | None = None


EngineEvent = (
    AssistantText
    | ToolInvocation
    | Completion
    | SessionIdentity
    | CompactionStarted
    | CompactionFinished
)


class Engine(Protocol):
    """One engine process bound to one conversation."""

    def push(self, text: str) -> None:
        """Enqueue a user turn. Never blocks; a no-op after close."""
        ...

    def events(self) -> AsyncGenerator[EngineEvent, None]:
        """The engine's output stream. Iterate at most once."""
        ...

    async def interrupt(self) -> None: ...

    async def close(self) -> None:
        """Idempotent. Pending turns are dropped."""
        ...


EngineFactory = Callable[[str | None], Engine]
"""Builds an engine, resuming from the given token when not None."""
