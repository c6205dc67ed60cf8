"""Engine session backed by claude-agent-sdk.

One EngineSession wraps one ClaudeSDKClient. User turns go into an
asyncio.Queue which the client consumes as its streaming prompt, so ``push``
never blocks and the turn order is the push order.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient

from parley.config.models import EngineConfig
from parley.engine.translate import translate_message
from parley.engine.types import EngineEvent, EngineFactory

logger = logging.getLogger(__name__)


def user_turn(text: str) -> dict[str, Any]:
    """Wrap text in the SDK's streaming-input user message shape."""
    return {
        "type": "user",
        "message": {"role": "user", "content": text},
        "parent_tool_use_id": None,
    }


class EngineSession:
    """A long-running engine conversation.

    The client connects lazily on the first ``events()`` iteration. After
    ``close()`` pushes are ignored and the event stream ends.
    """

    def __init__(
        self,
        config: EngineConfig,
        system_prompt: str,
        resume_token: str | None = None,
    ):
        self._resume_token = resume_token
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False
        self._connected = False
        self._client = ClaudeSDKClient(
            options=ClaudeAgentOptions(
                system_prompt=system_prompt,
                allowed_tools=list(config.allowed_tools),
                model=config.model,
                max_turns=config.max_turns,
                cwd=config.cwd,
                cli_path=config.cli_path,
                resume=resume_token,
            )
        )

    @property
    def resume_token(self) -> str | None:
        return self._resume_token

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, text: str) -> None:
        if self._closed:
            logger.debug("engine_push_after_close")
            return
        self._queue.put_nowait(text)

    async def _prompt_stream(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            text = await self._queue.get()
            if text is None:
                return
            yield user_turn(text)

    async def events(self) -> AsyncGenerator[EngineEvent, None]:
        if self._closed:
            return
        if not self._connected:
            await self._client.connect(self._prompt_stream())
            self._connected = True
            logger.debug(
                "engine_connected", extra={"engine.resumed": self._resume_token is not None}
            )
        async for message in self._client.receive_messages():
            if self._closed:
                return
            for event in translate_message(message):
                yield event

    async def interrupt(self) -> None:
        """Abort the in-flight turn. A no-op when nothing is running."""
        if self._closed or not self._connected:
            return
        await self._client.interrupt()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Unblock the prompt stream so the client can shut down its input side
        self._queue.put_nowait(None)
        if not self._connected:
            return
        try:
            await self._client.disconnect()
        except Exception as e:
            logger.debug("engine_disconnect_failed", extra={"error.message": str(e)})


def create_engine_factory(config: EngineConfig, system_prompt: str) -> EngineFactory:
    """Build an EngineFactory producing SDK-backed sessions."""

    def factory(resume_token: str | None) -> EngineSession:
        return EngineSession(config, system_prompt, resume_token=resume_token)

    return factory
