"""Reassembly of long pasted text.

Telegram splits a paste longer than its message limit into several
consecutive messages. A message at or above the fragment threshold opens a
buffer for its chat; every message arriving while the buffer is open joins
it, and the combined text is flushed once the chat goes quiet.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

logger = logging.getLogger("telegram")

DEFAULT_FLUSH_DELAY = 0.5
DEFAULT_FRAGMENT_THRESHOLD = 4000

FragmentFlushCallback = Callable[[int, str, int], Awaitable[None]]
"""Receives (chat_id, combined_text, first_message_id)."""


@dataclass
class BufferedFragments:
    chat_id: int
    first_message_id: int
    fragments: list[str] = field(default_factory=list)
    handle: asyncio.TimerHandle | None = None


class FragmentBuffer:
    def __init__(
        self,
        on_flush: FragmentFlushCallback,
        *,
        flush_delay: float = DEFAULT_FLUSH_DELAY,
        threshold: int = DEFAULT_FRAGMENT_THRESHOLD,
    ):
        self._on_flush = on_flush
        self._flush_delay = flush_delay
        self._threshold = threshold
        self._buffers: dict[int, BufferedFragments] = {}
        self._flushing: set[asyncio.Task] = set()

    def add(self, chat_id: int, message_id: int, text: str) -> bool:
        """Offer a message to the buffer.

        Returns:
            True if the message was buffered, False if the caller should
            process it immediately.
        """
        buffer = self._buffers.get(chat_id)
        if buffer is None:
            if len(text) < self._threshold:
                return False
            buffer = BufferedFragments(chat_id=chat_id, first_message_id=message_id)
            self._buffers[chat_id] = buffer
            logger.debug("fragment_buffer_opened", extra={"messaging.chat_id": chat_id})

        buffer.fragments.append(text)
        self._arm(buffer)
        return True

    def _arm(self, buffer: BufferedFragments) -> None:
        if buffer.handle is not None:
            buffer.handle.cancel()
        buffer.handle = asyncio.get_running_loop().call_later(
            self._flush_delay, self._fire, buffer.chat_id
        )

    def _fire(self, chat_id: int) -> None:
        buffer = self._buffers.pop(chat_id, None)
        if buffer is None:
            return
        task = asyncio.create_task(self._flush(buffer))
        self._flushing.add(task)
        task.add_done_callback(self._flushing.discard)

    async def _flush(self, buffer: BufferedFragments) -> None:
        combined = "".join(buffer.fragments)
        logger.debug(
            "fragment_buffer_flushed",
            extra={
                "messaging.chat_id": buffer.chat_id,
                "fragment.count": len(buffer.fragments),
                "message.length": len(combined),
            },
        )
        try:
            await self._on_flush(buffer.chat_id, combined, buffer.first_message_id)
        except Exception:
            logger.exception("fragment_flush_failed", extra={"messaging.chat_id": buffer.chat_id})

    def clear(self, chat_id: int) -> None:
        """Drop a chat's buffer without flushing."""
        buffer = self._buffers.pop(chat_id, None)
        if buffer is not None and buffer.handle is not None:
            buffer.handle.cancel()

    def has_pending(self, chat_id: int) -> bool:
        return chat_id in self._buffers

    def close(self) -> None:
        for chat_id in list(self._buffers):
            self.clear(chat_id)
