"""Message -> conversation mapping for reply-based routing.

Every bot message sent on behalf of a conversation is recorded, so a user
replying to it is routed back to that conversation. Mappings expire after a
retention window; expired rows are swept on a small fraction of writes
instead of on a timer.
"""

import logging
import random
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from parley.db.models import utc_now
from parley.store import ConversationStore

logger = logging.getLogger("telegram")

DEFAULT_TTL = timedelta(days=30)
DEFAULT_CLEANUP_PROBABILITY = 0.01


class MessageConversationTracker:
    def __init__(
        self,
        store: ConversationStore,
        *,
        ttl: timedelta = DEFAULT_TTL,
        cleanup_probability: float = DEFAULT_CLEANUP_PROBABILITY,
        random_fn: Callable[[], float] = random.random,
    ):
        self._store = store
        self._ttl = ttl
        self._cleanup_probability = cleanup_probability
        self._random = random_fn

    async def track(self, chat_id: int, message_id: int, conversation_name: str) -> None:
        try:
            await self._store.track_thread(chat_id, message_id, conversation_name)
            if self._random() < self._cleanup_probability:
                await self.purge_expired()
        except SQLAlchemyError as e:
            logger.warning(
                "thread_track_failed",
                extra={"messaging.chat_id": chat_id, "error.message": str(e)},
            )

    async def lookup(self, chat_id: int, message_id: int) -> str | None:
        """Conversation that produced a bot message, if still mapped."""
        return await self._store.get_thread_conversation(
            chat_id, message_id, newer_than=utc_now() - self._ttl
        )

    async def clear_conversation(self, conversation_name: str) -> int:
        return await self._store.delete_thread_mappings(conversation_name)

    async def purge_expired(self) -> int:
        removed = await self._store.purge_thread_mappings(utc_now() - self._ttl)
        if removed:
            logger.info("thread_mappings_purged", extra={"thread.removed": removed})
        return removed
