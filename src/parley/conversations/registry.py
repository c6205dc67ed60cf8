"""Registry of loaded conversations and client bindings.

Transports never touch a ConversationState directly for routing: they bind
a client id to a conversation name here and send through the registry. Each
client is bound to at most one conversation; each name maps to at most one
live state.
"""

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from parley.conversations.errors import (
    ClientNotSubscribedError,
    ConversationNotFoundError,
    InvalidConversationNameError,
)
from parley.conversations.outbox import OutboxWatcher
from parley.conversations.state import ClientType, ConversationState, EventCallback
from parley.engine.types import EngineFactory
from parley.store import (
    ChatMessage,
    ConversationInfo,
    ConversationStore,
    Origin,
    normalize_name,
)

logger = logging.getLogger(__name__)

ChangeListener = Callable[[], None]


class ConversationRegistry:
    """Owns every live ConversationState and the client -> name bindings."""

    def __init__(
        self,
        store: ConversationStore,
        engine_factory: EngineFactory,
        *,
        media_path: Path,
        max_context_tokens: int = 200_000,
        reset_delay: float = 0.1,
        stop_grace: float = 10.0,
    ):
        self._store = store
        self._engine_factory = engine_factory
        self._media_path = media_path
        self._max_context_tokens = max_context_tokens
        self._reset_delay = reset_delay
        self._stop_grace = stop_grace

        self._conversations: dict[str, ConversationState] = {}
        self._loading: dict[str, asyncio.Future[ConversationState]] = {}
        self._clients: dict[str, str] = {}
        self._listeners: list[ChangeListener] = []

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def media_path(self) -> Path:
        return self._media_path

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, name: str) -> bool:
        return name in self._conversations

    def get(self, name: str) -> ConversationState | None:
        return self._conversations.get(name)

    def active_conversations(self) -> list[ConversationState]:
        return list(self._conversations.values())

    @staticmethod
    def resolve_name(name: str) -> str:
        """Return the canonical form of a requested conversation name.

        Raises:
            InvalidConversationNameError: If nothing usable remains.
        """
        try:
            return normalize_name(name)
        except ValueError:
            raise InvalidConversationNameError(name) from None

    # -- change notifications -----------------------------------------------

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a conversation-list-changed listener.

        Returns a callable that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify_changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("conversations_listener_failed")

    # -- loading ------------------------------------------------------------

    async def get_or_create(self, name: str, origin: Origin = "web") -> ConversationState:
        """Return the live state for ``name``, loading or creating it once.

        Concurrent callers for the same name share a single load.

        Raises:
            InvalidConversationNameError: If the name has no usable characters.
        """
        name = self.resolve_name(name)
        if (state := self._conversations.get(name)) is not None:
            return state

        loading = self._loading.get(name)
        if loading is None:
            loading = asyncio.ensure_future(self._load(name, origin))
            self._loading[name] = loading
            loading.add_done_callback(lambda _: self._loading.pop(name, None))
        return await asyncio.shield(loading)

    async def _load(self, name: str, origin: Origin) -> ConversationState:
        record = await self._store.get_or_create_conversation(name, created_by=origin)
        state = ConversationState(
            record,
            store=self._store,
            engine_factory=self._engine_factory,
            outbox=OutboxWatcher(self._media_path),
            max_context_tokens=self._max_context_tokens,
            reset_delay=self._reset_delay,
            stop_grace=self._stop_grace,
        )
        self._conversations[record.name] = state
        logger.info(
            "conversation_loaded",
            extra={
                "conversation.name": record.name,
                "engine.resumed": record.resume_token is not None,
            },
        )
        self._notify_changed()
        return state

    # -- client bindings ----------------------------------------------------

    async def subscribe(
        self,
        client_id: str,
        name: str,
        client_type: ClientType,
        callback: EventCallback,
    ) -> ConversationState:
        """Bind a client to a conversation, replacing any earlier binding.

        Raises:
            InvalidConversationNameError: If the name has no usable characters;
                the current binding is kept.
        """
        name = self.resolve_name(name)
        self.unsubscribe(client_id)
        origin: Origin = "bot" if client_type == "bot" else "web"
        state = await self.get_or_create(name, origin)
        state.subscribe(client_id, client_type, callback)
        self._clients[client_id] = state.name
        return state

    def unsubscribe(self, client_id: str) -> None:
        name = self._clients.pop(client_id, None)
        if name is None:
            return
        if (state := self._conversations.get(name)) is not None:
            state.unsubscribe(client_id)

    def get_client_conversation(self, client_id: str) -> str | None:
        return self._clients.get(client_id)

    async def send(self, client_id: str, content: str, origin: Origin = "web") -> bool:
        """Send on behalf of a bound client.

        Raises:
            ClientNotSubscribedError: If the client has no binding.
            ConversationNotFoundError: If its conversation was archived or deleted.
        """
        name = self._clients.get(client_id)
        if name is None:
            raise ClientNotSubscribedError(client_id)
        state = self._conversations.get(name)
        if state is None:
            raise ConversationNotFoundError(name)
        return await state.send_message(content, origin)

    async def broadcast_file_delivery(
        self, path: Path, filename: str | None = None, caption: str | None = None
    ) -> int:
        """Deliver a file to every conversation that has subscribers.

        Returns:
            Number of conversations the file was delivered to.
        """
        delivered = 0
        for state in list(self._conversations.values()):
            if state.has_subscribers:
                await state.deliver_file(path, filename=filename, caption=caption)
                delivered += 1
        return delivered

    # -- lifecycle ----------------------------------------------------------

    async def _evict(self, name: str) -> None:
        state = self._conversations.pop(name, None)
        if state is not None:
            await state.close()

    async def archive(self, name: str) -> bool:
        name = self.resolve_name(name)
        await self._evict(name)
        archived = await self._store.archive(name)
        if archived:
            logger.info("conversation_archived", extra={"conversation.name": name})
            self._notify_changed()
        return archived

    async def unarchive(self, name: str) -> bool:
        name = self.resolve_name(name)
        restored = await self._store.unarchive(name)
        if restored:
            self._notify_changed()
        return restored

    async def pin(self, name: str) -> bool:
        name = self.resolve_name(name)
        pinned = await self._store.pin(name)
        if pinned:
            self._notify_changed()
        return pinned

    async def unpin(self, name: str) -> bool:
        name = self.resolve_name(name)
        unpinned = await self._store.unpin(name)
        if unpinned:
            self._notify_changed()
        return unpinned

    async def rename(self, name: str, title: str) -> bool:
        name = self.resolve_name(name)
        renamed = await self._store.rename(name, title)
        if renamed:
            self._notify_changed()
        return renamed

    async def delete(self, name: str) -> bool:
        name = self.resolve_name(name)
        await self._evict(name)
        await self._store.delete_thread_mappings(name)
        deleted = await self._store.delete_conversation(name)
        if deleted:
            logger.info("conversation_deleted", extra={"conversation.name": name})
            self._notify_changed()
        return deleted

    async def list_conversations(self, archived: bool = False) -> list[ConversationInfo]:
        return await self._store.list_conversations(archived=archived)

    async def get_messages(self, name: str, limit: int | None = None) -> list[ChatMessage]:
        name = self.resolve_name(name)
        conversation = await self._store.get_conversation(name)
        if conversation is None:
            return []
        return await self._store.get_messages(conversation.id, limit=limit)

    async def cleanup(self) -> int:
        """Close and evict conversations nobody is watching.

        A conversation with a turn in flight stays loaded so its output is
        still persisted.
        """
        idle = [
            name
            for name, state in self._conversations.items()
            if not state.has_subscribers and not state.is_busy
        ]
        for name in idle:
            await self._evict(name)
        if idle:
            logger.info("conversations_evicted", extra={"conversation.count": len(idle)})
        return len(idle)

    async def close_all(self) -> None:
        for name in list(self._conversations):
            await self._evict(name)
        self._clients.clear()
