"""Conversation persistence.

The store owns every durable fact about a conversation: its name and flags,
its message history, the engine resume token, and the mapping from bot chat
messages back to conversations.
"""

import logging
import random
import re
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update

from parley.db import Database
from parley.db.models import Conversation, Message, ThreadMapping, utc_now
from parley.store.types import ChatMessage, ConversationInfo, Origin, Role

logger = logging.getLogger(__name__)

_ADJECTIVES = ["quick", "bright", "calm", "bold", "swift", "keen"]
_NOUNS = ["fox", "owl", "hawk", "wolf", "bear", "lion"]


def slugify(text: str) -> str:
    """Normalize a conversation name: lowercase, dashes, word characters only."""
    text = text.lower().strip()
    text = re.sub(r"[^\w\s-]", "", text)
    text = re.sub(r"[\s_-]+", "-", text)
    return text.strip("-")


def generate_name() -> str:
    """Generate a readable name like ``calm-owl-417``."""
    return (
        f"{random.choice(_ADJECTIVES)}-{random.choice(_NOUNS)}-{random.randrange(1000)}"
    )


def normalize_name(name: str) -> str:
    """Slugify a requested name.

    Raises:
        ValueError: If nothing usable remains (e.g. "!!!").
    """
    slug = slugify(name)
    if not slug:
        raise ValueError(f"Invalid conversation name: {name!r}")
    return slug


class ConversationStore:
    """Async persistence for conversations, messages and thread mappings."""

    def __init__(self, database: Database):
        self._db = database

    # -- conversations ------------------------------------------------------

    async def get_conversation(self, name: str) -> ConversationInfo | None:
        async with self._db.session() as session:
            row = await session.scalar(
                select(Conversation).where(Conversation.name == name)
            )
            return ConversationInfo.model_validate(row) if row else None

    async def create_conversation(
        self,
        name: str | None = None,
        title: str | None = None,
        created_by: str = "web",
    ) -> ConversationInfo:
        now = utc_now()
        row = Conversation(
            id=str(uuid.uuid4()),
            name=normalize_name(name) if name and name.strip() else generate_name(),
            title=title,
            created_by=created_by,
            archived=False,
            pinned=False,
            created_at=now,
            updated_at=now,
        )
        async with self._db.session() as session:
            session.add(row)
        logger.info(
            "conversation_created",
            extra={"conversation.name": row.name, "conversation.origin": created_by},
        )
        return ConversationInfo.model_validate(row)

    async def get_or_create_conversation(
        self, name: str, created_by: str = "web"
    ) -> ConversationInfo:
        """Load a conversation by name, creating it on first use.

        Raises:
            ValueError: If the name has no usable characters.
        """
        existing = await self.get_conversation(normalize_name(name))
        if existing is not None:
            return existing
        return await self.create_conversation(name, created_by=created_by)

    async def list_conversations(self, archived: bool = False) -> list[ConversationInfo]:
        """List conversations, pinned first, then most recently updated."""
        async with self._db.session() as session:
            rows = await session.scalars(
                select(Conversation)
                .where(Conversation.archived == archived)
                .order_by(
                    Conversation.pinned.desc(),
                    Conversation.updated_at.desc(),
                    Conversation.created_at.desc(),
                )
            )
            return [ConversationInfo.model_validate(row) for row in rows]

    async def _update_by_name(self, name: str, **values: Any) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                update(Conversation).where(Conversation.name == name).values(**values)
            )
            return result.rowcount > 0

    async def archive(self, name: str) -> bool:
        # Archiving unpins; sort position (updated_at) is preserved
        return await self._update_by_name(name, archived=True, pinned=False)

    async def unarchive(self, name: str) -> bool:
        return await self._update_by_name(name, archived=False)

    async def pin(self, name: str) -> bool:
        return await self._update_by_name(name, pinned=True)

    async def unpin(self, name: str) -> bool:
        return await self._update_by_name(name, pinned=False)

    async def rename(self, name: str, title: str) -> bool:
        """Set the display title. The name itself is immutable."""
        return await self._update_by_name(name, title=title, updated_at=utc_now())

    async def delete_conversation(self, name: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                delete(Conversation).where(Conversation.name == name)
            )
            return result.rowcount > 0

    async def update_resume_token(
        self, conversation_id: str, token: str | None
    ) -> None:
        """Persist (or clear, with None) the engine resume token."""
        async with self._db.session() as session:
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(resume_token=token, updated_at=utc_now())
            )

    # -- messages -----------------------------------------------------------

    async def create_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        origin: Origin,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessage:
        """Append a message and touch the conversation's updated_at."""
        now = utc_now()
        row = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            origin=origin,
            created_at=now,
            metadata_=metadata,
        )
        async with self._db.session() as session:
            session.add(row)
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(updated_at=now)
            )
        return ChatMessage.model_validate(row)

    async def get_messages(
        self, conversation_id: str, limit: int | None = None
    ) -> list[ChatMessage]:
        """Messages in chronological order; with a limit, the most recent ones."""
        stmt = select(Message).where(Message.conversation_id == conversation_id)
        if limit is not None:
            stmt = stmt.order_by(Message.created_at.desc()).limit(limit)
        else:
            stmt = stmt.order_by(Message.created_at.asc())
        async with self._db.session() as session:
            rows = list(await session.scalars(stmt))
        if limit is not None:
            rows.reverse()
        return [ChatMessage.model_validate(row) for row in rows]

    async def get_message(self, message_id: str) -> ChatMessage | None:
        async with self._db.session() as session:
            row = await session.get(Message, message_id)
            return ChatMessage.model_validate(row) if row else None

    async def get_latest_message(
        self, conversation_id: str, role: Role | None = None
    ) -> ChatMessage | None:
        stmt = select(Message).where(Message.conversation_id == conversation_id)
        if role is not None:
            stmt = stmt.where(Message.role == role)
        stmt = stmt.order_by(Message.created_at.desc()).limit(1)
        async with self._db.session() as session:
            row = await session.scalar(stmt)
            return ChatMessage.model_validate(row) if row else None

    async def update_message_metadata(
        self, message_id: str, patch: dict[str, Any]
    ) -> bool:
        """Shallow-merge ``patch`` into a message's metadata."""
        async with self._db.session() as session:
            row = await session.get(Message, message_id)
            if row is None:
                return False
            row.metadata_ = {**(row.metadata_ or {}), **patch}
            return True

    # -- thread mappings ----------------------------------------------------

    async def track_thread(
        self, chat_id: int, message_id: int, conversation_name: str
    ) -> None:
        async with self._db.session() as session:
            await session.merge(
                ThreadMapping(
                    chat_id=chat_id,
                    message_id=message_id,
                    conversation_name=conversation_name,
                    created_at=utc_now(),
                )
            )

    async def get_thread_conversation(
        self, chat_id: int, message_id: int, newer_than: datetime | None = None
    ) -> str | None:
        stmt = select(ThreadMapping.conversation_name).where(
            ThreadMapping.chat_id == chat_id,
            ThreadMapping.message_id == message_id,
        )
        if newer_than is not None:
            stmt = stmt.where(ThreadMapping.created_at >= newer_than)
        async with self._db.session() as session:
            return await session.scalar(stmt)

    async def delete_thread_mappings(self, conversation_name: str) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                delete(ThreadMapping).where(
                    ThreadMapping.conversation_name == conversation_name
                )
            )
            return result.rowcount

    async def purge_thread_mappings(self, older_than: datetime) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                delete(ThreadMapping).where(ThreadMapping.created_at < older_than)
            )
            return result.rowcount
