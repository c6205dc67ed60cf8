"""Telegram update handling.

Routes inbound text and media to conversations. Each chat talks to one
conversation at a time (``/session`` switches it); replying to a bot message
routes to whichever conversation produced that message.

Groups are answered only when their policy allows it, and each forum topic
talks to its own conversation.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import timedelta
from pathlib import Path
from typing import Any

from aiogram import BaseMiddleware, F
from aiogram.filters import Command, CommandObject
from aiogram.types import Message as TelegramMessage
from aiogram.types import TelegramObject, Update

from parley.config.models import TelegramConfig
from parley.conversations import (
    BUSY_MESSAGE,
    ConversationRegistry,
    ParleyError,
)
from parley.conversations.outbox import MEDIA_URL_PREFIX
from parley.providers.telegram.formatting import format_attachment_tag, truncate
from parley.providers.telegram.fragments import FragmentBuffer
from parley.providers.telegram.groups import (
    GROUP_CHAT_TYPES,
    ForumTopics,
    GroupPolicyManager,
)
from parley.providers.telegram.media_groups import (
    BufferedMediaGroup,
    MediaGroupBuffer,
    MediaItem,
)
from parley.providers.telegram.provider import TelegramProvider
from parley.providers.telegram.reply_mode import ReplyMode, ReplyThreadTracker
from parley.providers.telegram.subscriptions import TelegramSubscriptionManager
from parley.providers.telegram.threads import MessageConversationTracker
from parley.providers.telegram.updates import UpdateTracker
from parley.store import generate_name

logger = logging.getLogger("telegram")

THINKING = "Thinking..."

HELP_TEXT = """\
Commands:
/session <name> - Switch to a named conversation
/new [name] - Start a new conversation
/list - List conversations
/status - Show the current conversation
/replymode <off|first|all> - Reply threading mode
/stop - Stop the current response
/help - Show this message

Send any message to talk to the agent. Photos, documents, video and audio
are saved where the agent can read them, and shared locations are passed
along."""

# Inbound media kind -> media subdirectory
_MEDIA_DIRS = {
    "photo": "photos",
    "document": "documents",
    "video": "videos",
    "audio": "audio",
    "voice": "voice",
}


class UpdateDedupMiddleware(BaseMiddleware):
    """Outer middleware that drops redelivered updates."""

    def __init__(self, tracker: UpdateTracker):
        self._tracker = tracker

    async def __call__(
        self,
        handler: Callable[[TelegramObject, dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: dict[str, Any],
    ) -> Any:
        if isinstance(event, Update) and self._tracker.is_duplicate(event.update_id):
            logger.debug("duplicate_update", extra={"telegram.update_id": event.update_id})
            return None
        return await handler(event, data)


def _media_item(message: TelegramMessage) -> MediaItem | None:
    if message.photo:
        return MediaItem("photo", message.photo[-1].file_id, message.message_id, message.caption)
    if message.document:
        return MediaItem(
            "document",
            message.document.file_id,
            message.message_id,
            message.caption,
            filename=message.document.file_name,
        )
    if message.video:
        return MediaItem(
            "video",
            message.video.file_id,
            message.message_id,
            message.caption,
            filename=message.video.file_name,
        )
    if message.audio:
        return MediaItem(
            "audio",
            message.audio.file_id,
            message.message_id,
            message.caption,
            filename=message.audio.file_name,
        )
    if message.voice:
        return MediaItem("voice", message.voice.file_id, message.message_id, message.caption)
    return None


class TelegramMessageHandler:
    """Binds Telegram chats to conversations and forwards their messages."""

    def __init__(
        self,
        provider: TelegramProvider,
        registry: ConversationRegistry,
        config: TelegramConfig,
        *,
        media_path: Path,
    ):
        self._provider = provider
        self._registry = registry
        self._config = config
        self._media_path = media_path

        self._updates = UpdateTracker(config.update_tracker_capacity)
        self._groups = GroupPolicyManager.from_config(config)
        self._topics = ForumTopics(config.forum_topics)
        self._reply_threads = ReplyThreadTracker(config.reply_mode)
        self._threads = MessageConversationTracker(
            registry.store, ttl=timedelta(days=config.thread_mapping_ttl_days)
        )
        self._subscriptions = TelegramSubscriptionManager(
            provider,
            registry,
            reply_threads=self._reply_threads,
            threads=self._threads,
            reaction_ack=config.reaction_ack,
            response_timeout=config.response_timeout_minutes * 60,
        )
        self._fragments = FragmentBuffer(
            self._on_fragments,
            flush_delay=config.fragment_buffer_ms / 1000,
            threshold=config.fragment_threshold,
        )
        self._media_groups = MediaGroupBuffer(
            self._on_media_group,
            flush_delay=config.media_group_buffer_ms / 1000,
        )

    @property
    def subscriptions(self) -> TelegramSubscriptionManager:
        return self._subscriptions

    @property
    def reply_threads(self) -> ReplyThreadTracker:
        return self._reply_threads

    @property
    def updates(self) -> UpdateTracker:
        return self._updates

    @property
    def groups(self) -> GroupPolicyManager:
        return self._groups

    @property
    def topics(self) -> ForumTopics:
        return self._topics

    def register(self) -> None:
        """Attach middleware and handlers to the provider's dispatcher."""
        dp = self._provider.dispatcher
        dp.update.outer_middleware(UpdateDedupMiddleware(self._updates))

        dp.message.register(self.handle_start, Command("start"))
        dp.message.register(self.handle_help, Command("help"))
        dp.message.register(self.handle_session, Command("session"))
        dp.message.register(self.handle_new, Command("new"))
        dp.message.register(self.handle_list, Command("list"))
        dp.message.register(self.handle_status, Command("status"))
        dp.message.register(self.handle_replymode, Command("replymode"))
        dp.message.register(self.handle_stop, Command("stop"))
        dp.message.register(self.handle_text, F.text)
        dp.message.register(
            self.handle_media, F.photo | F.document | F.video | F.audio | F.voice
        )
        dp.message.register(self.handle_location, F.location | F.venue)

    async def close(self) -> None:
        self._fragments.close()
        self._media_groups.close()
        await self._subscriptions.close()

    def _is_allowed(self, message: TelegramMessage) -> bool:
        user = message.from_user
        if user is None:
            return False
        chat_id = message.chat.id
        if message.chat.type in GROUP_CHAT_TYPES:
            addressed = self._provider.is_mentioned(message) or self._provider.is_reply_to_bot(
                message
            )
            allowed = self._groups.should_respond(chat_id, addressed=addressed)
            if not allowed:
                logger.debug(
                    "group_message_skipped",
                    extra={
                        "messaging.chat_id": chat_id,
                        "telegram.group_policy": str(self._groups.policy_for(chat_id)),
                        "was_mentioned": addressed,
                    },
                )
            return allowed
        allowed = self._provider.is_user_allowed(user.id, user.username)
        if not allowed:
            logger.info(
                "user_not_allowed",
                extra={"user.id": str(user.id), "messaging.chat_id": message.chat.id},
            )
        return allowed

    def current_conversation(self, chat_id: int) -> str:
        return (
            self._subscriptions.conversation_for(chat_id)
            or self._config.default_conversation
        )

    # -- commands -----------------------------------------------------------

    async def handle_start(self, message: TelegramMessage) -> None:
        if not self._is_allowed(message):
            return
        name = message.from_user.first_name if message.from_user else "there"
        await message.answer(f"Hello, {name}!\n\n{HELP_TEXT}", parse_mode=None)

    async def handle_help(self, message: TelegramMessage) -> None:
        if not self._is_allowed(message):
            return
        await message.answer(HELP_TEXT, parse_mode=None)

    async def _switch(self, message: TelegramMessage, name: str) -> str | None:
        chat_id = message.chat.id
        try:
            state = await self._subscriptions.subscribe(chat_id, name)
        except ParleyError as e:
            await message.answer(str(e), parse_mode=None)
            return None
        self._reply_threads.reset_first(chat_id)
        return state.name

    async def handle_session(self, message: TelegramMessage, command: CommandObject) -> None:
        if not self._is_allowed(message):
            return
        chat_id = message.chat.id
        if not command.args:
            await message.answer(
                f"Current conversation: {self.current_conversation(chat_id)}\n"
                "Usage: /session <name>",
                parse_mode=None,
            )
            return
        name = await self._switch(message, command.args)
        if name is None:
            return
        await message.answer(f"Switched to conversation: {name}", parse_mode=None)

    async def handle_new(self, message: TelegramMessage, command: CommandObject) -> None:
        if not self._is_allowed(message):
            return
        name = await self._switch(message, command.args or generate_name())
        if name is None:
            return
        await message.answer(f"Started conversation: {name}", parse_mode=None)

    async def handle_list(self, message: TelegramMessage) -> None:
        if not self._is_allowed(message):
            return
        conversations = await self._registry.list_conversations()
        if not conversations:
            await message.answer("No conversations yet.", parse_mode=None)
            return
        current = self.current_conversation(message.chat.id)
        lines = []
        for conversation in conversations:
            marker = "> " if conversation.name == current else "  "
            pin = " (pinned)" if conversation.pinned else ""
            title = f" - {conversation.title}" if conversation.title else ""
            lines.append(f"{marker}{conversation.name}{title}{pin}")
        await message.answer("Conversations:\n" + "\n".join(lines), parse_mode=None)

    async def handle_status(self, message: TelegramMessage) -> None:
        if not self._is_allowed(message):
            return
        name = self.current_conversation(message.chat.id)
        state = self._registry.get(name)
        status = state.status if state is not None else "not loaded"
        await message.answer(
            f"Conversation: {name}\nStatus: {status}\n"
            f"Reply mode: {self._reply_threads.mode}",
            parse_mode=None,
        )

    async def handle_replymode(self, message: TelegramMessage, command: CommandObject) -> None:
        if not self._is_allowed(message):
            return
        if not command.args:
            await message.answer(
                f"Reply mode: {self._reply_threads.mode}\n"
                "Usage: /replymode <off|first|all>",
                parse_mode=None,
            )
            return
        mode = ReplyMode.parse(command.args)
        if mode is None:
            await message.answer("Reply mode must be one of: off, first, all", parse_mode=None)
            return
        self._reply_threads.set_mode(mode)
        await message.answer(f"Reply mode set to: {mode}", parse_mode=None)

    async def handle_stop(self, message: TelegramMessage) -> None:
        if not self._is_allowed(message):
            return
        state = self._registry.get(self.current_conversation(message.chat.id))
        if state is None or not await state.stop_generation():
            await message.answer("Nothing to stop.", parse_mode=None)
            return
        await message.answer("Stopping...", parse_mode=None)

    # -- messages -----------------------------------------------------------

    async def _route(self, message: TelegramMessage) -> str | None:
        """Pick the conversation for an inbound message and subscribe to it.

        A reply to a tracked bot message switches the chat to the
        conversation that produced it. Otherwise a forum topic message goes
        to the topic's conversation. Returns None for a disabled topic.
        """
        chat_id = message.chat.id
        name: str | None = None
        topic_id = message.message_thread_id
        if message.is_topic_message is True and self._topics.is_forum_message(topic_id):
            if not self._topics.is_enabled(chat_id, topic_id):
                logger.debug(
                    "topic_disabled",
                    extra={"messaging.chat_id": chat_id, "telegram.topic_id": topic_id},
                )
                return None
            name = self._topics.conversation_for(chat_id, topic_id)
        if message.reply_to_message is not None and self._provider.is_reply_to_bot(message):
            mapped = await self._threads.lookup(chat_id, message.reply_to_message.message_id)
            if mapped is not None:
                logger.info(
                    "reply_routed",
                    extra={"messaging.chat_id": chat_id, "conversation.name": mapped},
                )
                name = mapped
        state = await self._subscriptions.subscribe(
            chat_id, name or self.current_conversation(chat_id)
        )
        return state.name

    async def handle_text(self, message: TelegramMessage) -> None:
        if not message.text or not self._is_allowed(message):
            return
        chat_id = message.chat.id
        text = message.text
        if message.chat.type in GROUP_CHAT_TYPES:
            text = self._provider.strip_mention(text)
            if not text:
                return
        logger.info(
            "incoming_message",
            extra={
                "messaging.chat_id": chat_id,
                "external_id": str(message.message_id),
                "input.preview": truncate(text),
            },
        )
        if await self._route(message) is None:
            return
        if self._fragments.add(chat_id, message.message_id, text):
            return
        await self.process_message(chat_id, text, message.message_id)

    async def _on_fragments(self, chat_id: int, text: str, first_message_id: int) -> None:
        await self.process_message(chat_id, text, first_message_id)

    async def process_message(self, chat_id: int, text: str, original_message_id: int) -> None:
        """Send text to the chat's conversation, with a placeholder for the reply."""
        state = await self._subscriptions.subscribe(chat_id, self.current_conversation(chat_id))
        if state.is_busy:
            await self._provider.send_message(
                chat_id, f"{BUSY_MESSAGE}.", reply_to=original_message_id
            )
            return

        self._reply_threads.record_user_message(chat_id, original_message_id)
        if self._config.reaction_ack:
            await self._provider.set_reaction(chat_id, original_message_id)
        await self._provider.send_typing(chat_id)
        placeholder_id = await self._provider.send_message(chat_id, THINKING)
        await self._subscriptions.start_placeholder(chat_id, placeholder_id, original_message_id)

        client_id = TelegramSubscriptionManager.client_id(chat_id)
        try:
            accepted = await self._registry.send(client_id, text, "bot")
        except ParleyError as e:
            await self._subscriptions.fail_placeholder(chat_id, f"Error: {e}")
            return
        if not accepted and state.is_busy:
            # Another client started a turn while the placeholder was going out
            await self._subscriptions.fail_placeholder(chat_id, f"{BUSY_MESSAGE}.")

    # -- media --------------------------------------------------------------

    async def handle_media(self, message: TelegramMessage) -> None:
        if not self._is_allowed(message):
            return
        item = _media_item(message)
        if item is None:
            return
        chat_id = message.chat.id
        if await self._route(message) is None:
            return
        if self._media_groups.add(
            chat_id,
            message.media_group_id,
            message.message_id,
            item.type,
            item.file_id,
            item.caption,
            filename=item.filename,
        ):
            return
        await self._process_media(chat_id, [item], message.message_id, item.caption)

    async def _on_media_group(self, group: BufferedMediaGroup) -> None:
        await self._process_media(
            group.chat_id, group.items, group.first_message_id, group.caption
        )

    async def _download(self, item: MediaItem) -> Path:
        subdir = _MEDIA_DIRS.get(item.type, "documents")
        suffix = Path(item.filename).suffix if item.filename else ""
        if not suffix:
            suffix = {"photo": ".jpg", "voice": ".ogg"}.get(item.type, "")
        destination = self._media_path / subdir / f"{uuid.uuid4()}{suffix}"
        return await self._provider.download_file(item.file_id, destination)

    async def _process_media(
        self,
        chat_id: int,
        items: list[MediaItem],
        first_message_id: int,
        caption: str | None,
    ) -> None:
        tags: list[str] = []
        paths: list[str] = []
        for item in items:
            try:
                path = await self._download(item)
            except Exception as e:
                logger.warning(
                    "media_download_failed",
                    extra={"messaging.chat_id": chat_id, "error.message": str(e)},
                )
                continue
            relative = path.relative_to(self._media_path).as_posix()
            tags.append(
                format_attachment_tag(
                    item.type, f"{MEDIA_URL_PREFIX}/{relative}", item.filename or path.name
                )
            )
            paths.append(str(path))

        if not tags:
            await self._provider.send_message(
                chat_id, "Error: could not download the file.", reply_to=first_message_id
            )
            return

        text = "\n".join(tags)
        if caption:
            text += f"\n\n{caption}"
        text += "\n\n" + "\n".join(
            f"[System: File path for agent access: {path}]" for path in paths
        )
        await self.process_message(chat_id, text, first_message_id)

    # -- locations ----------------------------------------------------------

    async def handle_location(self, message: TelegramMessage) -> None:
        if not self._is_allowed(message):
            return
        if message.venue is not None:
            venue = message.venue
            text = (
                f'[User shared venue: "{venue.title}" at {venue.address} '
                f"({venue.location.latitude:.6f}, {venue.location.longitude:.6f})]"
            )
        elif message.location is not None:
            location = message.location
            text = (
                f"[User shared location: {location.latitude:.6f}, {location.longitude:.6f}]"
            )
        else:
            return
        if await self._route(message) is None:
            return
        await self.process_message(message.chat.id, text, message.message_id)
