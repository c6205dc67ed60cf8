"""Telegram provider using aiogram."""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Literal, TypeVar

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ChatAction, ParseMode
from aiogram.exceptions import TelegramBadRequest, TelegramRetryAfter
from aiogram.types import FSInputFile, LinkPreviewOptions, ReactionTypeEmoji
from aiogram.types import Message as TelegramMessage

from parley.providers.telegram.formatting import split_message, truncate

logger = logging.getLogger("telegram")

T = TypeVar("T")

FileKind = Literal["image", "video", "audio", "voice", "document"]

ACK_REACTION = "👀"

_NO_PREVIEW = LinkPreviewOptions(is_disabled=True)


class TelegramProvider:
    """Thin wrapper over the aiogram Bot and Dispatcher.

    Every outbound call tolerates Telegram's soft failures: markdown that
    does not parse is resent as plain text, a vanished reply target is
    dropped, and flood control is waited out once.
    """

    def __init__(
        self,
        bot_token: str,
        allowed_users: list[str] | None = None,
        link_preview: bool = True,
    ):
        self._allowed_users = set(allowed_users or [])
        self._link_preview = link_preview

        self._bot = Bot(
            token=bot_token,
            default=DefaultBotProperties(parse_mode=ParseMode.MARKDOWN),
        )
        self._dp = Dispatcher()
        self._running = False
        self._bot_username: str | None = None
        self._bot_id: int | None = None

    @property
    def name(self) -> str:
        return "telegram"

    @property
    def bot(self) -> Bot:
        return self._bot

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dp

    @property
    def bot_username(self) -> str | None:
        return self._bot_username

    @property
    def bot_id(self) -> int | None:
        return self._bot_id

    def is_user_allowed(self, user_id: int, username: str | None) -> bool:
        if not self._allowed_users:
            return True
        return str(user_id) in self._allowed_users or (
            username is not None and f"@{username}" in self._allowed_users
        )

    def is_reply_to_bot(self, message: TelegramMessage) -> bool:
        """Check if this message replies to one of the bot's own messages."""
        if message.reply_to_message is None:
            return False
        from_user = message.reply_to_message.from_user
        if self._bot_id is None:
            return from_user is not None and from_user.is_bot
        return from_user is not None and from_user.id == self._bot_id

    def is_mentioned(self, message: TelegramMessage) -> bool:
        """Check if the bot is @mentioned in the message text or caption."""
        if not self._bot_username:
            return False

        text = message.text or message.caption or ""
        mention = f"@{self._bot_username}".lower()
        if mention in text.lower():
            return True

        entities = message.entities or message.caption_entities or []
        for entity in entities:
            if entity.type == "mention":
                if text[entity.offset : entity.offset + entity.length].lower() == mention:
                    return True
            elif entity.type == "text_mention" and entity.user is not None:
                if entity.user.id == self._bot_id:
                    return True
        return False

    def strip_mention(self, text: str) -> str:
        if not self._bot_username:
            return text
        pattern = rf"@{re.escape(self._bot_username)}\b"
        return re.sub(pattern, "", text, flags=re.IGNORECASE).strip()

    async def start(self) -> None:
        """Start long polling. Returns when polling stops."""
        try:
            bot_info = await self._bot.get_me()
            self._bot_username = bot_info.username
            self._bot_id = bot_info.id
            logger.info(
                "bot_username_resolved",
                extra={"telegram.bot_username": self._bot_username},
            )
        except Exception as e:
            logger.warning("bot_info_failed", extra={"error.message": str(e)})

        self._running = True

        logger.info("telegram_bot_starting")
        await self._bot.delete_webhook(drop_pending_updates=False)
        # The server runner owns SIGINT/SIGTERM
        await self._dp.start_polling(
            self._bot,
            handle_signals=False,
            close_bot_session=False,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        try:
            await self._dp.stop_polling()
        except Exception as e:
            logger.debug("stop_polling_failed", extra={"error.message": str(e)})

        try:
            await self._bot.session.close()
        except Exception as e:
            logger.debug("bot_session_close_failed", extra={"error.message": str(e)})

        logger.info("telegram_bot_stopped")

    async def _call(self, request: Callable[[], Awaitable[T]]) -> T:
        """Run a Bot API request, waiting out flood control once."""
        try:
            return await request()
        except TelegramRetryAfter as e:
            logger.info("telegram_rate_limited", extra={"telegram.retry_after": e.retry_after})
            await asyncio.sleep(e.retry_after)
            return await request()

    def _preview_options(self, enabled: bool) -> LinkPreviewOptions | None:
        return None if enabled and self._link_preview else _NO_PREVIEW

    async def _send_with_fallback(
        self,
        chat_id: int,
        text: str,
        reply_to: int | None = None,
        parse_mode: ParseMode | None = ParseMode.MARKDOWN,
        link_preview: bool = True,
    ) -> TelegramMessage:
        """Send a message with automatic plain-text fallback on parse errors."""
        preview = self._preview_options(link_preview)

        def send(mode: ParseMode | None, reply: int | None):
            return self._call(
                lambda: self._bot.send_message(
                    chat_id=chat_id,
                    text=text,
                    reply_to_message_id=reply,
                    parse_mode=mode,
                    link_preview_options=preview,
                )
            )

        try:
            return await send(parse_mode, reply_to)
        except TelegramBadRequest as e:
            error_msg = str(e).lower()
            if "can't parse" in error_msg and parse_mode is not None:
                logger.debug("markdown_fallback", extra={"error.message": str(e)})
                return await send(None, reply_to)
            if "message to be replied not found" in error_msg and reply_to is not None:
                logger.debug("reply_target_missing", extra={"error.message": str(e)})
                return await send(parse_mode, None)
            raise

    async def _edit_with_fallback(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        parse_mode: ParseMode | None = ParseMode.MARKDOWN,
    ) -> bool:
        """Edit a message with automatic plain-text fallback on parse errors."""

        def edit(mode: ParseMode | None):
            return self._call(
                lambda: self._bot.edit_message_text(
                    chat_id=chat_id,
                    message_id=message_id,
                    text=text,
                    parse_mode=mode,
                )
            )

        try:
            await edit(parse_mode)
            return True
        except TelegramBadRequest as e:
            error_msg = str(e).lower()
            if "message is not modified" in error_msg:
                return True
            if "can't parse" in error_msg and parse_mode is not None:
                logger.debug("markdown_fallback", extra={"error.message": str(e)})
                try:
                    await edit(None)
                    return True
                except TelegramBadRequest as e2:
                    if "message is not modified" in str(e2).lower():
                        return True
                    logger.debug("edit_failed", extra={"error.message": str(e2)})
                    return False
            logger.debug("edit_failed", extra={"error.message": str(e)})
            return False
        except Exception as e:
            logger.debug("edit_failed", extra={"error.message": str(e)})
            return False

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_to: int | None = None,
        formatted: bool = False,
        link_preview: bool = True,
    ) -> int:
        """Send one message. Returns its message id."""
        sent = await self._send_with_fallback(
            chat_id,
            text,
            reply_to=reply_to,
            parse_mode=ParseMode.MARKDOWN if formatted else None,
            link_preview=link_preview,
        )
        logger.debug(
            "message_sent",
            extra={"messaging.chat_id": chat_id, "message.preview": truncate(text)},
        )
        return sent.message_id

    async def send_long_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_to: int | None = None,
        formatted: bool = False,
    ) -> list[int]:
        """Send text split into as many messages as needed.

        Only the first chunk replies to ``reply_to``; only the last chunk may
        show a link preview.

        Returns:
            Ids of the messages that were sent.
        """
        chunks = split_message(text)
        sent: list[int] = []
        for i, chunk in enumerate(chunks):
            try:
                message_id = await self.send_message(
                    chat_id,
                    chunk,
                    reply_to=reply_to if i == 0 else None,
                    formatted=formatted,
                    link_preview=i == len(chunks) - 1,
                )
            except TelegramBadRequest as e:
                logger.warning(
                    "message_send_failed",
                    extra={"messaging.chat_id": chat_id, "error.message": str(e)},
                )
                continue
            sent.append(message_id)
        return sent

    async def edit_message(
        self, chat_id: int, message_id: int, text: str, *, formatted: bool = False
    ) -> bool:
        return await self._edit_with_fallback(
            chat_id,
            message_id,
            text or "...",
            ParseMode.MARKDOWN if formatted else None,
        )

    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        try:
            await self._call(
                lambda: self._bot.delete_message(chat_id=chat_id, message_id=message_id)
            )
            return True
        except TelegramBadRequest as e:
            logger.debug("delete_failed", extra={"error.message": str(e)})
            return False

    async def send_typing(self, chat_id: int) -> None:
        try:
            await self._bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
        except Exception as e:
            logger.debug("typing_failed", extra={"error.message": str(e)})

    async def set_reaction(
        self, chat_id: int, message_id: int, emoji: str = ACK_REACTION
    ) -> None:
        try:
            await self._bot.set_message_reaction(
                chat_id=chat_id,
                message_id=message_id,
                reaction=[ReactionTypeEmoji(emoji=emoji)],
            )
        except Exception as e:
            logger.debug("reaction_failed", extra={"error.message": str(e)})

    async def clear_reaction(self, chat_id: int, message_id: int) -> None:
        try:
            await self._bot.set_message_reaction(
                chat_id=chat_id, message_id=message_id, reaction=[]
            )
        except Exception as e:
            logger.debug("reaction_clear_failed", extra={"error.message": str(e)})

    async def send_file(
        self,
        chat_id: int,
        path: Path,
        kind: FileKind,
        *,
        filename: str | None = None,
        caption: str | None = None,
    ) -> int:
        """Upload a file using the send method that matches its kind."""
        upload = FSInputFile(path, filename=filename or path.name)
        bot = self._bot
        match kind:
            case "image":
                request = lambda: bot.send_photo(chat_id, photo=upload, caption=caption)  # noqa: E731
            case "video":
                request = lambda: bot.send_video(chat_id, video=upload, caption=caption)  # noqa: E731
            case "audio":
                request = lambda: bot.send_audio(  # noqa: E731
                    chat_id, audio=upload, caption=caption, title=filename or path.name
                )
            case "voice":
                request = lambda: bot.send_voice(chat_id, voice=upload, caption=caption)  # noqa: E731
            case _:
                request = lambda: bot.send_document(  # noqa: E731
                    chat_id, document=upload, caption=caption
                )
        sent = await self._call(request)
        logger.info(
            "file_sent",
            extra={"messaging.chat_id": chat_id, "file.name": upload.filename, "file.kind": kind},
        )
        return sent.message_id

    async def download_file(self, file_id: str, destination: Path) -> Path:
        """Download a Telegram file to ``destination``."""
        file = await self._call(lambda: self._bot.get_file(file_id))
        if not file.file_path:
            raise ValueError(f"Telegram returned no path for file {file_id}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        await self._bot.download_file(file.file_path, destination=destination)
        return destination
