"""Telegram side of conversation subscriptions.

Each chat is subscribed to at most one conversation. Conversation events
are queued per chat and rendered in order: streaming text edits a
"Thinking..." placeholder, the final result replaces it (splitting when it
is too long), files are uploaded natively, and messages typed on the web are
mirrored with a ``[Web]`` label.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path

from aiogram.exceptions import TelegramAPIError

from parley.conversations import (
    BUSY_MESSAGE,
    AssistantMessageEvent,
    ConversationEvent,
    ConversationRegistry,
    ConversationState,
    ErrorEvent,
    FileDeliveryEvent,
    ResultEvent,
    ToolUseEvent,
    UserMessageEvent,
)
from parley.conversations.outbox import MEDIA_URL_PREFIX
from parley.providers.telegram.formatting import (
    MAX_MESSAGE_LENGTH,
    parse_attachment_tag,
    streaming_preview,
)
from parley.providers.telegram.provider import FileKind, TelegramProvider
from parley.providers.telegram.reply_mode import ReplyThreadTracker
from parley.providers.telegram.threads import MessageConversationTracker

logger = logging.getLogger("telegram")

EDIT_INTERVAL = 1.0
TOOL_STATUS_INTERVAL = 2.0
DEFAULT_RESPONSE_TIMEOUT = 60 * 60.0

# Attachment tag types from web uploads -> upload method
_ATTACHMENT_KINDS: dict[str, FileKind] = {
    "photo": "image",
    "image": "image",
    "video": "video",
    "audio": "audio",
    "voice": "voice",
    "document": "document",
}


@dataclass
class ActivePlaceholder:
    """The bot message being edited while a bot-originated turn runs."""

    message_id: int
    original_message_id: int
    content: str = ""
    last_update: float = 0.0
    timeout: asyncio.TimerHandle | None = field(default=None, repr=False)


@dataclass
class ChatSubscription:
    chat_id: int
    conversation_name: str
    placeholder: ActivePlaceholder | None = None
    events: asyncio.Queue[ConversationEvent] = field(default_factory=asyncio.Queue)
    worker: asyncio.Task | None = field(default=None, repr=False)


class TelegramSubscriptionManager:
    def __init__(
        self,
        provider: TelegramProvider,
        registry: ConversationRegistry,
        *,
        reply_threads: ReplyThreadTracker,
        threads: MessageConversationTracker,
        reaction_ack: bool = True,
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
        edit_interval: float = EDIT_INTERVAL,
        tool_status_interval: float = TOOL_STATUS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._provider = provider
        self._registry = registry
        self._reply_threads = reply_threads
        self._threads = threads
        self._reaction_ack = reaction_ack
        self._response_timeout = response_timeout
        self._edit_interval = edit_interval
        self._tool_status_interval = tool_status_interval
        self._clock = clock
        self._subscriptions: dict[int, ChatSubscription] = {}
        self._timeouts: set[asyncio.Task] = set()

    @staticmethod
    def client_id(chat_id: int) -> str:
        return f"telegram-{chat_id}"

    def conversation_for(self, chat_id: int) -> str | None:
        sub = self._subscriptions.get(chat_id)
        return sub.conversation_name if sub else None

    def is_subscribed(self, chat_id: int) -> bool:
        return chat_id in self._subscriptions

    def placeholder_for(self, chat_id: int) -> ActivePlaceholder | None:
        sub = self._subscriptions.get(chat_id)
        return sub.placeholder if sub else None

    # -- subscription lifecycle ---------------------------------------------

    async def subscribe(self, chat_id: int, name: str) -> ConversationState:
        """Bind a chat to a conversation, replacing any earlier binding.

        Raises:
            InvalidConversationNameError: If the name has no usable characters;
                the current binding is kept.
        """
        name = self._registry.resolve_name(name)
        existing = self._subscriptions.get(chat_id)
        client_id = self.client_id(chat_id)
        if existing is not None:
            state = self._registry.get(existing.conversation_name)
            bound = self._registry.get_client_conversation(client_id)
            if existing.conversation_name == name and state is not None and bound == name:
                return state
            self.unsubscribe(chat_id)

        state = await self._registry.subscribe(
            client_id, name, "bot", partial(self._enqueue, chat_id)
        )
        self._subscriptions[chat_id] = ChatSubscription(
            chat_id=chat_id, conversation_name=state.name
        )
        logger.info(
            "chat_subscribed",
            extra={"messaging.chat_id": chat_id, "conversation.name": state.name},
        )
        return state

    def unsubscribe(self, chat_id: int) -> None:
        sub = self._subscriptions.pop(chat_id, None)
        if sub is None:
            return
        self._registry.unsubscribe(self.client_id(chat_id))
        if sub.placeholder is not None and sub.placeholder.timeout is not None:
            sub.placeholder.timeout.cancel()
        if sub.worker is not None:
            sub.worker.cancel()
        logger.info(
            "chat_unsubscribed",
            extra={"messaging.chat_id": chat_id, "conversation.name": sub.conversation_name},
        )

    async def join(self) -> None:
        """Wait until every queued event has been rendered."""
        workers = [
            sub.worker
            for sub in self._subscriptions.values()
            if sub.worker is not None and not sub.worker.done()
        ]
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    async def close(self) -> None:
        for chat_id in list(self._subscriptions):
            self.unsubscribe(chat_id)
        for task in list(self._timeouts):
            task.cancel()

    # -- placeholders -------------------------------------------------------

    async def start_placeholder(
        self, chat_id: int, message_id: int, original_message_id: int | None = None
    ) -> None:
        """Mark ``message_id`` as the message to edit for the coming response."""
        sub = self._subscriptions.get(chat_id)
        if sub is None:
            return
        if sub.placeholder is not None and sub.placeholder.timeout is not None:
            sub.placeholder.timeout.cancel()

        placeholder = ActivePlaceholder(
            message_id=message_id,
            original_message_id=original_message_id or message_id,
            last_update=self._clock(),
        )
        placeholder.timeout = asyncio.get_running_loop().call_later(
            self._response_timeout, self._fire_timeout, chat_id, placeholder
        )
        sub.placeholder = placeholder
        await self._threads.track(chat_id, message_id, sub.conversation_name)

    async def fail_placeholder(self, chat_id: int, text: str) -> None:
        """Replace the active placeholder with ``text`` and release it."""
        sub = self._subscriptions.get(chat_id)
        if sub is None:
            return
        placeholder = await self._finish(sub)
        if placeholder is None:
            await self._provider.send_message(chat_id, text)
            return
        await self._provider.edit_message(chat_id, placeholder.message_id, text)

    def _fire_timeout(self, chat_id: int, placeholder: ActivePlaceholder) -> None:
        task = asyncio.create_task(self._on_timeout(chat_id, placeholder))
        self._timeouts.add(task)
        task.add_done_callback(self._timeouts.discard)

    async def _on_timeout(self, chat_id: int, placeholder: ActivePlaceholder) -> None:
        sub = self._subscriptions.get(chat_id)
        if sub is None or sub.placeholder is not placeholder:
            return
        sub.placeholder = None
        minutes = self._response_timeout / 60
        logger.warning(
            "response_timed_out",
            extra={"messaging.chat_id": chat_id, "conversation.name": sub.conversation_name},
        )
        content = placeholder.content or "Response timed out"
        await self._provider.edit_message(
            chat_id,
            placeholder.message_id,
            streaming_preview(f"{content}\n\n[Timed out after {minutes:g} minutes]"),
        )
        await self._remove_ack(chat_id, placeholder.original_message_id)

    async def _remove_ack(self, chat_id: int, message_id: int) -> None:
        if self._reaction_ack:
            await self._provider.clear_reaction(chat_id, message_id)

    async def _finish(self, sub: ChatSubscription) -> ActivePlaceholder | None:
        """Detach the placeholder, cancelling its timeout and acknowledgement."""
        placeholder, sub.placeholder = sub.placeholder, None
        if placeholder is None:
            return None
        if placeholder.timeout is not None:
            placeholder.timeout.cancel()
        await self._remove_ack(sub.chat_id, placeholder.original_message_id)
        return placeholder

    # -- event rendering ----------------------------------------------------

    def _enqueue(self, chat_id: int, event: ConversationEvent) -> None:
        sub = self._subscriptions.get(chat_id)
        if sub is None:
            # Raising drops this stale callback from the conversation
            raise LookupError(f"chat {chat_id} is no longer subscribed")
        sub.events.put_nowait(event)
        if sub.worker is None or sub.worker.done():
            sub.worker = asyncio.create_task(
                self._drain(sub), name=f"telegram-events:{chat_id}"
            )

    async def _drain(self, sub: ChatSubscription) -> None:
        while not sub.events.empty():
            event = sub.events.get_nowait()
            try:
                await self._handle_event(sub, event)
            except Exception:
                logger.exception(
                    "telegram_event_failed",
                    extra={"messaging.chat_id": sub.chat_id, "event.type": event.type},
                )

    async def _handle_event(self, sub: ChatSubscription, event: ConversationEvent) -> None:
        match event:
            case UserMessageEvent(source=source, content=content):
                if source != "bot":
                    await self._mirror_user_message(sub, content)
            case AssistantMessageEvent(content=content):
                await self._on_assistant_text(sub, content)
            case ToolUseEvent(tool_name=tool_name):
                await self._on_tool_use(sub, tool_name)
            case ResultEvent(success=success):
                await self._on_result(sub, success)
            case ErrorEvent(error=error):
                await self._on_error(sub, error)
            case FileDeliveryEvent():
                await self._deliver_file(sub, event)

    async def _on_assistant_text(self, sub: ChatSubscription, text: str) -> None:
        placeholder = sub.placeholder
        if placeholder is None:
            # Reply to a turn started elsewhere
            await self._send_new(sub, text, formatted=True)
            return

        placeholder.content = f"{placeholder.content}\n\n{text}" if placeholder.content else text
        now = self._clock()
        if now - placeholder.last_update > self._edit_interval:
            placeholder.last_update = now
            await self._provider.edit_message(
                sub.chat_id, placeholder.message_id, streaming_preview(placeholder.content)
            )

    async def _on_tool_use(self, sub: ChatSubscription, tool_name: str) -> None:
        placeholder = sub.placeholder
        if placeholder is None or placeholder.content:
            return
        now = self._clock()
        if now - placeholder.last_update > self._tool_status_interval:
            placeholder.last_update = now
            await self._provider.edit_message(
                sub.chat_id, placeholder.message_id, f"Working... (using {tool_name})"
            )

    async def _on_result(self, sub: ChatSubscription, success: bool) -> None:
        placeholder = await self._finish(sub)
        if placeholder is None:
            return

        content = placeholder.content
        if not content:
            text = "Done (no text response)" if success else "Stopped (no text response)"
            await self._provider.edit_message(sub.chat_id, placeholder.message_id, text)
        elif len(content) <= MAX_MESSAGE_LENGTH:
            await self._provider.edit_message(
                sub.chat_id, placeholder.message_id, content, formatted=True
            )
        else:
            await self._provider.delete_message(sub.chat_id, placeholder.message_id)
            await self._send_new(sub, content, formatted=True)

    async def _on_error(self, sub: ChatSubscription, error: str) -> None:
        if error == BUSY_MESSAGE:
            # Busy rejections are answered by the client that sent the message
            return
        placeholder = await self._finish(sub)
        if placeholder is None:
            await self._send_new(sub, f"Error: {error}")
            return
        await self._provider.edit_message(
            sub.chat_id, placeholder.message_id, streaming_preview(f"Error: {error}")
        )

    async def _send_new(
        self, sub: ChatSubscription, content: str, *, formatted: bool = False
    ) -> None:
        reply_to = self._reply_threads.get_reply_to_id(sub.chat_id)
        sent = await self._provider.send_long_message(
            sub.chat_id, content, reply_to=reply_to, formatted=formatted
        )
        for message_id in sent:
            await self._threads.track(sub.chat_id, message_id, sub.conversation_name)

    # -- files --------------------------------------------------------------

    def _resolve_media_url(self, url: str) -> Path | None:
        """Map an /api/media/... URL to an existing file inside the media root."""
        relative = url.removeprefix(f"{MEDIA_URL_PREFIX}/")
        root = self._registry.media_path.resolve()
        candidate = (root / relative).resolve()
        if not candidate.is_relative_to(root) or not candidate.is_file():
            return None
        return candidate

    async def _mirror_user_message(self, sub: ChatSubscription, content: str) -> None:
        tag = parse_attachment_tag(content)
        if tag is None:
            await self._send_new(sub, f"[Web] {content}")
            return

        path = self._resolve_media_url(tag.url)
        if path is None:
            await self._send_new(sub, f"[Web] {tag.text or f'Sent a {tag.kind}: {tag.name}'}")
            return

        await self._send_new(sub, f"[Web] {tag.text}" if tag.text else "[Web] Sent a file")
        await self._send_file(
            sub, path, _ATTACHMENT_KINDS.get(tag.kind, "document"), filename=tag.name
        )

    async def _deliver_file(self, sub: ChatSubscription, event: FileDeliveryEvent) -> None:
        path = Path(event.file_path)
        if not path.is_file():
            logger.warning(
                "delivery_file_missing",
                extra={"messaging.chat_id": sub.chat_id, "file.path": event.file_path},
            )
            return
        await self._send_file(
            sub, path, event.file_type, filename=event.filename, caption=event.caption
        )

    async def _send_file(
        self,
        sub: ChatSubscription,
        path: Path,
        kind: FileKind,
        *,
        filename: str | None = None,
        caption: str | None = None,
    ) -> None:
        try:
            message_id = await self._provider.send_file(
                sub.chat_id, path, kind, filename=filename, caption=caption
            )
        except (TelegramAPIError, OSError) as e:
            logger.warning(
                "file_send_failed",
                extra={
                    "messaging.chat_id": sub.chat_id,
                    "file.path": str(path),
                    "error.message": str(e),
                },
            )
            return
        await self._threads.track(sub.chat_id, message_id, sub.conversation_name)
