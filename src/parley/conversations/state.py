"""Per-conversation state machine.

A ConversationState owns one engine, the set of subscribed clients and the
single-flight processing flag. Exactly one turn is in flight at a time;
everything the engine emits is persisted (for assistant text) and fanned out
to every subscriber in emission order.

States:

    IDLE --send_message--> PROCESSING --completion--> IDLE
    PROCESSING --stream failure / failed or ignored stop--> RESETTING --> IDLE
    any --close--> TERMINATED
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from enum import StrEnum
from functools import partial
from pathlib import Path
from typing import Literal

from parley.conversations.errors import ConversationClosedError
from parley.conversations.events import (
    AssistantMessageEvent,
    CompactedEvent,
    CompactingEvent,
    ContextUpdateEvent,
    ConversationEvent,
    ErrorEvent,
    FileDeliveryEvent,
    ResultEvent,
    ToolUseEvent,
    UserMessageEvent,
)
from parley.conversations.outbox import OutboxWatcher, OutputFile
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
from parley.store import ConversationInfo, ConversationStore, Origin

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "Please wait for the current request to complete"

ClientType = Literal["web", "bot"]
EventCallback = Callable[[ConversationEvent], Awaitable[None] | None]


class ConversationStatus(StrEnum):
    IDLE = "idle"
    PROCESSING = "processing"
    RESETTING = "resetting"
    TERMINATED = "terminated"


@dataclass
class Subscriber:
    client_id: str
    client_type: ClientType
    callback: EventCallback


class EngineStreamEnded(Exception):
    """The engine's output stream finished while a turn was in flight."""


class ConversationState:
    """Live state for one loaded conversation."""

    def __init__(
        self,
        conversation: ConversationInfo,
        *,
        store: ConversationStore,
        engine_factory: EngineFactory,
        outbox: OutboxWatcher,
        max_context_tokens: int = 200_000,
        reset_delay: float = 0.1,
        stop_grace: float = 10.0,
    ):
        self._id = conversation.id
        self._name = conversation.name
        self._store = store
        self._engine_factory = engine_factory
        self._outbox = outbox
        self._max_context_tokens = max_context_tokens
        self._reset_delay = reset_delay
        self._stop_grace = stop_grace

        self._resume_token = conversation.resume_token
        self._engine: Engine = engine_factory(self._resume_token)
        self._subscribers: dict[str, Subscriber] = {}
        self._deliveries: set[asyncio.Future] = set()
        self._listener: asyncio.Task | None = None
        self._last_assistant_message_id: str | None = None
        self._turn = 0
        self._stop_timer: asyncio.TimerHandle | None = None
        self._forced_reset: asyncio.Task | None = None

        self._processing = False
        self._resetting = False
        self._closed = False

    def __repr__(self) -> str:
        return f"<ConversationState {self._name} {self.status}>"

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def resume_token(self) -> str | None:
        return self._resume_token

    @property
    def status(self) -> ConversationStatus:
        if self._closed:
            return ConversationStatus.TERMINATED
        if self._resetting:
            return ConversationStatus.RESETTING
        if self._processing:
            return ConversationStatus.PROCESSING
        return ConversationStatus.IDLE

    @property
    def is_busy(self) -> bool:
        return self.status in (ConversationStatus.PROCESSING, ConversationStatus.RESETTING)

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def is_listening(self) -> bool:
        return self._listener is not None and not self._listener.done()

    @property
    def has_subscribers(self) -> bool:
        return bool(self._subscribers)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _log_extra(self, **fields) -> dict:
        return {"conversation.name": self._name, **fields}

    # -- subscribers --------------------------------------------------------

    def subscribe(
        self, client_id: str, client_type: ClientType, callback: EventCallback
    ) -> None:
        self._subscribers[client_id] = Subscriber(client_id, client_type, callback)
        logger.debug(
            "client_subscribed",
            extra=self._log_extra(**{"client.id": client_id, "client.type": client_type}),
        )

    def unsubscribe(self, client_id: str) -> None:
        if self._subscribers.pop(client_id, None) is not None:
            logger.debug("client_unsubscribed", extra=self._log_extra(**{"client.id": client_id}))

    def _drop_subscriber(self, client_id: str, error: BaseException) -> None:
        if self._subscribers.pop(client_id, None) is not None:
            logger.warning(
                "subscriber_dropped",
                extra=self._log_extra(
                    **{"client.id": client_id, "error.message": str(error)}
                ),
            )

    def _delivery_done(self, client_id: str, future: asyncio.Future) -> None:
        self._deliveries.discard(future)
        if future.cancelled():
            return
        if (error := future.exception()) is not None:
            self._drop_subscriber(client_id, error)

    def _broadcast(self, event: ConversationEvent) -> None:
        """Deliver an event to every subscriber.

        A subscriber whose callback raises (or whose returned coroutine
        fails) is dropped; the others still receive the event.
        """
        for subscriber in list(self._subscribers.values()):
            try:
                result = subscriber.callback(event)
            except Exception as e:
                self._drop_subscriber(subscriber.client_id, e)
                continue
            if inspect.isawaitable(result):
                future = asyncio.ensure_future(result)
                self._deliveries.add(future)
                future.add_done_callback(partial(self._delivery_done, subscriber.client_id))

    def _broadcast_error(self, message: str) -> None:
        self._broadcast(ErrorEvent(session_name=self._name, error=message))

    # -- sending ------------------------------------------------------------

    async def send_message(self, content: str, origin: Origin = "web") -> bool:
        """Start a turn with ``content``.

        Returns False, after broadcasting an error event, when a turn is
        already in flight or the engine cannot accept the message.

        Raises:
            ConversationClosedError: If the conversation has been closed.
        """
        if self._closed:
            raise ConversationClosedError(self._name)
        if self.is_busy:
            logger.info("conversation_busy", extra=self._log_extra())
            self._broadcast_error(BUSY_MESSAGE)
            return False
        self._processing = True
        self._turn += 1

        try:
            self._outbox.snapshot()
            await self._store.create_message(self._id, "user", content, origin)
        except Exception:
            self._processing = False
            raise
        self._broadcast(
            UserMessageEvent(session_name=self._name, content=content, source=origin)
        )
        logger.info(
            "conversation_message",
            extra=self._log_extra(**{"message.origin": origin, "message.length": len(content)}),
        )

        if not await self._dispatch(content):
            self._processing = False
            return False

        self._ensure_listening()
        return True

    async def _dispatch(self, content: str) -> bool:
        """Push to the engine, resetting and retrying once on failure."""
        try:
            self._engine.push(content)
            return True
        except Exception as e:
            logger.warning(
                "engine_dispatch_failed", extra=self._log_extra(**{"error.message": str(e)})
            )

        await self._reset_engine()
        try:
            self._engine.push(content)
            return True
        except Exception as e:
            logger.exception("engine_dispatch_retry_failed", extra=self._log_extra())
            self._broadcast_error(f"Failed to send message: {e}")
            return False

    async def stop_generation(self) -> bool:
        """Interrupt the in-flight turn. Returns False when idle.

        If the engine accepts the interrupt but the turn has not finished
        within the stop grace period, the engine is discarded and the
        conversation returns to idle.
        """
        if self._closed or not self._processing:
            return False
        try:
            await self._engine.interrupt()
        except Exception as e:
            logger.warning(
                "engine_interrupt_failed", extra=self._log_extra(**{"error.message": str(e)})
            )
            await self._recover(f"Failed to stop generation: {e}")
            return True

        self._cancel_stop_timer()
        self._stop_timer = asyncio.get_running_loop().call_later(
            self._stop_grace, self._stop_grace_expired, self._turn
        )
        return True

    def _cancel_stop_timer(self) -> None:
        if self._stop_timer is not None:
            self._stop_timer.cancel()
            self._stop_timer = None

    def _stop_grace_expired(self, turn: int) -> None:
        self._stop_timer = None
        if self._closed or not self._processing or turn != self._turn:
            return
        logger.warning("engine_ignored_interrupt", extra=self._log_extra())
        self._forced_reset = asyncio.create_task(self._force_reset())

    async def _force_reset(self) -> None:
        """Drop an engine that ignored an interrupt, keeping the resume token."""
        self._broadcast_error("Engine did not stop in time; conversation was reset")
        await self._reset_engine()
        self._processing = False

    # -- output loop --------------------------------------------------------

    def _ensure_listening(self) -> None:
        if self.is_listening:
            return
        self._listener = asyncio.create_task(
            self._listen(self._engine), name=f"conversation:{self._name}"
        )

    async def _listen(self, engine: Engine) -> None:
        cancelled = False
        try:
            async with aclosing(engine.events()) as events:
                async for event in events:
                    await self._handle_event(event)

            if engine is self._engine and not self._closed:
                if self._processing:
                    raise EngineStreamEnded("Engine stopped before finishing the response")
                # Idle engine exited; replace it quietly, keeping the token
                logger.info("engine_stream_closed", extra=self._log_extra())
                await self._reset_engine()
        except asyncio.CancelledError:
            cancelled = True
            raise
        except Exception as e:
            if engine is self._engine and not self._closed:
                logger.exception("engine_stream_failed", extra=self._log_extra())
                await self._recover(str(e) or type(e).__name__)
        finally:
            if self._listener is asyncio.current_task():
                self._listener = None
            # A cancelled listener was replaced by a reset or close, which
            # owns the processing flag from here on
            if not cancelled:
                self._processing = False

    async def _handle_event(self, event: EngineEvent) -> None:
        match event:
            case SessionIdentity(token=token):
                await self._capture_resume_token(token)
            case CompactionStarted():
                self._broadcast(CompactingEvent(session_name=self._name))
            case CompactionFinished(pre_tokens=pre_tokens, trigger=trigger):
                self._broadcast(
                    CompactedEvent(
                        session_name=self._name, pre_tokens=pre_tokens, trigger=trigger
                    )
                )
            case AssistantText(text=text):
                message = await self._store.create_message(
                    self._id, "assistant", text, "engine"
                )
                self._last_assistant_message_id = message.id
                self._broadcast(AssistantMessageEvent(session_name=self._name, content=text))
            case ToolInvocation(tool_id=tool_id, name=name, input=tool_input):
                self._broadcast(
                    ToolUseEvent(
                        session_name=self._name,
                        tool_name=name,
                        tool_id=tool_id,
                        tool_input=tool_input,
                    )
                )
            case Completion():
                await self._complete(event)

    async def _capture_resume_token(self, token: str) -> None:
        if token == self._resume_token:
            return
        self._resume_token = token
        await self._store.update_resume_token(self._id, token)
        logger.debug("resume_token_updated", extra=self._log_extra())

    async def _complete(self, completion: Completion) -> None:
        if used := completion.context_tokens:
            self._broadcast(
                ContextUpdateEvent(
                    session_name=self._name,
                    used_tokens=used,
                    max_tokens=self._max_context_tokens,
                    used_percentage=round(used / self._max_context_tokens * 100),
                )
            )
        self._broadcast(
            ResultEvent(
                session_name=self._name,
                success=completion.success,
                cost=completion.cost_usd,
                duration=completion.duration_ms,
            )
        )
        self._cancel_stop_timer()
        for path in self._outbox.new_files():
            await self.deliver_file(path)
        self._processing = False
        logger.info(
            "conversation_turn_complete",
            extra=self._log_extra(**{"turn.success": completion.success}),
        )

    # -- files --------------------------------------------------------------

    async def deliver_file(
        self, path: Path, filename: str | None = None, caption: str | None = None
    ) -> OutputFile:
        """Broadcast a file to subscribers and attach it to the latest reply."""
        output = self._outbox.describe(path, filename)
        self._broadcast(
            FileDeliveryEvent(
                session_name=self._name,
                file_path=str(output.path),
                filename=output.filename,
                file_type=output.file_type,
                url=output.url,
                caption=caption,
            )
        )
        if output.url is not None:
            await self._attach_file(output)
        return output

    async def _attach_file(self, output: OutputFile) -> None:
        message_id = self._last_assistant_message_id
        if message_id is None:
            latest = await self._store.get_latest_message(self._id, role="assistant")
            if latest is None:
                return
            message_id = latest.id

        message = await self._store.get_message(message_id)
        if message is None:
            return
        files = list((message.metadata or {}).get("files", []))
        if any(f.get("url") == output.url for f in files):
            return
        files.append(output.to_metadata())
        await self._store.update_message_metadata(message_id, {"files": files})

    # -- recovery -----------------------------------------------------------

    async def _recover(self, error: str) -> None:
        """Tell subscribers, forget the resume token and start a fresh engine."""
        self._cancel_stop_timer()
        self._broadcast_error(error)
        self._resume_token = None
        try:
            await self._store.update_resume_token(self._id, None)
        except Exception as e:
            logger.warning(
                "resume_token_clear_failed",
                extra=self._log_extra(**{"error.message": str(e)}),
            )
        await self._reset_engine()
        self._processing = False

    async def _reset_engine(self) -> None:
        """Close the current engine and create a replacement.

        Concurrent resets collapse into the one already running.
        """
        if self._resetting:
            logger.debug("engine_reset_in_progress", extra=self._log_extra())
            return
        self._resetting = True
        try:
            listener, self._listener = self._listener, None
            if listener is not None and listener is not asyncio.current_task():
                listener.cancel()

            try:
                await self._engine.close()
            except Exception as e:
                logger.debug(
                    "engine_close_failed", extra=self._log_extra(**{"error.message": str(e)})
                )
            if self._reset_delay:
                await asyncio.sleep(self._reset_delay)

            if not self._closed:
                self._engine = self._engine_factory(self._resume_token)
                logger.info(
                    "engine_reset",
                    extra=self._log_extra(**{"engine.resumed": self._resume_token is not None}),
                )
        finally:
            self._resetting = False

    async def close(self) -> None:
        """Terminate the conversation. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._processing = False
        self._cancel_stop_timer()
        forced = self._forced_reset
        if forced is not None and forced is not asyncio.current_task():
            forced.cancel()

        listener, self._listener = self._listener, None
        if listener is not None and listener is not asyncio.current_task():
            listener.cancel()
        for future in list(self._deliveries):
            future.cancel()
        self._subscribers.clear()

        try:
            await self._engine.close()
        except Exception as e:
            logger.debug(
                "engine_close_failed", extra=self._log_extra(**{"error.message": str(e)})
            )
        logger.info("conversation_closed", extra=self._log_extra())
