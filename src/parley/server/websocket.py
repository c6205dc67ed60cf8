"""WebSocket hub for web clients.

Each connection gets a client id and an outgoing queue drained by its own
pump task, so conversation events (delivered synchronously by the
registry) are written to the socket in order without blocking the
conversation.
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Annotated, Any, Literal

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import Field, TypeAdapter, ValidationError

from parley.conversations import (
    ConversationEvent,
    ConversationRegistry,
    ConversationState,
    ParleyError,
)
from parley.store import ChatMessage, ConversationInfo
from parley.store.types import WireModel

logger = logging.getLogger(__name__)

INVALID_MESSAGE = "Invalid message format"


# -- client -> server -------------------------------------------------------


class SubscribeRequest(WireModel):
    type: Literal["subscribe"]
    session_name: str


class ChatRequest(WireModel):
    type: Literal["chat"]
    session_name: str
    content: str = Field(min_length=1)


class SwitchSessionRequest(WireModel):
    type: Literal["switch_session"]
    session_name: str


class StopRequest(WireModel):
    type: Literal["stop"]
    session_name: str | None = None


class PingRequest(WireModel):
    type: Literal["ping"]


ClientRequest = Annotated[
    SubscribeRequest | ChatRequest | SwitchSessionRequest | StopRequest | PingRequest,
    Field(discriminator="type"),
]

client_request_adapter: TypeAdapter[ClientRequest] = TypeAdapter(ClientRequest)


# -- server -> client -------------------------------------------------------


class ConnectedMessage(WireModel):
    type: Literal["connected"] = "connected"
    client_id: str
    message: str = "Connected to parley"


class HistoryMessage(WireModel):
    type: Literal["history"] = "history"
    session_name: str
    messages: list[ChatMessage]


class SessionSwitchedMessage(WireModel):
    type: Literal["session_switched"] = "session_switched"
    session_name: str
    session: ConversationInfo | None = None


class SessionsListMessage(WireModel):
    type: Literal["sessions_list"] = "sessions_list"
    sessions: list[ConversationInfo]
    archived_sessions: list[ConversationInfo]


class PongMessage(WireModel):
    type: Literal["pong"] = "pong"
    timestamp: int


class ErrorMessage(WireModel):
    type: Literal["error"] = "error"
    error: str


class WebSocketConnection:
    """One connected web client."""

    def __init__(self, websocket: WebSocket, client_id: str | None = None):
        self.websocket = websocket
        self.client_id = client_id or str(uuid.uuid4())
        self._outgoing: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._pump: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self._pump = asyncio.create_task(self._run_pump(), name=f"ws:{self.client_id}")

    def send(self, message: WireModel) -> None:
        if self._closed:
            raise ConnectionError(f"websocket {self.client_id} is closed")
        self._outgoing.put_nowait(message.to_wire())

    def deliver(self, event: ConversationEvent) -> None:
        """Conversation subscriber callback."""
        self.send(event)

    async def _run_pump(self) -> None:
        while (payload := await self._outgoing.get()) is not None:
            try:
                await self.websocket.send_json(payload)
            except Exception as e:
                logger.debug(
                    "websocket_send_failed",
                    extra={"client.id": self.client_id, "error.message": str(e)},
                )
                self._closed = True
                return

    async def close(self) -> None:
        """Flush what is queued, then stop the pump."""
        if self._closed and (self._pump is None or self._pump.done()):
            return
        self._closed = True
        self._outgoing.put_nowait(None)
        if self._pump is not None:
            await self._pump


class WebSocketHub:
    """Routes web clients to conversations through the registry."""

    def __init__(self, registry: ConversationRegistry):
        self._registry = registry
        self._connections: dict[str, WebSocketConnection] = {}
        self._pending: set[asyncio.Task] = set()
        self._remove_listener = registry.add_listener(self._on_conversations_changed)

    @property
    def connections(self) -> list[WebSocketConnection]:
        return list(self._connections.values())

    def __len__(self) -> int:
        return len(self._connections)

    async def handle(self, websocket: WebSocket) -> None:
        """Serve one socket until the client disconnects."""
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        connection.start()
        self._connections[connection.client_id] = connection
        logger.info("websocket_connected", extra={"client.id": connection.client_id})
        connection.send(ConnectedMessage(client_id=connection.client_id))

        try:
            while not connection.closed:
                raw = await websocket.receive_text()
                await self.handle_message(connection, raw)
        except (WebSocketDisconnect, ConnectionError):
            pass
        finally:
            await self.disconnect(connection)

    async def disconnect(self, connection: WebSocketConnection) -> None:
        self._connections.pop(connection.client_id, None)
        self._registry.unsubscribe(connection.client_id)
        await connection.close()
        await self._registry.cleanup()
        logger.info("websocket_disconnected", extra={"client.id": connection.client_id})

    async def handle_message(self, connection: WebSocketConnection, raw: str) -> None:
        try:
            request = client_request_adapter.validate_python(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.debug(
                "websocket_invalid_message",
                extra={"client.id": connection.client_id, "error.message": str(e)},
            )
            connection.send(ErrorMessage(error=INVALID_MESSAGE))
            return

        try:
            match request:
                case SubscribeRequest(session_name=name):
                    state = await self._subscribe(connection, name)
                    await self._send_history(connection, state.name)
                case ChatRequest(session_name=name, content=content):
                    await self._chat(connection, name, content)
                case SwitchSessionRequest(session_name=name):
                    state = await self._subscribe(connection, name)
                    info = await self._registry.store.get_conversation(state.name)
                    connection.send(SessionSwitchedMessage(session_name=state.name, session=info))
                    await self._send_history(connection, state.name)
                case StopRequest(session_name=name):
                    await self._stop(connection, name)
                case PingRequest():
                    connection.send(PongMessage(timestamp=int(time.time() * 1000)))
        except ParleyError as e:
            connection.send(ErrorMessage(error=str(e)))

    async def _subscribe(self, connection: WebSocketConnection, name: str) -> ConversationState:
        state = await self._registry.subscribe(
            connection.client_id, name, "web", connection.deliver
        )
        logger.debug(
            "websocket_subscribed",
            extra={"client.id": connection.client_id, "conversation.name": state.name},
        )
        return state

    async def _send_history(self, connection: WebSocketConnection, name: str) -> None:
        messages = await self._registry.get_messages(name)
        connection.send(HistoryMessage(session_name=name, messages=messages))

    async def _chat(self, connection: WebSocketConnection, name: str, content: str) -> None:
        target = self._registry.resolve_name(name)
        current = self._registry.get_client_conversation(connection.client_id)
        if current != target or current not in self._registry:
            await self._subscribe(connection, name)
        # Busy rejections reach this client as an error event
        await self._registry.send(connection.client_id, content, "web")

    async def _stop(self, connection: WebSocketConnection, name: str | None) -> None:
        name = name or self._registry.get_client_conversation(connection.client_id)
        state = self._registry.get(name) if name else None
        if state is not None:
            await state.stop_generation()

    # -- conversation list --------------------------------------------------

    def _on_conversations_changed(self) -> None:
        if not self._connections:
            return
        task = asyncio.get_running_loop().create_task(self.broadcast_sessions_list())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def broadcast_sessions_list(self) -> int:
        """Send the current conversation lists to every connection."""
        message = SessionsListMessage(
            sessions=await self._registry.list_conversations(),
            archived_sessions=await self._registry.list_conversations(archived=True),
        )
        sent = 0
        for connection in self.connections:
            try:
                connection.send(message)
            except ConnectionError:
                continue
            sent += 1
        return sent

    async def close(self) -> None:
        self._remove_listener()
        for task in list(self._pending):
            task.cancel()
        for connection in self.connections:
            await self.disconnect(connection)
