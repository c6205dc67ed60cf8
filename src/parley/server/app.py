"""FastAPI application for the parley server."""

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, WebSocket

from parley.conversations import ConversationRegistry
from parley.server.routes import health
from parley.server.websocket import WebSocketHub
from parley.store import ConversationStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from parley.config import ParleyConfig
    from parley.db import Database
    from parley.engine import EngineFactory
    from parley.providers.telegram import TelegramMessageHandler, TelegramProvider

logger = logging.getLogger(__name__)


class ParleyServer:
    """Main server application.

    Wires the conversation registry to its transports: the WebSocket hub for
    web clients and, when configured, the Telegram handler.
    """

    def __init__(
        self,
        config: "ParleyConfig",
        database: "Database",
        engine_factory: "EngineFactory",
        telegram_provider: "TelegramProvider | None" = None,
    ):
        self._config = config
        self._database = database
        self._telegram_provider = telegram_provider
        self._telegram_handler: TelegramMessageHandler | None = None

        media_path = config.storage.media_path
        media_path.mkdir(parents=True, exist_ok=True)
        self._registry = ConversationRegistry(
            ConversationStore(database),
            engine_factory,
            media_path=media_path,
            max_context_tokens=config.engine.max_context_tokens,
            reset_delay=config.engine.reset_delay_seconds,
            stop_grace=config.engine.stop_grace_seconds,
        )
        self._hub = WebSocketHub(self._registry)

        self._app = self._create_app()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def registry(self) -> ConversationRegistry:
        return self._registry

    @property
    def hub(self) -> WebSocketHub:
        return self._hub

    def _create_app(self) -> FastAPI:
        @asynccontextmanager
        async def lifespan(app: FastAPI) -> "AsyncIterator[None]":
            logger.info("server_starting")
            await self._database.connect()
            await self._database.create_all()

            if self._telegram_provider:
                from parley.providers.telegram import TelegramMessageHandler

                self._telegram_handler = TelegramMessageHandler(
                    self._telegram_provider,
                    self._registry,
                    self._config.require_telegram(),
                    media_path=self._registry.media_path,
                )
                self._telegram_handler.register()

            yield

            logger.info("server_stopping")
            if self._telegram_provider:
                await self._telegram_provider.stop()
            if self._telegram_handler:
                await self._telegram_handler.close()
            await self._hub.close()
            await self._registry.close_all()
            await self._database.disconnect()

        app = FastAPI(
            title="parley",
            description="Conversation server for a coding agent",
            version="0.1.0",
            lifespan=lifespan,
        )

        app.state.server = self
        app.state.registry = self._registry
        app.state.hub = self._hub

        app.include_router(health.router, tags=["health"])

        @app.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket) -> None:
            await self._hub.handle(websocket)

        return app

    async def get_telegram_handler(self) -> "TelegramMessageHandler | None":
        return self._telegram_handler


def create_app(
    config: "ParleyConfig",
    database: "Database",
    engine_factory: "EngineFactory",
    telegram_provider: "TelegramProvider | None" = None,
) -> FastAPI:
    """Create the FastAPI application."""
    server = ParleyServer(
        config,
        database,
        engine_factory,
        telegram_provider=telegram_provider,
    )
    return server.app
