"""Tests for the FastAPI application wiring."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from parley.db import Database
from parley.providers.telegram.handlers import UpdateDedupMiddleware
from parley.server import ParleyServer, create_app


@pytest.fixture
def database(parley_config):
    return Database(database_path=parley_config.storage.database_path)


class TestHealth:
    def test_health(self, parley_config, database, engines):
        app = create_app(parley_config, database, engines)

        with TestClient(app) as client:
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_ready_counts(self, parley_config, database, engines):
        app = create_app(parley_config, database, engines)

        with TestClient(app) as client:
            response = client.get("/ready")

        assert response.json() == {"status": "ready", "conversations": 0, "clients": 0}


class TestWebSocketEndpoint:
    @staticmethod
    def _receive(ws, message_type: str) -> dict:
        """Next message of a type, skipping conversation list broadcasts."""
        while (message := ws.receive_json())["type"] != message_type:
            assert message["type"] == "sessions_list"
        return message

    def test_subscribe_over_socket(self, parley_config, database, engines):
        app = create_app(parley_config, database, engines)

        with TestClient(app) as client, client.websocket_connect("/ws") as ws:
            assert self._receive(ws, "connected")["message"] == "Connected to parley"

            ws.send_json({"type": "subscribe", "sessionName": "default"})
            history = self._receive(ws, "history")
            assert history == {"type": "history", "sessionName": "default", "messages": []}

            ws.send_json({"type": "ping"})
            self._receive(ws, "pong")

            ready = client.get("/ready").json()
            assert ready["conversations"] == 1
            assert ready["clients"] == 1


class TestLifespan:
    def test_creates_media_directory(self, parley_config, database, engines):
        server = ParleyServer(parley_config, database, engines)

        assert parley_config.storage.media_path.is_dir()
        assert server.app.state.registry is server.registry
        assert server.app.state.hub is server.hub

    def test_telegram_handler_registered_and_stopped(
        self, parley_config, database, engines
    ):
        provider = MagicMock()
        provider.stop = AsyncMock()
        server = ParleyServer(parley_config, database, engines, telegram_provider=provider)

        with TestClient(server.app):
            (middleware,), _ = provider.dispatcher.update.outer_middleware.call_args
            assert isinstance(middleware, UpdateDedupMiddleware)

        provider.stop.assert_awaited_once()

    def test_without_telegram(self, parley_config, database, engines):
        server = ParleyServer(parley_config, database, engines)

        with TestClient(server.app):
            pass

        assert server._telegram_handler is None
