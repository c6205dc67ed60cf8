"""Runtime server orchestration."""

from __future__ import annotations

import asyncio
import logging
import os
import signal as signal_module
import time
from typing import TYPE_CHECKING, Protocol

import uvicorn

if TYPE_CHECKING:
    from fastapi import FastAPI


logger = logging.getLogger(__name__)


class PollingProvider(Protocol):
    """Provider contract the runner needs: long polling it can stop."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


TELEGRAM_HANDLER_POLL_INTERVAL_SECONDS = 0.1
TELEGRAM_HANDLER_WAIT_TIMEOUT_SECONDS = 60.0


class ServerRunner:
    """Runs uvicorn and, optionally, Telegram polling with shared shutdown.

    Polling starts only after the app's lifespan has registered the Telegram
    handlers, so no update reaches an unwired dispatcher.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        host: str,
        port: int,
        heartbeat_seconds: float = 30.0,
        telegram_provider: PollingProvider | None = None,
    ) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._heartbeat_seconds = heartbeat_seconds
        self._telegram_provider = telegram_provider

    def build_server(self) -> uvicorn.Server:
        config = uvicorn.Config(
            self._app,
            host=self._host,
            port=self._port,
            log_level="info",
            log_config=None,  # keep our logging setup
            # Dead web clients are found by protocol-level pings
            ws_ping_interval=self._heartbeat_seconds,
            ws_ping_timeout=self._heartbeat_seconds,
        )
        return uvicorn.Server(config)

    async def _wait_for_handler(self, server_task: asyncio.Task) -> bool:
        deadline = time.monotonic() + TELEGRAM_HANDLER_WAIT_TIMEOUT_SECONDS
        while not server_task.done():
            if await self._app.state.server.get_telegram_handler():
                return True
            if time.monotonic() >= deadline:
                logger.error("telegram_handler_timeout")
                return False
            await asyncio.sleep(TELEGRAM_HANDLER_POLL_INTERVAL_SECONDS)
        logger.error("telegram_handler_unavailable")
        return False

    async def run(self) -> None:
        server = self.build_server()
        telegram_task: asyncio.Task | None = None

        loop = asyncio.get_running_loop()
        shutdown_count = 0

        def handle_signal() -> None:
            nonlocal shutdown_count
            shutdown_count += 1

            if shutdown_count == 1:
                logger.info("server_shutting_down")
                server.should_exit = True
                provider = self._telegram_provider
                if provider:
                    loop.call_soon(lambda: asyncio.create_task(provider.stop()))
                if telegram_task and not telegram_task.done():
                    telegram_task.cancel()
            else:
                logger.warning("server_force_shutdown")
                os._exit(1)

        for sig in (signal_module.SIGTERM, signal_module.SIGINT):
            loop.add_signal_handler(sig, handle_signal)

        if not self._telegram_provider:
            await server.serve()
            return

        logger.info("telegram_polling_starting")
        server_task = asyncio.create_task(server.serve())
        provider = self._telegram_provider

        async def start_telegram() -> None:
            if not await self._wait_for_handler(server_task):
                return
            try:
                await provider.start()
            except asyncio.CancelledError:
                logger.info("telegram_polling_cancelled")

        telegram_task = asyncio.create_task(start_telegram())
        # Wait for uvicorn's graceful shutdown even after polling is cancelled
        await asyncio.gather(server_task, telegram_task, return_exceptions=True)
