"""Server command for running parley."""

import asyncio
import logging
from pathlib import Path
from typing import Annotated

import typer

logger = logging.getLogger(__name__)


def register(app: typer.Typer) -> None:
    """Register the serve command."""

    @app.command()
    def serve(
        config: Annotated[
            Path | None,
            typer.Option(
                "--config",
                "-c",
                help="Path to configuration file",
            ),
        ] = None,
        host: Annotated[
            str | None,
            typer.Option(
                "--host",
                "-h",
                help="Host to bind to (overrides config)",
            ),
        ] = None,
        port: Annotated[
            int | None,
            typer.Option(
                "--port",
                "-p",
                help="Port to bind to (overrides config)",
            ),
        ] = None,
        no_telegram: Annotated[
            bool,
            typer.Option(
                "--no-telegram",
                help="Do not start the Telegram bot even if configured",
            ),
        ] = False,
    ) -> None:
        """Start the parley server."""
        try:
            asyncio.run(_run_server(config, host, port, no_telegram))
        except KeyboardInterrupt:
            # Logging may not be configured yet
            print("\nServer stopped")


async def _run_server(
    config_path: Path | None = None,
    host: str | None = None,
    port: int | None = None,
    no_telegram: bool = False,
) -> None:
    from parley.logging import configure_logging

    configure_logging(use_rich=True, log_to_file=True)

    from parley.config import load_config
    from parley.db import Database
    from parley.engine import create_engine_factory, load_system_prompt
    from parley.observability import init_sentry
    from parley.providers.telegram import TelegramProvider
    from parley.server import ServerRunner, create_app

    logger.info("config_loading")
    parley_config = load_config(config_path)

    if init_sentry(parley_config.sentry, server_mode=True):
        logger.info("sentry_initialized")

    database = Database(database_path=parley_config.storage.database_path)
    engine_factory = create_engine_factory(parley_config.engine, load_system_prompt())

    telegram_provider = None
    telegram = parley_config.telegram
    if not no_telegram and telegram and telegram.bot_token:
        logger.info("telegram_provider_setup")
        telegram_provider = TelegramProvider(
            bot_token=telegram.bot_token.get_secret_value(),
            allowed_users=telegram.allowed_users,
            link_preview=telegram.link_preview,
        )

    fastapi_app = create_app(
        parley_config,
        database,
        engine_factory,
        telegram_provider=telegram_provider,
    )

    server = parley_config.server
    runner = ServerRunner(
        fastapi_app,
        host=host or server.host,
        port=port or server.port,
        heartbeat_seconds=server.heartbeat_seconds,
        telegram_provider=telegram_provider,
    )
    logger.info(
        "server_listening",
        extra={"server.host": host or server.host, "server.port": port or server.port},
    )
    await runner.run()
