"""Conversation inspection commands."""

import asyncio
from pathlib import Path
from typing import Annotated

import typer

from parley.cli.console import console, create_table, dim, error
from parley.store import ConversationInfo


def register(app: typer.Typer) -> None:
    """Register the conversations command group."""
    conversations_app = typer.Typer(help="Inspect conversations")

    @conversations_app.command("list")
    def list_conversations(
        archived: Annotated[
            bool,
            typer.Option("--archived", help="Show archived conversations instead"),
        ] = False,
        config: Annotated[
            Path | None,
            typer.Option("--config", "-c", help="Path to configuration file"),
        ] = None,
    ) -> None:
        """List conversations, pinned first, most recently active next."""
        try:
            rows = asyncio.run(_list(config, archived))
        except FileNotFoundError as e:
            error(str(e))
            raise typer.Exit(1) from None

        if not rows:
            dim("No archived conversations" if archived else "No conversations")
            return
        console.print(render_table(rows, archived=archived))

    app.add_typer(conversations_app, name="conversations")


def render_table(rows: list[ConversationInfo], *, archived: bool = False):
    table = create_table(
        "Archived conversations" if archived else "Conversations",
        [
            ("Name", "cyan"),
            ("Title", ""),
            ("Pinned", {"justify": "center"}),
            ("Created by", "dim"),
            ("Updated", "dim"),
        ],
    )
    for row in rows:
        table.add_row(
            row.name,
            row.title or "",
            "*" if row.pinned else "",
            row.created_by,
            row.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    return table


async def _list(config_path: Path | None, archived: bool) -> list[ConversationInfo]:
    from parley.config import load_config
    from parley.db import Database
    from parley.store import ConversationStore

    config = load_config(config_path) if config_path else _load_or_default()
    database = Database(database_path=config.storage.database_path)
    await database.connect()
    try:
        await database.create_all()
        return await ConversationStore(database).list_conversations(archived=archived)
    finally:
        await database.disconnect()


def _load_or_default():
    from parley.config import get_default_config, load_config

    try:
        return load_config()
    except FileNotFoundError:
        return get_default_config()
