"""Main CLI application."""

import typer

from parley.cli.commands import conversations, database, serve

app = typer.Typer(
    name="parley",
    help="parley - named agent conversations over web and Telegram",
    no_args_is_help=True,
)

serve.register(app)
conversations.register(app)
database.register(app)


if __name__ == "__main__":
    app()
