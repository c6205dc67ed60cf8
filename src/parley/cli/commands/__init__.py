"""CLI command modules."""

from parley.cli.commands import conversations, database, serve

__all__ = [
    "conversations",
    "database",
    "serve",
]
