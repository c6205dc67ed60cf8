"""Shared console utilities for CLI commands."""

from rich.console import Console
from rich.table import Table

console = Console()


def error(msg: str) -> None:
    console.print(f"[red]{msg}[/red]")


def success(msg: str) -> None:
    console.print(f"[green]{msg}[/green]")


def dim(msg: str) -> None:
    console.print(f"[dim]{msg}[/dim]")


def create_table(title: str, columns: list[tuple[str, str | dict]]) -> Table:
    """Create a table from (name, style) or (name, column kwargs) pairs."""
    table = Table(title=title)
    for name, style_or_kwargs in columns:
        if isinstance(style_or_kwargs, dict):
            table.add_column(name, **style_or_kwargs)
        else:
            table.add_column(name, style=style_or_kwargs)
    return table
