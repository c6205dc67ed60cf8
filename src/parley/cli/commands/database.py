"""Database management commands."""

import subprocess
import sys
from typing import Annotated

import typer

from parley.cli.console import console, error, success


def _alembic(*args: str) -> int:
    return subprocess.run(
        [sys.executable, "-m", "alembic", *args],
        capture_output=False,
    ).returncode


def register(app: typer.Typer) -> None:
    """Register the db command group."""
    db_app = typer.Typer(help="Database management commands")

    @db_app.command("migrate")
    def db_migrate(
        revision: Annotated[
            str,
            typer.Option(
                "--revision",
                "-r",
                help="Target revision",
            ),
        ] = "head",
    ) -> None:
        """Run database migrations."""
        console.print(f"[bold]Running migrations to {revision}...[/bold]")
        if _alembic("upgrade", revision) != 0:
            error("Migration failed")
            raise typer.Exit(1)
        success("Migrations completed successfully")

    @db_app.command("status")
    def db_status() -> None:
        """Show the current migration revision."""
        _alembic("current")

    app.add_typer(db_app, name="db")
