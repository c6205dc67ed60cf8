"""Command-line interface."""

from parley.cli.app import app

__all__ = ["app"]
