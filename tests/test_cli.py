"""Tests for CLI commands."""

import asyncio
from types import SimpleNamespace

import pytest

from parley.cli.app import app
from parley.db import Database
from parley.store import ConversationStore


@pytest.fixture
def storage_config(tmp_path):
    """Config file whose database lives in the test directory."""
    path = tmp_path / "config.toml"
    path.write_text(
        f'[storage]\ndatabase_path = "{tmp_path / "parley.db"}"\n'
        f'media_path = "{tmp_path / "media"}"\n'
    )
    return path


def _seed(database_path, *names, archive=()):
    async def seed():
        database = Database(database_path=database_path)
        await database.connect()
        await database.create_all()
        store = ConversationStore(database)
        for name in names:
            await store.create_conversation(name)
        for name in archive:
            await store.archive(name)
        await store.pin(names[0])
        await database.disconnect()

    asyncio.run(seed())


class TestConversationsCommand:
    def test_list(self, cli_runner, storage_config, tmp_path):
        _seed(tmp_path / "parley.db", "research", "groceries", "old", archive=["old"])

        result = cli_runner.invoke(
            app, ["conversations", "list", "--config", str(storage_config)]
        )

        assert result.exit_code == 0
        assert "research" in result.stdout
        assert "groceries" in result.stdout
        assert "old" not in result.stdout

    def test_list_archived(self, cli_runner, storage_config, tmp_path):
        _seed(tmp_path / "parley.db", "research", "old", archive=["old"])

        result = cli_runner.invoke(
            app, ["conversations", "list", "--archived", "--config", str(storage_config)]
        )

        assert result.exit_code == 0
        assert "Archived conversations" in result.stdout
        assert "old" in result.stdout

    def test_list_empty(self, cli_runner, storage_config):
        result = cli_runner.invoke(
            app, ["conversations", "list", "--config", str(storage_config)]
        )

        assert result.exit_code == 0
        assert "No conversations" in result.stdout

    def test_missing_config(self, cli_runner, tmp_path):
        result = cli_runner.invoke(
            app, ["conversations", "list", "--config", str(tmp_path / "missing.toml")]
        )

        assert result.exit_code == 1
        assert "not found" in result.stdout


class TestDatabaseCommand:
    @pytest.fixture
    def alembic(self, monkeypatch):
        alembic = SimpleNamespace(calls=[], returncode=0)

        def fake_run(args, capture_output=False):
            alembic.calls.append(args)
            return SimpleNamespace(returncode=alembic.returncode)

        monkeypatch.setattr("parley.cli.commands.database.subprocess.run", fake_run)
        return alembic

    def test_migrate(self, cli_runner, alembic):
        result = cli_runner.invoke(app, ["db", "migrate"])

        assert result.exit_code == 0
        assert alembic.calls[0][-3:] == ["alembic", "upgrade", "head"]
        assert "completed" in result.stdout

    def test_migrate_failure(self, cli_runner, alembic):
        alembic.returncode = 1

        result = cli_runner.invoke(app, ["db", "migrate", "-r", "001"])

        assert result.exit_code == 1
        assert alembic.calls[0][-1] == "001"
        assert "Migration failed" in result.stdout

    def test_status(self, cli_runner, alembic):
        result = cli_runner.invoke(app, ["db", "status"])

        assert result.exit_code == 0
        assert alembic.calls[0][-1] == "current"


class TestServeCommand:
    def test_help_lists_options(self, cli_runner):
        result = cli_runner.invoke(app, ["serve", "--help"])

        assert result.exit_code == 0
        assert "--no-telegram" in result.stdout
