"""Shared test fixtures and fakes."""

import asyncio
from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest

from parley.config.models import (
    EngineConfig,
    ParleyConfig,
    StorageConfig,
    TelegramConfig,
)
from parley.conversations import (
    ConversationEvent,
    ConversationRegistry,
    ConversationState,
    OutboxWatcher,
)
from parley.db import Database
from parley.engine import EngineEvent
from parley.store import ConversationStore

# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def config_toml_content() -> str:
    return """
[engine]
model = "sonnet"
max_turns = 20

[telegram]
bot_token = "123456789:test-token"
allowed_users = ["@alice", "42"]
reply_mode = "all"

[server]
port = 4000
"""


@pytest.fixture
def config_file(tmp_path: Path, config_toml_content: str) -> Path:
    config_path = tmp_path / "config.toml"
    config_path.write_text(config_toml_content)
    return config_path


@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner with colors disabled."""
    from typer.testing import CliRunner

    return CliRunner(env={"NO_COLOR": "1"})


@pytest.fixture
def parley_config(tmp_path: Path) -> ParleyConfig:
    return ParleyConfig(
        engine=EngineConfig(reset_delay_seconds=0),
        telegram=TelegramConfig(bot_token="123456789:test-token"),
        storage=StorageConfig(
            database_path=tmp_path / "data" / "parley.db",
            media_path=tmp_path / "media",
        ),
    )


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """Temporary SQLite database with all tables created."""
    db = Database(database_path=tmp_path / "test.db")
    await db.connect()
    await db.create_all()

    yield db

    await db.disconnect()


@pytest.fixture
def store(database: Database) -> ConversationStore:
    return ConversationStore(database)


@pytest.fixture
def media_path(tmp_path: Path) -> Path:
    path = tmp_path / "media"
    path.mkdir()
    return path


# =============================================================================
# Engine Fakes
# =============================================================================

_END = object()


class FakeEngine:
    """In-memory engine. Tests script its output with emit/finish/crash."""

    def __init__(self, resume_token: str | None = None, fail_push: bool = False):
        self.resume_token = resume_token
        self.fail_push = fail_push
        self.fail_interrupt = False
        self.pushed: list[str] = []
        self.interrupts = 0
        self.closed = False
        self._output: asyncio.Queue = asyncio.Queue()

    def push(self, text: str) -> None:
        if self.fail_push:
            raise RuntimeError("engine unavailable")
        if not self.closed:
            self.pushed.append(text)

    def emit(self, *events: EngineEvent) -> None:
        for event in events:
            self._output.put_nowait(event)

    def finish(self) -> None:
        """End the output stream."""
        self._output.put_nowait(_END)

    def crash(self, error: Exception) -> None:
        self._output.put_nowait(error)

    async def events(self):
        while True:
            item = await self._output.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def interrupt(self) -> None:
        if self.fail_interrupt:
            raise RuntimeError("interrupt failed")
        self.interrupts += 1

    async def close(self) -> None:
        self.closed = True
        self._output.put_nowait(_END)


class FakeEngineFactory:
    """EngineFactory that keeps every engine it builds."""

    def __init__(self) -> None:
        self.engines: list[FakeEngine] = []
        self.fail_push = False

    def __call__(self, resume_token: str | None) -> FakeEngine:
        engine = FakeEngine(resume_token, fail_push=self.fail_push)
        self.engines.append(engine)
        return engine

    @property
    def current(self) -> FakeEngine:
        return self.engines[-1]


@pytest.fixture
def engines() -> FakeEngineFactory:
    return FakeEngineFactory()


# =============================================================================
# Conversation Fixtures
# =============================================================================


class Recorder:
    """Subscriber callback that records every event it receives."""

    def __init__(self) -> None:
        self.events: list[ConversationEvent] = []

    def __call__(self, event: ConversationEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.type for event in self.events]

    def of_type(self, event_type: str) -> list[ConversationEvent]:
        return [event for event in self.events if event.type == event_type]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_recorder() -> Callable[[], Recorder]:
    return Recorder


@pytest.fixture
def stop_grace() -> float:
    """Seconds an interrupted turn may run on; parametrize to shorten."""
    return 10.0


@pytest.fixture
async def conversation(
    store: ConversationStore,
    engines: FakeEngineFactory,
    media_path: Path,
    stop_grace: float,
) -> AsyncGenerator[ConversationState, None]:
    info = await store.create_conversation("default")
    state = ConversationState(
        info,
        store=store,
        engine_factory=engines,
        outbox=OutboxWatcher(media_path),
        max_context_tokens=1000,
        reset_delay=0,
        stop_grace=stop_grace,
    )

    yield state

    await state.close()


@pytest.fixture
async def registry(
    store: ConversationStore, engines: FakeEngineFactory, media_path: Path
) -> AsyncGenerator[ConversationRegistry, None]:
    registry = ConversationRegistry(
        store, engines, media_path=media_path, max_context_tokens=1000, reset_delay=0
    )

    yield registry

    await registry.close_all()


@pytest.fixture
def wait_until() -> Callable:
    """Poll a predicate until it holds, failing after a timeout."""

    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return wait
