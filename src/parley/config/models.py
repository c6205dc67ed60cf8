"""Configuration models using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr

from parley.config.paths import get_database_path, get_media_path

DEFAULT_ALLOWED_TOOLS = [
    "Bash",
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "WebSearch",
    "WebFetch",
    "TodoWrite",
]


class EngineConfig(BaseModel):
    """Configuration for the agent engine process."""

    model: str = "opus"
    allowed_tools: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    max_turns: int = 100
    cwd: Path | None = None
    cli_path: str | None = None
    max_context_tokens: int = 200_000
    # Pause between closing a broken engine and spawning its replacement
    reset_delay_seconds: float = 0.1
    # How long an interrupted turn may keep running before its engine is dropped
    stop_grace_seconds: float = 10.0


class ForumTopicConfig(BaseModel):
    """Routing for one forum topic. Unlisted topics get their own conversation."""

    chat_id: int
    topic_id: int
    conversation: str | None = None
    enabled: bool = True


class TelegramConfig(BaseModel):
    """Configuration for Telegram provider."""

    bot_token: SecretStr | None = None
    allowed_users: list[str] = []
    reaction_ack: bool = True
    fragment_buffer_ms: int = 500
    fragment_threshold: int = 4000
    media_group_buffer_ms: int = 1000
    link_preview: bool = True
    reply_mode: Literal["off", "first", "all"] = "first"
    response_timeout_minutes: float = 60
    thread_mapping_ttl_days: int = 30
    update_tracker_capacity: int = 1000
    default_conversation: str = "default"
    # Groups answer only when the bot is @mentioned or replied to
    group_policy: Literal["open", "allowlist", "disabled"] = "allowlist"
    allowed_groups: list[int] = []
    group_policies: dict[int, Literal["open", "allowlist", "disabled"]] = {}
    forum_topics: list[ForumTopicConfig] = []


class ServerConfig(BaseModel):
    """Configuration for HTTP server."""

    host: str = "127.0.0.1"
    port: int = 3847
    heartbeat_seconds: float = 30


class StorageConfig(BaseModel):
    """Configuration for persistent state."""

    database_path: Path = Field(default_factory=get_database_path)
    media_path: Path = Field(default_factory=get_media_path)


class SentryConfig(BaseModel):
    """Configuration for Sentry error reporting."""

    dsn: SecretStr | None = None
    environment: str | None = None
    release: str | None = None
    traces_sample_rate: float = 0.0
    profiles_sample_rate: float = 0.0
    send_default_pii: bool = False
    debug: bool = False


class ConfigError(Exception):
    """Configuration error."""

    pass


class ParleyConfig(BaseModel):
    """Root configuration model."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
    telegram: TelegramConfig | None = None
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sentry: SentryConfig | None = None

    def require_telegram(self) -> TelegramConfig:
        """Get the Telegram section, failing if the bot is not configured.

        Raises:
            ConfigError: If there is no [telegram] section or no bot token.
        """
        if self.telegram is None or self.telegram.bot_token is None:
            raise ConfigError(
                "Telegram is not configured. Add [telegram] with bot_token "
                "or set TELEGRAM_BOT_TOKEN"
            )
        return self.telegram
