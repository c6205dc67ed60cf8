"""Configuration module."""

from parley.config.loader import get_default_config, load_config
from parley.config.models import (
    ConfigError,
    EngineConfig,
    ForumTopicConfig,
    ParleyConfig,
    SentryConfig,
    ServerConfig,
    StorageConfig,
    TelegramConfig,
)
from parley.config.paths import (
    get_config_path,
    get_database_path,
    get_logs_path,
    get_media_path,
    get_parley_home,
)

__all__ = [
    "ConfigError",
    "EngineConfig",
    "ForumTopicConfig",
    "ParleyConfig",
    "SentryConfig",
    "ServerConfig",
    "StorageConfig",
    "TelegramConfig",
    "get_config_path",
    "get_database_path",
    "get_default_config",
    "get_logs_path",
    "get_media_path",
    "get_parley_home",
    "load_config",
]
