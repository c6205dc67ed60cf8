"""Centralized path management for Parley.

All state (config, database, media, logs) is stored under a single base
directory. The base directory can be overridden with the PARLEY_HOME
environment variable.

Default locations:
- Linux/macOS: ~/.parley
- Windows: %USERPROFILE%\\.parley
"""

import os
from functools import lru_cache
from pathlib import Path

ENV_VAR = "PARLEY_HOME"


@lru_cache(maxsize=1)
def get_parley_home() -> Path:
    """Get the base directory for all Parley data.

    Resolution order:
    1. PARLEY_HOME environment variable (if set)
    2. Platform default (~/.parley)

    Returns:
        Path to the Parley home directory.
    """
    if env_home := os.environ.get(ENV_VAR):
        return Path(env_home).expanduser().resolve()

    return Path.home() / ".parley"


def get_config_path() -> Path:
    """Get the default config file path."""
    return get_parley_home() / "config.toml"


def get_database_path() -> Path:
    """Get the default SQLite database path."""
    return get_parley_home() / "data" / "parley.db"


def get_media_path() -> Path:
    """Get the media directory path.

    Inbound uploads land in subdirectories (telegram/, web/) and files the
    engine writes under it are delivered back to subscribed clients.
    """
    return get_parley_home() / "media"


def get_logs_path() -> Path:
    """Get the default logs directory path."""
    return get_parley_home() / "logs"


def get_prompts_path() -> Path:
    """Get the directory holding system_prompt.md and user_prompt.md."""
    return get_parley_home()


def ensure_parley_home() -> Path:
    """Ensure the Parley home directory exists.

    Returns:
        Path to the Parley home directory.
    """
    home = get_parley_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def get_all_paths() -> dict[str, Path]:
    """Get all standard paths for debugging/display."""
    return {
        "home": get_parley_home(),
        "config": get_config_path(),
        "database": get_database_path(),
        "media": get_media_path(),
        "logs": get_logs_path(),
        "prompts": get_prompts_path(),
    }
