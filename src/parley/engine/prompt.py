"""System prompt assembly.

``system_prompt.md`` under the Parley home replaces the built-in prompt.
``user_prompt.md`` holds personal additions and is appended when present.
"""

import logging
from pathlib import Path

from parley.config.paths import get_prompts_path

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_FILE = "system_prompt.md"
USER_PROMPT_FILE = "user_prompt.md"

DEFAULT_SYSTEM_PROMPT = """\
You are a personal agent running on the user's own machine with access to
its shell and files. Conversations are durable: the user may continue one
from the web interface or from Telegram, so keep answers self-contained.

Files you want to hand back to the user go in ~/.parley/media/. Anything you
write there is delivered to every client watching the conversation.

Ask before actions that could damage the system or leak credentials.
Be concise but thorough.
"""


def expand_prompt_paths(prompt: str, home: Path) -> str:
    """Rewrite ``~/.parley`` and ``~/`` to absolute paths.

    The engine's working directory is arbitrary, so the prompt must not rely
    on shell tilde expansion.
    """
    expanded = prompt.replace("~/.parley", str(home))
    return expanded.replace("~/", f"{Path.home()}/")


def _read_prompt(path: Path) -> str | None:
    if not path.exists():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning(
            "prompt_read_failed",
            extra={"file.path": str(path), "error.message": str(e)},
        )
        return None


def load_system_prompt(home: Path | None = None) -> str:
    """Build the engine's system prompt from the prompt files under ``home``."""
    home = home or get_prompts_path()

    prompt = _read_prompt(home / SYSTEM_PROMPT_FILE)
    if prompt is None:
        logger.debug("system_prompt_default")
        prompt = DEFAULT_SYSTEM_PROMPT
    else:
        logger.info("system_prompt_loaded", extra={"file.path": str(home / SYSTEM_PROMPT_FILE)})

    user_prompt = _read_prompt(home / USER_PROMPT_FILE)
    if user_prompt and user_prompt.strip():
        prompt = f"{prompt.rstrip()}\n\n{user_prompt.strip()}\n"

    return expand_prompt_paths(prompt, home)
