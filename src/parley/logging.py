"""Logging setup shared by the CLI and the server.

configure_logging() is called once per process, before anything else logs.

Levels:
- DEBUG: duplicate updates, soft transport failures, engine chatter
- INFO: conversation lifecycle, user messages, engine resets
- WARNING: recoverable issues such as dispatch retries and dropped subscribers
- ERROR: failures that affect a conversation (engine crashes)

Messages are short event names ("conversation_busy", "engine_reset"). Fields
go through ``extra`` with dotted keys (``conversation.name``,
``messaging.chat_id``, ``error.message``).
"""

import json
import logging
import os
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TextIO

DEFAULT_LOG_RETENTION_DAYS = 7

DEFAULT_REDACT_PATTERNS: list[str] = [
    # Anthropic and other sk- style API keys
    r"\b(sk-[A-Za-z0-9_-]{20,})\b",
    # Telegram bot tokens, bare and inside Bot API URLs (.../bot<token>/...)
    r"\b(\d{8,}:[A-Za-z0-9_-]{30,})\b",
    r"/bot(\d{8,}:[A-Za-z0-9_-]{30,})",
    # ENV-style assignments: TELEGRAM_BOT_TOKEN=... or SENTRY_DSN: ...
    r"\b[A-Z0-9_]+(?:KEY|TOKEN|SECRET|PASSWORD|DSN)\s*[=:]\s*([^\s\"']{8,})",
    r"\bBearer\s+([A-Za-z0-9._\-+=]{20,})\b",
    # Sentry DSN public key
    r"https://([0-9a-f]{16,})@[\w.-]+",
]

# Structured fields promoted to top-level keys in JSONL entries
HOISTED_FIELDS = {
    "conversation.name": "conversation",
    "messaging.chat_id": "chat_id",
    "client.id": "client_id",
}

# Attributes every LogRecord has; anything else arrived through ``extra``
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime", "component", "taskName"}


def _mask(match: re.Match[str]) -> str:
    """Replace the secret group, keeping its first and last four characters."""
    full = match.group(0)
    secret = match.group(1) if match.lastindex else full
    if "..." in secret:
        return full
    masked = "***" if len(secret) < 12 else f"{secret[:4]}...{secret[-4:]}"
    return full.replace(secret, masked)


class SecretRedactor:
    """Masks bot tokens, API keys and DSNs in log text."""

    def __init__(
        self, patterns: list[re.Pattern[str]] | None = None, enabled: bool = True
    ):
        self.patterns = patterns or [
            re.compile(p, re.IGNORECASE) for p in DEFAULT_REDACT_PATTERNS
        ]
        self.enabled = enabled

    def redact(self, text: str) -> str:
        if not self.enabled or not text:
            return text
        for pattern in self.patterns:
            text = pattern.sub(_mask, text)
        return text


_redactor = SecretRedactor()


def configure_redaction(
    enabled: bool = True, extra_patterns: list[str] | None = None
) -> None:
    """Replace the process-wide redactor.

    Args:
        enabled: Whether to redact at all.
        extra_patterns: Additional regexes; group 1, if present, is the secret.
    """
    global _redactor
    sources = DEFAULT_REDACT_PATTERNS + list(extra_patterns or [])
    _redactor = SecretRedactor(
        patterns=[re.compile(p, re.IGNORECASE) for p in sources], enabled=enabled
    )


def get_redactor() -> SecretRedactor:
    return _redactor


def prune_old_logs(
    logs_dir: Path,
    retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
    suffix: str = ".jsonl",
) -> int:
    """Delete log files older than the retention period.

    Returns:
        Number of files deleted.
    """
    if not logs_dir.exists():
        return 0

    cutoff = (datetime.now(UTC) - timedelta(days=retention_days)).timestamp()
    deleted = 0
    for entry in logs_dir.glob(f"*{suffix}"):
        try:
            if entry.is_file() and entry.stat().st_mtime < cutoff:
                entry.unlink()
                deleted += 1
        except OSError:
            continue
    return deleted


def _component(logger_name: str) -> str:
    """parley.providers.telegram.handlers -> providers"""
    parts = logger_name.split(".")
    if len(parts) >= 2 and parts[0] == "parley":
        return parts[1]
    return parts[0]


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class JSONLHandler(logging.Handler):
    """Writes one JSON object per record to ``<logs_dir>/YYYY-MM-DD.jsonl``.

    A new file is opened when the UTC date changes, at which point files
    past the retention period are pruned. Conversation and chat identifiers
    are copied to top-level keys so one conversation's history can be
    grepped out of a day's log.
    """

    def __init__(
        self,
        logs_dir: Path,
        retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
    ):
        super().__init__()
        self._logs_dir = logs_dir
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        self._retention_days = retention_days
        self._current_date: str | None = None
        self._file: TextIO | None = None

    def _log_file(self) -> TextIO:
        today = datetime.now(UTC).strftime("%Y-%m-%d")
        if self._file is None or self._current_date != today:
            if self._file:
                self._file.close()
            self._current_date = today
            self._file = (self._logs_dir / f"{today}.jsonl").open("a", encoding="utf-8")
            prune_old_logs(self._logs_dir, self._retention_days)
        return self._file

    def _entry(self, record: logging.LogRecord) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "component": _component(record.name),
            "logger": record.name,
            "message": _redactor.redact(record.getMessage()),
        }
        if record.exc_info:
            formatter = self.formatter or logging.Formatter()
            entry["exception"] = _redactor.redact(
                formatter.formatException(record.exc_info)
            )

        fields = _record_fields(record)
        for key, top_level in HOISTED_FIELDS.items():
            if key in fields:
                entry[top_level] = fields[key]
        if fields:
            redacted = _redactor.redact(json.dumps(fields, default=str))
            try:
                entry["extra"] = json.loads(redacted)
            except json.JSONDecodeError:
                entry["extra"] = {"_redacted_raw": redacted}
        return entry

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = json.dumps(self._entry(record), default=str)
            log_file = self._log_file()
            log_file.write(line + "\n")
            log_file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None
        super().close()


class ComponentFormatter(logging.Formatter):
    """Shortens logger names to components and appends ``extra`` fields
    as ``key=value`` pairs.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.component = _component(record.name)
        text = super().format(record)
        if fields := _record_fields(record):
            pairs = " ".join(f"{key}={value}" for key, value in fields.items())
            text = f"{text} [dim]{_redactor.redact(pairs)}[/dim]"
        return text


# Third-party loggers that are too noisy at INFO
NOISY_LOGGERS = [
    "httpx",
    "httpcore",
    "uvicorn.access",
    "aiogram",
    "aiogram.event",
    "aiosqlite",
    "sqlalchemy.engine",
    "claude_agent_sdk",
]


def _console_handler(use_rich: bool) -> logging.Handler:
    if not use_rich:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        return handler

    from rich.logging import RichHandler

    handler = RichHandler(show_path=False, show_time=True, markup=True)
    handler.setFormatter(ComponentFormatter("%(component)s | %(message)s"))
    return handler


def configure_logging(
    level: str | None = None,
    use_rich: bool = False,
    log_to_file: bool = False,
) -> None:
    """Configure root logging.

    Args:
        level: DEBUG, INFO, WARNING or ERROR. Defaults to PARLEY_LOG_LEVEL,
            then INFO.
        use_rich: Rich console output (server mode).
        log_to_file: Also write JSONL files under the parley logs directory.
    """
    from parley.config.paths import get_logs_path

    level = (level or os.environ.get("PARLEY_LOG_LEVEL", "INFO")).upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        level = "INFO"

    handlers = [_console_handler(use_rich)]
    if log_to_file:
        handlers.append(JSONLHandler(get_logs_path()))

    logging.basicConfig(level=getattr(logging, level), handlers=handlers, force=True)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    if use_rich:
        # uvicorn installs its own handlers unless log_config is None
        for logger_name in ("uvicorn", "uvicorn.error"):
            uv_logger = logging.getLogger(logger_name)
            uv_logger.handlers = handlers
            uv_logger.propagate = False
