"""Chat providers."""

from parley.providers.telegram import TelegramMessageHandler, TelegramProvider

__all__ = [
    "TelegramMessageHandler",
    "TelegramProvider",
]
