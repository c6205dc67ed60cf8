"""Telegram provider."""

from parley.providers.telegram.handlers import TelegramMessageHandler
from parley.providers.telegram.provider import TelegramProvider
from parley.providers.telegram.subscriptions import TelegramSubscriptionManager

__all__ = [
    "TelegramMessageHandler",
    "TelegramProvider",
    "TelegramSubscriptionManager",
]
