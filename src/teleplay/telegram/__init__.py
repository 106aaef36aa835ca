"""Telegram Bot API message source."""

from .client import MessageSource, TelegramClient

__all__ = [
    "MessageSource",
    "TelegramClient",
]
