"""
Выбор транспорта по ENV (TRANSPORT_PROVIDER).

- telegram — Telegram Bot API (по умолчанию)
- mock     — в памяти, для dev/тестов
"""

from __future__ import annotations

from lms_notify.common.config import get_settings
from lms_notify.common.errors import ErrCode, ProviderError

from .base import MessageTransport
from .mock import MockTransport

_transport: MessageTransport | None = None


def _build_transport() -> MessageTransport:
    provider = (get_settings().transport_provider or "").strip().lower()

    if provider == "mock":
        return MockTransport()
    if provider == "telegram":
        from .telegram import TelegramTransport

        return TelegramTransport()

    raise ProviderError(
        ErrCode.TRANSPORT_NOT_CONFIGURED,
        "Неизвестный TRANSPORT_PROVIDER",
        {"provider": provider},
    )


def get_transport() -> MessageTransport:
    global _transport
    if _transport is None:
        _transport = _build_transport()
    return _transport


def reset_transport() -> None:
    """Сбросить кэш (после смены настроек в тестах)."""
    global _transport
    _transport = None
