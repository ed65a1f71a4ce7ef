"""
Базовый интерфейс транспорта сообщений.

Назначение:
- единый контракт для внешнего мессенджер-шлюза (Telegram и т.д.)
- переключение провайдера через ENV (TRANSPORT_PROVIDER)

Контракт:
- send() возвращает id сообщения на стороне транспорта
- любая неудача — исключение TransportError (retryable / permanent)
"""

from __future__ import annotations

from typing import Any, Protocol


class MessageTransport(Protocol):
    """
    Контракт транспорта: одно сообщение — одному адресату.
    """

    name: str
    # false: транспорт не настроен (нет токена), диспетчер пропускает цикл
    configured: bool

    def send(
        self,
        destination: str,
        content: str,
        options: dict[str, Any] | None = None,
    ) -> str:
        """Отправить сообщение; вернуть transport message id или бросить TransportError."""
        ...

    def get_identity(self) -> dict[str, Any]:
        """Самоописание транспорта (бот/аккаунт) для проверки прав и health."""
        ...
