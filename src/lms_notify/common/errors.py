"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для HTTP/очереди/логов
- единый стиль исключений по проекту
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class ErrCode:
    # Доступ/ввод
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"

    # Очередь
    INVALID_TRANSITION = "invalid_transition"

    # Транспорт
    TRANSPORT_ERROR = "transport_error"
    TRANSPORT_NOT_CONFIGURED = "transport_not_configured"

    # Хранилище
    DB_ERROR = "db_error"


# HTTP-статус по коду ошибки (для операционного API)
_HTTP_STATUS: dict[str, int] = {
    ErrCode.VALIDATION: 422,
    ErrCode.UNAUTHORIZED: 401,
    ErrCode.FORBIDDEN: 403,
    ErrCode.INVALID_TRANSITION: 409,
    ErrCode.TRANSPORT_NOT_CONFIGURED: 503,
    ErrCode.TRANSPORT_ERROR: 502,
    ErrCode.DB_ERROR: 503,
}


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов/текста сообщений)
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self.code, 500)

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details or {}}


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Не авторизован", details: dict | None = None) -> None:
        super().__init__(ErrCode.UNAUTHORIZED, message, details)


class StoreError(AppError):
    """Журнал сообщений недоступен или отверг запись."""

    def __init__(self, message: str = "Ошибка хранилища", details: dict | None = None) -> None:
        super().__init__(ErrCode.DB_ERROR, message, details)


class InvalidTransition(AppError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.INVALID_TRANSITION, message, details)


class ProviderError(AppError):
    def __init__(self, code: str, message: str, details: dict | None = None) -> None:
        super().__init__(code, message, details)


class TransportError(ProviderError):
    """
    Ошибка отправки через транспорт.

    retryable=False: транспорт уверен, что повтор не поможет
    (невалидный chat_id, бот заблокирован получателем и т.п.).
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        code: str = ErrCode.TRANSPORT_ERROR,
        details: dict | None = None,
    ) -> None:
        super().__init__(code, message, details)
        self.retryable = retryable
