"""
Машина состояний доставки сообщения.

Назначение:
- централизованная проверка переходов статусов
- предсказуемое поведение при ошибках
- основа для ретраев и эскалации

Переходы:
    pending  --попытка-->             retrying
    failed   --попытка (ретрай)-->    retrying
    retrying --успех-->               sent
    retrying --ошибка-->              failed (ретрайбл или терминальный)
    failed   --ручной retry-failed--> pending
sent — терминальный. failed без next_retry_at — терминальный для автоматики.
"""

from __future__ import annotations

from dataclasses import dataclass

from lms_notify.common.errors import InvalidTransition

from .enums import MessageStatus


# =============================================================================
# РЕЗУЛЬТАТ ПЕРЕХОДА
# =============================================================================
@dataclass
class TransitionResult:
    ok: bool
    status: MessageStatus
    reason: str | None = None


# =============================================================================
# ДОПУСТИМЫЕ ПЕРЕХОДЫ
# =============================================================================
_ALLOWED: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.pending: frozenset({MessageStatus.retrying}),
    MessageStatus.retrying: frozenset({MessageStatus.sent, MessageStatus.failed}),
    MessageStatus.failed: frozenset({MessageStatus.retrying, MessageStatus.pending}),
    MessageStatus.sent: frozenset(),
}


def can_transition(current: MessageStatus, target: MessageStatus) -> bool:
    return target in _ALLOWED.get(MessageStatus(current), frozenset())


def transition(current: MessageStatus, target: MessageStatus) -> TransitionResult:
    """
    Проверка перехода без исключений (удобно для логов/метрик).
    """
    if can_transition(current, target):
        return TransitionResult(ok=True, status=MessageStatus(target))
    return TransitionResult(
        ok=False,
        status=MessageStatus(current),
        reason=f"{MessageStatus(current).value}->{MessageStatus(target).value}",
    )


def ensure_transition(
    current: MessageStatus, target: MessageStatus, *, message_id: int | None = None
) -> MessageStatus:
    """
    Проверка перехода; недопустимый переход — InvalidTransition.
    """
    result = transition(current, target)
    if not result.ok:
        raise InvalidTransition(
            "Недопустимый переход статуса",
            details={"message_id": message_id, "transition": result.reason},
        )
    return MessageStatus(target)
