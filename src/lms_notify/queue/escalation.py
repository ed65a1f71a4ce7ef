"""
Эскалация терминальных ошибок доставки.

Назначение:
- сообщение окончательно не доставлено -> алерт операторам
  (QUEUE_ESCALATION_DESTINATIONS, через тот же транспорт)

Важно:
- алерт отправляется напрямую, в очередь не ставится
- ошибка отправки алерта логируется и больше никак не обрабатывается
- алерты идут с тем же интервалом, что и обычные отправки (лимит транспорта общий)
- escalate() никогда не бросает исключение в цикл диспетчера
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from lms_notify.common.config import get_settings, parse_csv
from lms_notify.common.errors import AppError
from lms_notify.common.logging import get_queue_logger
from lms_notify.common.metrics import QUEUE_ESCALATIONS_TOTAL
from lms_notify.storage.models import MessageSnapshot
from lms_notify.transport.base import MessageTransport

log = get_queue_logger()

_TEMPLATE = "escalation_alert.html.j2"
_MAX_ERROR_LEN = 300


def _jinja() -> Environment:
    tpl_dir = Path(__file__).parent / "templates"
    return Environment(
        loader=FileSystemLoader(str(tpl_dir)),
        autoescape=select_autoescape(["html", "html.j2"]),
    )


class FailureEscalator:
    def __init__(
        self,
        transport: MessageTransport,
        operator_destinations: list[str] | None = None,
        *,
        send_interval_sec: float | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        s = get_settings()
        self.transport = transport
        if operator_destinations is None:
            operator_destinations = parse_csv(s.queue_escalation_destinations)
        if send_interval_sec is None:
            rate = float(s.queue_max_messages_per_second)
            send_interval_sec = 1.0 / rate if rate > 0 else 0.0
        self.send_interval_sec = send_interval_sec
        self._sleep = sleep_fn
        self.operator_destinations = list(operator_destinations)
        self._env = _jinja()

    def render(self, record: MessageSnapshot) -> str:
        return self._env.get_template(_TEMPLATE).render(
            record_id=record.id,
            category=record.category.value,
            destination=record.destination,
            tenant_id=record.tenant_id,
            retry_count=record.retry_count,
            error=(record.error or "")[:_MAX_ERROR_LEN],
            created_at=record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    def escalate(self, record: MessageSnapshot) -> int:
        """
        Разослать алерт всем операторам. Возвращает число успешно уведомлённых.
        """
        if not self.operator_destinations:
            QUEUE_ESCALATIONS_TOTAL.labels(result="skipped").inc()
            log.warning(
                "escalation_skipped",
                extra={"payload": {"message_id": record.id, "reason": "no_destinations"}},
            )
            return 0

        text = self.render(record)
        notified = 0
        for operator in self.operator_destinations:
            # перед алертом только что была отправка (упавшее сообщение или прошлый оператор)
            if self.send_interval_sec > 0:
                self._sleep(self.send_interval_sec)
            try:
                self.transport.send(operator, text, {"parse_mode": "HTML"})
            except AppError as e:
                QUEUE_ESCALATIONS_TOTAL.labels(result="failed").inc()
                log.error(
                    "escalation_send_failed",
                    extra={
                        "payload": {
                            "message_id": record.id,
                            "operator": operator,
                            "code": e.code,
                            "err": e.message[:200],
                        }
                    },
                )
                continue
            except Exception as e:
                QUEUE_ESCALATIONS_TOTAL.labels(result="failed").inc()
                log.exception(
                    "escalation_send_failed",
                    extra={
                        "payload": {
                            "message_id": record.id,
                            "operator": operator,
                            "err": str(e)[:200],
                        }
                    },
                )
                continue
            notified += 1
            QUEUE_ESCALATIONS_TOTAL.labels(result="sent").inc()

        log.info(
            "escalation_done",
            extra={
                "payload": {
                    "message_id": record.id,
                    "tenant_id": record.tenant_id,
                    "notified": notified,
                    "operators": len(self.operator_destinations),
                }
            },
        )
        return notified
