"""
Диспетчер очереди исходящих сообщений.

Назначение:
- периодически выбирать пригодные записи (priority DESC, created_at ASC)
- отправлять их через транспорт с ограничением скорости
- фиксировать результат: sent / failed с ретраем / терминальный failed + эскалация

Алгоритм цикла:
1) single-flight: если цикл уже идёт — пропуск
2) зависшие retrying (прерванный цикл) прогоняются через политику ретраев
3) пачка до QUEUE_BATCH_SIZE записей
4) по каждой: захват (conditional UPDATE -> retrying), send, запись результата,
   пауза 1/QUEUE_MAX_MESSAGES_PER_SECOND
5) превышен QUEUE_CYCLE_MAX_DURATION_SEC — остаток пачки не трогаем

Важно:
- send выполняется вне транзакции БД (захват и результат — отдельные сессии)
- проигранный захват означает, что запись забрал другой диспетчер
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from lms_notify.common.config import get_settings
from lms_notify.common.errors import InvalidTransition, TransportError
from lms_notify.common.ids import new_cycle_id
from lms_notify.common.logging import get_queue_logger, log_context
from lms_notify.common.metrics import (
    QUEUE_CYCLES_TOTAL,
    QUEUE_RECOVERED_TOTAL,
    QUEUE_SEND_LATENCY_MS,
    QUEUE_SEND_TOTAL,
    record_cycle_result,
)
from lms_notify.common.time import utc_now_naive
from lms_notify.domain.enums import MessageStatus
from lms_notify.domain.state_machine import ensure_transition
from lms_notify.storage.db import SessionScope, db_session
from lms_notify.storage.models import MessageLog, MessageSnapshot
from lms_notify.storage.repositories import MessageLogRepository
from lms_notify.transport.base import MessageTransport

from .escalation import FailureEscalator
from .lock import SingleFlight
from .retry import FailureDecision, decide_failure

log = get_queue_logger()

_MAX_ERROR_LEN = 500
INTERRUPTED_ERROR = "dispatcher_interrupted"


@dataclass
class CycleResult:
    cycle_id: str
    skipped: bool = False
    reason: str | None = None
    selected: int = 0
    sent: int = 0
    failed: int = 0
    escalated: int = 0
    recovered: int = 0
    aborted: bool = False
    lost_claims: int = 0
    duration_ms: int = 0
    sent_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class QueueDispatcher:
    def __init__(
        self,
        transport: MessageTransport,
        session_scope: SessionScope = db_session,
        *,
        escalator: FailureEscalator | None = None,
        guard: SingleFlight | None = None,
        batch_size: int | None = None,
        max_messages_per_second: float | None = None,
        max_retries: int | None = None,
        backoff_base_sec: int | None = None,
        stale_retrying_sec: int | None = None,
        cycle_max_duration_sec: int | None = None,
        fail_fast_on_permanent: bool | None = None,
        now_fn: Callable[[], datetime] = utc_now_naive,
        sleep_fn: Callable[[float], None] = time.sleep,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        s = get_settings()
        self.transport = transport
        self.session_scope = session_scope
        self.guard = guard or SingleFlight.from_settings()

        self.batch_size = max(1, int(batch_size if batch_size is not None else s.queue_batch_size))
        rate = float(
            max_messages_per_second
            if max_messages_per_second is not None
            else s.queue_max_messages_per_second
        )
        self.send_interval_sec = 1.0 / rate if rate > 0 else 0.0
        self.max_retries = int(max_retries if max_retries is not None else s.queue_max_retries)
        self.backoff_base_sec = int(
            backoff_base_sec if backoff_base_sec is not None else s.queue_backoff_base_sec
        )
        self.stale_retrying_sec = int(
            stale_retrying_sec if stale_retrying_sec is not None else s.queue_stale_retrying_sec
        )
        self.cycle_max_duration_sec = float(
            cycle_max_duration_sec
            if cycle_max_duration_sec is not None
            else s.queue_cycle_max_duration_sec
        )
        self.fail_fast_on_permanent = bool(
            fail_fast_on_permanent
            if fail_fast_on_permanent is not None
            else s.queue_fail_fast_on_permanent
        )

        self._now = now_fn
        self._sleep = sleep_fn
        self._monotonic = monotonic_fn
        self.escalator = escalator or FailureEscalator(
            transport, send_interval_sec=self.send_interval_sec, sleep_fn=sleep_fn
        )

    # -------------------------------------------------------------------------
    # Цикл
    # -------------------------------------------------------------------------
    @property
    def busy(self) -> bool:
        return self.guard.busy

    def run_cycle(self, tenant_id: str | None = None) -> CycleResult:
        result = CycleResult(cycle_id=new_cycle_id())

        if not self.transport.configured:
            return self._skip(result, "transport_not_configured")

        with (
            self.guard.hold() as acquired,
            log_context(cycle_id=result.cycle_id, tenant_id=tenant_id),
        ):
            if not acquired:
                return self._skip(result, "cycle_in_progress")

            started = self._monotonic()
            log.info(
                "dispatch_cycle_started",
                extra={"payload": {"cycle_id": result.cycle_id, "tenant_id": tenant_id}},
            )
            try:
                self._recover_stale(result, tenant_id)
                self._process_batch(result, tenant_id, started)
            except Exception:
                QUEUE_CYCLES_TOTAL.labels(result="error").inc()
                log.exception(
                    "dispatch_cycle_error",
                    extra={"payload": {"cycle_id": result.cycle_id, "tenant_id": tenant_id}},
                )
                raise

            result.duration_ms = int((self._monotonic() - started) * 1000)

        record_cycle_result(skipped=False, aborted=result.aborted)
        log.info(
            "dispatch_cycle_finished",
            extra={"payload": {k: v for k, v in result.to_dict().items() if k != "sent_ids"}},
        )
        return result

    def _skip(self, result: CycleResult, reason: str) -> CycleResult:
        result.skipped = True
        result.reason = reason
        record_cycle_result(skipped=True, aborted=False)
        log.info(
            "dispatch_cycle_skipped",
            extra={"payload": {"cycle_id": result.cycle_id, "reason": reason}},
        )
        return result

    def _process_batch(self, result: CycleResult, tenant_id: str | None, started: float) -> None:
        with self.session_scope() as session:
            batch = [
                MessageSnapshot.from_record(r)
                for r in MessageLogRepository(session).select_eligible(
                    now=self._now(),
                    limit=self.batch_size,
                    max_retries=self.max_retries,
                    tenant_id=tenant_id,
                )
            ]
        result.selected = len(batch)

        for idx, snapshot in enumerate(batch):
            if self._monotonic() - started > self.cycle_max_duration_sec:
                result.aborted = True
                log.warning(
                    "dispatch_cycle_deadline_exceeded",
                    extra={
                        "payload": {
                            "cycle_id": result.cycle_id,
                            "processed": idx,
                            "remaining": len(batch) - idx,
                            "max_duration_sec": self.cycle_max_duration_sec,
                        }
                    },
                )
                break

            if not self._claim(snapshot):
                result.lost_claims += 1
                QUEUE_SEND_TOTAL.labels(result="lost_claim").inc()
                log.info(
                    "message_claim_lost",
                    extra={"payload": {"cycle_id": result.cycle_id, "message_id": snapshot.id}},
                )
                continue

            self._attempt(snapshot, result)
            if self.send_interval_sec > 0:
                self._sleep(self.send_interval_sec)

    # -------------------------------------------------------------------------
    # Одна запись
    # -------------------------------------------------------------------------
    def _claim(self, snapshot: MessageSnapshot) -> bool:
        with self.session_scope() as session:
            return MessageLogRepository(session).claim(
                snapshot.id, now=self._now(), max_retries=self.max_retries
            )

    def _attempt(self, snapshot: MessageSnapshot, result: CycleResult) -> None:
        options = {"parse_mode": snapshot.meta.get("parse_mode")}
        started = time.perf_counter()
        try:
            transport_message_id = self.transport.send(
                snapshot.destination, snapshot.content, options
            )
        except TransportError as e:
            retryable = e.retryable or not self.fail_fast_on_permanent
            self._on_failure(snapshot, result, error=e.message, retryable=retryable)
            return
        except Exception as e:
            log.exception(
                "transport_unexpected_error",
                extra={"payload": {"cycle_id": result.cycle_id, "message_id": snapshot.id}},
            )
            self._on_failure(snapshot, result, error=str(e) or type(e).__name__, retryable=True)
            return
        finally:
            QUEUE_SEND_LATENCY_MS.labels(transport=self.transport.name).observe(
                (time.perf_counter() - started) * 1000
            )

        self._on_success(snapshot, result, str(transport_message_id))

    def _on_success(
        self, snapshot: MessageSnapshot, result: CycleResult, transport_message_id: str
    ) -> None:
        with self.session_scope() as session:
            record = MessageLogRepository(session).get(snapshot.id)
            if record is None:
                log.warning("message_vanished", extra={"payload": {"message_id": snapshot.id}})
                return
            try:
                ensure_transition(record.status, MessageStatus.sent, message_id=record.id)
            except InvalidTransition as e:
                log.error(
                    "message_state_conflict",
                    extra={"payload": {"message_id": record.id, **(e.details or {})}},
                )
                return
            record.status = MessageStatus.sent
            record.transport_message_id = transport_message_id
            record.sent_at = self._now()
            record.error = None
            record.next_retry_at = None
            record.claimed_at = None

        result.sent += 1
        result.sent_ids.append(snapshot.id)
        QUEUE_SEND_TOTAL.labels(result="sent").inc()
        log.info(
            "message_sent",
            extra={
                "payload": {
                    "cycle_id": result.cycle_id,
                    "message_id": snapshot.id,
                    "tenant_id": snapshot.tenant_id,
                    "category": snapshot.category.value,
                    "transport_message_id": transport_message_id,
                }
            },
        )

    def _on_failure(
        self,
        snapshot: MessageSnapshot,
        result: CycleResult,
        *,
        error: str,
        retryable: bool,
    ) -> None:
        with self.session_scope() as session:
            record = MessageLogRepository(session).get(snapshot.id)
            if record is None:
                log.warning("message_vanished", extra={"payload": {"message_id": snapshot.id}})
                return
            try:
                decision = self._apply_failure(record, error=error, retryable=retryable)
            except InvalidTransition as e:
                log.error(
                    "message_state_conflict",
                    extra={"payload": {"message_id": record.id, **(e.details or {})}},
                )
                return
            failed_snapshot = MessageSnapshot.from_record(record)

        result.failed += 1
        self._report_failure(failed_snapshot, decision, result)

    def _apply_failure(
        self, record: MessageLog, *, error: str, retryable: bool = True
    ) -> FailureDecision:
        ensure_transition(record.status, MessageStatus.failed, message_id=record.id)
        decision = decide_failure(
            record.retry_count,
            self._now(),
            max_retries=self.max_retries,
            base_sec=self.backoff_base_sec,
            retryable=retryable,
        )
        record.status = decision.status
        record.retry_count = decision.retry_count
        record.next_retry_at = decision.next_retry_at
        record.error = (error or "")[:_MAX_ERROR_LEN]
        record.claimed_at = None
        return decision

    def _report_failure(
        self, snapshot: MessageSnapshot, decision: FailureDecision, result: CycleResult
    ) -> None:
        payload = {
            "cycle_id": result.cycle_id,
            "message_id": snapshot.id,
            "tenant_id": snapshot.tenant_id,
            "category": snapshot.category.value,
            "retry_count": decision.retry_count,
            "error": (snapshot.error or "")[:200],
        }
        if not decision.terminal:
            QUEUE_SEND_TOTAL.labels(result="retry").inc()
            log.warning(
                "message_send_failed",
                extra={"payload": {**payload, "next_retry_at": decision.next_retry_at}},
            )
            return

        QUEUE_SEND_TOTAL.labels(result="terminal").inc()
        log.error("message_failed_permanently", extra={"payload": payload})
        self.escalator.escalate(snapshot)
        result.escalated += 1

    # -------------------------------------------------------------------------
    # Восстановление после прерванного цикла
    # -------------------------------------------------------------------------
    def _recover_stale(self, result: CycleResult, tenant_id: str | None) -> None:
        cutoff = self._now() - timedelta(seconds=max(0, self.stale_retrying_sec))
        recovered: list[tuple[MessageSnapshot, FailureDecision]] = []
        with self.session_scope() as session:
            repo = MessageLogRepository(session)
            for record in repo.list_stale_retrying(
                cutoff=cutoff, limit=self.batch_size, tenant_id=tenant_id
            ):
                decision = self._apply_failure(record, error=INTERRUPTED_ERROR)
                recovered.append((MessageSnapshot.from_record(record), decision))

        if not recovered:
            return
        result.recovered = len(recovered)
        QUEUE_RECOVERED_TOTAL.inc(len(recovered))
        log.warning(
            "stale_retrying_recovered",
            extra={
                "payload": {
                    "cycle_id": result.cycle_id,
                    "message_ids": [s.id for s, _ in recovered],
                }
            },
        )
        for snapshot, decision in recovered:
            self._report_failure(snapshot, decision, result)


# =============================================================================
# SINGLETON
# =============================================================================
_dispatcher: QueueDispatcher | None = None


def get_dispatcher() -> QueueDispatcher:
    """
    Диспетчер процесса (один guard на процесс: воркер и ручной trigger делят его).
    """
    global _dispatcher
    if _dispatcher is None:
        from lms_notify.transport.registry import get_transport

        _dispatcher = QueueDispatcher(get_transport())
    return _dispatcher


def reset_dispatcher() -> None:
    global _dispatcher
    _dispatcher = None
