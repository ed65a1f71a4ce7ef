"""
Метрики Prometheus для сервиса.

Назначение:
- Экспорт /metrics
- Счётчики очереди исходящих сообщений (постановка, отправка, эскалация, ретеншн)
- Используется API Gateway и воркерами
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

from lms_notify.common.logging import get_project_logger

log = get_project_logger()

# =============================================================================
# HTTP
# =============================================================================
REQUESTS_TOTAL = Counter(
    "lms_requests_total",
    "Общее количество HTTP запросов",
    ["service", "route", "method", "status"],
)

HTTP_REQUEST_LATENCY_MS = Histogram(
    "lms_http_request_latency_ms",
    "Задержка HTTP запроса (мс)",
    ["service", "route", "method"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

STAGE_LATENCY_MS = Histogram(
    "lms_stage_latency_ms",
    "Задержка выполнения фоновых стадий (мс)",
    ["service", "stage"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 120000),
)

# =============================================================================
# ОЧЕРЕДЬ СООБЩЕНИЙ
# =============================================================================
QUEUE_ENQUEUED_TOTAL = Counter(
    "lms_queue_enqueued_total",
    "Количество сообщений, поставленных в очередь",
    ["category", "priority"],
)

QUEUE_SEND_TOTAL = Counter(
    "lms_queue_send_total",
    "Результаты попыток отправки",
    ["result"],  # sent|retry|terminal|lost_claim
)

QUEUE_SEND_LATENCY_MS = Histogram(
    "lms_queue_send_latency_ms",
    "Задержка вызова транспорта (мс)",
    ["transport"],
    buckets=(10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

QUEUE_CYCLES_TOTAL = Counter(
    "lms_queue_cycles_total",
    "Количество циклов диспетчера",
    ["result"],  # ok|skipped|aborted|error
)

QUEUE_RECOVERED_TOTAL = Counter(
    "lms_queue_recovered_total",
    "retrying-записи, подобранные после прерванного цикла",
)

QUEUE_ESCALATIONS_TOTAL = Counter(
    "lms_queue_escalations_total",
    "Алерты операторам о терминальных ошибках",
    ["result"],  # sent|failed|skipped
)

QUEUE_DEPTH = Gauge(
    "lms_queue_depth",
    "Количество записей журнала по статусам",
    ["status"],
)

RETENTION_DELETED_TOTAL = Counter(
    "lms_retention_deleted_total",
    "Количество удалённых ретеншном записей",
)

METRICS_COLLECTION_ERRORS_TOTAL = Counter(
    "lms_metrics_collection_errors_total",
    "Ошибки сборки служебных метрик",
    ["source"],
)


@contextmanager
def track_stage_latency(service: str, stage: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        STAGE_LATENCY_MS.labels(service=service, stage=stage).observe(elapsed_ms)


def record_cycle_result(*, skipped: bool, aborted: bool) -> None:
    if skipped:
        result = "skipped"
    elif aborted:
        result = "aborted"
    else:
        result = "ok"
    QUEUE_CYCLES_TOTAL.labels(result=result).inc()


def refresh_queue_metrics(session_scope=None) -> bool:
    """
    Обновить QUEUE_DEPTH по журналу. Ошибка БД не должна ронять /metrics.
    """
    from lms_notify.storage.db import db_session
    from lms_notify.storage.repositories import MessageLogRepository

    try:
        with (session_scope or db_session)() as session:
            counts = MessageLogRepository(session).count_by_status()
    except Exception as e:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="queue_metrics").inc()
        log.warning("queue_metrics_refresh_failed", extra={"payload": {"err": str(e)[:200]}})
        return False
    for status, cnt in counts.items():
        QUEUE_DEPTH.labels(status=status.value).set(cnt)
    return True


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def setup_metrics_endpoint(app: FastAPI, *, service: str = "api-gateway") -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        route = request.url.path
        method = request.method
        started = time.perf_counter()

        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        status_code = str(response.status_code)

        REQUESTS_TOTAL.labels(
            service=service,
            route=route,
            method=method,
            status=status_code,
        ).inc()
        HTTP_REQUEST_LATENCY_MS.labels(
            service=service,
            route=route,
            method=method,
        ).observe(elapsed_ms)
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        refresh_queue_metrics()
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
