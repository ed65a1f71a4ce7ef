"""
Логирование проекта.

- логирование в stdout (Docker-friendly)
- JSON по умолчанию, текстовый формат через LOG_FORMAT=text
- доп. данные события передаются через extra={"payload": {...}}
- контекст (cycle_id, tenant_id) через log_context(): попадает в каждую
  запись внутри блока, в том числе из транспорта и эскалации
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

from lms_notify.common.config import get_settings
from lms_notify.common.time import utc_now

_LOG_CONTEXT: ContextVar[dict[str, Any]] = ContextVar("lms_notify_log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """
    Вложенные блоки дополняют внешний контекст; None-значения не пишутся.
    """
    merged = {**_LOG_CONTEXT.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield merged
    finally:
        _LOG_CONTEXT.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_LOG_CONTEXT.get())


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.ctx = current_log_context()
        return True


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": utc_now().strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if self.service:
            payload["service"] = self.service
        ctx = getattr(record, "ctx", None) or current_log_context()
        if ctx:
            payload["ctx"] = ctx
        extra_payload = getattr(record, "payload", None)
        if isinstance(extra_payload, dict):
            payload["payload"] = extra_payload
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _build_formatter() -> logging.Formatter:
    s = get_settings()
    if (s.log_format or "").lower() == "text":
        return logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(ctx)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    return JsonFormatter(service=s.service_name)


def setup_logging() -> None:
    s = get_settings()
    root = logging.getLogger()
    level = getattr(logging, (s.log_level or "INFO").upper(), logging.INFO)
    root.setLevel(level)

    # Не плодим хэндлеры при повторном вызове
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(ContextFilter())
    handler.setFormatter(_build_formatter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.error").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(level)


def get_project_logger(name: str = "lms-notify") -> logging.Logger:
    return logging.getLogger(name)


def get_queue_logger() -> logging.Logger:
    """
    Отдельный логгер для диспетчера очереди (удобно фильтровать/маршрутизировать).
    """
    return logging.getLogger("lms-notify.queue")
