"""
Операционный API очереди сообщений.

- статистика и счётчики
- просмотр журнала
- ручные действия: retry-failed, внеочередной цикл
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from apps.api_gateway.deps import QueueCaller, queue_admin_dep, queue_reader_dep
from lms_notify.common.errors import AppError
from lms_notify.domain.enums import MessageCategory, MessagePriority, MessageStatus
from lms_notify.services.statistics import QueueStatistics

router = APIRouter(prefix="/queue", tags=["queue"])
READER_DEP = Depends(queue_reader_dep)
ADMIN_DEP = Depends(queue_admin_dep)

_LIMIT = Query(default=50, ge=1, le=500)


class QueueStatsResponse(BaseModel):
    total: int
    sent: int
    failed: int
    pending: int
    retrying: int
    success_rate: float
    by_category: dict[str, int] = Field(default_factory=dict)


class CountResponse(BaseModel):
    count: int


class MessageLogItem(BaseModel):
    id: int
    destination: str
    tenant_id: str | None = None
    category: MessageCategory
    content: str
    priority: MessagePriority
    status: MessageStatus
    retry_count: int
    next_retry_at: datetime | None = None
    transport_message_id: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    sent_at: datetime | None = None


class RetryFailedResponse(BaseModel):
    success: bool
    retried: int


class CycleResponse(BaseModel):
    success: bool
    cycle: dict[str, Any]


def get_statistics_service() -> QueueStatistics:
    return QueueStatistics()


STATS_DEP = Depends(get_statistics_service)


def _app_error(e: AppError) -> HTTPException:
    return HTTPException(status_code=e.http_status, detail=e.to_payload())


@router.get("/statistics", response_model=QueueStatsResponse)
def get_statistics(
    start: datetime | None = None,
    end: datetime | None = None,
    caller: QueueCaller = READER_DEP,
    stats: QueueStatistics = STATS_DEP,
) -> QueueStatsResponse:
    result = stats.get_statistics(start, end, tenant_id=caller.tenant_id)
    return QueueStatsResponse(**result.to_dict())


@router.get("/pending-count", response_model=CountResponse)
def get_pending_count(
    caller: QueueCaller = READER_DEP, stats: QueueStatistics = STATS_DEP
) -> CountResponse:
    return CountResponse(count=stats.get_pending_count(caller.tenant_id))


@router.get("/failed-count", response_model=CountResponse)
def get_failed_count(
    caller: QueueCaller = READER_DEP, stats: QueueStatistics = STATS_DEP
) -> CountResponse:
    return CountResponse(count=stats.get_failed_count(caller.tenant_id))


@router.get("/recent-logs", response_model=list[MessageLogItem])
def get_recent_logs(
    limit: int = _LIMIT,
    caller: QueueCaller = READER_DEP,
    stats: QueueStatistics = STATS_DEP,
) -> list[MessageLogItem]:
    items = stats.list_recent(limit=limit, tenant_id=caller.tenant_id)
    return [MessageLogItem(**item) for item in items]


@router.get("/logs", response_model=list[MessageLogItem])
def get_logs(
    status_filter: MessageStatus | None = Query(default=None, alias="status"),
    limit: int = _LIMIT,
    caller: QueueCaller = READER_DEP,
    stats: QueueStatistics = STATS_DEP,
) -> list[MessageLogItem]:
    tenant_id = caller.tenant_id
    if status_filter is None:
        items = stats.list_recent(limit=limit, tenant_id=tenant_id)
    else:
        items = stats.list_by_status(status_filter, limit=limit, tenant_id=tenant_id)
    return [MessageLogItem(**item) for item in items]


@router.post("/retry-failed", response_model=RetryFailedResponse)
def retry_failed(
    caller: QueueCaller = ADMIN_DEP, stats: QueueStatistics = STATS_DEP
) -> RetryFailedResponse:
    try:
        retried = stats.retry_failed(caller.tenant_id)
    except AppError as e:
        raise _app_error(e) from e
    return RetryFailedResponse(success=True, retried=retried)


@router.post("/process", response_model=CycleResponse)
def process_queue(
    caller: QueueCaller = ADMIN_DEP, stats: QueueStatistics = STATS_DEP
) -> CycleResponse:
    try:
        result = stats.trigger_cycle(caller.tenant_id)
    except AppError as e:
        raise _app_error(e) from e
    return CycleResponse(success=not result.skipped, cycle=result.to_dict())
