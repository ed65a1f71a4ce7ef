"""
Tenant scoping для операционных эндпоинтов очереди.

- глобальный вызывающий (service/superadmin) видит все центры
- JWT-пользователь видит только свой центр (claim TENANT_CLAIM_KEY)
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status

from lms_notify.common.config import get_settings
from lms_notify.common.errors import ErrCode
from lms_notify.common.security import AuthContext, is_global_caller


def _tenant_claim_key() -> str:
    key = (get_settings().tenant_claim_key or "").strip()
    return key or "tenant_id"


def _normalize_tenant_id(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple, set)):
        for item in value:
            if item is None:
                continue
            return _normalize_tenant_id(item)
        return None
    value = str(value).strip()
    return value or None


def resolve_tenant_scope(ctx: AuthContext) -> str | None:
    """
    None — без фильтра по центру; иначе tenant_id вызывающего.
    """
    if is_global_caller(ctx):
        return None

    tenant_id = _normalize_tenant_id((ctx.claims or {}).get(_tenant_claim_key()))
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": ErrCode.FORBIDDEN, "message": "Tenant claim отсутствует"},
        )
    return tenant_id
