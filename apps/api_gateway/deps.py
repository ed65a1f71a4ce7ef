"""
FastAPI Depends для операционного API очереди.

Цепочка для каждого запроса:
1) аутентификация (Bearer JWT / X-API-Key)
2) права: чтение (любой аутентифицированный) или действия (admin)
3) scope по учебному центру (tenant_id) для JWT-пользователей

Каждое решение (allow/deny) пишется в аудит-лог security_audit_*.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, HTTPException, Request, status

from apps.api_gateway.tenancy import resolve_tenant_scope
from lms_notify.common.errors import ErrCode, UnauthorizedError
from lms_notify.common.logging import get_project_logger
from lms_notify.common.security import AuthContext, is_admin_caller, require_auth

log = get_project_logger()


@dataclass(frozen=True)
class QueueCaller:
    """Аутентифицированный вызывающий + его scope (None = все центры)."""

    ctx: AuthContext
    tenant_id: str | None = None


def _audit(
    event: str,
    *,
    request: Request | None,
    reason: str,
    ctx: AuthContext | None = None,
    **fields,
) -> None:
    payload = {
        "endpoint": request.url.path if request is not None else "unknown",
        "method": request.method if request is not None else "UNKNOWN",
        "client_ip": request.client.host if request is not None and request.client else None,
        "subject": ctx.subject if ctx else "unknown",
        "auth_type": ctx.auth_type if ctx else "unknown",
        "reason": reason,
        **fields,
    }
    if event == "security_audit_allow":
        log.info(event, extra={"payload": payload})
    else:
        log.warning(event, extra={"payload": payload})


def _deny(
    *,
    request: Request | None,
    status_code: int,
    reason: str,
    error_code: str,
    message: str,
    ctx: AuthContext | None = None,
    headers: dict[str, str] | None = None,
) -> HTTPException:
    _audit(
        "security_audit_deny",
        request=request,
        reason=reason,
        ctx=ctx,
        status_code=status_code,
        error_code=error_code,
    )
    return HTTPException(
        status_code=status_code,
        detail={"code": error_code, "message": message},
        headers=headers,
    )


def _authenticate(
    *,
    authorization: str | None,
    x_api_key: str | None,
    request: Request | None,
) -> AuthContext:
    try:
        return require_auth(authorization=authorization, x_api_key=x_api_key)
    except UnauthorizedError as e:
        raise _deny(
            request=request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            reason=e.message,
            error_code=e.code,
            message=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def _require_admin(ctx: AuthContext, request: Request | None) -> None:
    if is_admin_caller(ctx):
        return
    raise _deny(
        request=request,
        status_code=status.HTTP_403_FORBIDDEN,
        reason="not_admin_caller",
        error_code=ErrCode.FORBIDDEN,
        message="Требуется роль администратора",
        ctx=ctx,
    )


def _scoped(ctx: AuthContext, request: Request | None, *, reason: str) -> QueueCaller:
    try:
        tenant_id = resolve_tenant_scope(ctx)
    except HTTPException as e:
        _audit(
            "security_audit_deny",
            request=request,
            reason="tenant_claim_missing",
            ctx=ctx,
            status_code=e.status_code,
            error_code=ErrCode.FORBIDDEN,
        )
        raise
    _audit("security_audit_allow", request=request, reason=reason, ctx=ctx, tenant_id=tenant_id)
    return QueueCaller(ctx=ctx, tenant_id=tenant_id)


def auth_dep(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> AuthContext:
    """
    Только аутентификация (без scope).
    """
    ctx = _authenticate(authorization=authorization, x_api_key=x_api_key, request=request)
    _audit("security_audit_allow", request=request, reason="auth_ok", ctx=ctx)
    return ctx


def admin_auth_dep(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> AuthContext:
    ctx = _authenticate(authorization=authorization, x_api_key=x_api_key, request=request)
    _require_admin(ctx, request)
    _audit("security_audit_allow", request=request, reason="admin_caller", ctx=ctx)
    return ctx


def queue_reader_dep(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> QueueCaller:
    """
    Чтение статистики/журнала: любой аутентифицированный, в пределах своего центра.
    """
    ctx = _authenticate(authorization=authorization, x_api_key=x_api_key, request=request)
    return _scoped(ctx, request, reason="queue_read")


def queue_admin_dep(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> QueueCaller:
    """
    Ручные действия над очередью: admin, в пределах своего центра.
    """
    ctx = _authenticate(authorization=authorization, x_api_key=x_api_key, request=request)
    _require_admin(ctx, request)
    return _scoped(ctx, request, reason="queue_admin")
