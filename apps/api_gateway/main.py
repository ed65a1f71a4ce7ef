"""
API Gateway (FastAPI).

Функции:
- /health (liveness) и /ready (конфигурация + БД)
- /metrics
- операционный API очереди сообщений (/v1/queue)
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apps.api_gateway.routers.queue import router as queue_router
from lms_notify.common.config import get_settings, parse_csv
from lms_notify.common.errors import AppError
from lms_notify.common.logging import get_project_logger, setup_logging
from lms_notify.common.metrics import setup_metrics_endpoint
from lms_notify.services.readiness import enforce_startup_readiness, runtime_readiness
from lms_notify.storage.db import SessionScope, db_session

log = get_project_logger()


def get_session_scope() -> SessionScope:
    return db_session


def _cors_params() -> tuple[list[str], bool]:
    settings = get_settings()
    allow_origins = parse_csv(settings.cors_allowed_origins) or ["*"]
    allow_credentials = bool(settings.cors_allow_credentials)

    if settings.is_prod and "*" in allow_origins:
        raise RuntimeError("CORS wildcard '*' запрещён в APP_ENV=prod")

    # '*' нельзя использовать вместе с credentials=true
    if "*" in allow_origins:
        allow_credentials = False

    return allow_origins, allow_credentials


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    log.warning(
        "api_app_error",
        extra={
            "payload": {
                "endpoint": request.url.path,
                "code": exc.code,
                "status_code": exc.http_status,
            }
        },
    )
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_payload()})


def create_app() -> FastAPI:
    app = FastAPI(title="LMS Notify", version="0.1.0")
    allow_origins, allow_credentials = _cors_params()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "X-API-Key", "Content-Type"],
        allow_credentials=allow_credentials,
    )
    app.add_exception_handler(AppError, _app_error_handler)

    setup_metrics_endpoint(app, service=get_settings().service_name)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/ready")
    def ready(session_scope: SessionScope = Depends(get_session_scope)) -> JSONResponse:
        state = runtime_readiness(session_scope)
        return JSONResponse(status_code=200 if state.ready else 503, content=state.to_dict())

    app.include_router(queue_router, prefix="/v1")
    return app


setup_logging()
enforce_startup_readiness(service_name="api-gateway")

app = create_app()
