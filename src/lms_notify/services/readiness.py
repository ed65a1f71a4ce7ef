"""
Проверки готовности (startup / GET /ready).

- конфигурационные проверки: без сети, только по настройкам
- runtime-проверка: журнал сообщений (БД) отвечает на SELECT 1
- в prod ошибки конфигурации валят старт процесса
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from lms_notify.common.config import Settings, get_settings, parse_csv
from lms_notify.common.logging import get_project_logger
from lms_notify.storage.db import SessionScope, db_session

log = get_project_logger()


@dataclass
class ReadinessIssue:
    severity: str  # error|warning
    code: str
    message: str


@dataclass
class ReadinessState:
    ready: bool
    issues: list[ReadinessIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"ready": self.ready, "issues": [asdict(i) for i in self.issues]}


def _auth_issues(s: Settings) -> list[ReadinessIssue]:
    issues: list[ReadinessIssue] = []
    mode = (s.auth_mode or "").strip().lower()

    if mode == "api_key" and not parse_csv(s.api_keys) and not parse_csv(s.service_api_keys):
        issues.append(
            ReadinessIssue(
                severity="error",
                code="auth_api_keys_empty",
                message="AUTH_MODE=api_key требует API_KEYS или SERVICE_API_KEYS",
            )
        )
    if mode == "jwt" and not (
        (s.jwt_shared_secret or "").strip()
        or (s.oidc_jwks_url or "").strip()
        or (s.oidc_issuer_url or "").strip()
    ):
        issues.append(
            ReadinessIssue(
                severity="error",
                code="jwt_not_configured",
                message="AUTH_MODE=jwt требует JWT_SHARED_SECRET или OIDC_JWKS_URL/OIDC_ISSUER_URL",
            )
        )
    if s.is_prod and mode == "none":
        issues.append(
            ReadinessIssue(
                severity="error",
                code="auth_none_in_prod",
                message="AUTH_MODE=none запрещён в prod",
            )
        )
    return issues


def _queue_issues(s: Settings) -> list[ReadinessIssue]:
    issues: list[ReadinessIssue] = []
    provider = (s.transport_provider or "").strip().lower()

    if provider == "telegram" and not (s.telegram_bot_token or "").strip():
        # без токена диспетчер пропускает циклы, сообщения копятся в pending
        issues.append(
            ReadinessIssue(
                severity="error" if s.is_prod else "warning",
                code="telegram_token_empty",
                message="TRANSPORT_PROVIDER=telegram требует TELEGRAM_BOT_TOKEN",
            )
        )
    if s.is_prod and provider == "mock":
        issues.append(
            ReadinessIssue(
                severity="error",
                code="mock_transport_in_prod",
                message="TRANSPORT_PROVIDER=mock запрещён в prod",
            )
        )
    if not parse_csv(s.queue_escalation_destinations):
        issues.append(
            ReadinessIssue(
                severity="warning",
                code="escalation_destinations_empty",
                message="QUEUE_ESCALATION_DESTINATIONS пуст: алерты операторам не уйдут",
            )
        )
    if s.dispatcher_lock_mode == "redis" and not (s.redis_url or "").strip():
        issues.append(
            ReadinessIssue(
                severity="error",
                code="redis_url_empty",
                message="DISPATCHER_LOCK_MODE=redis требует REDIS_URL",
            )
        )
    if s.dispatcher_lock_ttl_sec <= s.queue_cycle_max_duration_sec:
        issues.append(
            ReadinessIssue(
                severity="warning",
                code="lock_ttl_shorter_than_cycle",
                message="DISPATCHER_LOCK_TTL_SEC должен быть больше QUEUE_CYCLE_MAX_DURATION_SEC",
            )
        )
    return issues


def evaluate_readiness(settings: Settings | None = None) -> ReadinessState:
    s = settings or get_settings()
    issues = _auth_issues(s) + _queue_issues(s)
    if s.is_prod and "*" in parse_csv(s.cors_allowed_origins):
        issues.append(
            ReadinessIssue(
                severity="error",
                code="cors_wildcard_in_prod",
                message="CORS wildcard '*' запрещён в prod",
            )
        )
    return ReadinessState(ready=all(i.severity != "error" for i in issues), issues=issues)


def check_database(session_scope: SessionScope = db_session) -> ReadinessIssue | None:
    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        log.warning("readiness_db_unavailable", extra={"payload": {"err": str(e)[:200]}})
        return ReadinessIssue(
            severity="error",
            code="db_unavailable",
            message="Журнал сообщений (БД) недоступен",
        )
    return None


def runtime_readiness(session_scope: SessionScope = db_session) -> ReadinessState:
    state = evaluate_readiness()
    db_issue = check_database(session_scope)
    if db_issue is not None:
        state.issues.append(db_issue)
        state.ready = False
    return state


def enforce_startup_readiness(*, service_name: str) -> ReadinessState:
    s = get_settings()
    state = evaluate_readiness(s)
    errors = [i for i in state.issues if i.severity == "error"]

    if errors:
        log.error(
            "startup_readiness_failed",
            extra={
                "payload": {
                    "service": service_name,
                    "app_env": s.app_env,
                    "error_codes": [e.code for e in errors],
                }
            },
        )
    else:
        log.info(
            "startup_readiness_ok",
            extra={
                "payload": {
                    "service": service_name,
                    "app_env": s.app_env,
                    "warning_codes": [i.code for i in state.issues],
                }
            },
        )

    if s.is_prod and errors:
        msg = ", ".join(e.code for e in errors)
        raise RuntimeError(f"startup readiness failed for {service_name}: {msg}")
    return state
