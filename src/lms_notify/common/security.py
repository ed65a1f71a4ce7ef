"""
Утилиты безопасности и авторизации.

Поддерживаемые режимы (AUTH_MODE):
- api_key — проверка X-API-Key (USER: API_KEYS, SERVICE: SERVICE_API_KEYS)
- jwt     — проверка Bearer JWT через OIDC/JWKS или shared secret
- none    — без авторизации (ТОЛЬКО dev)

Кто что может в операционном API очереди:
- глобальный вызывающий видит все учебные центры
- admin может перезапускать упавшие сообщения и запускать цикл
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

import jwt
import requests

from .config import Settings, get_settings, parse_csv
from .errors import UnauthorizedError


@dataclass(frozen=True)
class AuthContext:
    subject: str
    auth_type: str  # none|user_api_key|service_api_key|jwt
    claims: dict[str, Any] | None = None
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_service(self) -> bool:
        return self.auth_type in {"none", "service_api_key"} or is_service_jwt_claims(self.claims)


def _csv_set(raw: str | None) -> set[str]:
    return set(parse_csv(raw))


def _extract_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _claim_values(value: Any) -> set[str]:
    """Claim может быть строкой ("a b" / "a,b"), списком или скаляром."""
    if value is None:
        return set()
    if isinstance(value, str):
        return {v for v in re.split(r"[,\s]+", value.strip()) if v}
    if isinstance(value, list | tuple | set):
        out: set[str] = set()
        for item in value:
            out |= _claim_values(item)
        return out
    return {str(value)}


def is_service_jwt_claims(claims: dict[str, Any] | None) -> bool:
    if not claims:
        return False
    s = get_settings()
    claim_key = (s.jwt_service_claim_key or "").strip()
    allowed = _csv_set(s.jwt_service_claim_values)
    if not claim_key or not allowed:
        return False
    return bool(_claim_values(claims.get(claim_key)) & allowed)


def _roles_from_claims(claims: dict[str, Any]) -> frozenset[str]:
    # role: "admin" и roles: ["admin", ...] читаются одинаково
    claim = (get_settings().jwt_role_claim or "role").strip()
    return frozenset(_claim_values(claims.get(claim)) | _claim_values(claims.get(claim + "s")))


# -----------------------------------------------------------------------------
# JWT
# -----------------------------------------------------------------------------
@lru_cache(maxsize=8)
def _get_jwks_client(jwks_url: str) -> jwt.PyJWKClient:
    return jwt.PyJWKClient(jwks_url)


@lru_cache(maxsize=8)
def _discover_jwks_url(issuer_url: str, timeout_s: int) -> str:
    discovery = issuer_url.rstrip("/") + "/.well-known/openid-configuration"
    try:
        resp = requests.get(discovery, timeout=timeout_s)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise UnauthorizedError("Не удалось получить OIDC discovery", {"err": str(e)}) from e

    jwks = data.get("jwks_uri")
    if not jwks:
        raise UnauthorizedError("OIDC discovery не содержит jwks_uri")
    return str(jwks)


def _decode_options(s: Settings) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "algorithms": parse_csv(s.oidc_algorithms) or ["RS256"],
        "options": {"verify_aud": bool(s.oidc_audience)},
        "leeway": int(s.jwt_clock_skew_sec or 0),
    }
    if s.oidc_audience:
        kwargs["audience"] = s.oidc_audience
    if s.oidc_issuer_url:
        kwargs["issuer"] = s.oidc_issuer_url
    return kwargs


def _signing_key(token: str, s: Settings) -> Any:
    secret = (s.jwt_shared_secret or "").strip()
    if secret:
        return secret

    jwks_url = (s.oidc_jwks_url or "").strip()
    if not jwks_url:
        if not s.oidc_issuer_url:
            raise UnauthorizedError("JWT/OIDC не настроен: укажи OIDC_JWKS_URL или OIDC_ISSUER_URL")
        jwks_url = _discover_jwks_url(s.oidc_issuer_url, int(s.oidc_discovery_timeout_sec or 5))
    try:
        return _get_jwks_client(jwks_url).get_signing_key_from_jwt(token).key
    except jwt.PyJWTError as e:
        raise UnauthorizedError("JWT не прошёл проверку", {"err": str(e)}) from e


def _verify_jwt(token: str) -> dict[str, Any]:
    s = get_settings()
    key = _signing_key(token, s)
    try:
        return jwt.decode(token, key, **_decode_options(s))
    except jwt.PyJWTError as e:
        raise UnauthorizedError("JWT не прошёл проверку", {"err": str(e)}) from e


# -----------------------------------------------------------------------------
# Режимы авторизации
# -----------------------------------------------------------------------------
def _auth_none(s: Settings, authorization: str | None, x_api_key: str | None) -> AuthContext:
    if s.is_prod:
        raise UnauthorizedError("AUTH_MODE=none запрещён в APP_ENV=prod")
    return AuthContext(subject="anonymous", auth_type="none")


def _auth_api_key(s: Settings, authorization: str | None, x_api_key: str | None) -> AuthContext:
    if x_api_key and x_api_key in _csv_set(s.service_api_keys):
        return AuthContext(subject="service", auth_type="service_api_key")
    if x_api_key and x_api_key in _csv_set(s.api_keys):
        return AuthContext(subject="user", auth_type="user_api_key")
    raise UnauthorizedError("Неверный API ключ")


def _auth_jwt(s: Settings, authorization: str | None, x_api_key: str | None) -> AuthContext:
    token = _extract_bearer(authorization)
    if token:
        claims = _verify_jwt(token)
        return AuthContext(
            subject=str(claims.get("sub") or claims.get("client_id") or "jwt_subject"),
            auth_type="jwt",
            claims=claims,
            roles=_roles_from_claims(claims),
        )

    # service API key как запасной путь для внутренних джоб; user-ключи в jwt-режиме не принимаются
    if (
        s.allow_service_api_key_in_jwt_mode
        and x_api_key
        and x_api_key in _csv_set(s.service_api_keys)
    ):
        return AuthContext(subject="service", auth_type="service_api_key")
    raise UnauthorizedError("Требуется Bearer JWT или service API key")


_MODES: dict[str, Callable[[Settings, str | None, str | None], AuthContext]] = {
    "none": _auth_none,
    "api_key": _auth_api_key,
    "jwt": _auth_jwt,
}


def require_auth(*, authorization: str | None, x_api_key: str | None) -> AuthContext:
    """
    Универсальная проверка авторизации по AUTH_MODE.
    Бросает UnauthorizedError, если запрос не прошёл.
    """
    s = get_settings()
    mode = (s.auth_mode or "api_key").lower().strip()
    handler = _MODES.get(mode)
    if handler is None:
        raise UnauthorizedError("Неизвестный режим авторизации", {"auth_mode": mode})
    return handler(s, authorization, x_api_key)


# -----------------------------------------------------------------------------
# Права
# -----------------------------------------------------------------------------
def caller_roles(ctx: AuthContext) -> set[str]:
    if ctx.auth_type != "jwt":
        return set()
    return set(ctx.roles) or set(_roles_from_claims(ctx.claims or {}))


def is_global_caller(ctx: AuthContext) -> bool:
    """
    Видит все центры: service-ключ, service JWT, глобальная роль (superadmin),
    пользовательский API-ключ (он не несёт tenant) и dev-режим без авторизации.
    """
    if ctx.is_service or ctx.auth_type == "user_api_key":
        return True
    return bool(caller_roles(ctx) & _csv_set(get_settings().global_roles))


def is_admin_caller(ctx: AuthContext) -> bool:
    """
    Может выполнять действия над очередью (retry-failed, внеочередной цикл).
    """
    if ctx.is_service:
        return True
    return bool(caller_roles(ctx) & _csv_set(get_settings().admin_roles))
