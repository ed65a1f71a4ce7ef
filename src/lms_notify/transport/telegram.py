"""
Транспорт Telegram Bot API.

Назначение:
- sendMessage / getMe через HTTP API бота
- классификация ошибок: что имеет смысл ретраить, а что нет

Важно:
- не логировать текст сообщений (там ПДн учеников/родителей)
- каждый вызов ограничен своим таймаутом (TELEGRAM_TIMEOUT_SEC)
"""

from __future__ import annotations

from typing import Any

import requests

from lms_notify.common.config import get_settings
from lms_notify.common.errors import ErrCode, TransportError
from lms_notify.common.logging import get_project_logger

log = get_project_logger()

# 429 и 5xx — временные; прочие 4xx (chat not found, bot blocked) — постоянные
_RETRYABLE_STATUSES = {408, 409, 425, 429, 500, 502, 503, 504}


class TelegramTransport:
    name = "telegram"

    def __init__(
        self,
        *,
        token: str | None = None,
        api_base: str | None = None,
        timeout_sec: int | None = None,
        default_parse_mode: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        s = get_settings()
        self.token = (token if token is not None else s.telegram_bot_token or "").strip()
        self.api_base = (api_base or s.telegram_api_base or "").rstrip("/")
        self.timeout_sec = int(timeout_sec if timeout_sec is not None else s.telegram_timeout_sec)
        self.default_parse_mode = default_parse_mode or s.telegram_default_parse_mode
        self._http = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.token and self.api_base)

    def _call(self, method: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.configured:
            raise TransportError(
                "TELEGRAM_BOT_TOKEN не настроен",
                code=ErrCode.TRANSPORT_NOT_CONFIGURED,
            )

        url = f"{self.api_base}/bot{self.token}/{method}"
        try:
            resp = self._http.post(url, json=payload or {}, timeout=self.timeout_sec)
        except requests.RequestException as e:
            raise TransportError(
                "Ошибка обращения к Telegram API",
                retryable=True,
                details={"method": method, "err": str(e)[:200]},
            ) from e

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if resp.status_code >= 400 or not data.get("ok"):
            status_code = int(data.get("error_code") or resp.status_code)
            description = str(data.get("description") or f"http_{resp.status_code}")
            details: dict[str, Any] = {"method": method, "status": status_code}
            retry_after = (data.get("parameters") or {}).get("retry_after")
            if retry_after is not None:
                details["retry_after"] = retry_after
            raise TransportError(
                description[:300],
                retryable=status_code in _RETRYABLE_STATUSES,
                details=details,
            )

        result = data.get("result")
        return result if isinstance(result, dict) else {}

    def send(
        self,
        destination: str,
        content: str,
        options: dict[str, Any] | None = None,
    ) -> str:
        opts = dict(options or {})
        payload: dict[str, Any] = {"chat_id": destination, "text": content}
        parse_mode = opts.pop("parse_mode", self.default_parse_mode)
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if opts.get("disable_notification"):
            payload["disable_notification"] = True

        result = self._call("sendMessage", payload)
        message_id = result.get("message_id")
        if message_id is None:
            raise TransportError(
                "Telegram не вернул message_id",
                retryable=True,
                details={"method": "sendMessage"},
            )
        log.debug(
            "telegram_message_sent",
            extra={"payload": {"chat_id": destination, "message_id": message_id}},
        )
        return str(message_id)

    def get_identity(self) -> dict[str, Any]:
        me = self._call("getMe")
        return {
            "provider": self.name,
            "id": me.get("id"),
            "username": me.get("username"),
            "can_join_groups": me.get("can_join_groups"),
        }
