"""
Mock-транспорт для dev/тестов.

Назначение:
- гонять очередь без реального Telegram
- сценарии отказов: "упасть N раз", "медленный шлюз", "постоянная ошибка"
"""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from lms_notify.common.errors import TransportError


@dataclass
class SentMessage:
    destination: str
    content: str
    options: dict[str, Any] = field(default_factory=dict)
    message_id: str = ""


class MockTransport:
    """
    Транспорт в памяти.

    - fail_times: первые N вызовов send() падают
    - fail_destinations: адресаты, для которых send() падает всегда
    - delay_sec: искусственная задержка каждого send()
    - retryable: какой TransportError бросать при отказе
    """

    name = "mock"
    configured = True

    def __init__(
        self,
        *,
        fail_times: int = 0,
        fail_destinations: set[str] | None = None,
        delay_sec: float = 0.0,
        retryable: bool = True,
    ) -> None:
        self.fail_times = fail_times
        self.fail_destinations = set(fail_destinations or ())
        self.delay_sec = delay_sec
        self.retryable = retryable
        self.sent: list[SentMessage] = []
        self.calls = 0
        self.attempts: list[str] = []
        self._ids = itertools.count(1000)
        self._lock = threading.Lock()

    def send(
        self,
        destination: str,
        content: str,
        options: dict[str, Any] | None = None,
    ) -> str:
        if self.delay_sec > 0:
            time.sleep(self.delay_sec)
        with self._lock:
            self.calls += 1
            self.attempts.append(destination)
            if self.calls <= self.fail_times or destination in self.fail_destinations:
                raise TransportError(
                    f"mock failure #{self.calls}",
                    retryable=self.retryable,
                    details={"destination": destination},
                )
            message_id = str(next(self._ids))
            self.sent.append(
                SentMessage(
                    destination=destination,
                    content=content,
                    options=dict(options or {}),
                    message_id=message_id,
                )
            )
        return message_id

    def get_identity(self) -> dict[str, Any]:
        return {"provider": self.name, "id": 0, "username": "mock_bot"}

    def sent_to(self, destination: str) -> list[SentMessage]:
        return [m for m in self.sent if m.destination == destination]
