from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List


class Notifier(ABC):
    """Outbound message port. Delivery is fire-and-forget from the engine's view."""

    @abstractmethod
    def notify(self, recipient: str, template_kind: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("erp_engine")

    def notify(self, recipient: str, template_kind: str, payload: Dict[str, Any]) -> None:
        self._logger.info(
            "notification_sent",
            extra={
                "recipient": recipient,
                "template_kind": template_kind,
                "subject": payload.get("subject"),
            },
        )


@dataclass(frozen=True)
class SentNotification:
    recipient: str
    template_kind: str
    payload: Dict[str, Any]


class RecordingNotifier(Notifier):
    """Keeps every notification in memory; used by the dev server and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sent: List[SentNotification] = []

    def notify(self, recipient: str, template_kind: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._sent.append(SentNotification(recipient, template_kind, dict(payload)))

    @property
    def sent(self) -> List[SentNotification]:
        with self._lock:
            return list(self._sent)

    def clear(self) -> None:
        with self._lock:
            self._sent.clear()
