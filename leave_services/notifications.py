"""
Notification dispatch adapters.

Delivery (chat, email) lives outside this system; these adapters satisfy the
``NotificationDispatcher`` protocol for deployments without a delivery
channel and for tests.
"""

from __future__ import annotations

import threading

from leave_kernel.domain.approval import Notification, NotificationKind
from leave_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


class LoggingNotificationDispatcher:
    """Writes every notification to the structured log."""

    def dispatch(self, notification: Notification) -> None:
        logger.info(
            "notification_dispatched",
            extra={
                "kind": notification.kind.value,
                "document_id": str(notification.document_id),
                "recipients": [str(r) for r in notification.recipient_ids],
            },
        )


class RecordingNotificationDispatcher:
    """Keeps dispatched notifications in memory."""

    def __init__(self) -> None:
        self._sent: list[Notification] = []
        self._lock = threading.Lock()

    def dispatch(self, notification: Notification) -> None:
        with self._lock:
            self._sent.append(notification)

    @property
    def sent(self) -> tuple[Notification, ...]:
        with self._lock:
            return tuple(self._sent)

    def of_kind(self, kind: NotificationKind) -> tuple[Notification, ...]:
        return tuple(n for n in self.sent if n.kind == kind)

    def clear(self) -> None:
        with self._lock:
            self._sent.clear()
