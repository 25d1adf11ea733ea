# app/collaborators.py
from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Optional, Protocol
from uuid import UUID

logger = logging.getLogger("gigpay.notify")


class Notifier(Protocol):
    """Outbound hooks owned by other parts of the platform (messaging, listing cache)."""

    def notify_user(self, user_id: UUID, message: str, *, kind: str, data: Optional[dict[str, Any]] = None) -> None: ...

    def invalidate_job_listing(self, job_id: UUID) -> None: ...


class LoggingNotifier:
    def notify_user(self, user_id, message, *, kind, data=None):
        logger.info("notify_user user_id=%s kind=%s message=%s", user_id, kind, message)

    def invalidate_job_listing(self, job_id):
        logger.info("job_listing_invalidated job_id=%s", job_id)


class RecordingNotifier:
    """Keeps every call; used in sandbox mode and tests."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.notifications: list[dict[str, Any]] = []
        self.invalidated: list[UUID] = []

    def notify_user(self, user_id, message, *, kind, data=None):
        with self._lock:
            self.notifications.append({"user_id": user_id, "kind": kind, "message": message, "data": dict(data or {})})

    def invalidate_job_listing(self, job_id):
        with self._lock:
            self.invalidated.append(job_id)

    def kinds_for(self, user_id: UUID) -> list[str]:
        return [n["kind"] for n in self.notifications if n["user_id"] == user_id]
