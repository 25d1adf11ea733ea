# app/workers/account_poller.py
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID

from settings import settings
from app.container import Services, get_services
from app.errors import ProcessorError

logger = logging.getLogger("gigpay.workers.account_poller")

DEFAULT_BATCH_SIZE = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def process_once(services: Optional[Services] = None, *, batch_size: int = DEFAULT_BATCH_SIZE) -> int:
    """
    One sweep over accounts that are not active yet: refresh each from the
    processor (the recovery coordinator reacts to the reports).
    Returns the number of accounts refreshed.
    """
    services = services or get_services()
    refreshed = 0

    for account in services.store.list_accounts_to_poll(limit=batch_size):
        try:
            services.monitor.refresh_status(account.owner_id)
        except ProcessorError as e:
            logger.warning(
                "account_poll_failed owner_id=%s processor_code=%s retryable=%s err=%s",
                account.owner_id,
                e.processor_code,
                e.retryable,
                e,
            )
            continue
        refreshed += 1

    return refreshed


class PeriodicTask:
    """Runs `fn` every `interval_s` on a daemon thread until stopped or past `until`."""

    def __init__(
        self,
        fn: Callable[[], object],
        *,
        interval_s: float,
        name: str,
        until: Optional[datetime] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.fn = fn
        self.interval_s = float(interval_s)
        self.name = name
        self.until = until
        self.clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, *, timeout: Optional[float] = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def expired(self) -> bool:
        return self.until is not None and self.clock() >= self.until

    def _run(self) -> None:
        while not self._stop.is_set():
            if self.expired():
                logger.info("periodic_task_expired name=%s until=%s", self.name, self.until)
                return
            try:
                self.fn()
            except Exception:
                logger.exception("periodic_task_failed name=%s", self.name)
            wait_s = self.interval_s
            if self.until is not None:
                wait_s = max(0.0, min(wait_s, (self.until - self.clock()).total_seconds()))
            self._stop.wait(wait_s)


class SessionPoller:
    """
    Status polling bound to a user session: started when the onboarding page
    is open, cancelled when the session ends.

    A poll also ends by itself when the session token expires or when the
    client has not renewed the watch within `ttl_s`, whichever comes first.
    """

    def __init__(
        self,
        services_provider: Callable[[], Services] = get_services,
        *,
        interval_s: Optional[float] = None,
        ttl_s: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.services_provider = services_provider
        self.interval_s = float(interval_s or settings.STATUS_POLL_SECONDS)
        self.ttl_s = float(ttl_s or settings.SESSION_POLL_TTL_MINUTES * 60)
        self.clock = clock
        self._tasks: dict[str, PeriodicTask] = {}
        self._lock = threading.Lock()

    def _poll(self, owner_id: UUID) -> None:
        try:
            self.services_provider().monitor.refresh_status(owner_id)
        except ProcessorError as e:
            logger.warning("session_poll_failed owner_id=%s processor_code=%s err=%s", owner_id, e.processor_code, e)

    def _deadline(self, expires_at: Optional[datetime]) -> datetime:
        idle = self.clock() + timedelta(seconds=self.ttl_s)
        return min(idle, expires_at) if expires_at is not None else idle

    def _prune_locked(self) -> None:
        for key in [k for k, t in self._tasks.items() if not t.running]:
            del self._tasks[key]

    def start(self, session_key: str, owner_id: UUID, *, expires_at: Optional[datetime] = None) -> bool:
        """Start polling for the session, or renew its deadline if it is already polling."""
        deadline = self._deadline(expires_at)
        if deadline <= self.clock():
            logger.info("session_poll_not_started session=%s reason=expired", session_key)
            return False

        with self._lock:
            self._prune_locked()
            task = self._tasks.get(session_key)
            if task is not None:
                task.until = deadline
                return False
            task = PeriodicTask(
                lambda: self._poll(owner_id),
                interval_s=self.interval_s,
                name=f"account-poll:{owner_id}",
                until=deadline,
                clock=self.clock,
            )
            self._tasks[session_key] = task
            task.start()
        logger.info("session_poll_started session=%s owner_id=%s until=%s", session_key, owner_id, deadline)
        return True

    def stop(self, session_key: str) -> bool:
        with self._lock:
            task = self._tasks.pop(session_key, None)
        if task is None:
            return False
        task.stop(timeout=self.interval_s)
        logger.info("session_poll_stopped session=%s", session_key)
        return True

    def stop_all(self) -> None:
        with self._lock:
            keys = list(self._tasks)
        for key in keys:
            self.stop(key)

    def is_active(self, session_key: str) -> bool:
        with self._lock:
            task = self._tasks.get(session_key)
            return task is not None and task.running


_session_poller: Optional[SessionPoller] = None


def get_session_poller() -> SessionPoller:
    global _session_poller
    if _session_poller is None:
        _session_poller = SessionPoller()
    return _session_poller


def run_forever(*, poll_seconds: Optional[int] = None, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
    poll_seconds = int(poll_seconds or settings.STATUS_POLL_SECONDS)
    logger.info("account_poller_starting interval=%ss batch_size=%s", poll_seconds, batch_size)
    while True:
        try:
            n = process_once(batch_size=batch_size)
            if n:
                logger.info("account_poller_refreshed count=%s", n)
        except KeyboardInterrupt:
            logger.info("account_poller_exiting")
            raise
        except Exception:
            logger.exception("account_poller_iteration_failed")
        time.sleep(poll_seconds)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    run_forever()
