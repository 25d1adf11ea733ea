# app/payouts/recovery.py
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID

from settings import settings
from app.collaborators import Notifier
from app.errors import ProcessorError
from app.payouts.model import RecoverySession, StatusReport
from app.payouts.registry import PayoutAccountRegistry, account_lock_key
from app.payouts.state_machine import assert_recovery_transition
from app.store.base import Store
from services.metrics import increment_recovery_attempt

logger = logging.getLogger("gigpay.payouts.recovery")

ONBOARDING_RECOVERY_EXHAUSTED = "ONBOARDING_RECOVERY_EXHAUSTED"

RETRY_MESSAGE = "Your payout setup isn't finished yet. Use this new link to continue: {url}"
EXHAUSTED_MESSAGE = (
    "We couldn't finish setting up your payout account. "
    "Please contact support so we can help you complete it."
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecoveryCoordinator:
    """
    Bounded recovery of stalled onboarding, one session per payout account.

    Registered as an AccountStatusMonitor listener; `on_status` runs with the
    account lock already held.
    """

    def __init__(
        self,
        *,
        store: Store,
        registry: PayoutAccountRegistry,
        notifier: Notifier,
        clock: Callable[[], datetime] = _utcnow,
        max_attempts: Optional[int] = None,
        retry_interval: Optional[timedelta] = None,
    ):
        self.store = store
        self.registry = registry
        self.notifier = notifier
        self.clock = clock
        self.max_attempts = int(max_attempts or settings.RECOVERY_MAX_ATTEMPTS)
        self.retry_interval = retry_interval or timedelta(minutes=settings.ONBOARDING_STALE_MINUTES)

    def get_session(self, owner_id: UUID) -> Optional[RecoverySession]:
        return self.store.get_recovery_session(owner_id)

    def reset(self, owner_id: UUID) -> bool:
        """Support action: forget the session (EXHAUSTED included) so recovery can start over."""
        with self.store.lock(account_lock_key(owner_id)):
            removed = self.store.delete_recovery_session(owner_id)
        logger.info("recovery_session_reset owner_id=%s removed=%s", owner_id, removed)
        return removed

    def on_status(self, report: StatusReport) -> Optional[RecoverySession]:
        owner_id = report.owner_id

        if report.status == "active":
            if self.store.delete_recovery_session(owner_id):
                increment_recovery_attempt("recovered")
                logger.info("recovery_recovered owner_id=%s", owner_id)
            return None

        session = self.store.get_recovery_session(owner_id)
        if not report.needs_attention:
            return session

        now = self.clock()
        if session is None:
            assert_recovery_transition("STABLE", "STALLED")
            session = RecoverySession(
                owner_id=owner_id,
                state="STALLED",
                attempts=0,
                max_attempts=self.max_attempts,
                created_at=now,
                updated_at=now,
            )
            self.store.save_recovery_session(session)
            logger.info("recovery_stalled owner_id=%s reason=%s", owner_id, report.reason)

        if session.state == "EXHAUSTED":
            return session

        if session.last_link_issued_at is not None and now - session.last_link_issued_at < self.retry_interval:
            return session

        if session.attempts >= session.max_attempts:
            return self._exhaust(session, report, now)

        return self._retry(session, now)

    # ---------------- steps ----------------
    def _retry(self, session: RecoverySession, now: datetime) -> RecoverySession:
        owner_id = session.owner_id
        account = self.store.get_payout_account(owner_id)
        if account is None or not account.external_account_id:
            return session

        try:
            link = self.registry.issue_link_locked(account)
        except ProcessorError as e:
            # a failed issuance does not consume an attempt
            increment_recovery_attempt("link_failed")
            logger.warning(
                "recovery_link_failed owner_id=%s attempt=%s processor_code=%s err=%s",
                owner_id,
                session.attempts + 1,
                e.processor_code,
                e,
            )
            if session.state != "STALLED":
                assert_recovery_transition(session.state, "STALLED")
                session = replace(session, state="STALLED", updated_at=now)
                self.store.save_recovery_session(session)
            return session

        assert_recovery_transition(session.state, "RETRYING")
        session = replace(
            session,
            state="RETRYING",
            attempts=session.attempts + 1,
            last_link_issued_at=link.issued_at,
            updated_at=now,
        )
        self.store.save_recovery_session(session)
        increment_recovery_attempt("link_issued")
        logger.info(
            "recovery_link_issued owner_id=%s attempt=%s/%s",
            owner_id,
            session.attempts,
            session.max_attempts,
        )
        self._notify(owner_id, RETRY_MESSAGE.format(url=link.url), kind="payout_onboarding_retry", data={"url": link.url})
        return session

    def _exhaust(self, session: RecoverySession, report: StatusReport, now: datetime) -> RecoverySession:
        assert_recovery_transition(session.state, "EXHAUSTED")
        session = replace(session, state="EXHAUSTED", updated_at=now)

        with self.store.transaction():
            self.store.save_recovery_session(session)
            item = self.store.enqueue_intervention(
                kind=ONBOARDING_RECOVERY_EXHAUSTED,
                reference=str(session.owner_id),
                payload={
                    "attempts": session.attempts,
                    "status": report.status,
                    "reason": report.reason,
                    "requirements": list(report.requirements),
                },
            )

        increment_recovery_attempt("exhausted")
        logger.error(
            "recovery_exhausted owner_id=%s attempts=%s intervention_id=%s",
            session.owner_id,
            session.attempts,
            item.id,
        )
        self._notify(session.owner_id, EXHAUSTED_MESSAGE, kind="payout_onboarding_exhausted")
        return session

    def _notify(self, owner_id: UUID, message: str, *, kind: str, data: Optional[dict] = None) -> None:
        try:
            self.notifier.notify_user(owner_id, message, kind=kind, data=data)
        except Exception:
            logger.warning("recovery_notify_failed owner_id=%s kind=%s", owner_id, kind, exc_info=True)
