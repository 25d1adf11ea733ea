# app/payouts/monitor.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID

from settings import settings
from app.collaborators import Notifier
from app.errors import PayoutNotAllowed
from app.payouts.model import PayoutAccount, StatusReport
from app.payouts.registry import account_lock_key
from app.payouts.state_machine import assert_account_transition, classify_account
from app.providers.base import PaymentProcessor, ProcessorAccount
from app.store.base import Store

logger = logging.getLogger("gigpay.payouts.monitor")

StatusListener = Callable[[StatusReport], None]

STATUS_MESSAGES = {
    "active": "Your payout account is ready. You can now receive payouts.",
    "restricted": "Your payout account needs more information before payouts can continue.",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatusMonitor:
    """
    Pulls the processor's view of a payout account, stores the classified
    status, and hands every resulting StatusReport to the registered listeners.

    Reports are published while the per-account lock is held, so listeners run
    serialized per account and may act on it without re-locking.
    """

    def __init__(
        self,
        *,
        store: Store,
        processor: PaymentProcessor,
        notifier: Notifier,
        clock: Callable[[], datetime] = _utcnow,
        stale_after: Optional[timedelta] = None,
    ):
        self.store = store
        self.processor = processor
        self.notifier = notifier
        self.clock = clock
        self.stale_after = stale_after or timedelta(minutes=settings.ONBOARDING_STALE_MINUTES)
        self._listeners: list[StatusListener] = []

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    # ---------------- public ----------------
    def refresh_status(self, owner_id: UUID) -> StatusReport:
        with self.store.lock(account_lock_key(owner_id)):
            account = self.store.get_payout_account(owner_id)
            if account is None:
                return StatusReport(owner_id=owner_id, status="none", checked_at=self.clock())
            if not account.external_account_id:
                return self.evaluate(account, previous_status=account.status)

            # ProcessorError propagates; stored state stays as it was
            snapshot = self.processor.retrieve_account(account.external_account_id)
            now = self.clock()
            _, report = self.apply_snapshot_locked(account, snapshot, as_of=now)
            self.publish_locked(report)
            return report

    def ensure_payout_allowed(self, owner_id: UUID) -> PayoutAccount:
        report = self.refresh_status(owner_id)
        if report.status != "active":
            logger.info("payout_blocked owner_id=%s status=%s", owner_id, report.status)
            raise PayoutNotAllowed(detail={"status": report.status, "requirements": list(report.requirements)})
        return self.store.get_payout_account(owner_id)

    # ---------------- lock held by caller ----------------
    def apply_snapshot_locked(
        self,
        account: PayoutAccount,
        snapshot: ProcessorAccount,
        *,
        as_of: datetime,
    ) -> tuple[PayoutAccount, StatusReport]:
        new_status = classify_account(
            charges_enabled=snapshot.charges_enabled,
            payouts_enabled=snapshot.payouts_enabled,
            details_submitted=snapshot.details_submitted,
            requirements=snapshot.requirements,
            link_ever_issued=account.last_link_issued_at is not None,
        )
        previous = account.status
        if new_status != previous:
            assert_account_transition(previous, new_status)

        now = self.clock()
        updated = self.store.update_payout_account(
            account.owner_id,
            status=new_status,
            requirements=tuple(snapshot.requirements),
            last_checked_at=now,
            status_as_of=as_of,
            updated_at=now,
        )
        if new_status != previous:
            logger.info(
                "payout_account_status_changed owner_id=%s from=%s to=%s requirements=%s",
                account.owner_id,
                previous,
                new_status,
                ",".join(snapshot.requirements),
            )
        return updated, self.evaluate(updated, previous_status=previous)

    def evaluate(self, account: PayoutAccount, *, previous_status: Optional[str] = None) -> StatusReport:
        now = self.clock()
        needs_attention = False
        reason = None

        if account.status == "restricted":
            needs_attention, reason = True, "RESTRICTED"
        elif account.status == "pending" and account.last_link_issued_at is not None:
            if now - account.last_link_issued_at > self.stale_after:
                needs_attention, reason = True, "STALE_PENDING"

        return StatusReport(
            owner_id=account.owner_id,
            status=account.status,
            requirements=tuple(account.requirements),
            needs_attention=needs_attention,
            reason=reason,
            status_changed=previous_status is not None and previous_status != account.status,
            previous_status=previous_status,
            checked_at=now,
        )

    def publish_locked(self, report: StatusReport) -> None:
        if report.status_changed and report.status in STATUS_MESSAGES:
            try:
                self.notifier.notify_user(
                    report.owner_id,
                    STATUS_MESSAGES[report.status],
                    kind=f"payout_account_{report.status}",
                    data={"requirements": list(report.requirements)},
                )
            except Exception:
                logger.warning("status_notify_failed owner_id=%s", report.owner_id, exc_info=True)

        for listener in self._listeners:
            try:
                listener(report)
            except Exception:
                logger.exception(
                    "status_listener_failed owner_id=%s listener=%s",
                    report.owner_id,
                    getattr(listener, "__qualname__", repr(listener)),
                )
