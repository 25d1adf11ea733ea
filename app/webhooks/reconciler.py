# app/webhooks/reconciler.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from datetime import datetime, timezone
from typing import Callable, Optional

from app.collaborators import Notifier
from app.jobs import state_machine as sm
from app.jobs.model import Job, Payment
from app.jobs.posting import posting_lock_key
from app.payments.refunds import CHARGE_WITHOUT_JOB, REFUND_PENDING, RefundCompensator
from app.payouts.monitor import AccountStatusMonitor
from app.payouts.registry import account_lock_key
from app.providers.base import ProcessorAccount
from app.store.base import Store, WebhookEventRecord
from app.webhooks.events import (
    AccountUpdated,
    PaymentFailed,
    PaymentRefunded,
    PaymentSucceeded,
    Unsupported,
)
from services.metrics import increment_webhook_event

logger = logging.getLogger("gigpay.webhooks")

CLOSED_MESSAGE = "Your job post was closed because its payment did not go through. Any charge has been refunded."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Ack:
    event_id: str
    applied: bool
    duplicate: bool = False
    reason: Optional[str] = None


class _AlreadyProcessed(Exception):
    """Another delivery of the same event committed first; roll this one back."""

    def __init__(self, record: Optional[WebhookEventRecord]):
        super().__init__("event already processed")
        self.record = record


@dataclass
class _Result:
    applied: bool
    reason: Optional[str] = None
    external_ref: Optional[str] = None
    # side effects run only after the transaction commits
    after_commit: list[Callable[[], None]] = field(default_factory=list)


class WebhookReconciliationHandler:
    """
    Applies processor events to local state.

    Every event (applied or ignored) is recorded under its id in the same
    transaction as the state change it causes, so redeliveries are no-ops.
    Unknown references are acknowledged, never bounced back to the processor.
    """

    def __init__(
        self,
        *,
        store: Store,
        monitor: AccountStatusMonitor,
        compensator: RefundCompensator,
        notifier: Notifier,
        clock: Callable[[], datetime] = _utcnow,
        provider: str = "stripe",
    ):
        self.store = store
        self.monitor = monitor
        self.compensator = compensator
        self.notifier = notifier
        self.clock = clock
        self.provider = provider

    def handle_event(self, event) -> Ack:
        seen = self.store.get_webhook_event(event.event_id)
        if seen is not None:
            return self._duplicate(event, seen)

        try:
            if isinstance(event, AccountUpdated):
                return self._handle_account(event)
            result = self._in_transaction(event, self._dispatch_payment)
        except _AlreadyProcessed as dup:
            return self._duplicate(event, dup.record)

        self._run_after_commit(event, result)
        return self._ack(event, result)

    # ---------------- plumbing ----------------
    def _in_transaction(self, event, apply: Callable) -> _Result:
        with self.store.transaction():
            result = apply(event)
            recorded = self.store.record_webhook_event(
                WebhookEventRecord(
                    event_id=event.event_id,
                    event_type=event.kind,
                    received_at=self.clock(),
                    outcome="applied" if result.applied else "ignored",
                    reason=result.reason,
                    external_ref=result.external_ref,
                )
            )
            if not recorded:
                raise _AlreadyProcessed(None)
        return result

    def _duplicate(self, event, record: Optional[WebhookEventRecord]) -> Ack:
        logger.info("webhook_event_duplicate event_id=%s kind=%s", event.event_id, event.kind)
        return Ack(event_id=event.event_id, applied=False, duplicate=True, reason=record.reason if record else None)

    def _ack(self, event, result: _Result) -> Ack:
        increment_webhook_event(self.provider, event.kind, result.applied)
        logger.info(
            "webhook_event_processed event_id=%s kind=%s applied=%s reason=%s external_ref=%s",
            event.event_id,
            event.kind,
            result.applied,
            result.reason,
            result.external_ref,
        )
        return Ack(event_id=event.event_id, applied=result.applied, reason=result.reason)

    def _run_after_commit(self, event, result: _Result) -> None:
        for action in result.after_commit:
            try:
                action()
            except Exception:
                logger.exception("webhook_followup_failed event_id=%s kind=%s", event.event_id, event.kind)

    # ---------------- payments ----------------
    def _dispatch_payment(self, event) -> _Result:
        if isinstance(event, Unsupported):
            return _Result(applied=False, reason="UNSUPPORTED_EVENT")

        payment = self.store.get_payment_by_external_ref(event.external_ref, for_update=True)
        if payment is None and event.payment_id is not None:
            candidate = self.store.get_payment(event.payment_id, for_update=True)
            if candidate is not None and candidate.external_ref in (None, event.external_ref):
                payment = candidate
        if payment is None:
            return _Result(applied=False, reason="PAYMENT_NOT_FOUND", external_ref=event.external_ref)

        job = self.store.get_job(payment.job_id, for_update=True)
        if job is None:
            return _Result(applied=False, reason="JOB_NOT_FOUND", external_ref=event.external_ref)

        if isinstance(event, PaymentSucceeded):
            return self._payment_succeeded(event, payment, job)
        if isinstance(event, PaymentFailed):
            return self._payment_failed(event, payment, job)
        if isinstance(event, PaymentRefunded):
            return self._payment_refunded(event, payment, job)
        return _Result(applied=False, reason="UNSUPPORTED_EVENT")

    def _payment_succeeded(self, event: PaymentSucceeded, payment: Payment, job: Job) -> _Result:
        ref = event.external_ref

        if payment.status == "completed":
            return _Result(applied=False, reason="ALREADY_COMPLETED", external_ref=ref)

        if payment.status == "pending" and job.status == "pending_payment":
            now = self.clock()
            sm.assert_completed_invariant("completed", ref)
            self.store.update_payment(
                payment.id,
                from_status="pending",
                status="completed",
                external_ref=ref,
                completed_at=now,
                failure_code=None,
                updated_at=now,
            )
            self.store.update_job(
                job.id,
                from_status="pending_payment",
                status="open",
                payment_id=payment.id,
                failure_code=None,
                updated_at=now,
            )
            return _Result(
                applied=True,
                reason="JOB_OPENED",
                external_ref=ref,
                after_commit=[
                    lambda: self.notifier.invalidate_job_listing(job.id),
                    lambda: self.notifier.notify_user(
                        job.poster_id, "Your job post is live.", kind="job_opened", data={"job_id": str(job.id)}
                    ),
                ],
            )

        # money landed but there is no live job behind it
        context = {"job_id": job.id, "payment_id": payment.id, "poster_id": job.poster_id, "event_id": event.event_id}
        amount = event.amount_cents or payment.amount_cents

        if payment.status == "failed":
            self.store.enqueue_intervention(
                kind=CHARGE_WITHOUT_JOB,
                reference=ref,
                payload={**{k: str(v) for k, v in context.items()}, "local_status": payment.status},
            )

        logger.warning(
            "charge_without_job external_ref=%s payment_id=%s local_status=%s job_status=%s",
            ref,
            payment.id,
            payment.status,
            job.status,
        )
        if payment.status == "failed":
            followup = partial(self._refund_stranded_charge, job, payment.id, ref, amount, context)
        else:
            followup = partial(self.compensator.refund, external_ref=ref, amount_cents=amount, context=context)
        return _Result(applied=False, reason="CHARGE_WITHOUT_JOB", external_ref=ref, after_commit=[followup])

    def _refund_stranded_charge(self, job: Job, payment_id, ref: str, amount: Optional[int], context: dict) -> None:
        """
        Refund a charge that landed on a locally failed posting, then record the
        result on the pair so a retry of the same key can never reopen it.

        Runs under the posting lock: a concurrent retry either finishes first
        (and owns the charge) or sees the closed pair.
        """
        with self.store.lock(posting_lock_key(job.poster_id, job.idempotency_key)):
            current = self.store.get_payment(payment_id)
            if current is None or current.status != "failed":
                logger.info(
                    "stranded_charge_claimed payment_id=%s status=%s external_ref=%s",
                    payment_id,
                    current.status if current else None,
                    ref,
                )
                return

            outcome = self.compensator.refund(external_ref=ref, amount_cents=amount, context=context)
            now = self.clock()
            with self.store.transaction():
                if outcome.ok:
                    self.store.update_payment(
                        payment_id,
                        from_status="failed",
                        status="refunded",
                        external_ref=ref,
                        refunded_at=now,
                        updated_at=now,
                    )
                    self.store.update_job(job.id, from_status="payment_failed", status="refunded_closed", updated_at=now)
                else:
                    self.store.update_payment(
                        payment_id,
                        from_status="failed",
                        status="failed",
                        external_ref=ref,
                        failure_code=REFUND_PENDING,
                        updated_at=now,
                    )
                    self.store.update_job(
                        job.id,
                        from_status="payment_failed",
                        status="payment_failed",
                        failure_code=REFUND_PENDING,
                        updated_at=now,
                    )
        logger.info("stranded_charge_settled payment_id=%s external_ref=%s refunded=%s", payment_id, ref, outcome.ok)

    def _payment_failed(self, event: PaymentFailed, payment: Payment, job: Job) -> _Result:
        ref = event.external_ref
        now = self.clock()

        if payment.status == "pending":
            code = event.reason or "card_declined"
            self.store.update_payment(payment.id, from_status="pending", status="failed", failure_code=code, updated_at=now)
            self.store.update_job(job.id, from_status="pending_payment", status="payment_failed", failure_code=code, updated_at=now)
            return _Result(applied=True, reason="PAYMENT_FAILED", external_ref=ref)

        if payment.status == "completed":
            # the job went live on a payment the processor now reports as failed
            sm.assert_payment_transition("completed", "refunded")
            self.store.update_payment(payment.id, from_status="completed", status="refunded", refunded_at=now, updated_at=now)
            closed = self._close_job(job, now)
            return _Result(
                applied=True,
                reason="JOB_CLOSED",
                external_ref=ref,
                after_commit=self._closed_followups(job) if closed else [],
            )

        return _Result(applied=False, reason=f"ALREADY_{payment.status.upper()}", external_ref=ref)

    def _payment_refunded(self, event: PaymentRefunded, payment: Payment, job: Job) -> _Result:
        ref = event.external_ref
        now = self.clock()

        if payment.status == "refunded":
            return _Result(applied=False, reason="ALREADY_REFUNDED", external_ref=ref)

        was_open = job.status == "open"
        sm.assert_payment_transition(payment.status, "refunded")
        self.store.update_payment(
            payment.id,
            from_status=payment.status,
            status="refunded",
            external_ref=payment.external_ref or ref,
            refunded_at=now,
            updated_at=now,
        )
        closed = self._close_job(job, now)
        return _Result(
            applied=True,
            reason="PAYMENT_REFUNDED",
            external_ref=ref,
            after_commit=self._closed_followups(job) if (closed and was_open) else [],
        )

    def _close_job(self, job: Job, now: datetime) -> bool:
        if job.status == "refunded_closed":
            return False
        sm.assert_job_transition(job.status, "refunded_closed")
        return self.store.update_job(job.id, from_status=job.status, status="refunded_closed", updated_at=now)

    def _closed_followups(self, job: Job) -> list[Callable[[], None]]:
        return [
            lambda: self.notifier.invalidate_job_listing(job.id),
            lambda: self.notifier.notify_user(job.poster_id, CLOSED_MESSAGE, kind="job_closed", data={"job_id": str(job.id)}),
        ]

    # ---------------- payout accounts ----------------
    def _handle_account(self, event: AccountUpdated) -> Ack:
        account = self.store.get_payout_account_by_external(event.account_id)
        if account is None:
            result = self._in_transaction(
                event, lambda e: _Result(applied=False, reason="ACCOUNT_NOT_FOUND", external_ref=e.account_id)
            )
            return self._ack(event, result)

        with self.store.lock(account_lock_key(account.owner_id)):
            report_box: list = []

            def apply(e: AccountUpdated) -> _Result:
                current = self.store.get_payout_account(account.owner_id)
                if current.status_as_of is not None and e.occurred_at <= current.status_as_of:
                    return _Result(applied=False, reason="STALE_EVENT", external_ref=e.account_id)

                snapshot = ProcessorAccount(
                    account_id=e.account_id,
                    charges_enabled=e.charges_enabled,
                    payouts_enabled=e.payouts_enabled,
                    details_submitted=e.details_submitted,
                    requirements=tuple(e.requirements),
                )
                _, report = self.monitor.apply_snapshot_locked(current, snapshot, as_of=e.occurred_at)
                report_box.append(report)
                return _Result(applied=True, reason=f"STATUS_{report.status.upper()}", external_ref=e.account_id)

            result = self._in_transaction(event, apply)
            for report in report_box:
                self.monitor.publish_locked(report)

        return self._ack(event, result)
