# app/jobs/posting.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from settings import settings
from app.collaborators import Notifier
from app.errors import (
    AmountRejected,
    ContentRejected,
    IdempotencyConflict,
    IdempotencyKeyRequired,
    PaymentNotCompleted,
    PaymentNotCompletedRefundPending,
    ProcessorError,
    StorageUnavailable,
    authorization_error,
)
from app.jobs import state_machine as sm
from app.jobs.model import Job, JobDraft, Payment, PostingOutcome
from app.jobs.validators import validate_content, validate_payment_amount
from app.payments.authorization import PaymentAuthorizationService, idempotency_key_for
from app.payments.refunds import REFUND_CLOSE_FAILED, REFUND_PENDING, RefundCompensator
from app.store.base import DuplicateKey, Store
from services.idempotency import normalize_key, request_hash
from services.metrics import increment_idempotency_replay, increment_job_posting

logger = logging.getLogger("gigpay.jobs")

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def posting_lock_key(poster_id: UUID, client_key: str) -> str:
    return f"job-posting:{poster_id}:{client_key}"


def draft_fingerprint(draft: JobDraft, payment_method_ref: str) -> str:
    return request_hash(
        {
            "title": draft.title.strip(),
            "description": draft.description.strip(),
            "skills": list(draft.skills),
            "category": draft.category,
            "payment_type": draft.payment_type,
            "payment_amount_cents": draft.payment_amount_cents,
            "payment_method_ref": payment_method_ref,
        }
    )


class JobPostingManager:
    """
    Payment-first job posting.

    A job only becomes `open` in the same transaction that marks its payment
    `completed`. A charge that cannot be committed is refunded (or escalated),
    never left behind.
    """

    def __init__(
        self,
        *,
        store: Store,
        authorizer: PaymentAuthorizationService,
        compensator: RefundCompensator,
        notifier: Notifier,
        clock: Callable[[], datetime] = _utcnow,
        fee_cents: Optional[int] = None,
        commit_timeout_s: Optional[float] = None,
    ):
        self.store = store
        self.authorizer = authorizer
        self.compensator = compensator
        self.notifier = notifier
        self.clock = clock
        self.fee_cents = int(settings.PLATFORM_FEE_CENTS if fee_cents is None else fee_cents)
        self.commit_timeout_s = float(commit_timeout_s or settings.COMMIT_TIMEOUT_S)

    # ---------------- public ----------------
    def post_job(
        self,
        *,
        poster_id: UUID,
        draft: JobDraft,
        payment_method_ref: str,
        idempotency_key: Optional[str],
    ) -> PostingOutcome:
        tracker = sm.PostingTracker()
        self._validate(draft, tracker)

        client_key = normalize_key(idempotency_key)
        if client_key is None:
            raise IdempotencyKeyRequired()

        fingerprint = draft_fingerprint(draft, payment_method_ref)

        with self.store.lock(posting_lock_key(poster_id, client_key)):
            job, payment, replay, resumed = self._load_or_create(
                poster_id=poster_id,
                draft=draft,
                client_key=client_key,
                fingerprint=fingerprint,
            )
            if replay:
                tracker.advance(sm.AUTHORIZING)
                tracker.advance(sm.COMMITTING)
                tracker.advance(sm.OPEN)
                return PostingOutcome(job=job, payment=payment, state=tracker.state, replayed=True, notes=tracker.history)

            tracker.advance(sm.AUTHORIZING)
            auth = self.authorizer.authorize(
                payer_id=poster_id,
                amount_cents=payment.amount_cents,
                payment_method_ref=payment_method_ref,
                idempotency_key=payment.idempotency_key,
                metadata={"job_id": str(job.id), "payment_id": str(payment.id)},
            )

            if not auth.ok:
                tracker.advance(sm.AUTH_FAILED)
                self._mark_auth_failed(job, payment, auth.reason)
                increment_job_posting(auth.reason or "auth_failed")
                raise authorization_error(auth.reason or "processor_unavailable")

            if resumed:
                # the processor replays the original charge even after it was refunded
                self._refuse_refunded_charge(job, payment, auth.external_ref)

            tracker.advance(sm.COMMITTING)
            try:
                job, payment = self._commit(job, payment, auth.external_ref)
            except Exception:
                logger.exception(
                    "job_commit_failed job_id=%s payment_id=%s external_ref=%s",
                    job.id,
                    payment.id,
                    auth.external_ref,
                )
                tracker.advance(sm.COMPENSATING)
                self._compensate(job, payment, auth.external_ref, tracker)

        tracker.advance(sm.OPEN)
        increment_job_posting("open")
        logger.info(
            "job_opened job_id=%s payment_id=%s poster_id=%s total_cents=%s external_ref=%s",
            job.id,
            payment.id,
            poster_id,
            payment.amount_cents,
            payment.external_ref,
        )
        self._invalidate_listing(job.id)
        return PostingOutcome(job=job, payment=payment, state=tracker.state, notes=tracker.history)

    def get_job(self, job_id: UUID) -> Optional[tuple[Job, Optional[Payment]]]:
        job = self.store.get_job(job_id)
        if job is None:
            return None
        payment = self.store.get_payment(job.payment_id) if job.payment_id else None
        if payment is None:
            found = self.store.get_posting_by_key(job.poster_id, job.idempotency_key)
            payment = found[1] if found else None
        return job, payment

    # ---------------- steps ----------------
    def _validate(self, draft: JobDraft, tracker: sm.PostingTracker) -> None:
        content = validate_content(draft.title, draft.description, draft.skills)
        if not content.ok:
            tracker.advance(sm.REJECTED)
            increment_job_posting("rejected")
            raise ContentRejected(
                content.reason,
                detail={"reason": content.reason, "flagged_terms": content.flagged_terms},
            )

        amount = validate_payment_amount(draft.payment_amount_cents, draft.payment_type)
        if not amount.ok:
            tracker.advance(sm.REJECTED)
            increment_job_posting("rejected")
            raise AmountRejected(amount.reason, detail={"reason": amount.reason})

    def _load_or_create(
        self,
        *,
        poster_id: UUID,
        draft: JobDraft,
        client_key: str,
        fingerprint: str,
    ) -> tuple[Job, Payment, bool, bool]:
        """Returns (job, payment, replay, resumed)."""
        try:
            existing = self.store.get_posting_by_key(poster_id, client_key)
        except Exception as e:
            logger.exception("posting_lookup_failed poster_id=%s key=%s", poster_id, client_key)
            raise StorageUnavailable() from e

        if existing is not None:
            job, payment = existing
            if job.request_hash != fingerprint:
                raise IdempotencyConflict(detail={"job_id": str(job.id)})
            job, payment, replay = self._resume(job, payment)
            return job, payment, replay, True

        now = self.clock()
        job_id = uuid.uuid4()
        payment_id = uuid.uuid4()
        total = int(draft.payment_amount_cents) + self.fee_cents

        job = Job(
            id=job_id,
            poster_id=poster_id,
            title=draft.title.strip(),
            description=draft.description.strip(),
            skills=tuple(s.strip() for s in draft.skills if s.strip()),
            category=draft.category,
            payment_type=draft.payment_type,
            payment_amount_cents=int(draft.payment_amount_cents),
            platform_fee_cents=self.fee_cents,
            total_amount_cents=total,
            status="pending_payment",
            idempotency_key=client_key,
            request_hash=fingerprint,
            created_at=now,
            updated_at=now,
        )
        payment = Payment(
            id=payment_id,
            job_id=job_id,
            payer_id=poster_id,
            amount_cents=total,
            currency=self.authorizer.currency,
            status="pending",
            idempotency_key=idempotency_key_for(poster_id, client_key),
            created_at=now,
            updated_at=now,
        )

        try:
            with self.store.transaction():
                self.store.insert_posting(job, payment)
        except DuplicateKey as e:
            # only reachable if another process bypassed the attempt lock
            raise IdempotencyConflict(detail={"idempotency_key": client_key}) from e
        except Exception as e:
            logger.exception("posting_insert_failed poster_id=%s key=%s", poster_id, client_key)
            raise StorageUnavailable() from e

        logger.info("job_pending_payment job_id=%s payment_id=%s poster_id=%s", job.id, payment.id, poster_id)
        return job, payment, False, False

    def _resume(self, job: Job, payment: Payment) -> tuple[Job, Payment, bool]:
        """Decide what an earlier attempt with the same key means for this one."""
        if job.status == "open":
            increment_idempotency_replay("jobs.post")
            logger.info("job_posting_replayed job_id=%s", job.id)
            return job, payment, True

        if job.status == "refunded_closed":
            increment_idempotency_replay("jobs.post")
            raise PaymentNotCompleted(detail={"job_id": str(job.id)})

        if job.status == "payment_failed":
            code = job.failure_code or payment.failure_code
            if code == REFUND_PENDING:
                increment_idempotency_replay("jobs.post")
                raise PaymentNotCompletedRefundPending(detail={"job_id": str(job.id)})
            if code != "processor_unavailable":
                increment_idempotency_replay("jobs.post")
                raise authorization_error(code or "card_declined")
            return self._reopen_for_retry(job, payment)

        # pending_payment: an earlier attempt died mid-flight; the processor key
        # is unchanged so re-authorizing cannot double-charge. Whether that charge
        # was refunded meanwhile is checked after authorization.
        return job, payment, False

    def _reopen_for_retry(self, job: Job, payment: Payment) -> tuple[Job, Payment, bool]:
        sm.assert_job_transition(job.status, "pending_payment")
        sm.assert_payment_transition(payment.status, "pending")
        try:
            with self.store.transaction():
                self.store.update_job(job.id, from_status="payment_failed", status="pending_payment", failure_code=None)
                self.store.update_payment(payment.id, from_status="failed", status="pending", failure_code=None)
                job = self.store.get_job(job.id)
                payment = self.store.get_payment(payment.id)
        except Exception as e:
            logger.exception("posting_retry_reset_failed job_id=%s", job.id)
            raise StorageUnavailable() from e
        logger.info("job_posting_retry job_id=%s payment_id=%s", job.id, payment.id)
        return job, payment, False

    def _mark_auth_failed(self, job: Job, payment: Payment, reason: Optional[str]) -> None:
        sm.assert_job_transition(job.status, "payment_failed")
        sm.assert_payment_transition(payment.status, "failed")
        try:
            with self.store.transaction():
                self.store.update_job(job.id, from_status="pending_payment", status="payment_failed", failure_code=reason)
                self.store.update_payment(payment.id, from_status="pending", status="failed", failure_code=reason)
        except Exception:
            # Nothing was charged; the pair stays pending_payment and a retry resumes it.
            logger.exception("auth_failure_record_failed job_id=%s reason=%s", job.id, reason)
        logger.info("job_payment_failed job_id=%s payment_id=%s reason=%s", job.id, payment.id, reason)

    def _commit(self, job: Job, payment: Payment, external_ref: Optional[str]) -> tuple[Job, Payment]:
        now = self.clock()
        sm.assert_completed_invariant("completed", external_ref)

        with self.store.transaction(timeout_s=self.commit_timeout_s):
            # payment row first, then job row: same order as the webhook handler
            cur_payment = self.store.get_payment(payment.id, for_update=True)
            cur_job = self.store.get_job(job.id, for_update=True)
            if cur_payment is None or cur_job is None:
                raise RuntimeError(f"posting rows missing job_id={job.id}")

            if (
                cur_payment.status == "completed"
                and cur_job.status == "open"
                and cur_payment.external_ref == external_ref
            ):
                logger.info("job_already_opened_by_webhook job_id=%s", job.id)
                return cur_job, cur_payment

            sm.assert_payment_transition(cur_payment.status, "completed")
            sm.assert_job_transition(cur_job.status, "open")

            paid = self.store.update_payment(
                payment.id,
                from_status="pending",
                status="completed",
                external_ref=external_ref,
                completed_at=now,
                failure_code=None,
                updated_at=now,
            )
            opened = self.store.update_job(
                job.id,
                from_status="pending_payment",
                status="open",
                payment_id=payment.id,
                failure_code=None,
                updated_at=now,
            )
            if not (paid and opened):
                raise RuntimeError(f"posting commit lost a status race job_id={job.id}")

            committed_payment = self.store.get_payment(payment.id)
            committed_job = self.store.get_job(job.id)
            sm.assert_open_invariant(committed_job.status, committed_payment.status)
            return committed_job, committed_payment

    def _compensate(self, job: Job, payment: Payment, external_ref: str, tracker: sm.PostingTracker) -> None:
        outcome = self.compensator.refund(
            external_ref=external_ref,
            amount_cents=payment.amount_cents,
            context={"job_id": job.id, "payment_id": payment.id, "poster_id": job.poster_id},
        )

        if outcome.ok:
            tracker.advance(sm.REFUNDED_CLOSED)
            self._close_refunded(job, payment, external_ref)
            increment_job_posting("refunded")
            raise PaymentNotCompleted(detail={"job_id": str(job.id)})

        self._mark_refund_pending(job, payment, external_ref)
        increment_job_posting("refund_pending")
        raise PaymentNotCompletedRefundPending(
            detail={"job_id": str(job.id), "escalated": outcome.escalated},
        )

    def _refuse_refunded_charge(self, job: Job, payment: Payment, external_ref: Optional[str]) -> None:
        try:
            refunded = self.compensator.already_refunded(external_ref)
        except ProcessorError as e:
            # cannot prove the charge is still live; leave the pair pending for the next retry
            logger.warning("refund_check_failed job_id=%s external_ref=%s", job.id, external_ref, exc_info=True)
            raise authorization_error("processor_unavailable") from e

        if not refunded:
            return

        logger.warning("posting_retry_on_refunded_charge job_id=%s external_ref=%s", job.id, external_ref)
        self._close_refunded(job, payment, external_ref)
        increment_job_posting("refunded")
        raise PaymentNotCompleted(detail={"job_id": str(job.id)})

    def _close_refunded(self, job: Job, payment: Payment, external_ref: str) -> None:
        attempts = self.compensator.max_attempts
        for attempt in range(1, attempts + 1):
            now = self.clock()
            try:
                with self.store.transaction():
                    self.store.update_payment(
                        payment.id,
                        from_status="pending",
                        status="refunded",
                        external_ref=external_ref,
                        refunded_at=now,
                        updated_at=now,
                    )
                    self.store.update_job(job.id, from_status="pending_payment", status="refunded_closed", updated_at=now)
            except Exception:
                logger.warning(
                    "refunded_close_attempt_failed job_id=%s external_ref=%s attempt=%s/%s",
                    job.id,
                    external_ref,
                    attempt,
                    attempts,
                    exc_info=True,
                )
                if attempt < attempts:
                    self.compensator.backoff(attempt)
                continue
            logger.info("job_refunded_closed job_id=%s external_ref=%s", job.id, external_ref)
            return

        # The refund went through but the pair is still pending locally. A retry of
        # the same key re-checks the processor, and charge.refunded closes the pair.
        self.compensator.escalate(
            kind=REFUND_CLOSE_FAILED,
            reference=external_ref,
            payload={"job_id": str(job.id), "payment_id": str(payment.id), "poster_id": str(job.poster_id)},
        )

    def _mark_refund_pending(self, job: Job, payment: Payment, external_ref: str) -> None:
        try:
            with self.store.transaction():
                self.store.update_payment(
                    payment.id,
                    from_status="pending",
                    status="failed",
                    external_ref=external_ref,
                    failure_code=REFUND_PENDING,
                )
                self.store.update_job(
                    job.id,
                    from_status="pending_payment",
                    status="payment_failed",
                    failure_code=REFUND_PENDING,
                )
        except Exception:
            logger.exception("refund_pending_mark_failed job_id=%s external_ref=%s", job.id, external_ref)

    def _invalidate_listing(self, job_id: UUID) -> None:
        try:
            self.notifier.invalidate_job_listing(job_id)
        except Exception:
            logger.warning("job_listing_invalidate_failed job_id=%s", job_id, exc_info=True)

