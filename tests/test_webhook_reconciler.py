import uuid
from datetime import timedelta

import pytest

from app.errors import PaymentNotCompleted, ProcessorUnavailable
from app.jobs.model import Job, JobDraft, Payment
from app.payments.refunds import REFUND_PENDING
from app.webhooks.events import AccountUpdated, PaymentFailed, PaymentRefunded, PaymentSucceeded, Unsupported
from services.metrics import counter_value


def _pending_posting(store, clock, poster_id, *, amount_cents=10_250):
    now = clock()
    job_id, payment_id = uuid.uuid4(), uuid.uuid4()
    job = Job(
        id=job_id,
        poster_id=poster_id,
        title="Walk two dogs",
        description="Morning walks around the park for a week",
        skills=(),
        category=None,
        payment_type="fixed",
        payment_amount_cents=amount_cents - 250,
        platform_fee_cents=250,
        total_amount_cents=amount_cents,
        status="pending_payment",
        idempotency_key=f"key-{job_id}",
        request_hash="h",
        created_at=now,
        updated_at=now,
    )
    payment = Payment(
        id=payment_id,
        job_id=job_id,
        payer_id=poster_id,
        amount_cents=amount_cents,
        currency="usd",
        status="pending",
        idempotency_key=f"job-posting:{poster_id}:key-{job_id}",
        created_at=now,
        updated_at=now,
    )
    store.insert_posting(job, payment)
    return job, payment


def _open_job(services, poster_id, key="idem-open"):
    return services.postings.post_job(
        poster_id=poster_id,
        draft=JobDraft(
            title="Hang three shelves",
            description="Drill and mount three shelves in the living room",
            payment_type="fixed",
            payment_amount_cents=10_000,
        ),
        payment_method_ref="pm_card_visa",
        idempotency_key=key,
    )


def _succeeded(clock, ref, payment_id=None, event_id="evt_ok"):
    return PaymentSucceeded(event_id=event_id, occurred_at=clock(), external_ref=ref, payment_id=payment_id)


def test_success_event_opens_pending_job(services, store, clock, notifier, poster_id):
    job, payment = _pending_posting(store, clock, poster_id)

    ack = services.webhooks.handle_event(_succeeded(clock, "pi_async", payment.id))

    assert ack.applied and ack.reason == "JOB_OPENED"
    assert store.get_job(job.id).status == "open"
    stored = store.get_payment(payment.id)
    assert stored.status == "completed"
    assert stored.external_ref == "pi_async"
    assert notifier.invalidated == [job.id]
    assert notifier.kinds_for(poster_id) == ["job_opened"]
    assert counter_value(
        "webhook_events_total", {"provider": "stripe", "event_type": "payment.succeeded", "applied": "true"}
    ) == 1


def test_redelivered_event_is_a_no_op(services, store, clock, notifier, poster_id):
    _, payment = _pending_posting(store, clock, poster_id)
    event = _succeeded(clock, "pi_dup", payment.id)

    first = services.webhooks.handle_event(event)
    second = services.webhooks.handle_event(event)

    assert first.applied
    assert second.duplicate and not second.applied
    assert second.reason == "JOB_OPENED"
    assert len(notifier.notifications) == 1


def test_success_after_synchronous_open_is_ignored(services, store, clock, poster_id):
    outcome = _open_job(services, poster_id)
    ack = services.webhooks.handle_event(_succeeded(clock, outcome.payment.external_ref))
    assert not ack.applied
    assert ack.reason == "ALREADY_COMPLETED"
    assert store.get_webhook_event("evt_ok").outcome == "ignored"


def test_failure_on_pending_payment_marks_failed(services, store, clock, poster_id):
    job, payment = _pending_posting(store, clock, poster_id)
    ack = services.webhooks.handle_event(
        PaymentFailed(
            event_id="evt_fail", occurred_at=clock(), external_ref="pi_x", payment_id=payment.id, reason="insufficient_funds"
        )
    )
    assert ack.reason == "PAYMENT_FAILED"
    assert store.get_job(job.id).status == "payment_failed"
    assert store.get_payment(payment.id).failure_code == "insufficient_funds"


def test_failure_after_open_closes_job(services, store, clock, notifier, poster_id):
    outcome = _open_job(services, poster_id)
    notifier.invalidated.clear()

    ack = services.webhooks.handle_event(
        PaymentFailed(event_id="evt_late_fail", occurred_at=clock(), external_ref=outcome.payment.external_ref)
    )

    assert ack.applied and ack.reason == "JOB_CLOSED"
    assert store.get_job(outcome.job.id).status == "refunded_closed"
    assert store.get_payment(outcome.payment.id).status == "refunded"
    assert notifier.invalidated == [outcome.job.id]
    assert "job_closed" in notifier.kinds_for(poster_id)


def test_success_after_local_failure_refunds_and_traces(services, store, clock, processor, poster_id):
    job, payment = _pending_posting(store, clock, poster_id)
    charge = processor.authorize(
        amount_cents=payment.amount_cents,
        currency="usd",
        customer_ref="cus_poster",
        payment_method_ref="pm_card_visa",
        idempotency_key=payment.idempotency_key,
        metadata={},
    )
    store.update_payment(payment.id, from_status="pending", status="failed", failure_code="processor_unavailable")
    store.update_job(job.id, from_status="pending_payment", status="payment_failed")

    ack = services.webhooks.handle_event(_succeeded(clock, charge.external_ref, payment.id, event_id="evt_stranded"))

    assert not ack.applied
    assert ack.reason == "CHARGE_WITHOUT_JOB"
    assert [r["external_ref"] for r in processor.refunds] == [charge.external_ref]
    kinds = [i.kind for i in store.list_interventions()]
    assert kinds == ["CHARGE_WITHOUT_JOB"]

    assert store.get_job(job.id).status == "refunded_closed"
    stored = store.get_payment(payment.id)
    assert stored.status == "refunded"
    assert stored.external_ref == charge.external_ref


def test_stranded_charge_refund_failure_marks_refund_pending(services, store, clock, processor, poster_id):
    job, payment = _pending_posting(store, clock, poster_id)
    charge = processor.authorize(
        amount_cents=payment.amount_cents,
        currency="usd",
        customer_ref="cus_poster",
        payment_method_ref="pm_card_visa",
        idempotency_key=payment.idempotency_key,
        metadata={},
    )
    store.update_payment(payment.id, from_status="pending", status="failed", failure_code="processor_unavailable")
    store.update_job(job.id, from_status="pending_payment", status="payment_failed")
    processor.fail_refunds(10)

    services.webhooks.handle_event(_succeeded(clock, charge.external_ref, payment.id, event_id="evt_stranded"))

    assert store.get_job(job.id).failure_code == REFUND_PENDING
    assert store.get_payment(payment.id).failure_code == REFUND_PENDING
    assert sorted(i.kind for i in store.list_interventions()) == ["CHARGE_WITHOUT_JOB", "REFUND_FAILED"]


def test_timed_out_charge_refunded_by_webhook_is_not_reopened_on_retry(services, store, clock, processor, poster_id):
    processor.queue_lost_response()
    with pytest.raises(ProcessorUnavailable):
        _open_job(services, poster_id, key="idem-timeout")
    job, payment = store.get_posting_by_key(poster_id, "idem-timeout")
    assert payment.status == "failed" and payment.failure_code == "processor_unavailable"

    charge_ref = next(iter(processor.charges))
    services.webhooks.handle_event(_succeeded(clock, charge_ref, payment.id, event_id="evt_late_success"))
    assert len(processor.refunds) == 1

    with pytest.raises(PaymentNotCompleted):
        _open_job(services, poster_id, key="idem-timeout")

    assert store.get_job(job.id).status == "refunded_closed"
    assert processor.successful_charges == 1
    assert len(processor.refunds) == 1


def test_retry_that_claimed_the_charge_is_not_refunded(services, store, clock, processor, poster_id):
    processor.queue_lost_response()
    with pytest.raises(ProcessorUnavailable):
        _open_job(services, poster_id, key="idem-claimed")
    _, payment = store.get_posting_by_key(poster_id, "idem-claimed")
    charge_ref = next(iter(processor.charges))

    outcome = _open_job(services, poster_id, key="idem-claimed")
    assert outcome.job.status == "open"

    ack = services.webhooks.handle_event(_succeeded(clock, charge_ref, payment.id, event_id="evt_late"))
    assert ack.reason == "ALREADY_COMPLETED"
    assert processor.refunds == []


def test_refund_event_closes_refund_pending_pair(services, store, clock, processor, poster_id):
    store.fail_open = True
    processor.fail_refunds(10)
    with pytest.raises(Exception):
        _open_job(services, poster_id)
    job, payment = store.get_posting_by_key(poster_id, "idem-open")
    assert payment.status == "failed"

    ack = services.webhooks.handle_event(
        PaymentRefunded(event_id="evt_refunded", occurred_at=clock(), external_ref=payment.external_ref)
    )
    assert ack.applied and ack.reason == "PAYMENT_REFUNDED"
    assert store.get_payment(payment.id).status == "refunded"
    assert store.get_job(job.id).status == "refunded_closed"

    again = services.webhooks.handle_event(
        PaymentRefunded(event_id="evt_refunded_2", occurred_at=clock(), external_ref=payment.external_ref)
    )
    assert not again.applied and again.reason == "ALREADY_REFUNDED"


def test_unknown_references_are_acknowledged(services, store, clock):
    ack = services.webhooks.handle_event(_succeeded(clock, "pi_unknown", event_id="evt_unknown"))
    assert not ack.applied
    assert ack.reason == "PAYMENT_NOT_FOUND"
    assert store.get_webhook_event("evt_unknown").outcome == "ignored"

    acct = services.webhooks.handle_event(
        AccountUpdated(event_id="evt_acct_unknown", occurred_at=clock(), account_id="acct_missing")
    )
    assert acct.reason == "ACCOUNT_NOT_FOUND"

    other = services.webhooks.handle_event(Unsupported(event_id="evt_other", occurred_at=clock()))
    assert other.reason == "UNSUPPORTED_EVENT"


def test_payment_id_fallback_refuses_mismatched_reference(services, store, clock, poster_id):
    outcome = _open_job(services, poster_id)
    ack = services.webhooks.handle_event(_succeeded(clock, "pi_other", outcome.payment.id, event_id="evt_mismatch"))
    assert ack.reason == "PAYMENT_NOT_FOUND"


def _account_event(clock, account_id, *, event_id, occurred_at, active):
    return AccountUpdated(
        event_id=event_id,
        occurred_at=occurred_at,
        account_id=account_id,
        charges_enabled=active,
        payouts_enabled=active,
        details_submitted=True,
        requirements=() if active else ("external_account",),
    )


def test_account_events_apply_in_processor_order(services, store, clock, notifier, worker_id):
    services.registry.request_onboarding_link(worker_id)
    account = store.get_payout_account(worker_id)
    t0 = clock()

    newer = _account_event(clock, account.external_account_id, event_id="evt_a2", occurred_at=t0 + timedelta(minutes=5), active=True)
    older = _account_event(clock, account.external_account_id, event_id="evt_a1", occurred_at=t0 + timedelta(minutes=1), active=False)

    first = services.webhooks.handle_event(newer)
    assert first.applied and first.reason == "STATUS_ACTIVE"

    stale = services.webhooks.handle_event(older)
    assert not stale.applied and stale.reason == "STALE_EVENT"

    stored = store.get_payout_account(worker_id)
    assert stored.status == "active"
    assert stored.status_as_of == t0 + timedelta(minutes=5)
    assert notifier.kinds_for(worker_id) == ["payout_account_active"]


def test_restricted_account_event_starts_recovery(services, store, clock, notifier, worker_id):
    services.registry.request_onboarding_link(worker_id)
    account = store.get_payout_account(worker_id)

    ack = services.webhooks.handle_event(
        _account_event(clock, account.external_account_id, event_id="evt_r", occurred_at=clock(), active=False)
    )

    assert ack.reason == "STATUS_RESTRICTED"
    session = services.recovery.get_session(worker_id)
    assert session.state == "RETRYING"
    assert session.attempts == 1
    assert notifier.kinds_for(worker_id) == ["payout_account_restricted", "payout_onboarding_retry"]
