import uuid

import pytest

from app.errors import ProcessorError
from app.payments.authorization import PaymentAuthorizationService, idempotency_key_for


@pytest.fixture
def authorizer(processor, store):
    return PaymentAuthorizationService(processor, store, currency="usd")


def _authorize(authorizer, payer_id, **overrides):
    kwargs = dict(
        payer_id=payer_id,
        amount_cents=10_250,
        payment_method_ref="pm_card_visa",
        idempotency_key=idempotency_key_for(payer_id, "k1"),
    )
    kwargs.update(overrides)
    return authorizer.authorize(**kwargs)


def test_successful_charge_returns_reference(authorizer, processor, poster_id):
    outcome = _authorize(authorizer, poster_id)
    assert outcome.ok
    assert outcome.external_ref.startswith("pi_mock_")
    charge = processor.charge_for(outcome.external_ref)
    assert charge["amount_cents"] == 10_250
    assert charge["customer_ref"] == "cus_poster"
    assert charge["metadata"]["payer_id"] == str(poster_id)


def test_same_key_never_charges_twice(authorizer, processor, poster_id):
    first = _authorize(authorizer, poster_id)
    second = _authorize(authorizer, poster_id)
    assert first.external_ref == second.external_ref
    assert processor.successful_charges == 1


@pytest.mark.parametrize("reason", ["card_declined", "insufficient_funds"])
def test_declines_are_typed_and_not_retryable(authorizer, processor, poster_id, reason):
    processor.queue_decline(reason)
    outcome = _authorize(authorizer, poster_id)
    assert not outcome.ok
    assert outcome.reason == reason
    assert not outcome.retryable
    assert outcome.user_message


def test_transport_failure_is_retryable(authorizer, processor, poster_id):
    processor.queue_decline("processor_unavailable")
    outcome = _authorize(authorizer, poster_id)
    assert outcome.reason == "processor_unavailable"
    assert outcome.retryable
    assert "not been charged" in outcome.user_message


def test_foreign_payment_method_rejected_without_charge(authorizer, processor, poster_id):
    outcome = _authorize(authorizer, poster_id, payment_method_ref="pm_someone_else")
    assert outcome.reason == "invalid_payment_method"
    assert processor.authorize_calls == 0


def test_payer_without_customer_rejected(authorizer, processor):
    outcome = _authorize(authorizer, uuid.uuid4())
    assert outcome.reason == "invalid_payment_method"
    assert processor.authorize_calls == 0


def test_method_lookup_failure_is_transient(authorizer, processor, poster_id, monkeypatch):
    def boom(customer_ref):
        raise ProcessorError("timeout", processor_code="api_connection_error")

    monkeypatch.setattr(processor, "list_payment_methods", boom)
    outcome = _authorize(authorizer, poster_id)
    assert outcome.reason == "processor_unavailable"
    assert processor.authorize_calls == 0


def test_invalid_arguments_raise(authorizer, poster_id):
    with pytest.raises(ValueError):
        _authorize(authorizer, poster_id, amount_cents=0)
    with pytest.raises(ValueError):
        _authorize(authorizer, poster_id, idempotency_key="  ")
