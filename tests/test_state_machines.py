import pytest

from app.jobs.state_machine import (
    AUTHORIZING,
    COMMITTING,
    COMPENSATING,
    OPEN,
    REFUNDED_CLOSED,
    InvalidTransition,
    InvariantViolation,
    PostingTracker,
    assert_completed_invariant,
    assert_job_transition,
    assert_open_invariant,
    assert_payment_transition,
)
from app.payouts.state_machine import assert_account_transition, assert_recovery_transition, classify_account


def test_job_transitions():
    assert_job_transition("pending_payment", "open")
    assert_job_transition("pending_payment", "payment_failed")
    assert_job_transition("open", "refunded_closed")
    assert_job_transition("payment_failed", "pending_payment")


def test_job_cannot_reopen_or_skip_payment():
    with pytest.raises(InvalidTransition):
        assert_job_transition("refunded_closed", "open")
    with pytest.raises(InvalidTransition):
        assert_job_transition("payment_failed", "open")


def test_payment_terminal_state():
    assert_payment_transition("pending", "completed")
    assert_payment_transition("completed", "refunded")
    with pytest.raises(InvalidTransition):
        assert_payment_transition("refunded", "completed")
    with pytest.raises(InvalidTransition):
        assert_payment_transition("completed", "pending")


def test_completed_requires_external_ref():
    assert_completed_invariant("completed", "pi_123")
    assert_completed_invariant("failed", None)
    with pytest.raises(InvariantViolation):
        assert_completed_invariant("completed", "  ")


def test_open_requires_completed_payment():
    assert_open_invariant("open", "completed")
    assert_open_invariant("payment_failed", "failed")
    with pytest.raises(InvariantViolation):
        assert_open_invariant("open", "pending")


def test_posting_tracker_history():
    tracker = PostingTracker()
    for state in (AUTHORIZING, COMMITTING, COMPENSATING, REFUNDED_CLOSED):
        tracker.advance(state)
    assert tracker.history == ["VALIDATING", "AUTHORIZING", "COMMITTING", "COMPENSATING", "REFUNDED_CLOSED"]

    with pytest.raises(InvalidTransition):
        PostingTracker().advance(OPEN)


def test_account_transitions():
    assert_account_transition("none", "pending")
    assert_account_transition("active", "restricted")
    with pytest.raises(InvalidTransition):
        assert_account_transition("pending", "none")


def test_recovery_exhausted_is_terminal():
    assert_recovery_transition("STABLE", "STALLED")
    assert_recovery_transition("RETRYING", "EXHAUSTED")
    with pytest.raises(InvalidTransition):
        assert_recovery_transition("EXHAUSTED", "RETRYING")
    with pytest.raises(InvalidTransition):
        assert_recovery_transition("STABLE", "RETRYING")


@pytest.mark.parametrize(
    "flags, expected",
    [
        (dict(charges_enabled=True, payouts_enabled=True, details_submitted=True, requirements=(), link_ever_issued=True), "active"),
        (dict(charges_enabled=True, payouts_enabled=False, details_submitted=True, requirements=("external_account",), link_ever_issued=True), "restricted"),
        (dict(charges_enabled=False, payouts_enabled=False, details_submitted=False, requirements=("external_account",), link_ever_issued=True), "pending"),
        (dict(charges_enabled=False, payouts_enabled=False, details_submitted=False, requirements=("external_account",), link_ever_issued=False), "none"),
        (dict(charges_enabled=False, payouts_enabled=False, details_submitted=True, requirements=(), link_ever_issued=True), "pending"),
    ],
)
def test_classify_account(flags, expected):
    assert classify_account(**flags) == expected
