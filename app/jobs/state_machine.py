# app/jobs/state_machine.py
from __future__ import annotations

from typing import Optional


class InvalidTransition(Exception):
    pass


class InvariantViolation(ValueError):
    pass


JOB_ALLOWED = {
    "pending_payment": {"open", "payment_failed", "refunded_closed"},
    "payment_failed": {"pending_payment", "refunded_closed"},  # retry after a transient error; stranded charge refunded
    "open": {"refunded_closed"},
    "refunded_closed": set(),
}

PAYMENT_ALLOWED = {
    "pending": {"completed", "failed", "refunded"},
    "failed": {"pending", "refunded"},
    "completed": {"refunded"},
    "refunded": set(),
}

# Per-attempt orchestration states (never persisted as Job.status)
VALIDATING = "VALIDATING"
AUTHORIZING = "AUTHORIZING"
COMMITTING = "COMMITTING"
OPEN = "OPEN"
REJECTED = "REJECTED"
AUTH_FAILED = "AUTH_FAILED"
COMPENSATING = "COMPENSATING"
REFUNDED_CLOSED = "REFUNDED_CLOSED"

POSTING_ALLOWED = {
    VALIDATING: {AUTHORIZING, REJECTED},
    AUTHORIZING: {COMMITTING, AUTH_FAILED},
    COMMITTING: {OPEN, COMPENSATING},
    COMPENSATING: {REFUNDED_CLOSED},
    OPEN: set(),
    REJECTED: set(),
    AUTH_FAILED: set(),
    REFUNDED_CLOSED: set(),
}


def assert_job_transition(old: str, new: str) -> None:
    if new not in JOB_ALLOWED.get(old, set()):
        raise InvalidTransition(f"Illegal job transition: {old} -> {new}")


def assert_payment_transition(old: str, new: str) -> None:
    if new not in PAYMENT_ALLOWED.get(old, set()):
        raise InvalidTransition(f"Illegal payment transition: {old} -> {new}")


def assert_posting_transition(old: str, new: str) -> None:
    if new not in POSTING_ALLOWED.get(old, set()):
        raise InvalidTransition(f"Illegal posting transition: {old} -> {new}")


def assert_completed_invariant(new_status: str, external_ref: Optional[str]) -> None:
    """
    Invariant: a completed payment MUST carry the processor reference.
    """
    if new_status == "completed" and not (external_ref or "").strip():
        raise InvariantViolation("Invariant violation: payment status=completed requires external_ref")


def assert_open_invariant(job_status: str, payment_status: Optional[str]) -> None:
    """
    Invariant: a job is open only while its linked payment is completed.
    """
    if job_status == "open" and payment_status != "completed":
        raise InvariantViolation(
            f"Invariant violation: job status=open requires completed payment (got {payment_status})"
        )


class PostingTracker:
    """Records the attempt's path through the posting state machine."""

    def __init__(self) -> None:
        self.state = VALIDATING
        self.history = [VALIDATING]

    def advance(self, new: str) -> None:
        assert_posting_transition(self.state, new)
        self.state = new
        self.history.append(new)
