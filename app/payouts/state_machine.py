# app/payouts/state_machine.py
from __future__ import annotations

from typing import Iterable

from app.jobs.state_machine import InvalidTransition


ACCOUNT_ALLOWED = {
    "none": {"pending", "active", "restricted"},
    "pending": {"pending", "active", "restricted"},
    "active": {"active", "restricted", "pending"},  # processor can revoke capabilities
    "restricted": {"restricted", "active", "pending"},
}

RECOVERY_ALLOWED = {
    "STABLE": {"STALLED"},
    "STALLED": {"RETRYING", "EXHAUSTED", "RECOVERED", "STALLED"},
    "RETRYING": {"RETRYING", "STALLED", "EXHAUSTED", "RECOVERED"},
    "EXHAUSTED": set(),  # only a support reset leaves this state
    "RECOVERED": set(),
}


def assert_account_transition(old: str, new: str) -> None:
    if new not in ACCOUNT_ALLOWED.get(old, set()):
        raise InvalidTransition(f"Illegal payout account transition: {old} -> {new}")


def assert_recovery_transition(old: str, new: str) -> None:
    if new not in RECOVERY_ALLOWED.get(old, set()):
        raise InvalidTransition(f"Illegal recovery transition: {old} -> {new}")


def classify_account(
    *,
    charges_enabled: bool,
    payouts_enabled: bool,
    details_submitted: bool,
    requirements: Iterable[str],
    link_ever_issued: bool,
) -> str:
    """
    Map processor capability flags to the local account status.

    Requirements are always outstanding while the worker is still filling in
    the onboarding form, so they only mean "restricted" once details were
    submitted (the processor came back asking for more).
    """
    if charges_enabled and payouts_enabled:
        return "active"
    if list(requirements or ()) and details_submitted:
        return "restricted"
    if not link_ever_issued and not details_submitted:
        return "none"
    return "pending"
