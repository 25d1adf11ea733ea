# app/providers/base.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol, Literal

DeclineReason = Literal["card_declined", "insufficient_funds", "processor_unavailable", "invalid_payment_method"]


@dataclass(frozen=True)
class ChargeResult:
    ok: bool
    external_ref: Optional[str] = None
    status: Optional[str] = None  # processor's own status string
    reason: Optional[DeclineReason] = None
    error: Optional[str] = None
    response: Optional[dict[str, Any]] = None

    @property
    def retryable(self) -> bool:
        return (not self.ok) and self.reason == "processor_unavailable"


@dataclass(frozen=True)
class RefundResult:
    ok: bool
    refund_ref: Optional[str] = None
    error: Optional[str] = None
    response: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class ProcessorAccount:
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool = False
    requirements: tuple[str, ...] = ()
    response: Optional[dict[str, Any]] = field(default=None, compare=False)


@dataclass(frozen=True)
class ProcessorLink:
    url: str
    expires_at: Optional[datetime] = None


class PaymentProcessor(Protocol):
    """
    External payment processor boundary.

    `authorize` never raises for business outcomes: declines and transport
    failures come back as ChargeResult(ok=False, reason=...).
    Every other call raises app.errors.ProcessorError on failure.
    """

    def authorize(
        self,
        *,
        amount_cents: int,
        currency: str,
        customer_ref: str,
        payment_method_ref: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ChargeResult: ...

    def refund(
        self,
        *,
        external_ref: str,
        amount_cents: Optional[int],
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> RefundResult: ...

    def create_payout_account(self, *, owner_ref: str, idempotency_key: str) -> str: ...

    def create_onboarding_link(self, *, account_id: str, refresh_url: str, return_url: str) -> ProcessorLink: ...

    def retrieve_account(self, account_id: str) -> ProcessorAccount: ...

    def charge_refunded(self, external_ref: str) -> bool: ...

    def list_payment_methods(self, customer_ref: str) -> list[str]: ...
