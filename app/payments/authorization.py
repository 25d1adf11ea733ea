# app/payments/authorization.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from settings import settings
from app.errors import AUTHORIZATION_ERRORS, ProcessorError
from app.providers.base import DeclineReason, PaymentProcessor
from app.store.base import Store

logger = logging.getLogger("gigpay.payments")

USER_MESSAGES: dict[str, str] = {reason: cls.user_message for reason, cls in AUTHORIZATION_ERRORS.items()}


def idempotency_key_for(poster_id: UUID, client_key: str) -> str:
    """Processor key for one logical posting attempt. Same inputs -> same key."""
    return f"job-posting:{poster_id}:{client_key}"


@dataclass(frozen=True)
class AuthorizationOutcome:
    ok: bool
    external_ref: Optional[str] = None
    reason: Optional[DeclineReason] = None
    error: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return (not self.ok) and self.reason == "processor_unavailable"

    @property
    def user_message(self) -> Optional[str]:
        return USER_MESSAGES.get(self.reason) if self.reason else None


class PaymentAuthorizationService:
    """
    Charges a poster's saved payment method.

    One processor charge per call and no internal retry; callers retry with
    the same idempotency key so the processor never charges twice.
    """

    def __init__(self, processor: PaymentProcessor, store: Store, *, currency: Optional[str] = None):
        self.processor = processor
        self.store = store
        self.currency = currency or settings.CURRENCY

    def _owns_payment_method(self, payer_id: UUID, payment_method_ref: str) -> Optional[str]:
        """Returns the payer's customer ref if the method is theirs, else None."""
        customer_ref = self.store.get_customer_ref(payer_id)
        if not customer_ref:
            return None
        methods = self.processor.list_payment_methods(customer_ref)
        return customer_ref if payment_method_ref in methods else None

    def authorize(
        self,
        *,
        payer_id: UUID,
        amount_cents: int,
        payment_method_ref: str,
        idempotency_key: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> AuthorizationOutcome:
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise ValueError("amount_cents must be a positive integer")
        if not (idempotency_key or "").strip():
            raise ValueError("idempotency_key is required")

        try:
            customer_ref = self._owns_payment_method(payer_id, (payment_method_ref or "").strip())
        except ProcessorError as e:
            logger.warning(
                "payment_method_lookup_failed payer_id=%s processor_code=%s err=%s",
                payer_id,
                e.processor_code,
                e,
            )
            return AuthorizationOutcome(ok=False, reason="processor_unavailable", error="payment_method_lookup_failed")

        if customer_ref is None:
            logger.info("payment_method_not_owned payer_id=%s", payer_id)
            return AuthorizationOutcome(ok=False, reason="invalid_payment_method", error="payment_method_not_owned")

        result = self.processor.authorize(
            amount_cents=amount_cents,
            currency=self.currency,
            customer_ref=customer_ref,
            payment_method_ref=payment_method_ref,
            idempotency_key=idempotency_key,
            metadata={"payer_id": str(payer_id), **(metadata or {})},
        )

        if result.ok:
            if not (result.external_ref or "").strip():
                # A success without a reference can't be committed or refunded.
                logger.error("charge_ok_without_ref idempotency_key=%s", idempotency_key)
                return AuthorizationOutcome(ok=False, reason="processor_unavailable", error="missing_external_ref")
            logger.info(
                "charge_authorized payer_id=%s amount_cents=%s external_ref=%s",
                payer_id,
                amount_cents,
                result.external_ref,
            )
            return AuthorizationOutcome(ok=True, external_ref=result.external_ref)

        reason = result.reason if result.reason in USER_MESSAGES else "processor_unavailable"
        logger.info(
            "charge_declined payer_id=%s amount_cents=%s reason=%s error=%s",
            payer_id,
            amount_cents,
            reason,
            result.error,
        )
        return AuthorizationOutcome(ok=False, reason=reason, error=result.error)
