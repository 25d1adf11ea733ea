# app/payments/refunds.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional
from uuid import UUID

from settings import settings
from app.errors import ProcessorError
from app.providers.base import PaymentProcessor
from app.store.base import Store
from services.metrics import increment_refund

logger = logging.getLogger("gigpay.refunds")

REFUND_FAILED = "REFUND_FAILED"
CHARGE_WITHOUT_JOB = "CHARGE_WITHOUT_JOB"
REFUND_CLOSE_FAILED = "REFUND_CLOSE_FAILED"

# failure_code stored on a pair whose compensating refund did not complete
REFUND_PENDING = "refund_pending"


def refund_key_for(external_ref: str) -> str:
    return f"refund:{external_ref}"


@dataclass(frozen=True)
class RefundOutcome:
    ok: bool
    attempts: int
    refund_ref: Optional[str] = None
    last_error: Optional[str] = None
    escalated: bool = False
    intervention_id: Optional[UUID] = None


class RefundCompensator:
    """
    Compensating refund for a charge that has no live job behind it.

    Retries a bounded number of times with exponential backoff, always with the
    same processor idempotency key, so at most one refund is ever created.
    When every attempt fails the case goes to the manual-intervention queue.
    """

    def __init__(
        self,
        processor: PaymentProcessor,
        store: Store,
        *,
        max_attempts: Optional[int] = None,
        backoff_base_s: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.processor = processor
        self.store = store
        self.max_attempts = int(max_attempts or settings.REFUND_MAX_ATTEMPTS)
        self.backoff_base_s = float(settings.REFUND_BACKOFF_BASE_S if backoff_base_s is None else backoff_base_s)
        self.sleep = sleep

    def _attempt(self, *, external_ref: str, amount_cents: Optional[int], metadata: dict[str, str]):
        try:
            result = self.processor.refund(
                external_ref=external_ref,
                amount_cents=amount_cents,
                idempotency_key=refund_key_for(external_ref),
                metadata=metadata,
            )
        except ProcessorError as e:
            return False, None, f"{e.processor_code or 'processor_error'}: {e}"
        return result.ok, result.refund_ref, result.error

    def refund(
        self,
        *,
        external_ref: str,
        amount_cents: Optional[int],
        kind: str = REFUND_FAILED,
        context: Optional[dict[str, Any]] = None,
    ) -> RefundOutcome:
        context = {k: str(v) for k, v in (context or {}).items() if v is not None}
        metadata = dict(context)
        last_error: Optional[str] = None

        for attempt in range(1, self.max_attempts + 1):
            ok, refund_ref, err = self._attempt(external_ref=external_ref, amount_cents=amount_cents, metadata=metadata)
            if ok:
                increment_refund("succeeded")
                logger.info(
                    "refund_succeeded external_ref=%s refund_ref=%s attempt=%s",
                    external_ref,
                    refund_ref,
                    attempt,
                )
                return RefundOutcome(ok=True, attempts=attempt, refund_ref=refund_ref)

            last_error = err
            logger.warning(
                "refund_attempt_failed external_ref=%s attempt=%s/%s err=%s",
                external_ref,
                attempt,
                self.max_attempts,
                err,
            )
            if attempt < self.max_attempts:
                self.backoff(attempt)

        increment_refund("failed")
        intervention_id = self.escalate(
            kind=kind,
            reference=external_ref,
            payload={**context, "amount_cents": amount_cents, "last_error": last_error, "attempts": self.max_attempts},
        )
        return RefundOutcome(
            ok=False,
            attempts=self.max_attempts,
            last_error=last_error,
            escalated=intervention_id is not None,
            intervention_id=intervention_id,
        )

    def already_refunded(self, external_ref: str) -> bool:
        """Ask the processor. Raises ProcessorError when it cannot say."""
        return bool(self.processor.charge_refunded(external_ref))

    def backoff(self, attempt: int) -> None:
        self.sleep(self.backoff_base_s * (2 ** (attempt - 1)))

    def escalate(self, *, kind: str, reference: str, payload: dict[str, Any]) -> Optional[UUID]:
        try:
            item = self.store.enqueue_intervention(kind=kind, reference=reference, payload=payload)
        except Exception:
            # Last line of defence: a charge may be stranded and nothing durable knows.
            logger.critical(
                "manual_intervention_enqueue_failed kind=%s reference=%s payload=%s",
                kind,
                reference,
                payload,
                exc_info=True,
            )
            return None

        logger.error("manual_intervention_queued id=%s kind=%s reference=%s", item.id, kind, reference)
        return item.id
