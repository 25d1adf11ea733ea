# app/webhooks/events.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from app.providers.stripe_processor import account_from_payload

EVENT_SCHEMA_VERSION = 1


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    schema_version: Literal[1] = EVENT_SCHEMA_VERSION
    event_id: str = Field(min_length=1)
    occurred_at: datetime
    processor_type: str = ""


class PaymentSucceeded(_Event):
    kind: Literal["payment.succeeded"] = "payment.succeeded"
    external_ref: str = Field(min_length=1)
    payment_id: Optional[UUID] = None
    amount_cents: Optional[int] = None


class PaymentFailed(_Event):
    kind: Literal["payment.failed"] = "payment.failed"
    external_ref: str = Field(min_length=1)
    payment_id: Optional[UUID] = None
    reason: Optional[str] = None


class PaymentRefunded(_Event):
    kind: Literal["payment.refunded"] = "payment.refunded"
    external_ref: str = Field(min_length=1)
    payment_id: Optional[UUID] = None
    amount_refunded_cents: Optional[int] = None


class AccountUpdated(_Event):
    kind: Literal["account.updated"] = "account.updated"
    account_id: str = Field(min_length=1)
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    requirements: tuple[str, ...] = ()


class Unsupported(_Event):
    kind: Literal["unsupported"] = "unsupported"


ReconciliationEvent = Annotated[
    Union[PaymentSucceeded, PaymentFailed, PaymentRefunded, AccountUpdated, Unsupported],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter = TypeAdapter(ReconciliationEvent)


def parse_event(data: dict[str, Any]):
    """Internal (already normalized) event dict -> typed event. Raises pydantic.ValidationError."""
    return _adapter.validate_python(data)


# ---------------- Stripe mapping ----------------

def _metadata_payment_id(obj: dict) -> Optional[str]:
    meta = obj.get("metadata") or {}
    value = (meta.get("payment_id") or "").strip() if isinstance(meta, dict) else ""
    return value or None


def _failure_reason(obj: dict) -> Optional[str]:
    err = obj.get("last_payment_error") or {}
    code = (err.get("decline_code") or err.get("code") or "").lower()
    if not code:
        return None
    if code == "insufficient_funds":
        return "insufficient_funds"
    if err.get("type") == "card_error":
        return "card_declined"
    return code


def parse_stripe_event(payload: dict[str, Any]):
    """
    Stripe event JSON -> typed reconciliation event.

    Unknown event types come back as `Unsupported`; a payload without an id,
    type or object raises ValueError.
    """
    if not isinstance(payload, dict):
        raise ValueError("event payload must be an object")

    event_id = str(payload.get("id") or "").strip()
    event_type = str(payload.get("type") or "").strip()
    obj = (payload.get("data") or {}).get("object")
    if not event_id or not event_type or not isinstance(obj, dict):
        raise ValueError("event is missing id, type or data.object")

    created = payload.get("created")
    occurred_at = (
        datetime.fromtimestamp(int(created), tz=timezone.utc) if created is not None else datetime.now(timezone.utc)
    )
    common = {"event_id": event_id, "occurred_at": occurred_at, "processor_type": event_type}

    if event_type == "payment_intent.succeeded":
        return PaymentSucceeded(
            **common,
            external_ref=obj.get("id") or "",
            payment_id=_metadata_payment_id(obj),
            amount_cents=obj.get("amount_received") or obj.get("amount"),
        )

    if event_type == "payment_intent.payment_failed":
        return PaymentFailed(
            **common,
            external_ref=obj.get("id") or "",
            payment_id=_metadata_payment_id(obj),
            reason=_failure_reason(obj),
        )

    if event_type == "charge.refunded":
        return PaymentRefunded(
            **common,
            # payments are stored against the payment intent, not the charge
            external_ref=obj.get("payment_intent") or obj.get("id") or "",
            payment_id=_metadata_payment_id(obj),
            amount_refunded_cents=obj.get("amount_refunded"),
        )

    if event_type == "account.updated":
        snapshot = account_from_payload(obj)
        return AccountUpdated(
            **common,
            account_id=snapshot.account_id or "",
            charges_enabled=snapshot.charges_enabled,
            payouts_enabled=snapshot.payouts_enabled,
            details_submitted=snapshot.details_submitted,
            requirements=snapshot.requirements,
        )

    return Unsupported(**common)
