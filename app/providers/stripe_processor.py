# app/providers/stripe_processor.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe

from settings import settings
from app.errors import ProcessorError
from app.providers.base import ChargeResult, ProcessorAccount, ProcessorLink, RefundResult

logger = logging.getLogger("gigpay.stripe")


def _new_client(timeout_s: float) -> stripe.StripeClient:
    return stripe.StripeClient(
        settings.STRIPE_SECRET_KEY,
        http_client=stripe.RequestsClient(timeout=timeout_s),
        max_network_retries=int(settings.STRIPE_MAX_NETWORK_RETRIES),
    )


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return getattr(obj, key, default)


def _decline_code(exc: stripe.StripeError) -> Optional[str]:
    body = getattr(exc, "json_body", None) or {}
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict) and err.get("decline_code"):
        return str(err["decline_code"])
    return getattr(exc, "code", None)


def map_charge_error(exc: Exception) -> ChargeResult:
    """
    Stripe exception -> typed decline reason. Only card errors are declines;
    anything else that is not the caller's fault is transient.
    """
    if isinstance(exc, stripe.CardError):
        code = (_decline_code(exc) or "").lower()
        reason = "insufficient_funds" if code == "insufficient_funds" else "card_declined"
        return ChargeResult(ok=False, reason=reason, error=code or "card_error", status="card_error")

    if isinstance(exc, stripe.IdempotencyError):
        return ChargeResult(ok=False, reason="processor_unavailable", error="idempotency_in_flight")

    if isinstance(exc, stripe.InvalidRequestError):
        return ChargeResult(ok=False, reason="invalid_payment_method", error=getattr(exc, "code", None) or "invalid_request")

    return ChargeResult(ok=False, reason="processor_unavailable", error=type(exc).__name__)


def map_intent_status(status: str) -> tuple[bool, Optional[str]]:
    st = (status or "").strip().lower()
    if st == "succeeded":
        return True, None
    if st in ("requires_payment_method", "requires_action", "canceled"):
        return False, "card_declined"
    # processing / requires_confirmation / requires_capture: not settled synchronously
    return False, "processor_unavailable"


class StripeProcessor:
    """
    Stripe adapter for the PaymentProcessor contract.

    Charges and account calls use separate clients so the charge timeout and the
    status-poll timeout can differ.
    """

    def __init__(self, *, charge_client: Any = None, account_client: Any = None):
        if not settings.STRIPE_SECRET_KEY and (charge_client is None or account_client is None):
            raise RuntimeError("STRIPE_SECRET_KEY is not set.")
        self._charges = charge_client or _new_client(settings.AUTH_TIMEOUT_S)
        self._accounts = account_client or _new_client(settings.STATUS_TIMEOUT_S)

    # ---------------- charges ----------------
    def authorize(self, *, amount_cents, currency, customer_ref, payment_method_ref, idempotency_key, metadata):
        try:
            intent = self._charges.payment_intents.create(
                params={
                    "amount": int(amount_cents),
                    "currency": currency,
                    "customer": customer_ref,
                    "payment_method": payment_method_ref,
                    "confirm": True,
                    "off_session": True,
                    "metadata": dict(metadata or {}),
                    "description": "Job posting",
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as exc:
            result = map_charge_error(exc)
            logger.info(
                "stripe_charge_failed idempotency_key=%s reason=%s error=%s",
                idempotency_key,
                result.reason,
                result.error,
            )
            return result

        intent_id = _get(intent, "id")
        status = _get(intent, "status") or ""
        ok, reason = map_intent_status(status)
        if ok:
            return ChargeResult(ok=True, external_ref=intent_id, status=status, response={"id": intent_id, "status": status})

        logger.info("stripe_charge_not_succeeded intent=%s status=%s", intent_id, status)
        return ChargeResult(
            ok=False,
            external_ref=intent_id,
            status=status,
            reason=reason,
            error=f"payment_intent_{status}",
            response={"id": intent_id, "status": status},
        )

    def refund(self, *, external_ref, amount_cents, idempotency_key, metadata):
        params: dict[str, Any] = {
            "payment_intent": external_ref,
            "reason": "requested_by_customer",
            "metadata": dict(metadata or {}),
        }
        if amount_cents is not None:
            params["amount"] = int(amount_cents)
        try:
            refund = self._charges.refunds.create(params=params, options={"idempotency_key": idempotency_key})
        except stripe.StripeError as exc:
            return RefundResult(ok=False, error=f"{type(exc).__name__}: {getattr(exc, 'code', None) or exc}")

        refund_id = _get(refund, "id")
        status = (_get(refund, "status") or "").lower()
        if status in ("failed", "canceled"):
            return RefundResult(ok=False, refund_ref=refund_id, error=f"refund_{status}")
        return RefundResult(ok=True, refund_ref=refund_id, response={"id": refund_id, "status": status})

    def charge_refunded(self, external_ref):
        try:
            page = self._charges.refunds.list(params={"payment_intent": external_ref, "limit": 10})
        except stripe.StripeError as exc:
            raise ProcessorError(str(exc), processor_code=getattr(exc, "code", None)) from exc
        # a pending refund still means the money is on its way back
        return any(
            (_get(r, "status") or "").lower() in ("succeeded", "pending", "requires_action")
            for r in (_get(page, "data") or [])
        )

    # ---------------- connected accounts ----------------
    def create_payout_account(self, *, owner_ref, idempotency_key):
        try:
            account = self._accounts.accounts.create(
                params={
                    "type": "express",
                    "capabilities": {
                        "card_payments": {"requested": True},
                        "transfers": {"requested": True},
                    },
                    "metadata": {"owner_id": owner_ref},
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as exc:
            raise ProcessorError(str(exc), processor_code=getattr(exc, "code", None)) from exc
        return _get(account, "id")

    def create_onboarding_link(self, *, account_id, refresh_url, return_url):
        try:
            link = self._accounts.account_links.create(
                params={
                    "account": account_id,
                    "refresh_url": refresh_url,
                    "return_url": return_url,
                    "type": "account_onboarding",
                }
            )
        except stripe.StripeError as exc:
            raise ProcessorError(
                str(exc),
                processor_code=getattr(exc, "code", None),
                retryable=not isinstance(exc, stripe.InvalidRequestError),
            ) from exc

        expires = _get(link, "expires_at")
        return ProcessorLink(
            url=_get(link, "url"),
            expires_at=datetime.fromtimestamp(int(expires), tz=timezone.utc) if expires else None,
        )

    def retrieve_account(self, account_id):
        try:
            account = self._accounts.accounts.retrieve(account_id)
        except stripe.StripeError as exc:
            raise ProcessorError(
                str(exc),
                processor_code=getattr(exc, "code", None),
                retryable=not isinstance(exc, stripe.InvalidRequestError),
            ) from exc
        return account_from_payload(account)

    def list_payment_methods(self, customer_ref):
        try:
            page = self._accounts.payment_methods.list(params={"customer": customer_ref, "type": "card", "limit": 100})
        except stripe.StripeError as exc:
            raise ProcessorError(str(exc), processor_code=getattr(exc, "code", None)) from exc
        return [_get(pm, "id") for pm in (_get(page, "data") or [])]


def account_from_payload(account: Any) -> ProcessorAccount:
    """Build a ProcessorAccount from a Stripe account object or its webhook dict."""
    requirements = _get(account, "requirements") or {}
    currently_due = _get(requirements, "currently_due") or []
    past_due = _get(requirements, "past_due") or []
    due = tuple(dict.fromkeys([*currently_due, *past_due]))
    return ProcessorAccount(
        account_id=_get(account, "id"),
        charges_enabled=bool(_get(account, "charges_enabled", False)),
        payouts_enabled=bool(_get(account, "payouts_enabled", False)),
        details_submitted=bool(_get(account, "details_submitted", False)),
        requirements=due,
    )


def verify_stripe_signature(
    *, raw: bytes, signature_header: str | None, secret: str | None, tolerance: int
) -> tuple[bool, str | None]:
    if not secret or not secret.strip():
        return False, "WEBHOOK_SECRET_NOT_CONFIGURED"

    if not signature_header or not signature_header.strip():
        return False, "MISSING_SIGNATURE"

    try:
        stripe.WebhookSignature.verify_header(
            raw.decode("utf-8"),
            signature_header.strip(),
            secret,
            tolerance=tolerance,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError):
        return False, "INVALID_SIGNATURE"

    return True, None
