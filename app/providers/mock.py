# app/providers/mock.py
from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Optional

from app.errors import ProcessorError
from app.providers.base import ChargeResult, ProcessorAccount, ProcessorLink, RefundResult

LOST_RESPONSE = "lost_response"


class MockProcessor:
    """
    Sandbox/test processor.

    IMPORTANT:
    - Honors idempotency keys the way the real processor does: the same key
      returns the first result and never creates a second charge.
    - Outcomes are scripted per call (`queue_decline`, `fail_refunds`, ...),
      otherwise everything succeeds.
    """

    def __init__(self, *, link_ttl_minutes: int = 30):
        self._lock = Lock()
        self.link_ttl_minutes = link_ttl_minutes

        self.customers: dict[str, set[str]] = {}
        self.charges: dict[str, dict] = {}  # external_ref -> charge
        self._charge_by_key: dict[str, ChargeResult] = {}
        self.refunds: list[dict] = []
        self._refund_by_key: dict[str, RefundResult] = {}
        self.accounts: dict[str, ProcessorAccount] = {}
        self._account_by_key: dict[str, str] = {}
        self.links: list[ProcessorLink] = []

        self.authorize_calls = 0
        self.refund_calls = 0
        self._scripted_charges: deque[str] = deque()
        self._refund_failures_left = 0
        self._link_failures_left = 0
        self._status_failures_left = 0

    # ---------------- scripting helpers ----------------
    def add_customer(self, customer_ref: str, *payment_methods: str) -> None:
        with self._lock:
            self.customers.setdefault(customer_ref, set()).update(payment_methods)

    def queue_decline(self, reason: str) -> None:
        self._scripted_charges.append(reason)

    def queue_lost_response(self) -> None:
        """Next charge succeeds at the processor but the caller sees a timeout."""
        self._scripted_charges.append(LOST_RESPONSE)

    def fail_refunds(self, times: int) -> None:
        self._refund_failures_left = int(times)

    def fail_links(self, times: int) -> None:
        self._link_failures_left = int(times)

    def fail_status(self, times: int) -> None:
        self._status_failures_left = int(times)

    def set_account_state(
        self,
        account_id: str,
        *,
        charges_enabled: bool = False,
        payouts_enabled: bool = False,
        details_submitted: bool = False,
        requirements: tuple[str, ...] = (),
    ) -> None:
        with self._lock:
            self.accounts[account_id] = ProcessorAccount(
                account_id=account_id,
                charges_enabled=charges_enabled,
                payouts_enabled=payouts_enabled,
                details_submitted=details_submitted,
                requirements=tuple(requirements),
            )

    @property
    def successful_charges(self) -> int:
        return len(self.charges)

    # ---------------- processor contract ----------------
    def authorize(self, *, amount_cents, currency, customer_ref, payment_method_ref, idempotency_key, metadata):
        with self._lock:
            self.authorize_calls += 1
            cached = self._charge_by_key.get(idempotency_key)
            if cached is not None:
                return cached

            scripted = self._scripted_charges.popleft() if self._scripted_charges else None
            lost = scripted == LOST_RESPONSE
            if scripted and not lost:
                result = ChargeResult(
                    ok=False,
                    status="requires_payment_method",
                    reason=scripted,
                    error=f"mock {scripted}",
                    response={"mock": True, "decline": scripted},
                )
                # transport failures never reached the processor, so they are not cached
                if scripted != "processor_unavailable":
                    self._charge_by_key[idempotency_key] = result
                return result

            external_ref = f"pi_mock_{uuid.uuid4().hex[:16]}"
            self.charges[external_ref] = {
                "amount_cents": int(amount_cents),
                "currency": currency,
                "customer_ref": customer_ref,
                "payment_method_ref": payment_method_ref,
                "metadata": dict(metadata or {}),
            }
            result = ChargeResult(
                ok=True,
                external_ref=external_ref,
                status="succeeded",
                response={"mock": True, "id": external_ref},
            )
            self._charge_by_key[idempotency_key] = result
            if lost:
                return ChargeResult(ok=False, status="timeout", reason="processor_unavailable", error="mock timeout")
            return result

    def refund(self, *, external_ref, amount_cents, idempotency_key, metadata):
        with self._lock:
            self.refund_calls += 1
            cached = self._refund_by_key.get(idempotency_key)
            if cached is not None:
                return cached

            if self._refund_failures_left > 0:
                self._refund_failures_left -= 1
                return RefundResult(ok=False, error="mock refund failure", response={"http_status": 503})

            if external_ref not in self.charges:
                return RefundResult(ok=False, error="No such charge", response={"http_status": 404})

            refund_ref = f"re_mock_{uuid.uuid4().hex[:16]}"
            self.refunds.append(
                {
                    "refund_ref": refund_ref,
                    "external_ref": external_ref,
                    "amount_cents": amount_cents,
                    "metadata": dict(metadata or {}),
                }
            )
            result = RefundResult(ok=True, refund_ref=refund_ref, response={"mock": True, "id": refund_ref})
            self._refund_by_key[idempotency_key] = result
            return result

    def charge_refunded(self, external_ref):
        with self._lock:
            if self._status_failures_left > 0:
                self._status_failures_left -= 1
                raise ProcessorError("mock status failure", processor_code="api_error")
            return any(r["external_ref"] == external_ref for r in self.refunds)

    def create_payout_account(self, *, owner_ref, idempotency_key):
        with self._lock:
            existing = self._account_by_key.get(idempotency_key)
            if existing:
                return existing
            account_id = f"acct_mock_{uuid.uuid4().hex[:12]}"
            self.accounts[account_id] = ProcessorAccount(
                account_id=account_id,
                charges_enabled=False,
                payouts_enabled=False,
                requirements=("individual.verification.document", "external_account"),
            )
            self._account_by_key[idempotency_key] = account_id
            return account_id

    def create_onboarding_link(self, *, account_id, refresh_url, return_url):
        with self._lock:
            if self._link_failures_left > 0:
                self._link_failures_left -= 1
                raise ProcessorError("mock link failure", processor_code="api_error")
            if account_id not in self.accounts:
                raise ProcessorError("No such account", processor_code="account_invalid", retryable=False)
            link = ProcessorLink(
                url=f"https://connect.mock.local/setup/{account_id}/{uuid.uuid4().hex[:12]}",
                expires_at=datetime.now(timezone.utc) + timedelta(minutes=self.link_ttl_minutes),
            )
            self.links.append(link)
            return link

    def retrieve_account(self, account_id):
        with self._lock:
            if self._status_failures_left > 0:
                self._status_failures_left -= 1
                raise ProcessorError("mock status failure", processor_code="api_error")
            account = self.accounts.get(account_id)
            if account is None:
                raise ProcessorError("No such account", processor_code="account_invalid", retryable=False)
            return account

    def list_payment_methods(self, customer_ref):
        with self._lock:
            return sorted(self.customers.get(customer_ref, set()))

    def charge_for(self, external_ref: str) -> Optional[dict]:
        return self.charges.get(external_ref)
