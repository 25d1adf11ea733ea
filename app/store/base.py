# app/store/base.py
from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol
from uuid import UUID

from app.jobs.model import Job, Payment
from app.payouts.model import OnboardingLink, PayoutAccount, RecoverySession


class DuplicateKey(Exception):
    pass


@dataclass(frozen=True)
class WebhookEventRecord:
    event_id: str
    event_type: str
    received_at: datetime
    outcome: str  # "applied" | "ignored"
    reason: Optional[str] = None
    external_ref: Optional[str] = None


@dataclass(frozen=True)
class ManualIntervention:
    id: UUID
    kind: str  # REFUND_FAILED | ONBOARDING_RECOVERY_EXHAUSTED | CHARGE_WITHOUT_JOB
    reference: str
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    resolved_at: Optional[datetime] = None


class Store(Protocol):
    """
    Persistence boundary.

    Writes that must land together run inside `transaction()`; rows read with
    for_update=True stay locked until that transaction ends. `lock(key)`
    serializes work (including external calls) across requests/workers.
    """

    def transaction(self, *, timeout_s: Optional[float] = None) -> AbstractContextManager: ...

    def lock(self, key: str) -> AbstractContextManager: ...

    # jobs / payments
    def insert_posting(self, job: Job, payment: Payment) -> None: ...
    def get_posting_by_key(self, poster_id: UUID, idempotency_key: str) -> Optional[tuple[Job, Payment]]: ...
    def get_job(self, job_id: UUID, *, for_update: bool = False) -> Optional[Job]: ...
    def get_payment(self, payment_id: UUID, *, for_update: bool = False) -> Optional[Payment]: ...
    def get_payment_by_external_ref(self, external_ref: str, *, for_update: bool = False) -> Optional[Payment]: ...
    def update_job(self, job_id: UUID, *, from_status: str, **changes: Any) -> bool: ...
    def update_payment(self, payment_id: UUID, *, from_status: str, **changes: Any) -> bool: ...

    # payer customers
    def get_customer_ref(self, user_id: UUID) -> Optional[str]: ...
    def set_customer_ref(self, user_id: UUID, customer_ref: str) -> None: ...

    # payout accounts
    def get_payout_account(self, owner_id: UUID) -> Optional[PayoutAccount]: ...
    def get_payout_account_by_external(self, external_account_id: str) -> Optional[PayoutAccount]: ...
    def insert_payout_account(self, account: PayoutAccount) -> None: ...
    def update_payout_account(self, owner_id: UUID, **changes: Any) -> PayoutAccount: ...
    def list_accounts_to_poll(self, *, limit: int) -> list[PayoutAccount]: ...
    def record_onboarding_link(self, link: OnboardingLink) -> None: ...
    def list_onboarding_links(self, owner_id: UUID) -> list[OnboardingLink]: ...

    # recovery sessions
    def get_recovery_session(self, owner_id: UUID) -> Optional[RecoverySession]: ...
    def save_recovery_session(self, session: RecoverySession) -> None: ...
    def delete_recovery_session(self, owner_id: UUID) -> bool: ...

    # webhooks
    def record_webhook_event(self, record: WebhookEventRecord) -> bool: ...
    def get_webhook_event(self, event_id: str) -> Optional[WebhookEventRecord]: ...

    # manual-intervention queue
    def enqueue_intervention(self, *, kind: str, reference: str, payload: dict[str, Any]) -> ManualIntervention: ...
    def list_interventions(self, *, include_resolved: bool = False) -> list[ManualIntervention]: ...
    def resolve_intervention(self, intervention_id: UUID) -> bool: ...
