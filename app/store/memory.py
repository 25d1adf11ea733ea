# app/store/memory.py
from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from threading import Lock, RLock
from typing import Any, Optional
from uuid import UUID

from app.jobs.model import Job, Payment
from app.payouts.model import OnboardingLink, PayoutAccount, RecoverySession
from app.store.base import DuplicateKey, ManualIntervention, WebhookEventRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_TABLES = (
    "jobs",
    "payments",
    "postings",
    "customers",
    "accounts",
    "links",
    "sessions",
    "webhook_events",
    "interventions",
)


class InMemoryStore:
    """
    Thread-safe store for sandbox mode and tests.

    One re-entrant lock guards every table; `transaction()` snapshots the tables
    and restores them if the block raises, so multi-row writes are all-or-nothing.
    """

    def __init__(self) -> None:
        self._mutex = RLock()
        # key -> [lock, holders]; an entry lives only while someone holds or waits on it
        self._key_locks: dict[str, list] = {}
        self._key_locks_guard = Lock()

        self.jobs: dict[UUID, Job] = {}
        self.payments: dict[UUID, Payment] = {}
        self.postings: dict[tuple[UUID, str], UUID] = {}  # (poster, idem key) -> job id
        self.customers: dict[UUID, str] = {}
        self.accounts: dict[UUID, PayoutAccount] = {}
        self.links: dict[UUID, list[OnboardingLink]] = {}
        self.sessions: dict[UUID, RecoverySession] = {}
        self.webhook_events: dict[str, WebhookEventRecord] = {}
        self.interventions: dict[UUID, ManualIntervention] = {}

    # ---------------- boundaries ----------------
    @contextmanager
    def transaction(self, *, timeout_s: Optional[float] = None):
        with self._mutex:
            snapshot = {name: dict(getattr(self, name)) for name in _TABLES}
            snapshot["links"] = {k: list(v) for k, v in self.links.items()}
            try:
                yield self
            except BaseException:
                for name, table in snapshot.items():
                    setattr(self, name, table)
                raise

    @contextmanager
    def lock(self, key: str):
        with self._key_locks_guard:
            entry = self._key_locks.setdefault(key, [Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._key_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._key_locks[key]

    # ---------------- jobs / payments ----------------
    def insert_posting(self, job: Job, payment: Payment) -> None:
        with self._mutex:
            key = (job.poster_id, job.idempotency_key)
            if key in self.postings:
                raise DuplicateKey(f"posting exists for key={job.idempotency_key}")
            self.postings[key] = job.id
            self.jobs[job.id] = job
            self.payments[payment.id] = payment

    def get_posting_by_key(self, poster_id: UUID, idempotency_key: str) -> Optional[tuple[Job, Payment]]:
        with self._mutex:
            job_id = self.postings.get((poster_id, idempotency_key))
            if job_id is None:
                return None
            job = self.jobs[job_id]
            payment = next(p for p in self.payments.values() if p.job_id == job_id)
            return job, payment

    def get_job(self, job_id: UUID, *, for_update: bool = False) -> Optional[Job]:
        with self._mutex:
            return self.jobs.get(job_id)

    def get_payment(self, payment_id: UUID, *, for_update: bool = False) -> Optional[Payment]:
        with self._mutex:
            return self.payments.get(payment_id)

    def get_payment_by_external_ref(self, external_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        with self._mutex:
            for p in self.payments.values():
                if p.external_ref and p.external_ref == external_ref:
                    return p
            return None

    def update_job(self, job_id: UUID, *, from_status: str, **changes: Any) -> bool:
        with self._mutex:
            job = self.jobs.get(job_id)
            if job is None or job.status != from_status:
                return False
            self.jobs[job_id] = replace(job, updated_at=changes.pop("updated_at", _utcnow()), **changes)
            return True

    def update_payment(self, payment_id: UUID, *, from_status: str, **changes: Any) -> bool:
        with self._mutex:
            payment = self.payments.get(payment_id)
            if payment is None or payment.status != from_status:
                return False
            self.payments[payment_id] = replace(payment, updated_at=changes.pop("updated_at", _utcnow()), **changes)
            return True

    # ---------------- customers ----------------
    def get_customer_ref(self, user_id: UUID) -> Optional[str]:
        with self._mutex:
            return self.customers.get(user_id)

    def set_customer_ref(self, user_id: UUID, customer_ref: str) -> None:
        with self._mutex:
            self.customers[user_id] = customer_ref

    # ---------------- payout accounts ----------------
    def get_payout_account(self, owner_id: UUID) -> Optional[PayoutAccount]:
        with self._mutex:
            return self.accounts.get(owner_id)

    def get_payout_account_by_external(self, external_account_id: str) -> Optional[PayoutAccount]:
        with self._mutex:
            for account in self.accounts.values():
                if account.external_account_id == external_account_id:
                    return account
            return None

    def insert_payout_account(self, account: PayoutAccount) -> None:
        with self._mutex:
            if account.owner_id in self.accounts:
                raise DuplicateKey(f"payout account exists for owner={account.owner_id}")
            self.accounts[account.owner_id] = account

    def update_payout_account(self, owner_id: UUID, **changes: Any) -> PayoutAccount:
        with self._mutex:
            account = self.accounts[owner_id]
            if "requirements" in changes:
                changes["requirements"] = tuple(changes["requirements"] or ())
            updated = replace(account, updated_at=changes.pop("updated_at", _utcnow()), **changes)
            self.accounts[owner_id] = updated
            return updated

    def list_accounts_to_poll(self, *, limit: int) -> list[PayoutAccount]:
        with self._mutex:
            rows = [
                a for a in self.accounts.values()
                if a.external_account_id and a.status in ("pending", "restricted")
            ]
            epoch = datetime.min.replace(tzinfo=timezone.utc)
            rows.sort(key=lambda a: a.last_checked_at or epoch)
            return rows[:limit]

    def record_onboarding_link(self, link: OnboardingLink) -> None:
        with self._mutex:
            self.links.setdefault(link.owner_id, []).append(link)

    def list_onboarding_links(self, owner_id: UUID) -> list[OnboardingLink]:
        with self._mutex:
            return list(self.links.get(owner_id, []))

    # ---------------- recovery sessions ----------------
    def get_recovery_session(self, owner_id: UUID) -> Optional[RecoverySession]:
        with self._mutex:
            return self.sessions.get(owner_id)

    def save_recovery_session(self, session: RecoverySession) -> None:
        with self._mutex:
            self.sessions[session.owner_id] = session

    def delete_recovery_session(self, owner_id: UUID) -> bool:
        with self._mutex:
            return self.sessions.pop(owner_id, None) is not None

    # ---------------- webhooks ----------------
    def record_webhook_event(self, record: WebhookEventRecord) -> bool:
        with self._mutex:
            if record.event_id in self.webhook_events:
                return False
            self.webhook_events[record.event_id] = record
            return True

    def get_webhook_event(self, event_id: str) -> Optional[WebhookEventRecord]:
        with self._mutex:
            return self.webhook_events.get(event_id)

    # ---------------- manual interventions ----------------
    def enqueue_intervention(self, *, kind: str, reference: str, payload: dict[str, Any]) -> ManualIntervention:
        with self._mutex:
            item = ManualIntervention(
                id=uuid.uuid4(),
                kind=kind,
                reference=reference,
                created_at=_utcnow(),
                payload=dict(payload or {}),
            )
            self.interventions[item.id] = item
            return item

    def list_interventions(self, *, include_resolved: bool = False) -> list[ManualIntervention]:
        with self._mutex:
            items = [i for i in self.interventions.values() if include_resolved or i.resolved_at is None]
            return sorted(items, key=lambda i: i.created_at)

    def resolve_intervention(self, intervention_id: UUID) -> bool:
        with self._mutex:
            item = self.interventions.get(intervention_id)
            if item is None or item.resolved_at is not None:
                return False
            self.interventions[intervention_id] = replace(item, resolved_at=_utcnow())
            return True
