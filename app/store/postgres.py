# app/store/postgres.py
from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Any, Optional
from uuid import UUID

from psycopg2 import errors as pg_errors
from psycopg2.extras import Json, RealDictCursor

import db
from app.jobs.model import Job, Payment
from app.payouts.model import OnboardingLink, PayoutAccount, RecoverySession
from app.store.base import DuplicateKey, ManualIntervention, WebhookEventRecord

_current_conn: contextvars.ContextVar[Any] = contextvars.ContextVar("gigpay_store_conn", default=None)

JOB_COLUMNS = (
    "id, poster_id, title, description, skills, category, payment_type, payment_amount_cents, "
    "platform_fee_cents, total_amount_cents, status, idempotency_key, request_hash, "
    "created_at, updated_at, payment_id, failure_code"
)
PAYMENT_COLUMNS = (
    "id, job_id, payer_id, amount_cents, currency, status, idempotency_key, created_at, updated_at, "
    "external_ref, failure_code, completed_at, refunded_at"
)
ACCOUNT_COLUMNS = (
    "owner_id, status, created_at, updated_at, external_account_id, requirements, "
    "last_checked_at, last_link_issued_at, status_as_of"
)

_JOB_UPDATABLE = {"status", "payment_id", "failure_code", "updated_at"}
_PAYMENT_UPDATABLE = {"status", "external_ref", "failure_code", "completed_at", "refunded_at", "updated_at"}
_ACCOUNT_UPDATABLE = {
    "status",
    "external_account_id",
    "requirements",
    "last_checked_at",
    "last_link_issued_at",
    "status_as_of",
    "updated_at",
}


def _job(row: dict[str, Any]) -> Job:
    return Job(**{**row, "skills": tuple(row.get("skills") or ())})


def _payment(row: dict[str, Any]) -> Payment:
    return Payment(**row)


def _account(row: dict[str, Any]) -> PayoutAccount:
    return PayoutAccount(**{**row, "requirements": tuple(row.get("requirements") or ())})


def _set_clause(changes: dict[str, Any], allowed: set[str]) -> tuple[str, list[Any]]:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unsupported columns: {sorted(unknown)}")
    parts = [f"{col} = %s" for col in changes]
    values = [list(v) if isinstance(v, tuple) else v for v in changes.values()]
    if "updated_at" not in changes:
        parts.append("updated_at = now()")
    return ", ".join(parts), values


class PostgresStore:
    """
    Raw-SQL store on the shared psycopg2 pool (tables in the `app` schema).

    Inside `transaction()` every call reuses one connection, so FOR UPDATE locks
    hold until the block exits. Outside it each call runs in its own short
    transaction.
    """

    @contextmanager
    def _conn(self):
        conn = _current_conn.get()
        if conn is not None:
            yield conn
            return
        with db.get_conn() as conn:
            yield conn

    @contextmanager
    def transaction(self, *, timeout_s: Optional[float] = None):
        outer = _current_conn.get()
        if outer is not None:
            yield self
            return

        with db.get_conn() as conn:
            if timeout_s:
                with conn.cursor() as cur:
                    cur.execute("SET LOCAL statement_timeout = %s;", (f"{int(timeout_s * 1000)}ms",))
            token = _current_conn.set(conn)
            try:
                yield self
            finally:
                _current_conn.reset(token)

    @contextmanager
    def lock(self, key: str):
        """
        Session-level advisory lock on a dedicated connection, held for the whole
        block (external calls included) and released even if the block raises.
        """
        with db.get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_lock(hashtextextended(%s, 0));", (key,))
            conn.commit()
            try:
                yield
            finally:
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_advisory_unlock(hashtextextended(%s, 0));", (key,))

    def _fetchone(self, sql: str, params: tuple) -> Optional[dict[str, Any]]:
        with self._conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                return dict(row) if row else None

    def _fetchall(self, sql: str, params: tuple) -> list[dict[str, Any]]:
        with self._conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                return [dict(r) for r in cur.fetchall()]

    def _execute(self, sql: str, params: tuple) -> int:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.rowcount

    # ---------------- jobs / payments ----------------
    def insert_posting(self, job: Job, payment: Payment) -> None:
        with self.transaction():
            try:
                self._execute(
                    f"""
                    INSERT INTO app.jobs ({JOB_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        job.id, job.poster_id, job.title, job.description, list(job.skills), job.category,
                        job.payment_type, job.payment_amount_cents, job.platform_fee_cents,
                        job.total_amount_cents, job.status, job.idempotency_key, job.request_hash,
                        job.created_at, job.updated_at, job.payment_id, job.failure_code,
                    ),
                )
            except pg_errors.UniqueViolation as exc:
                raise DuplicateKey(f"posting exists for key={job.idempotency_key}") from exc

            self._execute(
                f"""
                INSERT INTO app.payments ({PAYMENT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    payment.id, payment.job_id, payment.payer_id, payment.amount_cents, payment.currency,
                    payment.status, payment.idempotency_key, payment.created_at, payment.updated_at,
                    payment.external_ref, payment.failure_code, payment.completed_at, payment.refunded_at,
                ),
            )

    def get_posting_by_key(self, poster_id: UUID, idempotency_key: str) -> Optional[tuple[Job, Payment]]:
        job_row = self._fetchone(
            f"SELECT {JOB_COLUMNS} FROM app.jobs WHERE poster_id = %s AND idempotency_key = %s",
            (poster_id, idempotency_key),
        )
        if not job_row:
            return None
        pay_row = self._fetchone(
            f"SELECT {PAYMENT_COLUMNS} FROM app.payments WHERE job_id = %s ORDER BY created_at LIMIT 1",
            (job_row["id"],),
        )
        if not pay_row:
            return None
        return _job(job_row), _payment(pay_row)

    def get_job(self, job_id: UUID, *, for_update: bool = False) -> Optional[Job]:
        suffix = " FOR UPDATE" if for_update else ""
        row = self._fetchone(f"SELECT {JOB_COLUMNS} FROM app.jobs WHERE id = %s{suffix}", (job_id,))
        return _job(row) if row else None

    def get_payment(self, payment_id: UUID, *, for_update: bool = False) -> Optional[Payment]:
        suffix = " FOR UPDATE" if for_update else ""
        row = self._fetchone(f"SELECT {PAYMENT_COLUMNS} FROM app.payments WHERE id = %s{suffix}", (payment_id,))
        return _payment(row) if row else None

    def get_payment_by_external_ref(self, external_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        suffix = " FOR UPDATE" if for_update else ""
        row = self._fetchone(
            f"SELECT {PAYMENT_COLUMNS} FROM app.payments WHERE external_ref = %s{suffix}",
            (external_ref,),
        )
        return _payment(row) if row else None

    def update_job(self, job_id: UUID, *, from_status: str, **changes: Any) -> bool:
        clause, values = _set_clause(changes, _JOB_UPDATABLE)
        n = self._execute(
            f"UPDATE app.jobs SET {clause} WHERE id = %s AND status = %s",
            (*values, job_id, from_status),
        )
        return n == 1

    def update_payment(self, payment_id: UUID, *, from_status: str, **changes: Any) -> bool:
        clause, values = _set_clause(changes, _PAYMENT_UPDATABLE)
        n = self._execute(
            f"UPDATE app.payments SET {clause} WHERE id = %s AND status = %s",
            (*values, payment_id, from_status),
        )
        return n == 1

    # ---------------- customers ----------------
    def get_customer_ref(self, user_id: UUID) -> Optional[str]:
        row = self._fetchone("SELECT customer_ref FROM app.payment_customers WHERE user_id = %s", (user_id,))
        return row["customer_ref"] if row else None

    def set_customer_ref(self, user_id: UUID, customer_ref: str) -> None:
        self._execute(
            """
            INSERT INTO app.payment_customers (user_id, customer_ref)
            VALUES (%s, %s)
            ON CONFLICT (user_id) DO UPDATE SET customer_ref = EXCLUDED.customer_ref
            """,
            (user_id, customer_ref),
        )

    # ---------------- payout accounts ----------------
    def get_payout_account(self, owner_id: UUID) -> Optional[PayoutAccount]:
        row = self._fetchone(f"SELECT {ACCOUNT_COLUMNS} FROM app.payout_accounts WHERE owner_id = %s", (owner_id,))
        return _account(row) if row else None

    def get_payout_account_by_external(self, external_account_id: str) -> Optional[PayoutAccount]:
        row = self._fetchone(
            f"SELECT {ACCOUNT_COLUMNS} FROM app.payout_accounts WHERE external_account_id = %s",
            (external_account_id,),
        )
        return _account(row) if row else None

    def insert_payout_account(self, account: PayoutAccount) -> None:
        try:
            self._execute(
                f"""
                INSERT INTO app.payout_accounts ({ACCOUNT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    account.owner_id, account.status, account.created_at, account.updated_at,
                    account.external_account_id, list(account.requirements), account.last_checked_at,
                    account.last_link_issued_at, account.status_as_of,
                ),
            )
        except pg_errors.UniqueViolation as exc:
            raise DuplicateKey(f"payout account exists for owner={account.owner_id}") from exc

    def update_payout_account(self, owner_id: UUID, **changes: Any) -> PayoutAccount:
        clause, values = _set_clause(changes, _ACCOUNT_UPDATABLE)
        row = self._fetchone(
            f"UPDATE app.payout_accounts SET {clause} WHERE owner_id = %s RETURNING {ACCOUNT_COLUMNS}",
            (*values, owner_id),
        )
        if not row:
            raise KeyError(owner_id)
        return _account(row)

    def list_accounts_to_poll(self, *, limit: int) -> list[PayoutAccount]:
        rows = self._fetchall(
            f"""
            SELECT {ACCOUNT_COLUMNS}
            FROM app.payout_accounts
            WHERE external_account_id IS NOT NULL
              AND status IN ('pending', 'restricted')
            ORDER BY last_checked_at NULLS FIRST
            LIMIT %s
            """,
            (limit,),
        )
        return [_account(r) for r in rows]

    def record_onboarding_link(self, link: OnboardingLink) -> None:
        self._execute(
            "INSERT INTO app.onboarding_links (owner_id, url, issued_at, expires_at) VALUES (%s, %s, %s, %s)",
            (link.owner_id, link.url, link.issued_at, link.expires_at),
        )

    def list_onboarding_links(self, owner_id: UUID) -> list[OnboardingLink]:
        rows = self._fetchall(
            "SELECT owner_id, url, issued_at, expires_at FROM app.onboarding_links WHERE owner_id = %s ORDER BY issued_at",
            (owner_id,),
        )
        return [OnboardingLink(**r) for r in rows]

    # ---------------- recovery sessions ----------------
    def get_recovery_session(self, owner_id: UUID) -> Optional[RecoverySession]:
        row = self._fetchone(
            """
            SELECT owner_id, state, attempts, max_attempts, created_at, updated_at, last_link_issued_at
            FROM app.recovery_sessions WHERE owner_id = %s
            """,
            (owner_id,),
        )
        return RecoverySession(**row) if row else None

    def save_recovery_session(self, session: RecoverySession) -> None:
        self._execute(
            """
            INSERT INTO app.recovery_sessions
              (owner_id, state, attempts, max_attempts, created_at, updated_at, last_link_issued_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (owner_id) DO UPDATE SET
              state = EXCLUDED.state,
              attempts = EXCLUDED.attempts,
              max_attempts = EXCLUDED.max_attempts,
              updated_at = EXCLUDED.updated_at,
              last_link_issued_at = EXCLUDED.last_link_issued_at
            """,
            (
                session.owner_id, session.state, session.attempts, session.max_attempts,
                session.created_at, session.updated_at, session.last_link_issued_at,
            ),
        )

    def delete_recovery_session(self, owner_id: UUID) -> bool:
        return self._execute("DELETE FROM app.recovery_sessions WHERE owner_id = %s", (owner_id,)) == 1

    # ---------------- webhooks ----------------
    def record_webhook_event(self, record: WebhookEventRecord) -> bool:
        n = self._execute(
            """
            INSERT INTO app.processed_webhook_events
              (event_id, event_type, received_at, outcome, reason, external_ref)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (event_id) DO NOTHING
            """,
            (
                record.event_id, record.event_type, record.received_at,
                record.outcome, record.reason, record.external_ref,
            ),
        )
        return n == 1

    def get_webhook_event(self, event_id: str) -> Optional[WebhookEventRecord]:
        row = self._fetchone(
            """
            SELECT event_id, event_type, received_at, outcome, reason, external_ref
            FROM app.processed_webhook_events WHERE event_id = %s
            """,
            (event_id,),
        )
        return WebhookEventRecord(**row) if row else None

    # ---------------- manual interventions ----------------
    def enqueue_intervention(self, *, kind: str, reference: str, payload: dict[str, Any]) -> ManualIntervention:
        row = self._fetchone(
            """
            INSERT INTO app.manual_interventions (id, kind, reference, payload)
            VALUES (%s, %s, %s, %s)
            RETURNING id, kind, reference, created_at, payload, resolved_at
            """,
            (uuid.uuid4(), kind, reference, Json(payload or {})),
        )
        return ManualIntervention(**row)

    def list_interventions(self, *, include_resolved: bool = False) -> list[ManualIntervention]:
        where = "" if include_resolved else "WHERE resolved_at IS NULL"
        rows = self._fetchall(
            f"""
            SELECT id, kind, reference, created_at, payload, resolved_at
            FROM app.manual_interventions
            {where}
            ORDER BY created_at
            """,
            (),
        )
        return [ManualIntervention(**r) for r in rows]

    def resolve_intervention(self, intervention_id: UUID) -> bool:
        n = self._execute(
            "UPDATE app.manual_interventions SET resolved_at = now() WHERE id = %s AND resolved_at IS NULL",
            (intervention_id,),
        )
        return n == 1
