"""marketplace schema: jobs, payments, payout accounts, reconciliation

Revision ID: 0001_marketplace_schema
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_marketplace_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS app;")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.jobs (
            id uuid PRIMARY KEY,
            poster_id uuid NOT NULL,
            title text NOT NULL,
            description text NOT NULL,
            skills text[] NOT NULL DEFAULT '{}',
            category text,
            payment_type text NOT NULL CHECK (payment_type IN ('fixed', 'hourly')),
            payment_amount_cents bigint NOT NULL CHECK (payment_amount_cents > 0),
            platform_fee_cents bigint NOT NULL CHECK (platform_fee_cents >= 0),
            total_amount_cents bigint NOT NULL,
            status text NOT NULL
                CHECK (status IN ('pending_payment', 'open', 'payment_failed', 'refunded_closed')),
            idempotency_key text NOT NULL,
            request_hash text NOT NULL,
            payment_id uuid,
            failure_code text,
            created_at timestamp with time zone NOT NULL DEFAULT now(),
            updated_at timestamp with time zone NOT NULL DEFAULT now(),
            CONSTRAINT jobs_poster_idempotency_uniq UNIQUE (poster_id, idempotency_key),
            CONSTRAINT jobs_open_requires_payment CHECK (status <> 'open' OR payment_id IS NOT NULL)
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.payments (
            id uuid PRIMARY KEY,
            job_id uuid NOT NULL REFERENCES app.jobs(id),
            payer_id uuid NOT NULL,
            amount_cents bigint NOT NULL CHECK (amount_cents > 0),
            currency text NOT NULL,
            status text NOT NULL CHECK (status IN ('pending', 'completed', 'failed', 'refunded')),
            idempotency_key text NOT NULL UNIQUE,
            external_ref text UNIQUE,
            failure_code text,
            created_at timestamp with time zone NOT NULL DEFAULT now(),
            updated_at timestamp with time zone NOT NULL DEFAULT now(),
            completed_at timestamp with time zone,
            refunded_at timestamp with time zone,
            CONSTRAINT payments_completed_requires_ref CHECK (status <> 'completed' OR external_ref IS NOT NULL)
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS payments_job_id_idx ON app.payments (job_id);")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.payment_customers (
            user_id uuid PRIMARY KEY,
            customer_ref text NOT NULL
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.payout_accounts (
            owner_id uuid PRIMARY KEY,
            external_account_id text UNIQUE,
            status text NOT NULL CHECK (status IN ('none', 'pending', 'active', 'restricted')),
            requirements text[] NOT NULL DEFAULT '{}',
            last_checked_at timestamp with time zone,
            last_link_issued_at timestamp with time zone,
            status_as_of timestamp with time zone,
            created_at timestamp with time zone NOT NULL DEFAULT now(),
            updated_at timestamp with time zone NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS payout_accounts_poll_idx
            ON app.payout_accounts (last_checked_at NULLS FIRST)
            WHERE status IN ('pending', 'restricted');
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.onboarding_links (
            id bigserial PRIMARY KEY,
            owner_id uuid NOT NULL REFERENCES app.payout_accounts(owner_id),
            url text NOT NULL,
            issued_at timestamp with time zone NOT NULL,
            expires_at timestamp with time zone
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS onboarding_links_owner_idx ON app.onboarding_links (owner_id, issued_at);")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.recovery_sessions (
            owner_id uuid PRIMARY KEY REFERENCES app.payout_accounts(owner_id),
            state text NOT NULL CHECK (state IN ('STALLED', 'RETRYING', 'EXHAUSTED')),
            attempts integer NOT NULL DEFAULT 0,
            max_attempts integer NOT NULL,
            last_link_issued_at timestamp with time zone,
            created_at timestamp with time zone NOT NULL DEFAULT now(),
            updated_at timestamp with time zone NOT NULL DEFAULT now(),
            CONSTRAINT recovery_attempts_bounded CHECK (attempts >= 0 AND attempts <= max_attempts)
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.processed_webhook_events (
            event_id text PRIMARY KEY,
            event_type text NOT NULL,
            external_ref text,
            outcome text NOT NULL CHECK (outcome IN ('applied', 'ignored')),
            reason text,
            received_at timestamp with time zone NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.manual_interventions (
            id uuid PRIMARY KEY,
            kind text NOT NULL,
            reference text NOT NULL,
            payload jsonb NOT NULL DEFAULT '{}'::jsonb,
            created_at timestamp with time zone NOT NULL DEFAULT now(),
            resolved_at timestamp with time zone
        );
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS manual_interventions_open_idx
            ON app.manual_interventions (created_at)
            WHERE resolved_at IS NULL;
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.manual_interventions;")
    op.execute("DROP TABLE IF EXISTS app.processed_webhook_events;")
    op.execute("DROP TABLE IF EXISTS app.recovery_sessions;")
    op.execute("DROP TABLE IF EXISTS app.onboarding_links;")
    op.execute("DROP TABLE IF EXISTS app.payout_accounts;")
    op.execute("DROP TABLE IF EXISTS app.payment_customers;")
    op.execute("DROP TABLE IF EXISTS app.payments;")
    op.execute("DROP TABLE IF EXISTS app.jobs;")
