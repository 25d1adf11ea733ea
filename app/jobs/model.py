from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional
from uuid import UUID

JobStatus = Literal["pending_payment", "open", "payment_failed", "refunded_closed"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
PaymentType = Literal["fixed", "hourly"]


@dataclass(frozen=True)
class JobDraft:
    title: str
    description: str
    payment_type: PaymentType
    payment_amount_cents: int
    skills: tuple[str, ...] = ()
    category: Optional[str] = None


@dataclass(frozen=True)
class Job:
    id: UUID
    poster_id: UUID
    title: str
    description: str
    skills: tuple[str, ...]
    category: Optional[str]
    payment_type: PaymentType
    payment_amount_cents: int
    platform_fee_cents: int
    total_amount_cents: int
    status: JobStatus
    idempotency_key: str
    request_hash: str
    created_at: datetime
    updated_at: datetime
    payment_id: Optional[UUID] = None
    failure_code: Optional[str] = None


@dataclass(frozen=True)
class Payment:
    id: UUID
    job_id: UUID
    payer_id: UUID
    amount_cents: int
    currency: str
    status: PaymentStatus
    idempotency_key: str
    created_at: datetime
    updated_at: datetime
    external_ref: Optional[str] = None
    failure_code: Optional[str] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @property
    def amount(self) -> Decimal:
        return (Decimal(self.amount_cents) / Decimal(100)).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class PostingOutcome:
    job: Job
    payment: Payment
    state: str
    replayed: bool = False
    notes: list[str] = field(default_factory=list)
