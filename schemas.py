# schemas.py
from __future__ import annotations

from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Literal, Any

PaymentTypeName = Literal["fixed", "hourly"]


# -------- JOBS --------
class JobCreateRequest(BaseModel):
    title: str = Field(max_length=500)
    description: str = Field(max_length=20000)
    skills: List[str] = Field(default_factory=list)
    category: Optional[str] = Field(default=None, max_length=100)
    payment_type: PaymentTypeName
    payment_amount_cents: int = Field(gt=0)
    payment_method_id: str = Field(min_length=1, max_length=255)


class PaymentOut(BaseModel):
    payment_id: UUID
    status: str
    amount_cents: int
    amount: Decimal
    currency: str
    external_ref: Optional[str] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class JobOut(BaseModel):
    job_id: UUID
    poster_id: UUID
    title: str
    description: str
    skills: List[str]
    category: Optional[str] = None
    payment_type: PaymentTypeName
    payment_amount_cents: int
    platform_fee_cents: int
    total_amount_cents: int
    status: str
    created_at: datetime
    payment_id: Optional[UUID] = None


class JobPostResponse(BaseModel):
    job: JobOut
    payment: Optional[PaymentOut] = None
    replayed: bool = False


# -------- PAYOUT ACCOUNTS --------
class PayoutAccountStatusResponse(BaseModel):
    status: Literal["none", "pending", "active", "restricted"]
    requirements: List[str] = Field(default_factory=list)
    needs_attention: bool = False
    reason: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    last_link_issued_at: Optional[datetime] = None
    recovery_state: Optional[str] = None
    recovery_attempts: Optional[int] = None


class OnboardingLinkResponse(BaseModel):
    url: str
    issued_at: datetime
    expires_at: Optional[datetime] = None


class WatchResponse(BaseModel):
    watching: bool
    interval_seconds: int


# -------- ADMIN --------
class InterventionOut(BaseModel):
    id: UUID
    kind: str
    reference: str
    created_at: datetime
    resolved_at: Optional[datetime] = None
    payload: dict[str, Any] = Field(default_factory=dict)


class InterventionListResponse(BaseModel):
    items: List[InterventionOut]


class RecoveryResetResponse(BaseModel):
    worker_id: UUID
    reset: bool


# -------- WEBHOOKS --------
class WebhookAckResponse(BaseModel):
    ok: bool = True
    event_id: str
    applied: bool
    duplicate: bool = False
    reason: Optional[str] = None
