from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Literal
from uuid import UUID
from datetime import datetime

AccountStatus = Literal["none", "pending", "active", "restricted"]
RecoveryState = Literal["STABLE", "STALLED", "RETRYING", "RECOVERED", "EXHAUSTED"]


@dataclass(frozen=True)
class PayoutAccount:
    owner_id: UUID
    status: AccountStatus
    created_at: datetime
    updated_at: datetime
    external_account_id: Optional[str] = None
    requirements: tuple[str, ...] = ()
    last_checked_at: Optional[datetime] = None
    last_link_issued_at: Optional[datetime] = None
    # processor snapshot time the stored status reflects (poll time or event time)
    status_as_of: Optional[datetime] = None


@dataclass(frozen=True)
class OnboardingLink:
    owner_id: UUID
    url: str
    issued_at: datetime
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class RecoverySession:
    owner_id: UUID
    state: RecoveryState
    attempts: int
    max_attempts: int
    created_at: datetime
    updated_at: datetime
    last_link_issued_at: Optional[datetime] = None


@dataclass(frozen=True)
class StatusReport:
    owner_id: UUID
    status: AccountStatus
    requirements: tuple[str, ...] = ()
    needs_attention: bool = False
    reason: Optional[str] = None  # "RESTRICTED" | "STALE_PENDING"
    status_changed: bool = False
    previous_status: Optional[AccountStatus] = None
    checked_at: Optional[datetime] = None
    notes: list[str] = field(default_factory=list)
