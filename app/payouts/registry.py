# app/payouts/registry.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from settings import settings
from app.payouts.model import OnboardingLink, PayoutAccount
from app.payouts.state_machine import assert_account_transition
from app.providers.base import PaymentProcessor
from app.store.base import DuplicateKey, Store

logger = logging.getLogger("gigpay.payouts")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def account_lock_key(owner_id: UUID) -> str:
    return f"payout-account:{owner_id}"


def _join_url(base: str, path: str) -> str:
    return f"{(base or '').rstrip('/')}/{(path or '').lstrip('/')}"


class PayoutAccountRegistry:
    """
    One processor payout account per worker, plus onboarding links for it.

    Every public call takes the per-account lock; `issue_link_locked` is for
    callers (recovery) that already hold it.
    """

    def __init__(
        self,
        *,
        store: Store,
        processor: PaymentProcessor,
        clock: Callable[[], datetime] = _utcnow,
        refresh_url: Optional[str] = None,
        return_url: Optional[str] = None,
    ):
        self.store = store
        self.processor = processor
        self.clock = clock
        self.refresh_url = refresh_url or _join_url(settings.APP_URL, settings.ONBOARDING_REFRESH_PATH)
        self.return_url = return_url or _join_url(settings.APP_URL, settings.ONBOARDING_RETURN_PATH)

    def ensure_account(self, owner_id: UUID) -> PayoutAccount:
        with self.store.lock(account_lock_key(owner_id)):
            return self._ensure_locked(owner_id)

    def issue_onboarding_link(self, owner_id: UUID) -> OnboardingLink:
        with self.store.lock(account_lock_key(owner_id)):
            account = self.store.get_payout_account(owner_id)
            if account is None or not account.external_account_id:
                account = self._ensure_locked(owner_id)
            return self.issue_link_locked(account)

    def request_onboarding_link(self, owner_id: UUID) -> OnboardingLink:
        with self.store.lock(account_lock_key(owner_id)):
            account = self._ensure_locked(owner_id)
            return self.issue_link_locked(account)

    # ---------------- lock held by caller ----------------
    def _ensure_locked(self, owner_id: UUID) -> PayoutAccount:
        account = self.store.get_payout_account(owner_id)
        if account is not None and account.external_account_id:
            return account

        # processor-side idempotency covers a crash between these two steps
        external_id = self.processor.create_payout_account(
            owner_ref=str(owner_id),
            idempotency_key=account_lock_key(owner_id),
        )
        now = self.clock()

        if account is None:
            account = PayoutAccount(
                owner_id=owner_id,
                status="none",
                created_at=now,
                updated_at=now,
                external_account_id=external_id,
            )
            try:
                self.store.insert_payout_account(account)
            except DuplicateKey:
                account = self.store.update_payout_account(owner_id, external_account_id=external_id, updated_at=now)
        else:
            account = self.store.update_payout_account(owner_id, external_account_id=external_id, updated_at=now)

        logger.info("payout_account_created owner_id=%s external_account_id=%s", owner_id, external_id)
        return account

    def issue_link_locked(self, account: PayoutAccount) -> OnboardingLink:
        """
        Fresh single-use onboarding link. Raises ProcessorError on failure,
        in which case nothing is recorded.
        """
        link = self.processor.create_onboarding_link(
            account_id=account.external_account_id,
            refresh_url=self.refresh_url,
            return_url=self.return_url,
        )
        now = self.clock()
        issued = OnboardingLink(owner_id=account.owner_id, url=link.url, issued_at=now, expires_at=link.expires_at)

        changes = {"last_link_issued_at": now, "updated_at": now}
        if account.status == "none":
            assert_account_transition("none", "pending")
            changes["status"] = "pending"

        with self.store.transaction():
            self.store.record_onboarding_link(issued)
            self.store.update_payout_account(account.owner_id, **changes)

        logger.info(
            "onboarding_link_issued owner_id=%s external_account_id=%s expires_at=%s",
            account.owner_id,
            account.external_account_id,
            link.expires_at,
        )
        return issued
