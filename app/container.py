# app/container.py
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from app.collaborators import LoggingNotifier, Notifier
from app.jobs.posting import JobPostingManager
from app.payments.authorization import PaymentAuthorizationService
from app.payments.refunds import RefundCompensator
from app.payouts.monitor import AccountStatusMonitor
from app.payouts.recovery import RecoveryCoordinator
from app.payouts.registry import PayoutAccountRegistry
from app.providers.base import PaymentProcessor
from app.providers.factory import get_processor
from app.store.base import Store
from app.store.factory import get_store
from app.webhooks.reconciler import WebhookReconciliationHandler


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Services:
    store: Store
    processor: PaymentProcessor
    notifier: Notifier
    authorizer: PaymentAuthorizationService
    compensator: RefundCompensator
    postings: JobPostingManager
    registry: PayoutAccountRegistry
    monitor: AccountStatusMonitor
    recovery: RecoveryCoordinator
    webhooks: WebhookReconciliationHandler


def build_services(
    *,
    store: Optional[Store] = None,
    processor: Optional[PaymentProcessor] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = _utcnow,
    sleep: Callable[[float], None] = time.sleep,
) -> Services:
    store = store if store is not None else get_store()
    processor = processor if processor is not None else get_processor()
    notifier = notifier if notifier is not None else LoggingNotifier()

    authorizer = PaymentAuthorizationService(processor, store)
    compensator = RefundCompensator(processor, store, sleep=sleep)
    postings = JobPostingManager(
        store=store,
        authorizer=authorizer,
        compensator=compensator,
        notifier=notifier,
        clock=clock,
    )
    registry = PayoutAccountRegistry(store=store, processor=processor, clock=clock)
    monitor = AccountStatusMonitor(store=store, processor=processor, notifier=notifier, clock=clock)
    recovery = RecoveryCoordinator(store=store, registry=registry, notifier=notifier, clock=clock)
    monitor.add_listener(recovery.on_status)
    webhooks = WebhookReconciliationHandler(
        store=store,
        monitor=monitor,
        compensator=compensator,
        notifier=notifier,
        clock=clock,
    )

    return Services(
        store=store,
        processor=processor,
        notifier=notifier,
        authorizer=authorizer,
        compensator=compensator,
        postings=postings,
        registry=registry,
        monitor=monitor,
        recovery=recovery,
        webhooks=webhooks,
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def reset_services() -> None:
    global _services
    _services = None
