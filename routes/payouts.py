# routes/payouts.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from app.container import Services
from app.errors import MarketplaceError, ProcessorError
from app.payouts.model import StatusReport
from app.workers.account_poller import SessionPoller
from deps.auth import get_current_user, CurrentUser
from deps.services import get_services, get_session_poller
from schemas import OnboardingLinkResponse, PayoutAccountStatusResponse, WatchResponse
from services.error_map import raise_http_from_domain_error

logger = logging.getLogger("gigpay.payouts")
router = APIRouter(prefix="/v1/payouts", tags=["payouts"])


def _status_response(services: Services, report: StatusReport) -> PayoutAccountStatusResponse:
    account = services.store.get_payout_account(report.owner_id)
    session = services.recovery.get_session(report.owner_id)
    return PayoutAccountStatusResponse(
        status=report.status,
        requirements=list(report.requirements),
        needs_attention=report.needs_attention,
        reason=report.reason,
        last_checked_at=account.last_checked_at if account else None,
        last_link_issued_at=account.last_link_issued_at if account else None,
        recovery_state=session.state if session else None,
        recovery_attempts=session.attempts if session else None,
    )


@router.get("/account", response_model=PayoutAccountStatusResponse)
def get_payout_account_status(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    try:
        report = services.monitor.refresh_status(user.user_id)
    except ProcessorError as e:
        # serve the last known status rather than failing the page
        logger.warning("payout_status_refresh_failed user_id=%s processor_code=%s", user.user_id, e.processor_code)
        account = services.store.get_payout_account(user.user_id)
        report = services.monitor.evaluate(account)
    return _status_response(services, report)


@router.post("/account/onboarding-link", response_model=OnboardingLinkResponse)
def request_onboarding_link(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    try:
        link = services.registry.request_onboarding_link(user.user_id)
    except MarketplaceError as e:
        logger.warning("onboarding_link_failed user_id=%s code=%s", user.user_id, e.code)
        raise_http_from_domain_error(e)
    return OnboardingLinkResponse(url=link.url, issued_at=link.issued_at, expires_at=link.expires_at)


@router.post("/account/watch", response_model=WatchResponse)
def start_watch(
    user: CurrentUser = Depends(get_current_user),
    poller: SessionPoller = Depends(get_session_poller),
):
    # re-posting keeps the poll alive; it lapses with the token or the idle window
    poller.start(user.session_id, user.user_id, expires_at=user.expires_at)
    return WatchResponse(watching=True, interval_seconds=int(poller.interval_s))


@router.delete("/account/watch", response_model=WatchResponse)
def stop_watch(
    user: CurrentUser = Depends(get_current_user),
    poller: SessionPoller = Depends(get_session_poller),
):
    poller.stop(user.session_id)
    return WatchResponse(watching=False, interval_seconds=int(poller.interval_s))
