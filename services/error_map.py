# services/error_map.py
from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException

from app.errors import MarketplaceError

DOMAIN_ERROR_HTTP_MAP: dict[str, int] = {
    # input rejection
    "CONTENT_REJECTED": 422,
    "AMOUNT_REJECTED": 422,
    "IDEMPOTENCY_KEY_REQUIRED": 400,
    # authorization failure
    "CARD_DECLINED": 402,
    "INSUFFICIENT_FUNDS": 402,
    "INVALID_PAYMENT_METHOD": 402,
    "PROCESSOR_UNAVAILABLE": 503,
    # post-charge commit failure
    "PAYMENT_NOT_COMPLETED": 500,
    "PAYMENT_NOT_COMPLETED_REFUND_PENDING": 500,
    # conflicts / infrastructure
    "IDEMPOTENCY_CONFLICT": 409,
    "STORAGE_UNAVAILABLE": 503,
    "PROCESSOR_ERROR": 503,
    # payouts
    "PAYOUT_NOT_ALLOWED": 409,
}

# Detail keys that are safe to hand back to the caller.
_PUBLIC_DETAIL_KEYS = ("reason", "flagged_terms", "job_id", "status", "requirements")


def error_body(exc: MarketplaceError) -> dict:
    body = {"error": exc.code, "message": exc.user_message}
    for key in _PUBLIC_DETAIL_KEYS:
        if key in exc.detail:
            body[key] = exc.detail[key]
    return body


def raise_http_from_domain_error(exc: MarketplaceError) -> NoReturn:
    """
    Convert a typed domain error into an HTTP response; unknown codes fail closed.
    Processor internals never reach the body.
    """
    status = DOMAIN_ERROR_HTTP_MAP.get(exc.code)
    if status is None:
        raise HTTPException(status_code=500, detail="Internal server error") from exc
    raise HTTPException(status_code=status, detail=error_body(exc)) from exc
