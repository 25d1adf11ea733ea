# app/errors.py
from __future__ import annotations

from typing import Any, Optional


class MarketplaceError(Exception):
    """
    Base for every typed error returned to a caller.
    `code` is stable (clients switch on it); `user_message` is safe to show.
    """

    code = "INTERNAL_ERROR"
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, *, detail: Optional[dict[str, Any]] = None):
        super().__init__(message or self.user_message)
        self.detail = detail or {}


# -------- input rejection --------
class PostingRejected(MarketplaceError):
    code = "POSTING_REJECTED"


class ContentRejected(PostingRejected):
    code = "CONTENT_REJECTED"
    user_message = "Your job post contains content that is not allowed."


class AmountRejected(PostingRejected):
    code = "AMOUNT_REJECTED"
    user_message = "The payment amount is outside the allowed range."


class IdempotencyKeyRequired(MarketplaceError):
    code = "IDEMPOTENCY_KEY_REQUIRED"
    user_message = "An Idempotency-Key header is required."


class IdempotencyConflict(MarketplaceError):
    code = "IDEMPOTENCY_CONFLICT"
    user_message = "This request key was already used for a different job post."


# -------- authorization failure --------
class AuthorizationFailed(MarketplaceError):
    code = "AUTHORIZATION_FAILED"
    reason = "processor_unavailable"
    retryable = False


class CardDeclined(AuthorizationFailed):
    code = "CARD_DECLINED"
    reason = "card_declined"
    user_message = "Your card was declined. Please use a different payment method."


class InsufficientFunds(AuthorizationFailed):
    code = "INSUFFICIENT_FUNDS"
    reason = "insufficient_funds"
    user_message = "Your card has insufficient funds for this job post."


class ProcessorUnavailable(AuthorizationFailed):
    code = "PROCESSOR_UNAVAILABLE"
    reason = "processor_unavailable"
    retryable = True
    user_message = "Payments are temporarily unavailable. You have not been charged; please try again."


class InvalidPaymentMethod(AuthorizationFailed):
    code = "INVALID_PAYMENT_METHOD"
    reason = "invalid_payment_method"
    user_message = "That payment method can't be used. Please choose another one."


AUTHORIZATION_ERRORS: dict[str, type[AuthorizationFailed]] = {
    cls.reason: cls for cls in (CardDeclined, InsufficientFunds, ProcessorUnavailable, InvalidPaymentMethod)
}


def authorization_error(reason: str, message: Optional[str] = None) -> AuthorizationFailed:
    cls = AUTHORIZATION_ERRORS.get(reason, ProcessorUnavailable)
    return cls(message)


# -------- post-charge commit failure --------
class PaymentNotCompleted(MarketplaceError):
    code = "PAYMENT_NOT_COMPLETED"
    user_message = "Payment could not be completed, you have not been charged."


class PaymentNotCompletedRefundPending(PaymentNotCompleted):
    code = "PAYMENT_NOT_COMPLETED_REFUND_PENDING"
    user_message = (
        "Payment could not be completed. Any charge will be refunded; "
        "our support team has been notified."
    )


# -------- infrastructure --------
class StorageUnavailable(MarketplaceError):
    code = "STORAGE_UNAVAILABLE"
    user_message = "The service is temporarily unavailable. You have not been charged; please try again."


class ProcessorError(MarketplaceError):
    """Non-charge processor call failed (account, link, refund, status)."""

    code = "PROCESSOR_ERROR"
    user_message = "Our payment partner is temporarily unavailable. Please try again."

    def __init__(self, message: Optional[str] = None, *, processor_code: Optional[str] = None, retryable: bool = True):
        super().__init__(message)
        self.processor_code = processor_code
        self.retryable = retryable


# -------- payouts --------
class PayoutNotAllowed(MarketplaceError):
    code = "PAYOUT_NOT_ALLOWED"
    user_message = "Finish setting up your payout account before receiving payouts."
