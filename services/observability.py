"""Per-request correlation id for gigpay, carried into webhook handling logs."""
from __future__ import annotations

from contextvars import ContextVar


# set by RequestContextMiddleware; copied into threadpool calls with the rest of the context
_request_id: ContextVar[str | None] = ContextVar("gigpay_request_id", default=None)


def set_request_id(value: str | None) -> None:
    _request_id.set(value)


def get_request_id() -> str | None:
    return _request_id.get()
