# app/providers/factory.py
from __future__ import annotations

from typing import Any, Dict

from settings import settings

_PROCESSOR_CACHE: Dict[str, Any] = {}


def get_processor(mode: str | None = None):
    key = (mode or settings.PROCESSOR_MODE or "mock").strip().lower()

    if key in _PROCESSOR_CACHE:
        return _PROCESSOR_CACHE[key]

    if key == "mock":
        from app.providers.mock import MockProcessor
        processor = MockProcessor()

    elif key == "stripe":
        from app.providers.stripe_processor import StripeProcessor
        processor = StripeProcessor()

    else:
        raise ValueError(f"Unsupported processor mode: {key}")

    _PROCESSOR_CACHE[key] = processor
    return processor


def reset_processor_cache() -> None:
    _PROCESSOR_CACHE.clear()
