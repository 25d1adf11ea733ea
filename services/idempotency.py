from __future__ import annotations

import json
import hashlib
from typing import Any

MAX_KEY_LENGTH = 200


def request_hash(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def normalize_key(value: str | None) -> str | None:
    """Client idempotency key, trimmed. None when missing/blank/too long."""
    key = (value or "").strip()
    if not key or len(key) > MAX_KEY_LENGTH:
        return None
    return key
