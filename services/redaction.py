from __future__ import annotations

import re
from typing import Any


_EMAIL_RE = re.compile(r"\b([A-Za-z0-9._%+-])([A-Za-z0-9._%+-]*)(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
# processor secrets that can show up in payloads or error strings
_SECRET_RE = re.compile(r"\b(sk|rk|whsec)_(live|test)?_?[A-Za-z0-9]{6,}\b")
_CLIENT_SECRET_RE = re.compile(r"\b(pi|seti)_[A-Za-z0-9]+_secret_[A-Za-z0-9]+\b")

_SENSITIVE_KEY_MARKERS = (
    "token",
    "authorization",
    "secret",
    "signature",
    "password",
    "account_number",
    "routing_number",
    "last4",
)


def _mask_email(match: re.Match) -> str:
    first = match.group(1)
    domain = match.group(3)
    return f"{first}***{domain}"


def redact_text(value: str) -> str:
    masked = _EMAIL_RE.sub(_mask_email, value)
    masked = _CLIENT_SECRET_RE.sub("[REDACTED]", masked)
    masked = _SECRET_RE.sub("[REDACTED]", masked)

    if "bearer " in masked.lower():
        return "[REDACTED]"

    return masked


def _is_sensitive_key(key: str) -> bool:
    key_l = (key or "").lower()
    return any(marker in key_l for marker in _SENSITIVE_KEY_MARKERS)


def redact_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, list):
        return [redact_value(v) for v in value]
    return value


def redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in payload.items():
        if _is_sensitive_key(k):
            out[k] = "[REDACTED]"
        else:
            out[k] = redact_value(v)
    return out


def event_summary(payload: dict[str, Any]) -> dict[str, Any]:
    """Small, redacted view of a processor event for logs."""
    obj = ((payload or {}).get("data") or {}).get("object") or {}
    summary = {
        "id": payload.get("id"),
        "type": payload.get("type"),
        "object_id": obj.get("id") if isinstance(obj, dict) else None,
        "status": obj.get("status") if isinstance(obj, dict) else None,
        "receipt_email": obj.get("receipt_email") if isinstance(obj, dict) else None,
    }
    return redact_dict({k: v for k, v in summary.items() if v is not None})
