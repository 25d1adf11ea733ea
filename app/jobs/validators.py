# app/jobs/validators.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from settings import settings

PROHIBITED_TERMS = (
    "scam",
    "illegal",
    "fraud",
    "fake",
    "spam",
    "inappropriate",
    "adult",
)

_TERM_RE = re.compile(r"\b(" + "|".join(map(re.escape, PROHIBITED_TERMS)) + r")\b", re.IGNORECASE)

TITLE_MIN, TITLE_MAX = 3, 100
DESCRIPTION_MIN, DESCRIPTION_MAX = 5, 5000
MAX_SKILLS = 20
SKILL_MAX = 50


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: Optional[str] = None
    flagged_terms: list[str] = field(default_factory=list)


OK = ValidationResult(ok=True)


def _flag_terms(texts: Iterable[str]) -> list[str]:
    found: list[str] = []
    for text in texts:
        for m in _TERM_RE.finditer(text or ""):
            term = m.group(1).lower()
            if term not in found:
                found.append(term)
    return found


def validate_content(title: str, description: str, skills: Iterable[str] = ()) -> ValidationResult:
    title = (title or "").strip()
    description = (description or "").strip()
    skills = [str(s).strip() for s in (skills or ()) if str(s).strip()]

    flagged = _flag_terms([title, description, *skills])
    if flagged:
        return ValidationResult(ok=False, reason="Content contains prohibited terms", flagged_terms=flagged)

    if not title or not description:
        return ValidationResult(ok=False, reason="Title and description are required")

    if not (TITLE_MIN <= len(title) <= TITLE_MAX):
        return ValidationResult(ok=False, reason=f"Title must be {TITLE_MIN}-{TITLE_MAX} characters")

    if not (DESCRIPTION_MIN <= len(description) <= DESCRIPTION_MAX):
        return ValidationResult(
            ok=False,
            reason=f"Description must be {DESCRIPTION_MIN}-{DESCRIPTION_MAX} characters",
        )

    if len(skills) > MAX_SKILLS:
        return ValidationResult(ok=False, reason=f"At most {MAX_SKILLS} skills are allowed")
    if any(len(s) > SKILL_MAX for s in skills):
        return ValidationResult(ok=False, reason=f"Skills must be at most {SKILL_MAX} characters")

    return OK


def amount_bounds(payment_type: str) -> tuple[int, int]:
    if payment_type == "hourly":
        return settings.HOURLY_MIN_CENTS, settings.HOURLY_MAX_CENTS
    return settings.FIXED_MIN_CENTS, settings.FIXED_MAX_CENTS


def _dollars(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def validate_payment_amount(amount_cents: int, payment_type: str) -> ValidationResult:
    """
    Hourly amounts are floored at a minimum-wage equivalent; both kinds get a ceiling.
    """
    if payment_type not in ("fixed", "hourly"):
        return ValidationResult(ok=False, reason=f"Unknown payment type: {payment_type}")

    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        return ValidationResult(ok=False, reason="Amount must be a whole number of cents")

    lo, hi = amount_bounds(payment_type)
    suffix = " per hour" if payment_type == "hourly" else ""

    if amount_cents < lo:
        return ValidationResult(ok=False, reason=f"Minimum payment amount is {_dollars(lo)}{suffix}")
    if amount_cents > hi:
        return ValidationResult(ok=False, reason=f"Maximum payment amount is {_dollars(hi)}{suffix}")

    return OK
