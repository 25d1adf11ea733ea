from app.jobs.model import JobDraft
from app.jobs.posting import draft_fingerprint
from services.idempotency import normalize_key, request_hash


def test_normalize_key():
    assert normalize_key("  abc  ") == "abc"
    assert normalize_key(None) is None
    assert normalize_key("   ") is None
    assert normalize_key("k" * 200) == "k" * 200
    assert normalize_key("k" * 201) is None


def test_request_hash_ignores_key_order():
    assert request_hash({"a": 1, "b": [1, 2]}) == request_hash({"b": [1, 2], "a": 1})
    assert request_hash({"a": 1}) != request_hash({"a": 2})


def test_fingerprint_covers_payment_method_and_amount():
    draft = JobDraft(title="Mow lawn", description="Front and back yard", payment_type="fixed", payment_amount_cents=3_000)
    base = draft_fingerprint(draft, "pm_1")
    assert base == draft_fingerprint(draft, "pm_1")
    assert base != draft_fingerprint(draft, "pm_2")

    bigger = JobDraft(title="Mow lawn", description="Front and back yard", payment_type="fixed", payment_amount_cents=3_500)
    assert base != draft_fingerprint(bigger, "pm_1")

    # surrounding whitespace is not a different job
    padded = JobDraft(title="  Mow lawn ", description="Front and back yard", payment_type="fixed", payment_amount_cents=3_000)
    assert base == draft_fingerprint(padded, "pm_1")
