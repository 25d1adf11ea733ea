from __future__ import annotations

import os
import sys

import stripe

from app.providers.stripe_processor import verify_stripe_signature

SCRIPT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPT_DIR not in sys.path:
    sys.path.insert(0, SCRIPT_DIR)

from _webhook_signing import canonical_json_bytes, stripe_signature_header  # noqa: E402

SECRET = "whsec_signing_test"


def test_canonical_json_bytes_stable():
    bytes_a = canonical_json_bytes({"b": 1, "a": 2})
    bytes_b = canonical_json_bytes({"a": 2, "b": 1})
    assert bytes_a == bytes_b
    assert bytes_a == b'{"a":2,"b":1}'


def test_helper_header_passes_stripe_verification():
    body = canonical_json_bytes({"id": "evt_1"})
    header = stripe_signature_header(SECRET, body)["Stripe-Signature"]
    stripe.WebhookSignature.verify_header(body.decode("utf-8"), header, SECRET, tolerance=300)


def test_verify_accepts_valid_signature():
    body = canonical_json_bytes({"id": "evt_1"})
    header = stripe_signature_header(SECRET, body)["Stripe-Signature"]
    assert verify_stripe_signature(raw=body, signature_header=header, secret=SECRET, tolerance=300) == (True, None)


def test_verify_rejects_old_timestamp():
    body = canonical_json_bytes({"id": "evt_1"})
    header = stripe_signature_header(SECRET, body, timestamp=1_000_000)["Stripe-Signature"]
    ok, err = verify_stripe_signature(raw=body, signature_header=header, secret=SECRET, tolerance=300)
    assert not ok
    assert err == "INVALID_SIGNATURE"


def test_verify_reports_missing_pieces():
    body = b"{}"
    assert verify_stripe_signature(raw=body, signature_header=None, secret=SECRET, tolerance=300) == (
        False,
        "MISSING_SIGNATURE",
    )
    assert verify_stripe_signature(raw=body, signature_header="t=1,v1=x", secret="  ", tolerance=300) == (
        False,
        "WEBHOOK_SECRET_NOT_CONFIGURED",
    )
