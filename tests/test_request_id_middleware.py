from __future__ import annotations

import logging


def test_request_id_added_when_missing(client):
    resp = client.get("/health")
    assert resp.status_code == 200, resp.text
    assert resp.headers.get("X-Request-ID")


def test_request_end_log_includes_method_path_status(client, caplog):
    caplog.set_level(logging.INFO, logger="gigpay.http")
    resp = client.get("/health")
    assert resp.status_code == 200, resp.text
    assert any(
        "http_request_end" in record.message
        and "method=GET" in record.message
        and "path=/health" in record.message
        and "status=200" in record.message
        and "duration_ms=" in record.message
        for record in caplog.records
    )


def test_request_id_echoed_when_present(client):
    resp = client.get("/health", headers={"X-Request-ID": "client-request-id"})
    assert resp.status_code == 200, resp.text
    assert resp.headers.get("X-Request-ID") == "client-request-id"


def test_correlation_id_is_accepted(client):
    resp = client.get("/health", headers={"X-Correlation-ID": "corr-123"})
    assert resp.headers.get("X-Request-ID") == "corr-123"


def test_request_id_present_on_error_responses(client):
    resp = client.get("/v1/payouts/account")
    assert resp.status_code == 401, resp.text
    assert resp.headers.get("X-Request-ID")
