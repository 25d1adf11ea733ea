from datetime import datetime, timezone

from tests.conftest import auth_headers


def test_status_without_account(client, worker_id):
    r = client.get("/v1/payouts/account", headers=auth_headers(worker_id))
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "none"
    assert body["needs_attention"] is False
    assert body["recovery_state"] is None


def test_onboarding_link_then_status(client, worker_id):
    r = client.post("/v1/payouts/account/onboarding-link", headers=auth_headers(worker_id))
    assert r.status_code == 200, r.text
    assert r.json()["url"].startswith("https://connect.mock.local/setup/")

    status = client.get("/v1/payouts/account", headers=auth_headers(worker_id)).json()
    assert status["status"] == "pending"
    assert status["last_link_issued_at"] is not None
    assert "external_account" in status["requirements"]


def test_link_failure_maps_to_503(client, processor, worker_id):
    processor.fail_links(1)
    r = client.post("/v1/payouts/account/onboarding-link", headers=auth_headers(worker_id))
    assert r.status_code == 503, r.text
    assert r.json()["detail"]["error"] == "PROCESSOR_ERROR"


def test_status_falls_back_to_stored_value_on_outage(client, processor, worker_id):
    client.post("/v1/payouts/account/onboarding-link", headers=auth_headers(worker_id))
    processor.fail_status(1)
    r = client.get("/v1/payouts/account", headers=auth_headers(worker_id))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "pending"
    assert r.json()["last_checked_at"] is None


def test_stale_onboarding_shows_recovery(client, clock, worker_id):
    client.post("/v1/payouts/account/onboarding-link", headers=auth_headers(worker_id))
    clock.advance(minutes=61)
    body = client.get("/v1/payouts/account", headers=auth_headers(worker_id)).json()
    # the refresh that noticed the stall also issued a recovery link
    assert body["recovery_state"] == "RETRYING"
    assert body["recovery_attempts"] == 1
    assert body["needs_attention"] is True
    assert body["reason"] == "STALE_PENDING"


def test_watch_is_tied_to_the_login_session(client, session_poller, worker_id):
    headers = auth_headers(worker_id)
    r = client.post("/v1/payouts/account/watch", headers=headers)
    assert r.status_code == 200, r.text
    assert r.json() == {"watching": True, "interval_seconds": 45}
    [session_key] = list(session_poller.active)
    assert session_key.startswith(f"{worker_id}:")
    # the poll is handed the token expiry so it cannot outlive the login
    expires_at = session_poller.expires[session_key]
    assert expires_at is not None
    assert expires_at > datetime.now(timezone.utc)

    r = client.delete("/v1/payouts/account/watch", headers=headers)
    assert r.status_code == 200, r.text
    assert r.json()["watching"] is False
    assert session_poller.active == {}
