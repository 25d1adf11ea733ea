import uuid

from tests.conftest import auth_headers


def _admin():
    return auth_headers(uuid.uuid4(), role="admin")


def test_admin_routes_require_admin_role(client, poster_id):
    r = client.get("/v1/admin/interventions", headers=auth_headers(poster_id))
    assert r.status_code == 403, r.text
    assert r.json()["detail"] == "ADMIN_REQUIRED"

    r = client.get("/v1/admin/interventions")
    assert r.status_code == 401


def test_list_and_resolve_interventions(client, store):
    item = store.enqueue_intervention(kind="REFUND_FAILED", reference="pi_123", payload={"job_id": "j"})

    r = client.get("/v1/admin/interventions", headers=_admin())
    assert r.status_code == 200, r.text
    [listed] = r.json()["items"]
    assert listed["id"] == str(item.id)
    assert listed["kind"] == "REFUND_FAILED"
    assert listed["payload"] == {"job_id": "j"}

    r = client.post(f"/v1/admin/interventions/{item.id}/resolve", headers=_admin())
    assert r.status_code == 200, r.text
    assert r.json() == {"ok": True, "id": str(item.id)}

    assert client.get("/v1/admin/interventions", headers=_admin()).json()["items"] == []
    everything = client.get("/v1/admin/interventions?include_resolved=true", headers=_admin()).json()["items"]
    assert everything[0]["resolved_at"] is not None

    again = client.post(f"/v1/admin/interventions/{item.id}/resolve", headers=_admin())
    assert again.status_code == 404
    assert again.json()["detail"] == "INTERVENTION_NOT_FOUND"


def test_recovery_reset(client, services, store, processor, clock, worker_id):
    services.registry.request_onboarding_link(worker_id)
    clock.advance(minutes=61)
    services.monitor.refresh_status(worker_id)
    assert services.recovery.get_session(worker_id) is not None

    r = client.post(f"/v1/admin/payouts/{worker_id}/recovery/reset", headers=_admin())
    assert r.status_code == 200, r.text
    assert r.json() == {"worker_id": str(worker_id), "reset": True}
    assert services.recovery.get_session(worker_id) is None
