from tests.conftest import auth_headers, job_body


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["ok"] is True
    assert body["processor_mode"] == "mock"
    assert body["store_backend"] == "memory"


def test_healthz_checks_store(client):
    r = client.get("/healthz")
    assert r.status_code == 200, r.text
    assert r.json()["store_ok"] is True
    assert r.json()["store_error"] is None


def test_healthz_reports_store_failure(client, store, monkeypatch):
    def down(**kwargs):
        raise ConnectionError("no db")

    monkeypatch.setattr(store, "list_interventions", down)
    body = client.get("/healthz").json()
    assert body["store_ok"] is False
    assert body["store_error"] == "ConnectionError"


def test_metrics_exposes_posting_counters(client, poster_id):
    client.post("/v1/jobs", json=job_body(), headers=auth_headers(poster_id, idem="idem-metrics"))

    r = client.get("/metrics")
    assert r.status_code == 200, r.text
    assert r.headers["content-type"].startswith("text/plain")
    assert "# TYPE job_postings_total counter" in r.text
    assert 'job_postings_total{result="open"} 1' in r.text
    assert 'http_requests_total{route="/v1/jobs",status="201"} 1' in r.text
