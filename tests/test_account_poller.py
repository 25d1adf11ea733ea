import threading
import time
import uuid
from datetime import datetime, timedelta, timezone

from app.workers.account_poller import PeriodicTask, SessionPoller, process_once


def test_process_once_refreshes_pending_accounts(services, store, clock, worker_id):
    services.registry.request_onboarding_link(worker_id)
    clock.advance(minutes=1)

    assert process_once(services) == 1
    assert store.get_payout_account(worker_id).last_checked_at == clock()


def test_process_once_skips_processor_failures(services, store, processor, worker_id):
    other = uuid.uuid4()
    services.registry.request_onboarding_link(worker_id)
    services.registry.request_onboarding_link(other)
    processor.fail_status(1)

    assert process_once(services) == 1


def test_process_once_respects_batch_size(services, worker_id):
    services.registry.request_onboarding_link(worker_id)
    services.registry.request_onboarding_link(uuid.uuid4())
    assert process_once(services, batch_size=1) == 1


def test_periodic_task_runs_until_stopped():
    ran = threading.Event()
    calls = []

    def tick():
        calls.append(1)
        ran.set()

    task = PeriodicTask(tick, interval_s=0.01, name="test-tick")
    task.start()
    assert ran.wait(2)
    task.stop(timeout=2)
    assert not task.running
    assert calls


def test_periodic_task_survives_errors():
    ran = threading.Event()
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first run fails")
        ran.set()

    task = PeriodicTask(flaky, interval_s=0.01, name="test-flaky")
    task.start()
    assert ran.wait(2)
    task.stop(timeout=2)
    assert len(calls) >= 2


def test_session_poller_is_bound_to_session(services, store, worker_id):
    services.registry.request_onboarding_link(worker_id)
    polled = threading.Event()
    original = services.monitor.refresh_status

    def refresh(owner_id):
        report = original(owner_id)
        polled.set()
        return report

    services.monitor.refresh_status = refresh
    poller = SessionPoller(lambda: services, interval_s=0.01)

    assert poller.start("sess-1", worker_id) is True
    assert poller.start("sess-1", worker_id) is False
    assert poller.is_active("sess-1")
    assert polled.wait(2)

    assert poller.stop("sess-1") is True
    assert not poller.is_active("sess-1")
    assert poller.stop("sess-1") is False
    assert store.get_payout_account(worker_id).last_checked_at is not None


def test_stop_all_cancels_every_session(services, worker_id):
    poller = SessionPoller(lambda: services, interval_s=0.01)
    poller.start("a", worker_id)
    poller.start("b", uuid.uuid4())
    poller.stop_all()
    assert not poller.is_active("a")
    assert not poller.is_active("b")


def _wait_until_inactive(poller, key, timeout=2.0):
    deadline = time.monotonic() + timeout
    while poller.is_active(key) and time.monotonic() < deadline:
        time.sleep(0.01)
    return not poller.is_active(key)


def test_session_poll_stops_when_token_expires(services, worker_id):
    poller = SessionPoller(lambda: services, interval_s=0.01)
    expires_at = datetime.now(timezone.utc) + timedelta(milliseconds=100)

    assert poller.start("sess-exp", worker_id, expires_at=expires_at) is True
    assert _wait_until_inactive(poller, "sess-exp")


def test_session_poll_lapses_without_renewal(services, worker_id):
    poller = SessionPoller(lambda: services, interval_s=0.01, ttl_s=0.1)
    poller.start("sess-idle", worker_id)
    assert _wait_until_inactive(poller, "sess-idle")

    # a fresh watch after the lapse starts a new poll
    assert poller.start("sess-idle", worker_id) is True
    poller.stop_all()


def test_renewing_a_watch_extends_its_deadline(services, worker_id):
    poller = SessionPoller(lambda: services, interval_s=0.01, ttl_s=0.5)
    poller.start("sess-renew", worker_id)
    time.sleep(0.3)
    assert poller.start("sess-renew", worker_id) is False
    time.sleep(0.35)
    assert poller.is_active("sess-renew")
    poller.stop_all()


def test_expired_token_never_starts_a_poll(services, worker_id):
    poller = SessionPoller(lambda: services, interval_s=0.01)
    past = datetime.now(timezone.utc) - timedelta(seconds=1)
    assert poller.start("sess-old", worker_id, expires_at=past) is False
    assert not poller.is_active("sess-old")


def test_periodic_task_stops_at_deadline(clock):
    calls = []
    task = PeriodicTask(lambda: calls.append(1), interval_s=0.01, name="test-deadline", until=clock(), clock=clock)
    task.start()
    deadline = time.monotonic() + 2
    while task.running and time.monotonic() < deadline:
        time.sleep(0.01)
    assert not task.running
    assert calls == []
