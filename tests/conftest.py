# tests/conftest.py

import os

# settings are read at import time: pin the sandbox stack before anything imports them
os.environ["STORE_BACKEND"] = "memory"
os.environ["PROCESSOR_MODE"] = "mock"
os.environ.setdefault("JWT_SECRET", "pytest-secret-change-me-0123456789")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_pytest_secret")

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient

from app.collaborators import RecordingNotifier
from app.container import build_services
from app.providers.mock import MockProcessor
from app.store.memory import InMemoryStore
from deps.services import get_services, get_session_poller
from main import create_app
from security import create_access_token
from services.metrics import reset_metrics


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FlakyStore(InMemoryStore):
    """
    In-memory store with switchable faults: `fail_open` breaks only the
    job-opening write, `fail_writes` breaks every job/payment status write.
    """

    def __init__(self) -> None:
        super().__init__()
        self.fail_open = False
        self.fail_writes = False
        self.fail_interventions = False

    def update_job(self, job_id, *, from_status, **changes):
        if self.fail_writes:
            raise RuntimeError("database unavailable")
        if self.fail_open and changes.get("status") == "open":
            raise RuntimeError("simulated commit failure")
        return super().update_job(job_id, from_status=from_status, **changes)

    def update_payment(self, payment_id, *, from_status, **changes):
        if self.fail_writes:
            raise RuntimeError("database unavailable")
        return super().update_payment(payment_id, from_status=from_status, **changes)

    def enqueue_intervention(self, *, kind, reference, payload):
        if self.fail_interventions:
            raise RuntimeError("intervention queue unavailable")
        return super().enqueue_intervention(kind=kind, reference=reference, payload=payload)


class NoPollSessionPoller:
    """Records start/stop without spawning threads."""

    interval_s = 45

    def __init__(self):
        self.active: Dict[str, uuid.UUID] = {}
        self.expires: Dict[str, Optional[datetime]] = {}

    def start(self, session_key, owner_id, *, expires_at=None):
        new = session_key not in self.active
        self.active[session_key] = owner_id
        self.expires[session_key] = expires_at
        return new

    def stop(self, session_key):
        return self.active.pop(session_key, None) is not None


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def processor() -> MockProcessor:
    return MockProcessor()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def services(store, processor, notifier, clock, sleeps):
    return build_services(
        store=store,
        processor=processor,
        notifier=notifier,
        clock=clock,
        sleep=sleeps.append,
    )


@pytest.fixture
def poster_id(store, processor) -> uuid.UUID:
    user_id = uuid.uuid4()
    store.set_customer_ref(user_id, "cus_poster")
    processor.add_customer("cus_poster", "pm_card_visa")
    return user_id


@pytest.fixture
def worker_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def session_poller() -> NoPollSessionPoller:
    return NoPollSessionPoller()


@pytest.fixture
def client(services, session_poller) -> TestClient:
    app = create_app()
    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_session_poller] = lambda: session_poller
    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    return TestClient(app, raise_server_exceptions=False)


def auth_headers(user_id: uuid.UUID, idem: Optional[str] = None, role: Optional[str] = None) -> Dict[str, str]:
    h = {"Authorization": f"Bearer {create_access_token(str(user_id), role=role)}"}
    if idem:
        h["Idempotency-Key"] = idem
    return h


def job_body(**overrides) -> dict:
    body = {
        "title": "Assemble office furniture",
        "description": "Two desks and a bookshelf need assembling on Saturday morning.",
        "skills": ["assembly", "tools"],
        "payment_type": "fixed",
        "payment_amount_cents": 10_000,
        "payment_method_id": "pm_card_visa",
    }
    body.update(overrides)
    return body
