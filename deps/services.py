# deps/services.py
from app.container import Services, get_services as _get_services
from app.workers.account_poller import SessionPoller, get_session_poller as _get_session_poller


def get_services() -> Services:
    """Route dependency; tests swap it through app.dependency_overrides."""
    return _get_services()


def get_session_poller() -> SessionPoller:
    return _get_session_poller()
