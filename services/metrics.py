from __future__ import annotations

from threading import Lock
from typing import Tuple


_lock = Lock()
_counters: dict[str, dict[Tuple[Tuple[str, str], ...], int]] = {}


def _inc(name: str, labels: dict[str, str] | None = None, value: int = 1) -> None:
    key = tuple(sorted((labels or {}).items()))
    with _lock:
        series = _counters.setdefault(name, {})
        series[key] = int(series.get(key, 0)) + int(value)


def counter_value(name: str, labels: dict[str, str] | None = None) -> int:
    key = tuple(sorted((labels or {}).items()))
    with _lock:
        return int(_counters.get(name, {}).get(key, 0))


def reset_metrics() -> None:
    with _lock:
        _counters.clear()


def increment_http_requests(route: str, status: int) -> None:
    _inc("http_requests_total", {"route": route, "status": str(status)})


def increment_job_posting(result: str) -> None:
    _inc("job_postings_total", {"result": result})


def increment_refund(result: str) -> None:
    _inc("refunds_total", {"result": result})


def increment_webhook_event(provider: str, event_type: str, applied: bool) -> None:
    _inc(
        "webhook_events_total",
        {
            "provider": provider,
            "event_type": event_type,
            "applied": str(applied).lower(),
        },
    )


def increment_recovery_attempt(result: str) -> None:
    _inc("recovery_attempts_total", {"result": result})


def increment_idempotency_replay(route: str) -> None:
    _inc("idempotency_replays_total", {"route": route})


def render_prometheus() -> str:
    lines: list[str] = []
    with _lock:
        for name, series in sorted(_counters.items()):
            lines.append(f"# TYPE {name} counter")
            for labels, value in sorted(series.items()):
                if labels:
                    label_str = ",".join(f'{k}="{v}"' for k, v in labels)
                    lines.append(f"{name}{{{label_str}}} {value}")
                else:
                    lines.append(f"{name} {value}")
    return "\n".join(lines) + ("\n" if lines else "")
