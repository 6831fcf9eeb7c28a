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


def increment_http_requests(route: str, status: int) -> None:
    _inc("http_requests_total", {"route": route, "status": str(status)})


def increment_webhook_event(gateway: str, signature_valid: bool, outcome: str) -> None:
    _inc(
        "webhook_events_total",
        {
            "gateway": gateway,
            "signature_valid": str(signature_valid).lower(),
            "outcome": outcome,
        },
    )


def increment_settlement_outcome(operation: str, outcome: str) -> None:
    _inc("settlement_outcomes_total", {"operation": operation, "outcome": outcome})


def increment_settlement_retry(operation: str) -> None:
    _inc("settlement_retries_total", {"operation": operation})


def increment_notification_failure(template: str) -> None:
    _inc("notifications_failed_total", {"template": template})


def get_counter(name: str, labels: dict[str, str] | None = None) -> int:
    key = tuple(sorted((labels or {}).items()))
    with _lock:
        return int(_counters.get(name, {}).get(key, 0))


def reset_metrics() -> None:
    with _lock:
        _counters.clear()


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
