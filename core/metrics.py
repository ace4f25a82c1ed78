"""In-process Prometheus counters for HTTP traffic and payroll/material events.

Exposed as text at `/metrics`; values reset when the process restarts.
"""
from __future__ import annotations

import threading
from collections import defaultdict
from typing import Dict, Tuple

_lock = threading.Lock()
_count: Dict[Tuple[str, str, int], int] = defaultdict(int)
# Latency buckets in seconds; anything slower lands in +Inf
_buckets = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
_hist_count: Dict[Tuple[str, str], int] = defaultdict(int)
_hist_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_hist_buckets: Dict[Tuple[str, str, float], int] = defaultdict(int)


def observe_request(handler: str, method: str, status: int, duration_s: float) -> None:
    key = (handler, method.upper(), int(status))
    hkey = (handler, method.upper())
    with _lock:
        _count[key] += 1
        _hist_count[hkey] += 1
        _hist_sum[hkey] += float(duration_s)
        # Stored per bucket; export accumulates them into cumulative counts.
        le = next((b for b in _buckets if duration_s <= b), float("inf"))
        _hist_buckets[(handler, method.upper(), le)] += 1


def _esc(v: str) -> str:
    return v.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


# Domain counters: name -> sorted label pairs -> value
_events: Dict[str, Dict[Tuple[Tuple[str, str], ...], int]] = defaultdict(lambda: defaultdict(int))
_EVENT_HELP = {
    "hris_payroll_step_total": "Payroll run step transitions by step and resulting status",
    "hris_payroll_calculation_failures_total": "Payroll calculations that failed and reset the run to validation",
    "hris_material_request_retry_total": "Material request writes retried after a serialization conflict",
    "hris_material_request_conflict_total": "Material request writes abandoned after exhausting retries",
}


def _incr(name: str, **labels: str) -> None:
    key = tuple(sorted((k, str(v)) for k, v in labels.items()))
    with _lock:
        _events[name][key] += 1


def record_payroll_step(step: str, status: str) -> None:
    _incr("hris_payroll_step_total", step=step, status=status)


def record_calculation_failure(run_type: str) -> None:
    _incr("hris_payroll_calculation_failures_total", run_type=run_type)


def record_material_request_retry(operation: str) -> None:
    _incr("hris_material_request_retry_total", operation=operation)


def record_material_request_conflict(operation: str) -> None:
    _incr("hris_material_request_conflict_total", operation=operation)


def counter_value(name: str, **labels: str) -> int:
    key = tuple(sorted((k, str(v)) for k, v in labels.items()))
    with _lock:
        return int(_events.get(name, {}).get(key, 0))


def _export_events(lines: list) -> None:
    for name in sorted(_EVENT_HELP):
        lines.append(f"# HELP {name} {_EVENT_HELP[name]}")
        lines.append(f"# TYPE {name} counter")
        for labels, val in sorted(_events.get(name, {}).items()):
            rendered = ",".join(f'{k}="{_esc(v)}"' for k, v in labels)
            lines.append(f"{name}{{{rendered}}} {int(val)}")


def export_prometheus() -> str:
    lines = []
    lines.append("# HELP hris_request_total Total HTTP requests")
    lines.append("# TYPE hris_request_total counter")
    with _lock:
        for (handler, method, status), val in sorted(_count.items()):
            lines.append(
                f'hris_request_total{{handler="{_esc(handler)}",method="{_esc(method)}",status="{int(status)}"}} {int(val)}'
            )

        lines.append("# HELP hris_request_duration_seconds Request duration histogram")
        lines.append("# TYPE hris_request_duration_seconds histogram")
        # Group by handler/method
        by_pair: Dict[Tuple[str, str], None] = {k: None for k in _hist_count.keys()}
        for handler, method in sorted(by_pair.keys()):
            cumulative = 0
            for le in _buckets:
                bucket_count = _hist_buckets.get((handler, method, le), 0)
                cumulative += bucket_count
                lines.append(
                    f'hris_request_duration_seconds_bucket{{handler="{_esc(handler)}",method="{_esc(method)}",le="{le}"}} {int(cumulative)}'
                )
            # +Inf bucket
            inf_count = _hist_buckets.get((handler, method, float("inf")), 0)
            cumulative += inf_count
            lines.append(
                f'hris_request_duration_seconds_bucket{{handler="{_esc(handler)}",method="{_esc(method)}",le="+Inf"}} {int(cumulative)}'
            )
            lines.append(
                f'hris_request_duration_seconds_sum{{handler="{_esc(handler)}",method="{_esc(method)}"}} {float(_hist_sum.get((handler, method), 0.0))}'
            )
            lines.append(
                f'hris_request_duration_seconds_count{{handler="{_esc(handler)}",method="{_esc(method)}"}} {int(_hist_count.get((handler, method), 0))}'
            )
        _export_events(lines)
    return "\n".join(lines) + "\n"
