"""
Metrics collection for the Budgetflow API.
"""
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict


def _fresh() -> Dict[str, Any]:
    return {
        "requests": defaultdict(int),
        "errors": defaultdict(int),
        "transitions": defaultdict(int),
        "ledger": defaultdict(int),
        "response_times": [],
        "start_time": datetime.now(timezone.utc).isoformat(),
    }


# In-memory metrics store (per process)
_metrics: Dict[str, Any] = _fresh()


def record_request(method: str, path: str, status_code: int, duration_ms: float):
    """Record HTTP request metrics."""
    _metrics["requests"][f"{method} {path}"] += 1
    _metrics["requests"][f"status_{status_code}"] += 1

    # Keep last 1000 response times
    _metrics["response_times"].append(duration_ms)
    if len(_metrics["response_times"]) > 1000:
        _metrics["response_times"] = _metrics["response_times"][-1000:]


def record_error(error_type: str, path: str = ""):
    """Record error metrics."""
    _metrics["errors"][error_type] += 1
    if path:
        _metrics["errors"][f"{error_type}:{path}"] += 1


def record_transition(kind: str, event: str):
    """Record a document state transition (approve, reject, cancel, ...)."""
    _metrics["transitions"][f"{kind}:{event}"] += 1


def record_ledger_warning(warning: str):
    """Record a ledger underflow clamp or overspend."""
    _metrics["ledger"][warning] += 1


def get_metrics() -> Dict[str, Any]:
    """Get current metrics."""
    response_times = _metrics["response_times"]
    avg_response_time = sum(response_times) / len(response_times) if response_times else 0
    p95_response_time = sorted(response_times)[int(len(response_times) * 0.95)] if len(response_times) >= 20 else 0

    total_requests = sum(v for k, v in _metrics["requests"].items() if not k.startswith("status_"))
    total_errors = sum(_metrics["errors"].values())

    uptime_seconds = (datetime.now(timezone.utc) - datetime.fromisoformat(_metrics["start_time"])).total_seconds()

    return {
        "uptime_seconds": int(uptime_seconds),
        "requests": {
            "total": total_requests,
            "by_endpoint": {k: v for k, v in _metrics["requests"].items() if not k.startswith("status_")},
            "by_status": {k: v for k, v in _metrics["requests"].items() if k.startswith("status_")},
        },
        "errors": {
            "total": total_errors,
            "by_type": dict(_metrics["errors"]),
        },
        "transitions": dict(_metrics["transitions"]),
        "ledger_warnings": dict(_metrics["ledger"]),
        "performance": {
            "avg_response_time_ms": round(avg_response_time, 2),
            "p95_response_time_ms": round(p95_response_time, 2),
        },
    }


def reset_metrics():
    """Reset all metrics (for testing)."""
    global _metrics
    _metrics = _fresh()
