"""
Thread-safe in-memory metrics for the production worker.

Signals tracked:
  - Traffic:    productions started, clips dispatched
  - Errors:     clip failures by error kind, retries
  - Latency:    provider job duration per provider (submit → final poll)
  - Saturation: active provider jobs (gauge, refreshed on /metrics)
  - Credits:    reserved / settled / refunded / reconciled

Everything resets on restart; productions themselves are the durable record.
"""

import threading
import time
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = defaultdict(float)

# ── Latency samples (last 100 per provider) ──────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

# ── Recent clip failures (for RCA) ────────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'clips.dispatched', 'credits.refunded')."""
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(provider: str, duration_ms: float):
    """Record one provider job duration in milliseconds."""
    with _lock:
        samples = _latency_samples[provider]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[provider] = samples[-MAX_SAMPLES:]


def record_error(production_id: str, clip_index: int, error_type: str, message: str):
    """Remember a clip failure for the /metrics error feed."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "production_id": production_id,
            "clip_index": clip_index,
            "error_type": error_type,
            "message": message[:300],
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def reset():
    """Clear everything (test isolation)."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency_samples.clear()
        _recent_errors.clear()


def get_snapshot() -> dict:
    """Complete snapshot for the /metrics endpoint."""
    now = time.time()

    with _lock:
        latency_stats = {}
        for provider, samples in _latency_samples.items():
            if not samples:
                continue
            ordered = sorted(samples)
            n = len(ordered)
            latency_stats[provider] = {
                "p50": ordered[n // 2],
                "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
                "avg": sum(ordered) / n,
                "count": n,
            }

        error_kinds: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_kinds[err["error_type"]] += 1

        dispatched = _counters.get("clips.dispatched", 0)
        failed = _counters.get("clips.failed", 0)
        failure_rate = (failed / dispatched * 100) if dispatched else 0

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "failure_rate": round(failure_rate, 2),
            "recent_errors": list(_recent_errors[-10:]),
            "error_kinds": dict(error_kinds),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }
