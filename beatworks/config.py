"""
Worker configuration, read from the environment.

`main.py` calls `load_dotenv()` before importing this module, so a local `.env`
file works the same as Railway-provided variables.
"""

import os


def _int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# Route every provider to the simulated adapter (local dev, demos)
ENABLE_MOCKS = os.environ.get("BEATWORKS_ENABLE_MOCKS", "false").lower() in ("1", "true", "yes")

# ── Concurrency ──────────────────────────────────────────────────────────────
MAX_CONCURRENT_JOBS = _int("MAX_CONCURRENT_JOBS", 8)
PROVIDER_MAX_IN_FLIGHT = {
    "kie": _int("PROVIDER_MAX_IN_FLIGHT_KIE", 4),
    "wavespeed": _int("PROVIDER_MAX_IN_FLIGHT_WAVESPEED", 3),
    "simulated": _int("PROVIDER_MAX_IN_FLIGHT_SIMULATED", 8),
}

# ── Retry / polling ──────────────────────────────────────────────────────────
RETRY_MAX_ATTEMPTS = _int("RETRY_MAX_ATTEMPTS", 3)
RETRY_BASE_DELAY = _float("RETRY_BASE_DELAY", 2.0)
RETRY_MAX_DELAY = _float("RETRY_MAX_DELAY", 30.0)
POLL_INTERVAL = _float("POLL_INTERVAL", 5.0)

# ── Providers ────────────────────────────────────────────────────────────────
KIE_API_KEY = os.environ.get("KIE_API_KEY", "")
WAVESPEED_API_KEY = os.environ.get("WAVESPEED_API_KEY", "")

# ── Storage ──────────────────────────────────────────────────────────────────
REDIS_URL = os.environ.get("REDIS_URL", "")
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")

WORKER_SHARED_SECRET = os.environ.get("WORKER_SHARED_SECRET", "")
