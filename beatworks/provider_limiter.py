"""
Concurrency guard for provider jobs.

Two layers of asyncio semaphores:
  1. A global cap on in-flight provider jobs for this worker
  2. A per-provider cap, declared by each adapter (`max_in_flight`), so we
     stay inside every third-party rate limit

A slot is held from submit until the job's final poll. Retry backoff happens
outside the slot.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

# ── Configuration ─────────────────────────────────────────────────────────────
DEFAULT_MAX_CONCURRENT_JOBS = 8
DEFAULT_PROVIDER_LIMIT = 2


class ProviderLimiter:
    def __init__(
        self,
        max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
        provider_limits: Optional[Dict[str, int]] = None,
        default_provider_limit: int = DEFAULT_PROVIDER_LIMIT,
    ):
        self.max_concurrent_jobs = max_concurrent_jobs
        self.default_provider_limit = default_provider_limit
        self._limits: Dict[str, int] = dict(provider_limits or {})
        self._global = asyncio.Semaphore(max_concurrent_jobs)
        self._per_provider: Dict[str, asyncio.Semaphore] = {}
        self._active: Dict[str, int] = {}

    def set_limit(self, provider: str, limit: int):
        """Declare a provider's max in-flight jobs. Only effective before first use."""
        if provider in self._per_provider:
            return
        self._limits[provider] = max(1, limit)

    def limit_for(self, provider: str) -> int:
        return self._limits.get(provider, self.default_provider_limit)

    def _semaphore(self, provider: str) -> asyncio.Semaphore:
        sem = self._per_provider.get(provider)
        if sem is None:
            sem = self._per_provider[provider] = asyncio.Semaphore(self.limit_for(provider))
        return sem

    @asynccontextmanager
    async def slot(self, provider: str) -> AsyncIterator[None]:
        """Hold one global and one per-provider slot for the duration of a job."""
        async with self._global:
            async with self._semaphore(provider):
                self._active[provider] = self._active.get(provider, 0) + 1
                try:
                    yield
                finally:
                    self._active[provider] -= 1

    # ── Introspection ─────────────────────────────────────────────────────

    def get_active_jobs(self, provider: Optional[str] = None) -> int:
        if provider is not None:
            return self._active.get(provider, 0)
        return sum(self._active.values())

    def snapshot(self) -> dict:
        return {
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "active_jobs": self.get_active_jobs(),
            "providers": {
                name: {"active": self._active.get(name, 0), "limit": self.limit_for(name)}
                for name in sorted(set(self._limits) | set(self._active))
            },
        }
