"""
Production State Store.

Read-mostly cache of StoryBeatProduction aggregates keyed by production id.
Every write goes through `update(production_id, mutate)`, which serializes on a
per-production lock, bumps `version`, persists, and notifies subscribers.

Backends:
  - ProductionStore          — in-process only
  - SupabaseProductionStore  — write-through to the `beat_productions` table
"""

import asyncio
import logging
import os
import weakref
from typing import Callable, Optional

from supabase import Client, create_client

from .errors import ProductionNotFoundError
from .models import StoryBeatProduction, now_iso

logger = logging.getLogger(__name__)

Mutator = Callable[[StoryBeatProduction], None]


class ProductionStore:
    def __init__(self):
        self._records: dict[str, StoryBeatProduction] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._subscribers: dict[str, list[asyncio.Queue]] = {}

    # ── Persistence hooks (overridden by durable backends) ───────────────

    def _persist(self, production: StoryBeatProduction):
        pass

    def _load(self, production_id: str) -> Optional[StoryBeatProduction]:
        return None

    def _load_for_beat(self, beat_id: str) -> list[StoryBeatProduction]:
        return []

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_production(self, production_id: str) -> StoryBeatProduction:
        """Current snapshot. Raises ProductionNotFoundError."""
        record = self._records.get(production_id)
        if record is None:
            record = self._load(production_id)
            if record is None:
                raise ProductionNotFoundError(production_id)
            self._records[production_id] = record
        return record.model_copy(deep=True)

    async def list_productions_for_beat(self, beat_id: str) -> list[StoryBeatProduction]:
        """All productions for a beat, oldest first (the last one is current)."""
        for record in self._load_for_beat(beat_id):
            self._records.setdefault(record.id, record)
        matches = [p for p in self._records.values() if p.beat_id == beat_id]
        matches.sort(key=lambda p: p.created_at)
        return [p.model_copy(deep=True) for p in matches]

    # ── Writes ───────────────────────────────────────────────────────────

    async def create(self, production: StoryBeatProduction) -> StoryBeatProduction:
        async with self._lock_for(production.id):
            if production.id in self._records or self._load(production.id) is not None:
                raise ValueError(f"Production {production.id} already exists")
            record = production.model_copy(deep=True)
            record.version = 1
            self._persist(record)
            self._records[record.id] = record
        self._notify(record)
        return record.model_copy(deep=True)

    async def update(self, production_id: str, mutate: Mutator) -> StoryBeatProduction:
        """
        Apply `mutate` to a copy of the production and commit it.

        Writes to one production are serialized; if `mutate` raises, the stored
        record is untouched.
        """
        async with self._lock_for(production_id):
            current = await self.get_production(production_id)
            mutate(current)
            current.version += 1
            current.updated_at = now_iso()
            self._persist(current)
            self._records[production_id] = current
        self._notify(current)
        return current.model_copy(deep=True)

    def _lock_for(self, production_id: str) -> asyncio.Lock:
        lock = self._locks.get(production_id)
        if lock is None:
            lock = self._locks[production_id] = asyncio.Lock()
        return lock

    # ── Subscriptions ────────────────────────────────────────────────────

    def subscribe(self, production_id: str) -> asyncio.Queue:
        """Queue that receives a snapshot after every committed update."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(production_id, []).append(queue)
        return queue

    def unsubscribe(self, production_id: str, queue: asyncio.Queue):
        queues = self._subscribers.get(production_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(production_id, None)

    def _notify(self, production: StoryBeatProduction):
        for queue in self._subscribers.get(production.id, []):
            queue.put_nowait(production.model_copy(deep=True))

    async def wait_for_change(
        self,
        production_id: str,
        since_version: int,
        timeout: float,
    ) -> StoryBeatProduction:
        """
        Long-poll hook: return as soon as the production's version exceeds
        `since_version`, or the current snapshot after `timeout` seconds.
        """
        queue = self.subscribe(production_id)
        try:
            current = await self.get_production(production_id)
            if current.version > since_version:
                return current
            try:
                while True:
                    snapshot = await asyncio.wait_for(queue.get(), timeout=timeout)
                    if snapshot.version > since_version:
                        return snapshot
            except asyncio.TimeoutError:
                return await self.get_production(production_id)
        finally:
            self.unsubscribe(production_id, queue)


# ═════════════════════════════════════════════════════════════════════════════
# Supabase write-through backend
# ═════════════════════════════════════════════════════════════════════════════

TABLE = "beat_productions"


class SupabaseProductionStore(ProductionStore):
    """
    Durable store. One row per production:

        id, beat_id, account_id, status, progress, version,
        record (jsonb — the full StoryBeatProduction), created_at, updated_at
    """

    def __init__(self, client: Optional[Client] = None):
        super().__init__()
        self._client = client

    def _sb(self) -> Client:
        """Lazy-init Supabase client using the service role key."""
        if self._client is None:
            url = os.getenv("SUPABASE_URL", "")
            key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
            if not url or not key:
                raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(url, key)
        return self._client

    def _persist(self, production: StoryBeatProduction):
        self._sb().table(TABLE).upsert({
            "id": production.id,
            "beat_id": production.beat_id,
            "account_id": production.account_id,
            "status": production.status.value,
            "progress": production.progress,
            "version": production.version,
            "record": production.model_dump(mode="json"),
            "created_at": production.created_at,
            "updated_at": production.updated_at,
        }).execute()
        logger.debug(f"[{production.id}] persisted v{production.version} ({production.status.value})")

    def _load(self, production_id: str) -> Optional[StoryBeatProduction]:
        result = (
            self._sb().table(TABLE)
            .select("record")
            .eq("id", production_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return StoryBeatProduction.model_validate(result.data[0]["record"])

    def _load_for_beat(self, beat_id: str) -> list[StoryBeatProduction]:
        result = (
            self._sb().table(TABLE)
            .select("record")
            .eq("beat_id", beat_id)
            .order("created_at")
            .execute()
        )
        return [StoryBeatProduction.model_validate(row["record"]) for row in result.data]
