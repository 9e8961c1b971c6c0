import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import redis
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

from . import config, metrics  # noqa: E402
from .auth_middleware import WorkerAuthMiddleware  # noqa: E402
from .logging_setup import configure_logging  # noqa: E402
from .pipeline.ledger import CreditLedger, InMemoryCreditLedger, RedisCreditLedger  # noqa: E402
from .pipeline.orchestrator import ClipGenerationOrchestrator, RetryPolicy  # noqa: E402
from .pipeline.planner import CompositionPlanner  # noqa: E402
from .pipeline.references import CharacterReferenceLibrary  # noqa: E402
from .pipeline.routes import beat_router, library_router, production_router  # noqa: E402
from .pipeline.store import ProductionStore, SupabaseProductionStore  # noqa: E402
from .provider_factory import ProviderFactory  # noqa: E402
from .provider_limiter import ProviderLimiter  # noqa: E402

logger = logging.getLogger(__name__)

# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None and config.REDIS_URL:
        client = redis.from_url(config.REDIS_URL, decode_responses=False)
        try:
            client.ping()
            logger.info(f"Redis connected: {config.REDIS_URL[:30]}...")
            _redis_client = client
        except redis.exceptions.RedisError as e:
            logger.warning(f"Redis connection failed: {e}; falling back to in-memory ledger")
    return _redis_client


def build_ledger() -> CreditLedger:
    r = get_redis()
    return RedisCreditLedger(r) if r is not None else InMemoryCreditLedger()


def build_store() -> ProductionStore:
    if config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE_KEY:
        return SupabaseProductionStore()
    logger.warning("Supabase not configured, productions are kept in memory only")
    return ProductionStore()


def build_orchestrator() -> ClipGenerationOrchestrator:
    return ClipGenerationOrchestrator(
        store=build_store(),
        ledger=build_ledger(),
        providers=ProviderFactory(),
        limiter=ProviderLimiter(
            max_concurrent_jobs=config.MAX_CONCURRENT_JOBS,
            provider_limits=config.PROVIDER_MAX_IN_FLIGHT,
        ),
        retry_policy=RetryPolicy(
            max_retries=config.RETRY_MAX_ATTEMPTS,
            base_delay=config.RETRY_BASE_DELAY,
            max_delay=config.RETRY_MAX_DELAY,
        ),
        poll_interval=config.POLL_INTERVAL,
    )


def create_app(
    orchestrator: Optional[ClipGenerationOrchestrator] = None,
    library: Optional[CharacterReferenceLibrary] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        configure_logging(config.LOG_LEVEL)
        metrics.set_gauge("start_time", time.time())
        if getattr(app.state, "orchestrator", None) is None:
            app.state.orchestrator = build_orchestrator()
        logger.info(
            f"Worker starting up (environment={config.ENVIRONMENT}, mocks={config.ENABLE_MOCKS})"
        )
        yield
        logger.info("Worker shutting down...")
        await app.state.orchestrator.shutdown()

    app = FastAPI(title="beatworks", lifespan=lifespan)
    app.add_middleware(WorkerAuthMiddleware)

    app.state.orchestrator = orchestrator
    app.state.library = library or CharacterReferenceLibrary()
    app.state.planner = CompositionPlanner(app.state.library)

    app.include_router(beat_router)
    app.include_router(production_router)
    app.include_router(library_router)

    @app.get("/health")
    def health_check():
        """Verify worker is running and env vars are configured."""
        return {
            "status": "ok",
            "environment": config.ENVIRONMENT,
            "mocks_enabled": config.ENABLE_MOCKS,
            "kie_api_key_set": bool(config.KIE_API_KEY),
            "wavespeed_api_key_set": bool(config.WAVESPEED_API_KEY),
            "supabase_url_set": bool(config.SUPABASE_URL),
            "redis_url_set": bool(config.REDIS_URL),
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all worker metrics."""
        orch = app.state.orchestrator
        if orch is not None:
            metrics.set_gauge("active_provider_jobs", orch.limiter.get_active_jobs())
            snapshot = metrics.get_snapshot()
            snapshot["providers"] = orch.limiter.snapshot()
            return snapshot
        return metrics.get_snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("beatworks.main:app", host="0.0.0.0", port=port, reload=True)
