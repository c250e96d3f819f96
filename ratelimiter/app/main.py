from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ratelimiter.app.api.admin import router as admin_router
from ratelimiter.app.core.config import settings
from ratelimiter.app.core.hash_ring import HashRing
from ratelimiter.app.core.logging import get_logger, setup_logging
from ratelimiter.app.middleware.rate_limit import RateLimitMiddleware
from ratelimiter.app.middleware.request_id import RequestIdMiddleware
from ratelimiter.app.services.counter_store import CounterStore, RedisCounterStore
from ratelimiter.app.services.local_fallback import LocalFallbackCache
from ratelimiter.app.services.node_liveness import NodeLivenessTracker
from ratelimiter.app.services.rate_limiter import RateLimitEngine


def create_app(store: Optional[CounterStore] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        store: Counter store to use instead of a RedisCounterStore built
            from settings

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Connects the counter store (never fatal: the limiter runs in
        fallback mode until the store comes up), wires the engine and starts
        heartbeats; on shutdown stops them and closes the store.
        """
        counter_store = store or RedisCounterStore()
        if not await counter_store.connect():
            logger.warning("Counter store unavailable at startup; using local fallback")

        ring = HashRing([settings.node_id])
        engine = RateLimitEngine(counter_store, local_cache=LocalFallbackCache(), ring=ring)
        tracker = NodeLivenessTracker(counter_store, node_id=settings.node_id)

        await engine.start()
        await tracker.start()
        await tracker.sync_ring(ring)

        app.state.rate_limiter = engine
        app.state.liveness = tracker

        logger.info(
            "Rate limiter service started",
            extra={
                "port": settings.app_port,
                "default_limit": settings.default_rate_limit,
                "default_window_ms": settings.default_window_ms,
            },
        )

        yield

        await tracker.stop()
        await engine.stop()
        await counter_store.close()
        app.state.rate_limiter = None
        app.state.liveness = None

        logger.info("Rate limiter service shutdown complete")

    app = FastAPI(
        title="Distributed Rate Limiter",
        description="Sliding-window admission control shared across nodes through Redis",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Middleware order matters: last added = first executed
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(admin_router)

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Liveness endpoint with counter store status."""
        engine: Optional[RateLimitEngine] = getattr(request.app.state, "rate_limiter", None)
        store_ready = engine is not None and await engine.store.is_ready()
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "nodeId": settings.node_id,
            "store": "ready" if store_ready else "unavailable",
        }

    @app.get("/api/test")
    async def api_test() -> dict[str, Any]:
        return {
            "message": "Success",
            "nodeId": settings.node_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error: {exc}", extra={"path": request.url.path})
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})

    return app


app = create_app()
