"""FastAPI application factory.

create_app() returns a configured FastAPI instance. The lifespan handles
Redis, the optional in-process job worker and engine disposal. Middleware,
CORS and routers are all registered here.
"""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from switchboard import __version__
from switchboard.api import api_router
from switchboard.config import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(
        "switchboard.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    from switchboard.realtime.pubsub import close_redis, init_redis
    try:
        await init_redis()
        logger.info("switchboard.redis_connected", url=settings.redis_url)
    except Exception as e:
        logger.warning("switchboard.redis_unavailable", error=str(e))
        # Redis is optional; agents fall back to polling /events

    # Single-process deployments run the job worker inside the API
    worker = worker_task = None
    if settings.run_worker_in_app:
        from switchboard.worker.runner import JobWorker
        worker = JobWorker()
        worker_task = asyncio.create_task(worker.run_loop())
        logger.info("switchboard.worker_started")

    yield

    logger.info("switchboard.shutdown")

    if worker is not None:
        worker.stop()
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass

    await close_redis()

    from switchboard.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="Switchboard",
        description="Dispatch queue, retry orchestration and loop accounting for agent fleets",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Starlette runs middleware in reverse order of registration.
    # Request flow: RequestId → RateLimit → CORS → handler

    from switchboard.middleware.rate_limit import RateLimitMiddleware
    from switchboard.middleware.request_id import RequestIdMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        default_rpm=settings.rate_limit_rpm,
        claim_rpm=settings.rate_limit_claim_rpm,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    from switchboard.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: switchboard.main:app)
app = create_app()
