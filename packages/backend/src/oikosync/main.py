"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. The lifespan owns the live-update runtime: it is created before the
first request and fully torn down (subscriptions, cache, Redis relay) at
shutdown.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from oikosync import __version__
from oikosync.api import api_router
from oikosync.config import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(
        "oikosync.starting",
        version=__version__,
        environment=settings.environment,
        transport=settings.realtime_transport,
        port=settings.port,
    )

    from oikosync.realtime.runtime import close_runtime, init_runtime
    from oikosync.services.readers import organization_exists

    resolver = organization_exists if settings.verify_organizations else None
    try:
        await init_runtime(organization_resolver=resolver)
    except Exception as e:
        if settings.realtime_transport != "redis":
            raise
        # Redis is optional — fall back to single-process delivery
        logger.warning("oikosync.redis_unavailable", error=str(e))
        from oikosync.realtime.pubsub import close_redis
        await close_redis()
        await init_runtime(transport="memory", organization_resolver=resolver)

    yield

    logger.info("oikosync.shutdown")
    await close_runtime()

    from oikosync.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="Oikosync Live Updates",
        description="Change propagation and cached dashboards for the property CRM",
        version=__version__,
        lifespan=lifespan,
    )

    # Starlette middleware executes in reverse order of registration.
    # Request flow: RequestId → CORS → handler
    from oikosync.middleware.request_id import RequestIdMiddleware

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router)

    from oikosync.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: oikosync.main:app)
app = create_app()
