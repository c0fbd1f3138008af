"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from warden.auth.router import router as auth_router
from warden.config import get_settings
from warden.database import check_db, close_db, create_schema, init_db
from warden.health.router import router as health_router
from warden.middleware import setup_middleware
from warden.redis_client import close_redis, get_redis, init_redis
from warden.users.router import router as users_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup and shutdown lifecycle.

    The database must answer ``SELECT 1`` and, when a Redis URL is set, Redis
    must answer ``PING``; otherwise startup fails and the process exits.
    """
    settings = get_settings()
    await init_db(settings.database_url)
    await check_db()
    if settings.database_auto_create:
        await create_schema()

    if settings.redis_url:
        await init_redis(settings.redis_url)
        await get_redis().ping()  # type: ignore[union-attr]
    logger.info(
        "startup_complete",
        environment=settings.environment,
        cache="redis" if settings.redis_url else "none",
    )

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Warden",
        description="Authentication service: credentials, sessions and account recovery",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(auth_router)
    app.include_router(users_router)

    return app


app = create_app()
