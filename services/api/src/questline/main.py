"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from questline.challenges.router import router as challenges_router
from questline.config import get_settings
from questline.database import close_db, get_session, init_db
from questline.gamification.router import router as gamification_router
from questline.gamification.seed import seed_catalogue
from questline.health.router import router as health_router
from questline.middleware import setup_middleware
from questline.payments.router import router as payments_router
from questline.quests.router import router as quests_router
from questline.redis_client import close_redis, init_redis
from questline.social.router import router as social_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    if settings.redis_url:
        await init_redis(settings.redis_url)

    # Catalogue seeding is idempotent
    try:
        async for db in get_session():
            await seed_catalogue(db)
            break
    except SQLAlchemyError:
        logger.warning("Catalogue seeding failed; run `alembic upgrade head` first", exc_info=True)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Questline API",
        description="Progression engine for the Questline habit tracker",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(quests_router)
    app.include_router(challenges_router)
    app.include_router(social_router)
    app.include_router(gamification_router)
    app.include_router(payments_router)

    return app


app = create_app()
