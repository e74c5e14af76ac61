"""turnloop API — FastAPI application factory and ASGI entry point.

Invariants:
    - Routes registered explicitly (no auto-discovery)
    - Database initialized and disposed by the lifespan, never at import time
    - CORS origins come from settings

Design Decisions:
    - create_app() factory: hosts embed the engine with their own settings;
      `app` is the instance uvicorn serves (turnloop.main:app)
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from turnloop import __version__
from turnloop.api.error_handlers import register_error_handlers
from turnloop.api.routes import conversation_lifecycle, conversation_stream, health
from turnloop.config import Settings, get_settings
from turnloop.infrastructure.database import close_db, init_db
from turnloop.infrastructure.observability import setup_logging

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_format)
        manager = init_db(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
        if settings.database_create_all:
            await manager.create_all()
        logger.info("turnloop API started (model=%s)", settings.agent_model)
        yield
        await close_db()
        logger.info("turnloop API stopped")

    app = FastAPI(title="turnloop API", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    for module in (health, conversation_lifecycle, conversation_stream):
        app.include_router(module.router)
    register_error_handlers(app)
    return app


app = create_app()
