"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from queryforge.api.errors import register_error_handlers
from queryforge.api.routes import router
from queryforge.config import Settings
from queryforge.store import QueryStore

logger = logging.getLogger(__name__)


def create_app(store: QueryStore | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the app around a store; one is built from settings when none is given."""
    settings = settings or (store.settings if store else Settings())
    store = store or QueryStore.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Serving %d query types from %s", len(store.registry), store.executor.dialect
        )
        yield
        await store.close()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store

    register_error_handlers(app)
    app.include_router(router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "store": store.executor.dialect,
            "query_types": len(store.registry),
        }

    return app
