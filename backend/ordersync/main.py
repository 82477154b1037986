"""FastAPI application for the order sync trigger API."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ordersync.deps import get_settings
from ordersync.routers import order_sync as order_sync_router
from ordersync.telemetry import init_sentry
from ordersync.workers.arq_enqueue import reset_arq_pool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await reset_arq_pool()


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="ordersync API",
        description="""
        Shopify order sync for the shipping platform.

        - Trigger a manual order sync for a workspace
        - Check last sync time and failed orders
        - Retry orders that exhausted their automatic retries

        Syncing itself runs in the ARQ worker
        (`arq ordersync.workers.order_sync_worker.WorkerSettings`).
        """,
        version="0.1.0",
        lifespan=lifespan,
    )

    settings = get_settings()
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(order_sync_router.router)

    @app.get("/health", tags=["Health"])
    def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
