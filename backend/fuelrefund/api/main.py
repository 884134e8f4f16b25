"""Entry point for the FastAPI application.

Builds the app, registers exception handlers and routers, and
initialises Sentry and the database on startup. Run with uvicorn:

    uvicorn fuelrefund.api.main:app --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fuelrefund.api.error_handlers import register_exception_handlers
from fuelrefund.api.routes.billing_webhooks import router as billing_webhooks_router
from fuelrefund.api.routes.receipts import router as receipts_router
from fuelrefund.api.routes.subscriptions import router as subscriptions_router
from fuelrefund.core.config import settings
from fuelrefund.core.database import init_db
from fuelrefund.core.observability import init_sentry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting up...")
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    if (settings.ENVIRONMENT or "development").lower() == "development":
        await init_db()
    yield
    logger.info("Shutting down...")


def create_app() -> FastAPI:
    app = FastAPI(title=settings.PROJECT_NAME, version="1.0.0", lifespan=lifespan)

    env_is_dev = (settings.ENVIRONMENT or "development").lower() == "development"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if env_is_dev else list(settings.BACKEND_CORS_ORIGINS or []),
        allow_credentials=not env_is_dev,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(receipts_router)
    app.include_router(subscriptions_router)
    app.include_router(billing_webhooks_router)

    @app.api_route("/health", methods=["GET", "HEAD"])
    async def health_check():
        """Health check endpoint (supports GET & HEAD)."""
        return {"status": "healthy"}

    return app


app = create_app()
