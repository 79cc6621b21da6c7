import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException

from roomkeeper.core.config import settings, validate_config
from roomkeeper.core.logging import configure_logging
from roomkeeper.core.database import create_all_tables, dispose_engine
from roomkeeper.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from roomkeeper.api import health, metrics, subscriptions
from roomkeeper.features.billing.revenuecat_provider import RevenueCatProvider
from roomkeeper.features.rooms.service import RoomDirectory
from roomkeeper.features.subscriptions.engine import SubscriptionEngine
from roomkeeper.features.users.store import SqlUserStore


def build_engine() -> SubscriptionEngine:
    """Production wiring: RevenueCat billing, SQL user store, SQL room directory."""
    return SubscriptionEngine(
        billing=RevenueCatProvider(),
        store=SqlUserStore(),
        rooms=RoomDirectory(),
        grace_period_days=settings.GRACE_PERIOD_DAYS,
    )


def create_app(engine_factory: Optional[Callable[[], SubscriptionEngine]] = None) -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)
    factory = engine_factory or build_engine

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("roomkeeper")
        logger.info("Starting roomkeeper...")
        create_all_tables()
        engine = factory()
        await engine.init()
        app.state.engine = engine
        try:
            yield
        finally:
            logger.info("Stopping roomkeeper...")
            await engine.dispose()
            app.state.engine = None
            if engine_factory is None:
                dispose_engine()

    app = FastAPI(title="roomkeeper", lifespan=lifespan)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(subscriptions.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


app = create_app()
