"""FastAPI application entry point.

The API routes that call the OTP service live in the host application;
this module owns the process lifecycle: database setup, the shared
:class:`OTPService` on ``app.state.otp_service`` and the maintenance
sweeper task.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from otp_guard.config import Settings, settings
from otp_guard.database.engine import init_db, ping
from otp_guard.services.otp_service import OTPService
from otp_guard.services.sweeper import MaintenanceSweeper

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)


def create_app(config: Settings = settings) -> FastAPI:
    """Build the application for *config*."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown lifecycle hook."""
        logger.info("Starting %s (%s) …", config.app_name, config.environment)
        engine = create_async_engine(config.database_url, echo=config.debug)
        session_factory = async_sessionmaker(engine, expire_on_commit=False)
        await init_db(engine)
        logger.info("Database initialised")

        service = OTPService.from_settings(config, session_factory)
        sweeper = MaintenanceSweeper(service, interval_seconds=config.cleanup_interval_seconds)
        sweeper.start()

        app.state.session_factory = session_factory
        app.state.otp_service = service
        app.state.sweeper = sweeper
        try:
            yield
        finally:
            logger.info("Shutting down %s …", config.app_name)
            await sweeper.stop()
            await engine.dispose()

    app = FastAPI(
        title=config.app_name,
        description="One-time code issuance and verification core",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health_check(request: Request):
        """Liveness probe reporting store reachability and sweeper state."""
        store_ok = await ping(request.app.state.session_factory)
        return {
            "status": "healthy" if store_ok else "degraded",
            "app": config.app_name,
            "store": "up" if store_ok else "down",
            "sweeper": "running" if request.app.state.sweeper.is_running else "stopped",
        }

    return app


app = create_app()
