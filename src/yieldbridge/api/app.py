"""FastAPI application factory."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from yieldbridge import __version__
from yieldbridge.config import Settings, get_settings
from yieldbridge.services import Services, build_services

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to build services from (default: environment)
        services: Prebuilt services; the app then neither starts the
            scheduler nor closes them
    """
    settings = settings or (services.settings if services else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        if services is not None:
            yield
            return

        # Startup
        app.state.services = await build_services(settings)
        scheduler_task = None
        if settings.scheduler_enabled:
            scheduler_task = asyncio.create_task(
                app.state.services.scheduler.run(), name="resumption-scheduler"
            )
        else:
            logger.warning("SCHEDULER_ENABLED=false - pending transfers resume only on request")

        yield

        # Shutdown
        await app.state.services.close()
        if scheduler_task is not None:
            await asyncio.gather(scheduler_task, return_exceptions=True)
        app.state.services = None

    app = FastAPI(
        title="yieldbridge API",
        description="Cross-chain USDC vault deposits and withdraws over CCTP",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routes
    from yieldbridge.api.routes import (
        admin,
        chains,
        deposits,
        health,
        profile,
        retrieve,
        withdrawals,
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(chains.router)
    app.include_router(deposits.router)
    app.include_router(withdrawals.router)
    app.include_router(retrieve.router)
    app.include_router(profile.router)
    app.include_router(admin.router)

    return app
