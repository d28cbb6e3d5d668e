"""Focal FinOps service entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI

from focal_finops.api.router import router
from focal_finops.container import ServiceContainer
from focal_finops.observability import configure_logging
from focal_finops.settings import Settings

logger = structlog.get_logger(__name__)


def create_app(container: ServiceContainer | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        container: Prebuilt services (tests pass one with fakes). Built from
            settings when omitted.
        settings: Service configuration used when no container is given.
    """
    settings = container.settings if container is not None else settings or Settings()
    configure_logging(level=settings.log_level, json_output=settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage application startup and shutdown lifecycle."""
        services = container or ServiceContainer(settings)
        app.state.container = services
        logger.info("focal-finops starting", service=settings.service_name, data_dir=settings.data_dir)
        await services.start()
        yield
        logger.info("focal-finops shutting down")
        await services.close()

    app = FastAPI(title="Focal FinOps", version="0.1.0", lifespan=lifespan)
    app.include_router(router, prefix="/api/v1")
    return app


app = create_app()
