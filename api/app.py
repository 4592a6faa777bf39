"""
Thanalytica Metrics API

FastAPI application serving precomputed health metrics:
1. Dashboard and per-timeframe metrics straight from the user cache
2. Background recompute on a cache miss (202 "processing")
3. Cache management endpoints for monitoring and manual operations
4. Optional in-process scheduler for the nightly batch jobs
"""

import logging
import sys
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from thanalytica import __version__
from thanalytica.container import ServiceContainer, build_container
from thanalytica.utils.config import Settings, get_settings

from api import cache as cache_routes
from api import metrics as metrics_routes
from api.middleware import RequestTimeoutMiddleware

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Log to stdout (the platform treats stderr as errors)."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
        force=True,
    )

    # Quiet down chatty loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def create_app(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Create the FastAPI app.

    Args:
        container: Prebuilt services (tests pass one in). When omitted the
            container is built on startup and closed on shutdown.
        settings: Settings used to build the container
    """
    settings = settings or (container.settings if container else get_settings())

    app = FastAPI(
        title="Thanalytica Metrics API",
        description="Cached health metrics with background recomputation",
        version=__version__,
    )
    app.state.container = container

    app.add_middleware(RequestTimeoutMiddleware, timeout_seconds=settings.API_TIMEOUT_SECONDS)
    app.include_router(metrics_routes.router)
    app.include_router(cache_routes.router)

    # ========================================================================
    # STARTUP / SHUTDOWN
    # ========================================================================

    @app.on_event("startup")
    async def startup_event():
        """Build services and start the scheduler."""
        if app.state.container is None:
            logger.info("Initializing services...")
            app.state.container = build_container(settings)
            app.state.owns_container = True

        services = app.state.container
        if services.scheduler is not None:
            await services.scheduler.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        services = app.state.container
        if services is None:
            return
        if services.scheduler is not None:
            await services.scheduler.stop()
        if getattr(app.state, "owns_container", False):
            services.close()
            app.state.container = None

    # ========================================================================
    # ERROR HANDLING
    # ========================================================================

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.debug(f"Rejected request {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=400, content={"error": "Invalid parameters"})

    # ========================================================================
    # HEALTH
    # ========================================================================

    @app.get("/health")
    def health():
        """Liveness only. Store status lives under /cache/health."""
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "version": __version__,
        }

    return app


configure_logging(get_settings().LOG_LEVEL)
app = create_app()


# ============================================================================
# RUN SERVER
# ============================================================================

if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "api.app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=get_settings().ENVIRONMENT == "development",
    )
