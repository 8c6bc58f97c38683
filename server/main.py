"""
FastAPI service for trigger-driven contact automations.

Hosts the management API, the due-run polling scheduler and cron maintenance.
"""

import logging
from datetime import datetime, timezone
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse

from core.container import container
from core.config import Settings
from core.logging import configure_logging, get_logger
from routers import automation, events
from services.automation import (
    AutomationNotFound,
    GraphError,
    InvalidTransition,
    ValidationError,
)

# Initialize settings and logging
settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("watchfiles").setLevel(logging.WARNING)

STATS_JOB_ID = "automation_stats_recompute"


async def recompute_stats_job():
    """Cron callback; errors are logged so the job keeps its schedule."""
    try:
        await container.automation_service().recompute_stats()
    except Exception as e:
        logger.error("Stats recompute failed", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting automation service")
    container.settings.override(settings)

    await container.database().startup()

    # Resolve the timeline first so list membership changes are wired to it
    container.timeline()

    cron = container.cron()
    cron.register_cron_job(STATS_JOB_ID, settings.stats_recompute_cron, recompute_stats_job)
    cron.start()

    scheduler = container.scheduler()
    if settings.scheduler_enabled:
        await scheduler.start()

    logger.info("Services started successfully")
    yield

    # Shutdown, reverse order
    if settings.scheduler_enabled:
        await scheduler.stop()
    cron.shutdown()
    await container.message_sender().close()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


def _error(status_code: int, exc: Exception) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status_code,
        content={"success": False, "error": type(exc).__name__, "detail": str(exc)}
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map engine exceptions onto HTTP statuses."""

    @app.exception_handler(AutomationNotFound)
    async def not_found_handler(request: Request, exc: AutomationNotFound):
        return _error(404, exc)

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error(422, exc)

    @app.exception_handler(GraphError)
    async def graph_handler(request: Request, exc: GraphError):
        return _error(422, exc)

    @app.exception_handler(InvalidTransition)
    async def transition_handler(request: Request, exc: InvalidTransition):
        return _error(409, exc)


def create_app(lifespan_handler=lifespan) -> FastAPI:
    app = FastAPI(
        title="Automation Engine",
        version="1.0.0",
        description="Trigger-driven contact automation workflows",
        lifespan=lifespan_handler,
        default_response_class=ORJSONResponse
    )
    register_exception_handlers(app)

    # Include routers
    app.include_router(automation.router)
    app.include_router(events.router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "OK",
            "service": "automation-engine",
            "version": "1.0.0",
            "environment": "development" if settings.is_development else "production",
            "scheduler_running": container.scheduler().running,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting automation service",
               host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
    )
