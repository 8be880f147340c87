"""
FastAPI service for spreadsheet workflows: schema propagation and step execution.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from sheetflow import __version__
from sheetflow.core.container import container
from sheetflow.core.logging import configure_logging, get_logger
from sheetflow.routers import workflow

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting SheetFlow service", dispatch_mode=settings.step_dispatch_mode)

    await container.database().startup()
    await container.subscription().start()
    await container.step_worker().start()

    logger.info("Services started successfully")
    yield

    # Shutdown
    await container.step_worker().stop()
    await container.subscription().stop()
    container.coordinator().flush_pending()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


app = FastAPI(
    title="SheetFlow",
    version=__version__,
    description="Spreadsheet workflow backend with schema propagation and step execution",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", error_type=type(e).__name__, error=str(e), exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)

app.include_router(workflow.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    worker = container.step_worker()
    return {
        "status": "OK",
        "service": "sheetflow",
        "version": __version__,
        "environment": "development" if settings.is_development else "production",
        "redis_enabled": settings.redis_enabled,
        "step_dispatch": {
            "mode": settings.step_dispatch_mode,
            "worker_running": worker.running,
        },
        "schema_cache_entries": len(container.schema_cache()),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


def run() -> None:
    import uvicorn
    logger.info("Starting SheetFlow service", host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "sheetflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
