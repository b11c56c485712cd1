import logging
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.config import settings
from app.exception_handlers import register_exception_handlers
from app.middleware.logging import StructuredLoggingMiddleware, setup_structured_logging
from app.routes import monitoring, sse
from app.scheduler import shutdown_scheduler, start_scheduler
from app.services.sse_manager import get_sse_manager
from app.utils.metrics import PrometheusMiddleware


setup_structured_logging(log_level=settings.log_level, json_format=settings.log_json)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Real-time event dispatch over Server-Sent Events",
        debug=settings.debug,
        version=settings.app_version,
    )

    # Add middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(StructuredLoggingMiddleware)

    register_exception_handlers(app)

    # Include routers
    app.include_router(monitoring.router)
    app.include_router(sse.router, prefix="/api/v1/sse")

    @app.on_event("startup")
    async def startup_event():
        """Tasks to run at application startup."""
        logger.info(f"Starting up {settings.app_name} in {settings.environment} mode...")
        start_scheduler()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down the application...")
        get_sse_manager().heartbeat.stop()
        shutdown_scheduler()

    return app


app = create_app()


@app.get("/", tags=["Root"])
async def root():
    return {"message": f"Welcome to the {settings.app_name} API"}


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.debug)
