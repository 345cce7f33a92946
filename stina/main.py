# stina/main.py
"""
FastAPI application with service container lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from stina.config import settings
from stina.dependencies import ServiceContainer, build_container
from stina.infrastructure.observability.logging import get_logger, log_request, setup_logging
from stina.routes import health, meeting_requests

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """
    Build the app. A prebuilt container is used as-is and left open on
    shutdown; otherwise one is built from settings and closed with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting", environment=settings.environment, debug=settings.debug)

        owned = container is None
        try:
            app.state.container = container or await build_container(settings)
        except Exception as e:
            logger.error("Failed to initialize services", error=str(e))
            raise

        logger.info("All services initialized successfully")
        yield

        logger.info("Application shutting down")
        if owned:
            try:
                await app.state.container.close()
            except Exception as e:
                logger.error("Error closing services", error=str(e))
                return
        logger.info("All services closed successfully")

    app = FastAPI(
        title="Stina Scheduling Assistant",
        description="Turns inbound messages into booked meetings",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health.router)
    app.include_router(meeting_requests.router)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log HTTP requests with timing."""
        start_time = time.time()
        response = await call_next(request)
        process_time = (time.time() - start_time) * 1000

        log_request(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(process_time, 2),
        )
        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
