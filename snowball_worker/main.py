"""
Admin HTTP surface: health probes and queue inspection.

Jobs are not processed here; run ``snowball-worker`` for that.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from snowball_worker.bootstrap import build_services
from snowball_worker.config import settings
from snowball_worker.infrastructure.observability.logging import get_logger, setup_logging
from snowball_worker.routes import health, queues

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the service graph on startup and close it on shutdown."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    services = getattr(app.state, "services", None) or build_services(settings)
    await services.start()
    app.state.services = services

    yield

    logger.info("Application shutting down")
    await services.close()


app = FastAPI(
    title="Snowball Worker Admin",
    description="Health and queue inspection for the snowball job workers",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(queues.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
