"""
FastAPI application entry point.
Sets up the API with lifespan events for database initialization.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from imagepipe.config import settings
from imagepipe.database import init_db
from imagepipe.api.router import api_router
from imagepipe.middleware.metrics_middleware import MetricsMiddleware
from imagepipe.services.cache import get_job_cache
from imagepipe.utils.logging import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events.
    - Startup: configure logging, create tables
    - Shutdown: close the Redis connection pool
    """
    # Configure structured JSON logging
    configure_logging('imagepipe-api', settings.log_level)

    # Startup
    await init_db()

    yield

    # Shutdown
    await get_job_cache().close()


# Create FastAPI app
app = FastAPI(
    title="Imagepipe API",
    description="Image upload and two-stage processing pipeline",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Metrics middleware (must be after CORS to track all requests)
app.add_middleware(MetricsMiddleware)

# Include API routes
app.include_router(api_router, prefix="/api")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Unhandled errors become a bare 500 body; details go to the log only."""
    logger.error(
        f"Unhandled error on {request.method} {request.url.path}: {exc}",
        extra={"event": "unhandled_exception", "path": request.url.path},
        exc_info=exc
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"status": 500, "title": "An unexpected error occurred."}
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Imagepipe API",
        "version": "0.1.0",
        "environment": settings.environment
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
