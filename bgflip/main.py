"""
bgflip - Main Application

FastAPI application with:
- Background removal (Clipdrop) + horizontal flip pipeline
- Google Cloud Storage with static key, ADC or Workload Identity Federation
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
"""

import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from bgflip.core.config import settings
from bgflip.core.credentials import oidc_token_var
from bgflip.core.logging import setup_logging, get_logger
from bgflip.core.exceptions import register_exception_handlers
from bgflip.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from bgflip.api.routes import api_router


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        storage_backend=settings.STORAGE_BACKEND,
        serverless=settings.VERCEL
    )

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    logger.info("application_ready")

    yield

    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Upload an image, get back a background-free, horizontally mirrored PNG.

    ## Pipeline Stages

    1. **Normalize** - convert to PNG
    2. **Remove background** - Clipdrop API
    3. **Flip** - horizontal mirror
    4. **Store** - Google Cloud Storage, public URL returned
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def capture_oidc_token(request: Request, call_next):
    """Expose the platform OIDC token of this request to the credential provider."""
    token = request.headers.get("x-vercel-oidc-token")
    if not token:
        return await call_next(request)

    reset_token = oidc_token_var.set(token)
    try:
        return await call_next(request)
    finally:
        oidc_token_var.reset(reset_token)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route template keeps label cardinality bounded (/api/images/{image_id})
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_router)


# =============================================================================
# Static Files (local storage backend)
# =============================================================================
if settings.STORAGE_BACKEND.lower() == "local":
    Path(settings.LOCAL_STORAGE_PATH).mkdir(parents=True, exist_ok=True)
    app.mount("/static/storage", StaticFiles(directory=settings.LOCAL_STORAGE_PATH), name="storage")


# =============================================================================
# Root Endpoint
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/api/docs",
        "health": "/api/health",
        "metrics": "/api/metrics"
    }


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn

    # On Vercel the platform imports `app`; a server is only started locally
    uvicorn.run(
        "bgflip.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
