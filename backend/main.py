"""
FastAPI Application Entry Point.

FOCUS: Health checks, cache admin, metrics
MUST: Add request logging, error handling
PRODUCTION: One shared Redis connection for every cache store
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from backend.core.caching.backends import CacheBackendError, CacheError
from backend.core.config import settings
from backend.api.v1.router import api_router
from backend.monitoring.logging import setup_logging, request_id_var
from backend.monitoring.metrics import MetricsCollector
from backend.services.cache_stores import close_cache_stores, init_cache_stores

# Setup structured logging
setup_logging(
    level=settings.monitoring.log_level,
    json_format=settings.monitoring.log_format == "json",
)

logger = logging.getLogger(__name__)
metrics = MetricsCollector()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    - Startup: connect Redis (optional) and build the cache stores
    - Shutdown: close the shared connection
    """
    # =================================================================
    # Startup
    # =================================================================
    logger.info(
        f"Starting {settings.app_name} v{settings.app_version} "
        f"in {settings.environment.value} mode"
    )

    stores = await init_cache_stores(settings)
    app.state.cache_backend = stores.backend
    app.state.embedding_cache = stores.embedding_cache
    app.state.response_cache = stores.response_cache
    app.state.chat_history = stores.chat_history

    logger.info("Application startup complete")

    yield

    # =================================================================
    # Shutdown
    # =================================================================
    logger.info("Shutting down application...")
    await close_cache_stores(stores)
    logger.info("Application shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Semantic answer cache for the scheme assistant",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)


# =============================================================================
# Middleware
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Scrapes and probes would drown the request log
_QUIET_PATHS = frozenset({"/metrics", "/health/live"})


def _endpoint_label(request: Request) -> str:
    """Route template for metric labels; raw paths would mint one series per session id."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next: Callable):
    """Log every request with timing and a short request ID."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
    request_id_var.set(request_id)
    path = request.url.path
    quiet = path in _QUIET_PATHS
    start_time = time.perf_counter()

    if not quiet:
        logger.info(
            f"Request started: {request.method} {path}",
            extra={"extra_data": {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "client_ip": request.client.host if request.client else "unknown",
            }},
        )

    try:
        response = await call_next(request)
    except Exception as e:
        latency_ms = (time.perf_counter() - start_time) * 1000
        logger.error(
            f"Request failed: {e}",
            extra={"extra_data": {
                "request_id": request_id,
                "error": str(e),
                "latency_ms": latency_ms,
            }},
        )
        metrics.record_request(endpoint=_endpoint_label(request), status="error")
        raise

    latency_ms = (time.perf_counter() - start_time) * 1000
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time-Ms"] = f"{latency_ms:.2f}"

    if not quiet:
        logger.info(
            f"Request completed: {response.status_code} in {latency_ms:.2f}ms",
            extra={"extra_data": {
                "request_id": request_id,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
            }},
        )

    metrics.record_request(
        endpoint=_endpoint_label(request),
        status="success" if response.status_code < 400 else "error",
    )
    return response


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Flatten pydantic errors into field/message pairs."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(f"Validation error: {errors}", extra={"extra_data": {"errors": errors}})

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Validation Error", "detail": errors},
    )


@app.exception_handler(CacheError)
async def cache_exception_handler(request: Request, exc: CacheError):
    """A storage failure that reached a route: the cache is unavailable, not broken."""
    request_id = request_id_var.get("")
    logger.warning(
        f"Cache unavailable: {exc}",
        extra={"extra_data": {"request_id": request_id}},
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": "Cache Unavailable",
            "detail": "The cache backend is not reachable. Please retry shortly.",
            "request_id": request_id,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Never expose internal errors to clients in production."""
    request_id = request_id_var.get("")

    logger.exception(
        f"Unhandled exception: {exc}",
        extra={"extra_data": {"request_id": request_id}},
    )

    detail = "An internal error occurred. Please try again later." if settings.is_production else str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "detail": detail,
            "request_id": request_id,
        },
    )


# =============================================================================
# Health Check Endpoints
# =============================================================================

def _store_stats(name: str):
    store = getattr(app.state, name, None)
    return store.get_stats() if store is not None else None


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if the application is running, with cache counters.
    """
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment.value,
        "embedding_cache": _store_stats("embedding_cache"),
        "response_cache": _store_stats("response_cache"),
    }


@app.get("/health/ready", tags=["Health"])
async def readiness_check():
    """
    Readiness check for Kubernetes/load balancers.

    A configured Redis must answer PING; the in-memory fallback is always ready.
    """
    checks = {}

    backend = getattr(app.state, "cache_backend", None)
    if backend is None:
        checks["cache"] = True
    else:
        try:
            checks["cache"] = await backend.ping()
        except CacheBackendError as e:
            logger.warning(f"Cache health check failed: {e}")
            checks["cache"] = False

    all_healthy = all(checks.values())

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "not_ready",
            "checks": checks,
        },
    )


@app.get("/health/live", tags=["Health"])
async def liveness_check():
    """Returns 200 if the application is alive (not deadlocked)."""
    return {"status": "alive"}


@app.get("/metrics", tags=["Monitoring"])
async def prometheus_metrics():
    """Prometheus scrape endpoint."""
    if not settings.monitoring.metrics_enabled:
        return Response(status_code=status.HTTP_404_NOT_FOUND)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# =============================================================================
# Include API Routers
# =============================================================================

app.include_router(api_router, prefix=settings.api_prefix)


# =============================================================================
# Root Endpoint
# =============================================================================

@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs" if settings.is_development else None,
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backend.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        log_level=settings.monitoring.log_level.lower(),
    )
