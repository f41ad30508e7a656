"""
FastAPI application entry point.

Serves the operational Strava endpoints, the webhook intake and event
leaderboards. Syncs and webhook processing run in the Celery worker
(tasks/); this process only enqueues and reads.
"""
import logging
import time

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.cache import get_redis_client
from core.config import settings
from core.database import check_db_connection
from core.exceptions import APIException, PersistenceError, StravaSyncError
from core.logging import log_fields, setup_logging
from routers import events, strava, strava_webhook
from services.strava_rate_limiter import read_status

setup_logging()
logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

app = FastAPI(
    title="Event Scoring API",
    description="Strava activity ingestion, rule-based scoring and event leaderboards",
    version=APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)


def _allowed_origins():
    if settings.DEBUG:
        return ["*"]
    if settings.CORS_ORIGINS:
        return [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One log line per request with status and duration."""
    started = time.perf_counter()
    path = request.url.path
    try:
        response = await call_next(request)
    except Exception:
        logger.error(f"Request failed: {request.method} {path}", exc_info=True,
                     extra=log_fields(method=request.method, path=path))
        raise

    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    # Webhook intake is chatty; keep it at DEBUG unless it fails.
    level = logging.DEBUG if path.startswith("/v1/strava/webhook") and response.status_code < 400 else logging.INFO
    logger.log(
        level,
        f"{request.method} {path} -> {response.status_code} ({elapsed_ms}ms)",
        extra=log_fields(
            method=request.method,
            path=path,
            status_code=response.status_code,
            process_time_ms=elapsed_ms,
            client_ip=request.client.host if request.client else None,
        ),
    )
    response.headers["X-Process-Time"] = str(elapsed_ms / 1000)
    return response


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    """Consistent body for APIException: detail plus a machine-readable error_code."""
    logger.info(
        f"{exc.status_code} {request.method} {request.url.path}: {exc.detail}",
        extra=log_fields(error_code=exc.error_code, path=request.url.path),
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": exc.error_code},
        headers=exc.headers,
    )


@app.exception_handler(StravaSyncError)
async def sync_error_handler(request: Request, exc: StravaSyncError):
    """Domain errors that escape a router: storage trouble is 503, upstream trouble 502."""
    code = status.HTTP_503_SERVICE_UNAVAILABLE if isinstance(exc, PersistenceError) else status.HTTP_502_BAD_GATEWAY
    logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}",
                 extra=log_fields(path=request.url.path, status_code=code))
    return JSONResponse(
        status_code=code,
        content={"detail": str(exc), "error_code": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=True,
        extra=log_fields(method=request.method, path=request.url.path),
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


@app.get("/health")
async def health():
    """
    Liveness for load balancers.

    Returns:
        - 200: database reachable
        - 503: database unavailable
    """
    if not check_db_connection():
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": "unavailable"},
        )
    return {"status": "healthy", "timestamp": time.time()}


def _timed(check):
    started = time.perf_counter()
    try:
        state = check()
    except Exception as e:
        return {"status": "error", "error": str(e), "latency_ms": None}
    return {"status": state, "latency_ms": round((time.perf_counter() - started) * 1000, 2)}


def _redis_state():
    client = get_redis_client()
    if client is None:
        return "unavailable"
    client.ping()
    return "healthy"


@app.get("/health/detailed")
async def health_detailed():
    """
    Dependency checks plus the Strava request window as last reported by the worker.

    Redis only backs the leaderboard cache and the worker status, so losing it
    degrades the service rather than taking it down. Always returns 200.
    """
    checks = {
        "database": _timed(lambda: "healthy" if check_db_connection() else "unhealthy"),
        "redis": _timed(_redis_state),
    }
    if any(c["status"] in ("error", "unhealthy") for c in checks.values()):
        overall = "unhealthy"
    elif all(c["status"] == "healthy" for c in checks.values()):
        overall = "healthy"
    else:
        overall = "degraded"

    return {
        "status": overall,
        "version": APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "timestamp": time.time(),
        "checks": checks,
        "strava_window": read_status(),
    }


@app.get("/ping")
async def ping():
    return {"pong": True}


app.include_router(strava.router)
app.include_router(strava_webhook.router)
app.include_router(events.router)
