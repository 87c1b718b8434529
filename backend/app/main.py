import re as _re
import secrets
import uuid as _uuid
from contextlib import asynccontextmanager

import sentry_sdk
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from app.config import settings
from app.cron.routes import router as cron_router
from app.database import async_session
from app.middleware import SecurityHeadersMiddleware
from app.payouts.routes import router as payouts_router
from app.referrals.routes import router as referrals_router
from app.signals.routes import router as signals_router
from app.utils.rate_limit import limiter

from prometheus_fastapi_instrumentator import Instrumentator

# Configure structlog: JSON in production, console in development
processors = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]
if settings.is_production:
    processors.append(structlog.processors.JSONRenderer())
else:
    processors.append(structlog.dev.ConsoleRenderer())

structlog.configure(
    processors=processors,
    wrapper_class=structlog.make_filtering_bound_logger(0),
)

logger = structlog.get_logger()

# Sentry error tracking
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=0.1,
        environment=settings.APP_ENV,
        send_default_pii=False,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    from app.services.scheduler import scheduler, start_scheduler

    logger.info("portal_startup", env=settings.APP_ENV)

    if not settings.REFERRAL_SYSTEM_ENABLED:
        logger.warning("referral_system_disabled")

    # Tests drive the jobs directly; only long-running processes schedule them
    if settings.APP_ENV != "test":
        start_scheduler()
    yield
    if scheduler.running:
        scheduler.shutdown(wait=True)
    logger.info("portal_shutdown")


app = FastAPI(
    title="Membership Portal API",
    description="Referral attribution, commission settlement and membership jobs",
    version="0.1.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions and return a safe 500 response outside development."""
    logger.exception("unhandled_exception", path=request.url.path)
    if settings.APP_ENV != "development":
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
    raise exc


# Middleware is LIFO: the last middleware added runs first.
if settings.is_production:
    # Explicit origin list only, never "*", so credentialed requests stay safe
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Internal-Key"],
    )
    if not settings.cors_origins_list:
        logger.warning("cors_origins_empty_in_production", app_env=settings.APP_ENV)
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Security headers in all environments; HSTS only in production
app.add_middleware(SecurityHeadersMiddleware, is_production=settings.is_production)


_REQUEST_ID_RE = _re.compile(r"^[a-zA-Z0-9\-]{1,64}$")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Attach a unique request ID and measure duration for every request."""
    import time as _time

    # Client-supplied IDs are validated to keep them out of log injection
    client_id = request.headers.get("X-Request-ID")
    request_id = client_id if client_id and _REQUEST_ID_RE.match(client_id) else str(_uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    start = _time.monotonic()
    try:
        response = await call_next(request)
        duration_ms = (_time.monotonic() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"
        if duration_ms > 1000:
            logger.warning(
                "slow_request",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 1),
                status_code=response.status_code,
            )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


# Hand-rolled instrumentation: metrics.default() crashes on non-numeric
# Content-Length headers.
def _safe_metrics(info) -> None:
    from prometheus_client import Counter, Histogram
    if not hasattr(_safe_metrics, "_total"):
        _safe_metrics._total = Counter(
            "portal_http_requests_total", "Total HTTP requests",
            ["method", "status", "handler"],
        )
        _safe_metrics._latency = Histogram(
            "portal_http_request_duration_seconds", "Request latency",
            ["method", "handler"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
        )
    _safe_metrics._total.labels(info.method, info.modified_status, info.modified_handler).inc()
    _safe_metrics._latency.labels(info.method, info.modified_handler).observe(info.modified_duration)


Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/health", "/metrics"],
).add(_safe_metrics).instrument(app)


@app.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request):
    """Prometheus metrics endpoint (protected by API key)."""
    from prometheus_client import generate_latest
    from starlette.responses import Response as StarletteResponse

    if settings.is_production and not settings.METRICS_API_KEY:
        raise HTTPException(status_code=503, detail="Metrics not available")

    if settings.METRICS_API_KEY:
        api_key = request.headers.get("x-metrics-key", "")
        if not secrets.compare_digest(api_key.encode(), settings.METRICS_API_KEY.encode()):
            raise HTTPException(
                status_code=403,
                detail="Invalid metrics API key",
            )

    return StarletteResponse(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )

app.include_router(referrals_router, prefix="/referrals", tags=["referrals"])
app.include_router(signals_router, prefix="/signals", tags=["signals"])
app.include_router(cron_router, prefix="/cron", tags=["cron"])
app.include_router(payouts_router, prefix="/payouts", tags=["payouts"])


@app.get("/health")
@limiter.limit("60/minute")
async def health_check(request: Request):
    """Health check with database and Redis connectivity verification."""
    result: dict = {"status": "ok", "database": "connected", "redis": "connected"}

    try:
        async with async_session() as db:
            await db.execute(text("SELECT 1"))
    except Exception:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected", "redis": "unknown"},
        )

    # Redis only backs rate limiting; the API works without it
    if settings.REDIS_URL:
        try:
            import redis.asyncio as aioredis
            r = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
            await r.ping()
            await r.aclose()
        except Exception:
            result["redis"] = "unavailable"
    else:
        result["redis"] = "not_configured"

    from app.services.scheduler import scheduler
    result["scheduler"] = "running" if scheduler.running else "stopped"

    if settings.is_production:
        db_ok = result.get("database") == "connected"
        redis_ok = result.get("redis") in ("connected", "not_configured")
        sched_ok = result.get("scheduler") == "running"
        overall = "ok" if (db_ok and redis_ok and sched_ok) else "unhealthy"
        return {
            "status": overall,
            "database": "ok" if db_ok else "error",
            "redis": "ok" if redis_ok else "error",
            "scheduler": "ok" if sched_ok else "error",
        }
    return result
