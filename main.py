"""
Guide Scheduler - FastAPI Application
Version: 1.0

HTTP surface for booking lists, guide assignment and the scheduling jobs.
The worker process runs the same jobs on a timer.
"""

import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Configure structured logging FIRST (before any other imports)
from services.logging_config import configure_logging, get_logger, set_trace_id

configure_logging(log_level=os.getenv('LOG_LEVEL', 'INFO'))

logger = get_logger(__name__)

from config import get_settings
from errors import ConflictViolation, FatalStoreError, SchedulingError, SourceUnavailable, ValidationError

settings = get_settings()


async def _connect_optional_redis():
    """Redis backs the run lock and the change feed. Reads work without it."""
    from services.readiness import redis_client

    client = redis_client(settings.REDIS_URL, settings.REDIS_MAX_CONNECTIONS)
    try:
        await client.ping()
    except Exception as e:
        logger.warning("Redis unavailable, using process-local locks", error=str(e))
        await client.aclose()
        return None
    return client


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    from database import AsyncSessionLocal, close_db, init_db, ping_db
    from services.metrics import set_app_info
    from services.readiness import wait_until_ready
    from services.wiring import build_services

    logger.info("Starting", app=settings.APP_NAME, version=settings.APP_VERSION)

    if not await wait_until_ready("Database", ping_db):
        raise RuntimeError("Database not available")
    await init_db()

    app.state.redis = await _connect_optional_redis()
    app.state.services = build_services(AsyncSessionLocal, app.state.redis)
    set_app_info(version=settings.APP_VERSION, environment=settings.APP_ENV)

    logger.info("Application ready", redis=app.state.redis is not None)

    yield

    await app.state.services.close()
    if app.state.redis is not None:
        await app.state.redis.aclose()
    await close_db()

    logger.info("Application stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Booking aggregation and tour guide assignment",
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def trace_id_middleware(request: Request, call_next):
    """Bind a trace id for the request and record its duration."""
    from services.metrics import REQUEST_DURATION

    trace_id = request.headers.get("X-Trace-ID") or uuid.uuid4().hex[:8]
    set_trace_id(trace_id)
    started = time.perf_counter()

    response = await call_next(request)
    elapsed = time.perf_counter() - started

    # Label by route template so /bookings/{booking_ref}/guide stays one series
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    REQUEST_DURATION.labels(
        method=request.method,
        endpoint=endpoint,
        status_code=str(response.status_code)
    ).observe(elapsed)

    response.headers["X-Trace-ID"] = trace_id
    logger.info(
        "Request completed",
        method=request.method,
        endpoint=endpoint,
        status_code=response.status_code,
        duration_ms=round(elapsed * 1000, 2)
    )
    return response


from routers.scheduling import router as scheduling_router
app.include_router(scheduling_router, tags=["scheduling"])


# === ERROR MAPPING ===

def _error_status(exc: SchedulingError) -> int:
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, ConflictViolation):
        return 409
    if isinstance(exc, (FatalStoreError, SourceUnavailable)):
        return 503
    return 500


@app.exception_handler(SchedulingError)
async def scheduling_exception_handler(request: Request, exc: SchedulingError):
    status_code = _error_status(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log("Request failed", path=request.url.path, error_code=exc.code, error=exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception", path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


@app.get("/health/live")
async def liveness_check():
    """Liveness check. No dependency checks."""
    return {"status": "alive"}


@app.get("/health/ready")
async def readiness_check():
    """Ready when the local store answers. Redis and Bokun are reported, not required."""
    from database import ping_db

    checks = {
        "status": "ready",
        "version": settings.APP_VERSION,
        "database": "connected",
        "redis": "not_configured",
        "bokun": "configured" if settings.bokun_configured else "not_configured",
    }

    try:
        await ping_db()
    except Exception as e:
        checks.update(status="not_ready", database="disconnected", error=str(e))
        return JSONResponse(status_code=503, content=checks)

    redis = getattr(app.state, 'redis', None)
    if redis is not None:
        try:
            await redis.ping()
            checks["redis"] = "connected"
        except Exception as e:
            checks["redis"] = f"error: {e}"

    return checks


@app.get("/")
async def root():
    return {"name": settings.APP_NAME, "version": settings.APP_VERSION, "status": "running"}


@app.get("/metrics")
async def metrics():
    from services.metrics import get_metrics
    return get_metrics()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
