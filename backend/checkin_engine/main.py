"""
Venue Check-in API - Main Application Entry Point

Check-in admission and reward progression for venues:
- One check-in per caller and per device per venue per cooldown window,
  enforced by conditional upserts in the database
- Live crowd level from currently valid check-ins, cached briefly in Redis
  and pushed to subscribers as +1/-1 deltas
- Per-reward loyalty progress with exactly-once redemption
- Structured logging with request correlation
"""

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from checkin_engine.core.config import get_settings
from checkin_engine.core.exceptions import CheckinEngineError
from checkin_engine.core.logging import setup_logging, get_logger
from checkin_engine.core.metrics import metrics_endpoint
from checkin_engine.api.router import api_router
from checkin_engine.api.middleware import RequestLoggingMiddleware
from checkin_engine.db.session import AsyncSessionLocal
from checkin_engine.infrastructure.crowd_feed import crowd_feed
from checkin_engine.services.cache_service import get_redis, close_redis, get_cache_stats

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )

    background: list[asyncio.Task] = []

    if settings.REDIS_ENABLED:
        if await get_redis():
            logger.info("redis_ready")
        else:
            logger.warning("redis_unavailable", message="Running without cache until Redis answers")
        # Retries until Redis answers
        background.append(asyncio.create_task(crowd_feed.listen()))
    else:
        logger.info("redis_disabled", message="Crowd deltas stay in-process")

    background.append(
        asyncio.create_task(crowd_feed.run_expiry_sweeper(AsyncSessionLocal, settings.CROWD_SWEEP_INTERVAL))
    )

    yield

    for task in background:
        task.cancel()
    for task in background:
        with suppress(asyncio.CancelledError):
            await task
    await close_redis()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Venue check-ins, live crowd levels and loyalty rewards",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Custom middleware
app.add_middleware(RequestLoggingMiddleware)

# Routes
app.include_router(api_router)


@app.exception_handler(CheckinEngineError)
async def checkin_engine_error_handler(request: Request, exc: CheckinEngineError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", error=str(exc))
    return JSONResponse(status_code=500, content=CheckinEngineError().to_dict())


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    cache_stats = await get_cache_stats()
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "cache": cache_stats,
    }


@app.get("/metrics", tags=["Health"])
async def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
