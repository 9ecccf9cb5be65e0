"""
Orderpay - Main FastAPI Application
"""
import asyncio
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from sqlalchemy.ext.asyncio import AsyncSession

from orderpay.core.cache import EphemeralCache, run_cache_sweeper
from orderpay.core.config import settings
from orderpay.core.logging import setup_logging, get_logger
from orderpay.core.metrics import OrderMetrics
from orderpay.core.middleware import setup_middleware, setup_exception_handlers
from orderpay.api.routes import router as api_router
from orderpay.db.database import AsyncSessionLocal, engine, Base, get_db
from orderpay.domain.services.health_service import check_readiness
from orderpay.domain.services.retry_scheduler import (
    AsyncioRetryScheduler,
    build_retry_scheduler,
)
from orderpay.domain.services.webhook_processor import PaymentWebhookProcessor

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
)

logger = get_logger(__name__)


def build_order_cache(retry_backend: str) -> Optional[EphemeralCache]:
    """
    Process-local order cache, or None under the celery retry backend.

    Celery workers settle payments in another process and cannot invalidate
    this cache, so order reads go straight to the store there.
    """
    if retry_backend == "celery":
        return None
    return EphemeralCache(settings.ORDER_CACHE_TTL_SECONDS)


def init_state(app: FastAPI) -> None:
    """Create the process-wide cache, counters and webhook processor"""
    cache = build_order_cache(settings.WEBHOOK_RETRY_BACKEND)
    metrics = OrderMetrics()
    scheduler = build_retry_scheduler(settings.WEBHOOK_RETRY_BACKEND)
    processor = PaymentWebhookProcessor(AsyncSessionLocal, cache, metrics, scheduler)
    if isinstance(scheduler, AsyncioRetryScheduler):
        scheduler.bind(processor.process)

    app.state.order_cache = cache
    app.state.metrics = metrics
    app.state.retry_scheduler = scheduler
    app.state.webhook_processor = processor


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Orders, payments and payment-provider webhooks.",
)

setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and in-process collaborators"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    init_state(app)
    if app.state.order_cache is not None:
        app.state.cache_sweeper = asyncio.create_task(
            run_cache_sweeper(app.state.order_cache, settings.CACHE_SWEEP_INTERVAL_SECONDS)
        )
    logger.info(
        "Webhook retries configured",
        extra_data={
            "backend": settings.WEBHOOK_RETRY_BACKEND,
            "max_attempts": settings.WEBHOOK_MAX_ATTEMPTS,
            "order_cache": app.state.order_cache is not None,
        },
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    sweeper = getattr(app.state, "cache_sweeper", None)
    if sweeper is not None:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)

    scheduler = getattr(app.state, "retry_scheduler", None)
    if isinstance(scheduler, AsyncioRetryScheduler):
        await scheduler.shutdown()

    await engine.dispose()
    logger.info("Database connections disposed")


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Liveness: the process answers"""
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(
        content=app.state.metrics.render(),
        media_type=CONTENT_TYPE_LATEST,
    )


@app.get("/health/ready", tags=["Health"])
async def readiness_check(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    """Readiness: 503 while the database is unreachable"""
    result = await check_readiness(db)
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
