"""
Per-request service wiring.

Process-wide collaborators (cache, metrics, webhook processor) live on
``app.state`` and are created at startup.
"""
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from orderpay.core.cache import EphemeralCache
from orderpay.core.metrics import OrderMetrics
from orderpay.db.database import get_db
from orderpay.domain.services.order_service import OrderService
from orderpay.domain.services.payment_service import PaymentService
from orderpay.domain.services.webhook_processor import PaymentWebhookProcessor


def get_cache(request: Request) -> Optional[EphemeralCache]:
    # None when payments are settled by Celery workers
    return request.app.state.order_cache


def get_metrics(request: Request) -> OrderMetrics:
    return request.app.state.metrics


def get_webhook_processor(request: Request) -> PaymentWebhookProcessor:
    return request.app.state.webhook_processor


def get_order_service(
    db: AsyncSession = Depends(get_db),
    cache: Optional[EphemeralCache] = Depends(get_cache),
    metrics: OrderMetrics = Depends(get_metrics),
) -> OrderService:
    return OrderService(db, cache, metrics)


def get_payment_service(db: AsyncSession = Depends(get_db)) -> PaymentService:
    return PaymentService(db)
