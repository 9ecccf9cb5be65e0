"""
Celery Tasks

Webhook retries (when WEBHOOK_RETRY_BACKEND=celery) and the periodic sweep of
expired payments. Each task runs its coroutine on a fresh event loop with a
fresh database engine.
"""
import asyncio
from contextlib import contextmanager
from typing import Optional

from orderpay.workers.celery_app import celery_app
from orderpay.db.database import get_task_session
from orderpay.domain.schemas import PaymentWebhookEvent
from orderpay.domain.services.payment_service import PaymentService
from orderpay.core.logging import get_logger, set_correlation_id
from orderpay.core.metrics import OrderMetrics

logger = get_logger(__name__)

# Worker-local counters. No order cache here: with the Celery backend the
# API runs without one, so there is nothing a worker could leave stale.
_worker_metrics = OrderMetrics()


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro, correlation_id: Optional[str] = None):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id(correlation_id)

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="orderpay.workers.tasks.process_payment_webhook")
def process_payment_webhook(
    event: dict, attempt: int = 1, correlation_id: Optional[str] = None
) -> str:
    """Run one processing attempt of a verified webhook event"""
    from orderpay.domain.services.retry_scheduler import CeleryRetryScheduler
    from orderpay.domain.services.webhook_processor import PaymentWebhookProcessor

    parsed = PaymentWebhookEvent.model_validate(event)

    async def _process():
        async with get_task_session() as session_factory:
            processor = PaymentWebhookProcessor(
                session_factory,
                None,
                _worker_metrics,
                CeleryRetryScheduler(),
            )
            return await processor.process(parsed, attempt)

    outcome = run_async(_process(), correlation_id)
    logger.info(
        "Webhook task finished",
        extra_data={"payment_id": parsed.payment_id, "attempt": attempt, "outcome": outcome},
    )
    return outcome


@celery_app.task(name="orderpay.workers.tasks.cancel_expired_payments")
def cancel_expired_payments() -> int:
    """Cancel every PENDING payment past its expiry"""

    async def _sweep():
        async with get_task_session() as session_factory:
            async with session_factory() as db:
                return await PaymentService(db).cancel_expired_payments()

    return run_async(_sweep())
