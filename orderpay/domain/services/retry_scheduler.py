"""
Delay queue for webhook retries.

A scheduled job carries the full event and the attempt number it will run
as. Nothing here sleeps on the caller's path.
"""
import asyncio
from typing import Awaitable, Callable, Optional, Protocol, Set

from orderpay.core.logging import get_correlation_id, get_logger
from orderpay.domain.schemas import PaymentWebhookEvent

logger = get_logger(__name__)

RetryHandler = Callable[[PaymentWebhookEvent, int], Awaitable[object]]


class RetryScheduler(Protocol):
    def schedule(
        self, event: PaymentWebhookEvent, attempt: int, delay_seconds: float
    ) -> None:
        ...


class AsyncioRetryScheduler:
    """
    In-process delay queue: one detached task per pending retry.

    Pending retries die with the process; ``shutdown`` cancels them.
    """

    def __init__(self, handler: Optional[RetryHandler] = None):
        self._handler = handler
        self._tasks: Set[asyncio.Task] = set()

    def bind(self, handler: RetryHandler) -> None:
        self._handler = handler

    def schedule(
        self, event: PaymentWebhookEvent, attempt: int, delay_seconds: float
    ) -> None:
        if self._handler is None:
            raise RuntimeError("AsyncioRetryScheduler has no handler bound")
        task = asyncio.create_task(self._run_later(event, attempt, delay_seconds))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_later(
        self, event: PaymentWebhookEvent, attempt: int, delay_seconds: float
    ) -> None:
        await asyncio.sleep(delay_seconds)
        await self._handler(event, attempt)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        if self._tasks:
            logger.warning(
                "Cancelling pending webhook retries",
                extra_data={"pending": len(self._tasks)},
            )
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


class CeleryRetryScheduler:
    """
    Durable delay queue through the Celery broker (countdown).

    The correlation id rides along so the retry logs under the original one.
    """

    def schedule(
        self, event: PaymentWebhookEvent, attempt: int, delay_seconds: float
    ) -> None:
        from orderpay.workers.tasks import process_payment_webhook

        process_payment_webhook.apply_async(
            args=[event.model_dump(mode="json"), attempt, get_correlation_id()],
            countdown=delay_seconds,
        )


def build_retry_scheduler(backend: str) -> RetryScheduler:
    if backend == "celery":
        return CeleryRetryScheduler()
    return AsyncioRetryScheduler()
