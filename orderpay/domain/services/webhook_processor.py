"""
Payment Webhook Processor

Inbound provider notifications go through two stages:

1. ``verify`` - synchronous hard gates on the raw request. A failure here is
   answered with 401 and has no side effects.
2. ``process`` - runs after the provider has been acknowledged. Applies the
   event under a duplicate gate, retries failures with exponential backoff,
   and dead-letters the payment once the attempts are used up.

Replays are safe: a payment leaves PENDING exactly once, every terminal
write carries ``status = PENDING`` in its predicate.
"""
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Callable, Optional, Union

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderpay.core.cache import EphemeralCache
from orderpay.core.clock import utcnow
from orderpay.core.config import settings
from orderpay.core.exceptions import (
    PaymentNotFoundError,
    ValidationException,
    WebhookSignatureError,
)
from orderpay.core.logging import bind_log_context, get_logger
from orderpay.core.metrics import OrderMetrics
from orderpay.db.ledger import (
    OrderLedger,
    PaymentLedger,
    RetryLogLedger,
    translate_storage_errors,
)
from orderpay.db.models.payment import PaymentStatus
from orderpay.domain.schemas import PaymentWebhookEvent, WebhookEventStatus
from orderpay.domain.services.payment_service import PaymentService
from orderpay.domain.services.retry_scheduler import RetryScheduler

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="
DEAD_LETTER_REASON = "Webhook processing failed after maximum retries"

_SETTLED_STATUS = {
    WebhookEventStatus.SUCCESS: PaymentStatus.SUCCESS,
    WebhookEventStatus.FAILED: PaymentStatus.FAILED,
    WebhookEventStatus.CANCELLED: PaymentStatus.CANCELLED,
}


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 over ``"{timestamp}.{raw_body}"``"""
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def calculate_backoff_seconds(attempt: int) -> int:
    """Delay before the attempt that follows ``attempt``: 2, 4, 8, ..."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return 2 ** attempt


class PaymentWebhookProcessor:
    """
    Verifies and applies payment webhooks.

    Each attempt opens its own session from ``session_factory``; a retry
    never inherits a session that failed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[EphemeralCache],
        metrics: OrderMetrics,
        scheduler: RetryScheduler,
        *,
        secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
        max_attempts: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.metrics = metrics
        self.scheduler = scheduler
        self.secret = settings.WEBHOOK_SECRET if secret is None else secret
        self.tolerance_seconds = (
            settings.WEBHOOK_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds
        )
        self.max_attempts = settings.WEBHOOK_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.clock = clock

    def verify(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        timestamp_header: Optional[str],
    ) -> None:
        """Raise WebhookSignatureError unless every gate passes"""
        try:
            self._check_signature(raw_body, signature_header, timestamp_header)
        except WebhookSignatureError as e:
            self.metrics.record_webhook_outcome("rejected")
            logger.warning(
                "Webhook rejected",
                extra_data={"reason": e.reason},
            )
            raise

    def _check_signature(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        timestamp_header: Optional[str],
    ) -> None:
        if not signature_header or not timestamp_header:
            raise WebhookSignatureError("missing_headers")

        timestamp = timestamp_header.strip()
        try:
            sent_at = int(timestamp)
        except ValueError:
            raise WebhookSignatureError("invalid_timestamp")

        if abs(self.clock() - sent_at) > self.tolerance_seconds:
            raise WebhookSignatureError("timestamp_out_of_tolerance")

        if not self.secret:
            logger.error("WEBHOOK_SECRET is empty, cannot verify webhooks")
            raise WebhookSignatureError("secret_not_configured")

        provided = signature_header.strip()
        if provided.startswith(SIGNATURE_PREFIX):
            provided = provided[len(SIGNATURE_PREFIX):]

        expected = compute_signature(self.secret, timestamp, raw_body)
        if not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
            raise WebhookSignatureError("signature_mismatch")

    def parse_event(self, raw_body: Union[bytes, str]) -> PaymentWebhookEvent:
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise ValidationException("Webhook body is not valid JSON")
        try:
            return PaymentWebhookEvent.model_validate(payload)
        except ValidationError as e:
            raise ValidationException(
                "Invalid webhook payload",
                details={"errors": [err["msg"] for err in e.errors()]},
            )

    async def apply(self, event: PaymentWebhookEvent) -> str:
        """
        Apply one event in a single transaction; returns the outcome label.

        SUCCESS settles the payment and marks its order PAID together. A
        payment that already left PENDING is never written again.
        """
        async with self.session_factory() as db:
            with translate_storage_errors("apply_payment_webhook"):
                payments = PaymentLedger(db)
                payment = await payments.get(event.payment_id)
                if payment is None:
                    raise PaymentNotFoundError(event.payment_id)

                if payment.status != PaymentStatus.PENDING:
                    return self._already_settled(payment, event)

                # rollback expires the row, keep plain values
                payment_id, order_id = payment.id, payment.order_id
                if order_id != event.order_id:
                    logger.warning(
                        "Webhook order_id does not match payment",
                        extra_data={
                            "payment_id": payment_id,
                            "payment_order_id": order_id,
                            "event_order_id": event.order_id,
                        },
                    )

                now = utcnow()
                affected = await payments.settle(
                    payment_id,
                    _SETTLED_STATUS[event.status],
                    event.transaction_id,
                    event.failure_reason,
                    now,
                )
                if not affected:
                    # another delivery settled it between our read and write
                    await db.rollback()
                    logger.info(
                        "Webhook lost settle race",
                        extra_data={"payment_id": payment_id},
                    )
                    return "duplicate"

                if event.status == WebhookEventStatus.SUCCESS:
                    await OrderLedger(db).mark_paid(order_id, now)

                await db.commit()

        if self.cache is not None:
            self.cache.invalidate_order(order_id)
        logger.info(
            "Payment webhook applied",
            extra_data={
                "payment_id": payment_id,
                "order_id": order_id,
                "status": event.status.value,
                "transaction_id": event.transaction_id,
            },
        )

        await self._expire_siblings(order_id, payment_id)
        return "applied"

    def _already_settled(self, payment, event: PaymentWebhookEvent) -> str:
        if payment.transaction_id == event.transaction_id:
            logger.info(
                "Duplicate webhook ignored",
                extra_data={"payment_id": payment.id, "status": payment.status.value},
            )
            return "duplicate"
        logger.warning(
            "Webhook for settled payment ignored",
            extra_data={
                "payment_id": payment.id,
                "status": payment.status.value,
                "stored_transaction_id": payment.transaction_id,
                "event_transaction_id": event.transaction_id,
            },
        )
        return "ignored"

    async def _expire_siblings(self, order_id: str, payment_id: str) -> None:
        try:
            async with self.session_factory() as db:
                await PaymentService(db).cancel_expired_payments(
                    order_id=order_id, exclude_payment_id=payment_id
                )
        except Exception as e:
            logger.warning(
                "Expired payment cleanup failed",
                extra_data={"order_id": order_id, "error": str(e)},
            )

    async def process(self, event: PaymentWebhookEvent, attempt: int = 1) -> str:
        """
        Retry boundary around ``apply``. Never raises.

        Attempt ``n`` failing with ``n < max_attempts`` schedules attempt
        ``n + 1`` after ``2 ** n`` seconds; the last failure dead-letters.
        """
        with bind_log_context(payment_id=event.payment_id, attempt=attempt):
            try:
                outcome = await self.apply(event)
            except Exception as e:
                outcome = await self._handle_failure(event, attempt, e)
        self.metrics.record_webhook_outcome(outcome)
        return outcome

    async def _handle_failure(
        self, event: PaymentWebhookEvent, attempt: int, error: Exception
    ) -> str:
        message = str(error) or error.__class__.__name__
        log_data = {
            "payment_id": event.payment_id,
            "order_id": event.order_id,
            "attempt": attempt,
            "error": message,
        }

        if attempt < self.max_attempts:
            delay = calculate_backoff_seconds(attempt)
            log_data["retry_in_seconds"] = delay
            logger.warning("Webhook processing failed, retry scheduled", extra_data=log_data)
            await self._record_attempt(
                event,
                attempt,
                message,
                retry_at=utcnow() + timedelta(seconds=delay),
            )
            self.scheduler.schedule(event, attempt + 1, delay)
            return "retry_scheduled"

        logger.error("Webhook processing dead-lettered", extra_data=log_data)
        await self._dead_letter(event, attempt, message)
        return "dead_lettered"

    async def _record_attempt(
        self,
        event: PaymentWebhookEvent,
        attempt: int,
        message: str,
        retry_at=None,
        final_failure: bool = False,
    ) -> None:
        try:
            async with self.session_factory() as db:
                await RetryLogLedger(db).append(
                    payment_id=event.payment_id,
                    order_id=event.order_id,
                    attempt_number=attempt,
                    error_message=message,
                    retry_at=retry_at,
                    final_failure=final_failure,
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "Could not write webhook retry record",
                extra_data={"payment_id": event.payment_id, "error": str(e)},
            )

    async def _dead_letter(self, event: PaymentWebhookEvent, attempt: int, message: str) -> None:
        # the final record is committed on its own so a failed force-fail keeps it
        await self._record_attempt(
            event, attempt, f"Max retries exceeded: {message}", final_failure=True
        )
        try:
            async with self.session_factory() as db:
                failed = await PaymentLedger(db).force_fail_if_pending(
                    event.payment_id, DEAD_LETTER_REASON, utcnow()
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "Could not dead-letter payment",
                extra_data={"payment_id": event.payment_id, "error": str(e)},
            )
            return

        if failed:
            logger.error(
                "Payment forced to FAILED",
                extra_data={"payment_id": event.payment_id, "order_id": event.order_id},
            )
