"""
Payment Service - initiation, status, cancellation and expiry of payments

Payments are created here and only here; the webhook processor settles them,
it never creates one.
"""
from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from orderpay.core.auth import Principal
from orderpay.core.clock import utcnow
from orderpay.core.config import settings
from orderpay.core.exceptions import (
    AppException,
    DuplicatePendingPaymentError,
    OrderAlreadyPaidError,
    OrderNotFoundError,
    PaymentNotCancellableError,
    PaymentNotFoundError,
)
from orderpay.core.logging import get_logger
from orderpay.db.ledger import OrderLedger, PaymentLedger, translate_storage_errors
from orderpay.db.models.order import OrderStatus
from orderpay.db.models.payment import Payment, PaymentStatus, generate_payment_id

logger = get_logger(__name__)

CANCELLED_BY_USER = "Cancelled by user"
EXPIRED_REASON = "Payment expired"


class PaymentService:
    """Service for the provider-facing side of payments"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.orders = OrderLedger(db)
        self.payments = PaymentLedger(db)

    async def initiate_payment(
        self,
        order_id: str,
        principal: Principal,
        currency: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Tuple[Payment, bool]:
        """
        Start paying for an order.

        Returns ``(payment, reused)``. A still-valid PENDING payment of the
        order is handed back instead of opening a second one; an expired one
        is cancelled first, so the order never holds two PENDING payments.
        """
        order = await self.orders.get(order_id, owner_id=principal.owner_filter, refresh=True)
        if order is None:
            raise OrderNotFoundError(order_id)
        if order.status == OrderStatus.PAID:
            raise OrderAlreadyPaidError(order_id)

        now = utcnow()
        existing = await self.payments.get_reusable_pending(order_id, now)
        if existing is not None:
            return self._reuse(existing)

        expired = await self.payments.cancel_expired(now, order_id=order_id, reason=EXPIRED_REASON)
        if expired:
            logger.info(
                "Expired payments cancelled before initiation",
                extra_data={"order_id": order_id, "cancelled": expired},
            )

        payment_id = generate_payment_id()
        payment = Payment(
            id=payment_id,
            order_id=order.id,
            amount=order.total_amount,
            currency=currency or order.currency or settings.DEFAULT_CURRENCY,
            payment_method=payment_method or settings.DEFAULT_PAYMENT_METHOD,
            redirect_url=f"{settings.PAYMENT_PROVIDER_URL}/pay/{payment_id}",
            status=PaymentStatus.PENDING,
            expires_at=now + timedelta(minutes=settings.PAYMENT_EXPIRY_MINUTES),
            created_at=now,
            updated_at=now,
        )
        try:
            await self.payments.insert(payment)
        except DuplicatePendingPaymentError:
            winner = await self.payments.get_reusable_pending(order_id, now)
            await self.db.commit()
            if winner is None:
                raise AppException("Payment initiation conflicted and no pending payment was found")
            return self._reuse(winner)

        await self.db.commit()

        logger.info(
            "Payment initiated",
            extra_data={
                "payment_id": payment.id,
                "order_id": order.id,
                "amount": payment.amount,
                "payment_method": payment.payment_method,
            },
        )
        return payment, False

    def _reuse(self, payment: Payment) -> Tuple[Payment, bool]:
        logger.info(
            "Reusing pending payment",
            extra_data={"payment_id": payment.id, "order_id": payment.order_id},
        )
        return payment, True

    async def get_payment(self, payment_id: str, principal: Principal) -> Payment:
        payment = await self.payments.get(payment_id, owner_id=principal.owner_filter)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        return payment

    async def cancel_payment(self, payment_id: str, principal: Principal) -> Payment:
        """Cancel a PENDING payment; anything else is a conflict"""
        payment = await self.get_payment(payment_id, principal)

        affected = await self.payments.cancel_if_pending(payment_id, CANCELLED_BY_USER, utcnow())
        if not affected:
            await self.db.rollback()
            current = await self.payments.get(payment_id)
            raise PaymentNotCancellableError(
                payment_id, current.status.value if current else payment.status.value
            )
        await self.db.commit()

        logger.info(
            "Payment cancelled",
            extra_data={"payment_id": payment_id, "order_id": payment.order_id},
        )
        return await self.payments.get(payment_id)

    async def cancel_expired_payments(
        self,
        order_id: Optional[str] = None,
        exclude_payment_id: Optional[str] = None,
    ) -> int:
        """Sweep PENDING payments past ``expires_at`` to CANCELLED"""
        with translate_storage_errors("cancel_expired_payments"):
            cancelled = await self.payments.cancel_expired(
                utcnow(),
                order_id=order_id,
                exclude_payment_id=exclude_payment_id,
                reason=EXPIRED_REASON,
            )
            await self.db.commit()

        if cancelled:
            logger.info(
                "Expired payments cancelled",
                extra_data={"order_id": order_id, "cancelled": cancelled},
            )
        return cancelled
