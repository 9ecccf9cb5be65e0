"""
Ledger Store: access contracts for orders, payments and the retry log.

Every mutation here is one conditional statement. Callers never get mutual
exclusion from this layer; they get a row count back and decide what a zero
means:

    affected = await OrderLedger(db).compare_and_set_status(order_id, status, 3, utcnow())
    if not affected:
        ...  # somebody else moved the version first

Commits are the caller's business.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from orderpay.core.exceptions import (
    DuplicateClientTokenError,
    DuplicatePendingPaymentError,
    TransientStorageError,
)
from orderpay.db.compat import like_pattern, sku_text
from orderpay.db.models.order import Order, OrderStatus
from orderpay.db.models.payment import Payment, PaymentStatus
from orderpay.db.models.webhook_retry_log import WebhookRetryLog

_MAX_ERROR_MESSAGE_CHARS = 1000


@contextmanager
def translate_storage_errors(operation: str) -> Iterator[None]:
    """Re-raise driver connectivity failures as TransientStorageError"""
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        raise TransientStorageError(operation, str(exc.orig or exc)) from exc


class OrderLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(
        self,
        order_id: str,
        owner_id: Optional[int] = None,
        *,
        refresh: bool = False,
    ) -> Optional[Order]:
        """Fetch an order, optionally scoped to its owner.

        ``refresh`` overwrites an identity-map copy left stale by a bulk UPDATE.
        """
        query = select(Order).where(Order.id == order_id)
        if owner_id is not None:
            query = query.where(Order.user_id == owner_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_client_token(self, client_token: str) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.client_token == client_token)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def insert(self, order: Order) -> Order:
        """
        Insert inside a SAVEPOINT.

        Raises DuplicateClientTokenError when the unique constraint on
        client_token rejects the row; the outer transaction stays usable.
        """
        try:
            async with self.db.begin_nested():
                self.db.add(order)
                await self.db.flush()
        except IntegrityError as exc:
            raise DuplicateClientTokenError(order.client_token) from exc
        return order

    async def search(
        self,
        *,
        owner_id: Optional[int] = None,
        status: Optional[OrderStatus] = None,
        sku_query: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[Order], int]:
        """Filtered page plus the total number of matches (independent of paging)"""
        filters = []
        if owner_id is not None:
            filters.append(Order.user_id == owner_id)
        if status is not None:
            filters.append(Order.status == status)
        if sku_query:
            filters.append(
                sku_text(Order.items).ilike(like_pattern(sku_query), escape="\\")
            )

        total = await self.db.scalar(
            select(func.count()).select_from(Order).where(*filters)
        )
        result = await self.db.execute(
            select(Order)
            .where(*filters)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), int(total or 0)

    async def compare_and_set_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        expected_version: Optional[int],
        now: datetime,
    ) -> int:
        """
        UPDATE orders SET status, version = version + 1
        WHERE id = :id [AND version = :expected_version]

        Without an expected version the increment is still done by the
        database, so concurrent tolerant writers never reuse a version.
        """
        stmt = update(Order).where(Order.id == order_id)
        if expected_version is not None:
            stmt = stmt.where(Order.version == expected_version)
        stmt = stmt.values(
            status=new_status,
            version=Order.version + 1,
            updated_at=now,
        ).execution_options(synchronize_session=False)
        result = await self.db.execute(stmt)
        return result.rowcount

    async def mark_paid(self, order_id: str, now: datetime) -> int:
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(
                status=OrderStatus.PAID,
                version=Order.version + 1,
                updated_at=now,
                paid_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class PaymentLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(
        self,
        payment_id: str,
        owner_id: Optional[int] = None,
    ) -> Optional[Payment]:
        query = select(Payment).where(Payment.id == payment_id)
        if owner_id is not None:
            query = query.join(Order, Payment.order_id == Order.id).where(
                Order.user_id == owner_id
            )
        result = await self.db.execute(
            query.execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_reusable_pending(self, order_id: str, now: datetime) -> Optional[Payment]:
        """Newest PENDING payment of the order that has not expired yet"""
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.order_id == order_id,
                Payment.status == PaymentStatus.PENDING,
                Payment.expires_at > now,
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def insert(self, payment: Payment) -> Payment:
        """
        Insert inside a SAVEPOINT.

        Raises DuplicatePendingPaymentError when the order already holds a
        PENDING payment; the outer transaction stays usable.
        """
        try:
            async with self.db.begin_nested():
                self.db.add(payment)
                await self.db.flush()
        except IntegrityError as exc:
            raise DuplicatePendingPaymentError(payment.order_id) from exc
        return payment

    async def settle(
        self,
        payment_id: str,
        status: PaymentStatus,
        transaction_id: Optional[str],
        failure_reason: Optional[str],
        now: datetime,
    ) -> int:
        """Move a PENDING payment to a terminal status; 0 if it already left PENDING"""
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(
                status=status,
                transaction_id=transaction_id,
                failure_reason=failure_reason,
                updated_at=now,
                processed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def cancel_if_pending(self, payment_id: str, reason: str, now: datetime) -> int:
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(
                status=PaymentStatus.CANCELLED,
                failure_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def force_fail_if_pending(self, payment_id: str, reason: str, now: datetime) -> int:
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(
                status=PaymentStatus.FAILED,
                failure_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def cancel_expired(
        self,
        now: datetime,
        *,
        order_id: Optional[str] = None,
        exclude_payment_id: Optional[str] = None,
        reason: str = "Payment expired",
    ) -> int:
        stmt = update(Payment).where(
            Payment.status == PaymentStatus.PENDING,
            Payment.expires_at < now,
        )
        if order_id is not None:
            stmt = stmt.where(Payment.order_id == order_id)
        if exclude_payment_id is not None:
            stmt = stmt.where(Payment.id != exclude_payment_id)
        result = await self.db.execute(
            stmt.values(
                status=PaymentStatus.CANCELLED,
                failure_reason=reason,
                updated_at=now,
            ).execution_options(synchronize_session=False)
        )
        return result.rowcount


class RetryLogLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        *,
        payment_id: str,
        order_id: Optional[str],
        attempt_number: int,
        error_message: str,
        retry_at: Optional[datetime] = None,
        final_failure: bool = False,
    ) -> WebhookRetryLog:
        entry = WebhookRetryLog(
            payment_id=payment_id,
            order_id=order_id,
            attempt_number=attempt_number,
            error_message=error_message[:_MAX_ERROR_MESSAGE_CHARS],
            retry_at=retry_at,
            final_failure=final_failure,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry
