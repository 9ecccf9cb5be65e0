"""
Order Service - idempotent creation and version-fenced status transitions

Concurrency correctness comes from two storage guarantees only:
1. The unique constraint on client_token (one order per token, ever)
2. The version predicate in the status UPDATE (no lost updates)

Nothing here assumes mutual exclusion between instances.
"""
from typing import Any, List, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from orderpay.core.auth import Principal
from orderpay.core.cache import EphemeralCache, OrderCacheKey
from orderpay.core.clock import utcnow
from orderpay.core.config import settings
from orderpay.core.exceptions import (
    AppException,
    DuplicateClientTokenError,
    OrderNotFoundError,
    OrderVersionConflictError,
    ValidationException,
)
from orderpay.core.logging import get_logger, log_async_operation
from orderpay.core.metrics import OrderMetrics
from orderpay.db.ledger import OrderLedger
from orderpay.db.models.order import Order, OrderStatus
from orderpay.domain.schemas import OrderItem, OrderRead

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


def _validate_items(items: Sequence[Any]) -> List[OrderItem]:
    if not items:
        raise ValidationException("Items must be a non-empty array", field="items")
    validated = []
    for index, raw in enumerate(items):
        try:
            validated.append(
                raw if isinstance(raw, OrderItem) else OrderItem.model_validate(raw)
            )
        except ValidationError as e:
            raise ValidationException(
                "Invalid order item",
                field=f"items[{index}]",
                details={"errors": [err["msg"] for err in e.errors()]},
            )
    return validated


def _coerce_status(value: Any) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationException(f"Invalid status: {value}", field="status")


class OrderService:
    """Service for creating, listing and transitioning orders"""

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[EphemeralCache],
        metrics: OrderMetrics,
    ):
        self.db = db
        self.orders = OrderLedger(db)
        self.cache = cache
        self.metrics = metrics

    async def create_order(
        self,
        owner_id: int,
        items: Sequence[Any],
        client_token: str,
    ) -> Order:
        """Create an order, or return the one already created for ``client_token``"""
        order, _ = await self.create_order_with_outcome(owner_id, items, client_token)
        return order

    @log_async_operation("create_order")
    async def create_order_with_outcome(
        self,
        owner_id: int,
        items: Sequence[Any],
        client_token: str,
    ) -> Tuple[Order, bool]:
        """
        Same as create_order, plus whether a new row was inserted.

        1. Validate input (nothing touches storage on failure)
        2. Look up by client_token: replay returns the stored order unchanged
        3. Insert PENDING/version 1 with total = Σ price × quantity
        4. Lost the insert race → re-read and return the winner's row
        """
        validated = _validate_items(items)
        if not client_token or not client_token.strip():
            raise ValidationException("Client token is required", field="client_token")

        existing = await self.orders.get_by_client_token(client_token)
        if existing is not None:
            self._log_replay(existing, owner_id)
            return existing, False

        order = Order(
            user_id=owner_id,
            client_token=client_token,
            items=[item.model_dump() for item in validated],
            total_amount=sum(item.subtotal for item in validated),
            currency=settings.DEFAULT_CURRENCY,
            status=OrderStatus.PENDING,
            version=1,
        )

        try:
            await self.orders.insert(order)
        except DuplicateClientTokenError:
            winner = await self.orders.get_by_client_token(client_token)
            await self.db.commit()
            if winner is None:
                # unique violation without a visible row: the winner rolled back
                raise AppException("Order creation conflicted and no order was found")
            logger.info(
                "Concurrent create resolved to existing order",
                extra_data={"order_id": winner.id, "owner_id": owner_id},
            )
            self._log_replay(winner, owner_id)
            return winner, False

        await self.db.commit()
        await self.db.refresh(order)
        self.metrics.record_order_created()

        logger.info(
            "Order created",
            extra_data={
                "order_id": order.id,
                "owner_id": owner_id,
                "total_amount": order.total_amount,
                "items": len(validated),
            },
        )
        return order, True

    def _log_replay(self, order: Order, owner_id: int) -> None:
        if order.user_id != owner_id:
            logger.warning(
                "Client token reused by a different owner",
                extra_data={"order_id": order.id, "owner_id": owner_id},
            )
        else:
            logger.info("Idempotent order replay", extra_data={"order_id": order.id})

    async def list_orders(
        self,
        principal: Principal,
        status: Optional[OrderStatus] = None,
        q: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Order], int]:
        """Ownership-scoped page of orders, newest first, plus the total match count"""
        if page < 1:
            raise ValidationException("page must be >= 1", field="page")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationException(
                f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit"
            )
        if status is not None:
            status = _coerce_status(status)

        return await self.orders.search(
            owner_id=principal.owner_filter,
            status=status,
            sku_query=q.strip() if q else None,
            offset=(page - 1) * limit,
            limit=limit,
        )

    async def get_order_by_id(self, order_id: str, principal: Principal) -> OrderRead:
        """
        Read-through the order cache; straight from the store when the
        service runs without one.

        A non-owner gets OrderNotFoundError, same as for a missing order.
        """
        if self.cache is None:
            return await self._read_snapshot(order_id, principal)

        key = OrderCacheKey(order_id, principal.cache_scope)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        generation = self.cache.generation(order_id)
        snapshot = await self._read_snapshot(order_id, principal)
        # skipped when a status change landed while the row was being read
        self.cache.set(key, snapshot, settings.ORDER_CACHE_TTL_SECONDS, generation=generation)
        return snapshot

    async def _read_snapshot(self, order_id: str, principal: Principal) -> OrderRead:
        order = await self.orders.get(order_id, owner_id=principal.owner_filter, refresh=True)
        if order is None:
            raise OrderNotFoundError(order_id)
        return OrderRead.model_validate(order)

    async def update_order_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        expected_version: Optional[int] = None,
    ) -> Order:
        """
        Optimistic-concurrency status change.

        With ``expected_version`` the UPDATE carries ``version = expected`` in
        its predicate, so of two writers holding the same version exactly one
        succeeds. Without it (tolerant mode) the update always applies and the
        database increments the version.
        """
        new_status = _coerce_status(new_status)
        if expected_version is not None and expected_version < 1:
            raise ValidationException("version must be >= 1", field="version")

        current = await self.orders.get(order_id, refresh=True)
        if current is None:
            raise OrderNotFoundError(order_id)

        current_version = current.version
        if expected_version is not None and current_version != expected_version:
            await self.db.rollback()
            logger.info(
                "Order version conflict",
                extra_data={
                    "order_id": order_id,
                    "expected_version": expected_version,
                    "current_version": current_version,
                },
            )
            raise OrderVersionConflictError(order_id, expected_version, current_version)

        affected = await self.orders.compare_and_set_status(
            order_id, new_status, expected_version, utcnow()
        )
        if not affected:
            await self.db.rollback()
            if expected_version is None:
                raise OrderNotFoundError(order_id)
            logger.info(
                "Order version conflict on guarded update",
                extra_data={"order_id": order_id, "expected_version": expected_version},
            )
            raise OrderVersionConflictError(order_id, expected_version)

        await self.db.commit()
        if self.cache is not None:
            self.cache.invalidate_order(order_id)

        updated = await self.orders.get(order_id, refresh=True)
        logger.info(
            "Order status updated",
            extra_data={
                "order_id": order_id,
                "status": new_status.value,
                "version": updated.version,
            },
        )
        return updated
