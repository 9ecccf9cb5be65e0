"""
Tests for OrderService - idempotent creation, scoped reads, versioned updates
"""
from unittest.mock import patch

import pytest
from sqlalchemy import func, select, update

from orderpay.core.auth import Principal, UserRole
from orderpay.core.exceptions import (
    OrderNotFoundError,
    OrderVersionConflictError,
    ValidationException,
)
from orderpay.db.ledger import OrderLedger
from orderpay.db.models.order import Order, OrderStatus
from orderpay.domain.schemas import OrderRead
from orderpay.domain.services.order_service import OrderService

ITEMS = [{"sku": "A1", "quantity": 2, "price": 500}]

USER = Principal(user_id=1, role=UserRole.USER)
OTHER_USER = Principal(user_id=2, role=UserRole.USER)
ADMIN = Principal(user_id=99, role=UserRole.ADMIN)


@pytest.fixture
def service(db_session, order_cache, metrics) -> OrderService:
    return OrderService(db_session, order_cache, metrics)


async def _count_orders(db_session) -> int:
    return await db_session.scalar(select(func.count()).select_from(Order))


class TestCreateOrder:
    """Tests for idempotent order creation"""

    @pytest.mark.unit
    async def test_creates_pending_order_with_computed_total(self, service, metrics):
        order, created = await service.create_order_with_outcome(7, ITEMS, "tok-1")

        assert created is True
        assert order.user_id == 7
        assert order.status == OrderStatus.PENDING
        assert order.version == 1
        assert order.total_amount == 1000
        assert order.client_token == "tok-1"
        assert metrics.orders_created() == 1

    @pytest.mark.unit
    async def test_total_sums_price_times_quantity(self, service):
        items = [
            {"sku": "A1", "quantity": 2, "price": 500},
            {"sku": "B2", "quantity": 3, "price": 250},
            {"sku": "FREE", "quantity": 1, "price": 0},
        ]
        order = await service.create_order(1, items, "tok-total")

        assert order.total_amount == 1750

    @pytest.mark.unit
    async def test_replay_returns_same_order_unchanged(self, service, metrics, db_session):
        first = await service.create_order(7, ITEMS, "tok-1")
        replay, created = await service.create_order_with_outcome(
            7, [{"sku": "ZZ", "quantity": 9, "price": 9}], "tok-1"
        )

        assert created is False
        assert replay.id == first.id
        assert replay.version == 1
        assert replay.total_amount == 1000
        assert await _count_orders(db_session) == 1
        assert metrics.orders_created() == 1

    @pytest.mark.unit
    async def test_lost_insert_race_returns_winner(self, service, metrics, order_factory, db_session):
        """The lookup misses, the insert hits the unique constraint, the winner comes back"""
        winner = await order_factory(user_id=7, client_token="race-tok")

        original = OrderLedger.get_by_client_token
        calls = 0

        async def first_lookup_misses(self, client_token):
            nonlocal calls
            calls += 1
            if calls == 1:
                return None
            return await original(self, client_token)

        with patch.object(OrderLedger, "get_by_client_token", first_lookup_misses):
            order, created = await service.create_order_with_outcome(7, ITEMS, "race-tok")

        assert created is False
        assert order.id == winner.id
        assert calls == 2
        assert await _count_orders(db_session) == 1
        assert metrics.orders_created() == 0

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "items",
        [
            [],
            [{"sku": "A1", "quantity": 0, "price": 500}],
            [{"sku": "A1", "quantity": -1, "price": 500}],
            [{"sku": "A1", "quantity": 1, "price": -1}],
            [{"sku": "  ", "quantity": 1, "price": 1}],
            [{"quantity": 1, "price": 1}],
        ],
    )
    async def test_invalid_items_rejected_before_storage(self, service, metrics, db_session, items):
        with pytest.raises(ValidationException):
            await service.create_order(1, items, "tok-invalid")

        assert await _count_orders(db_session) == 0
        assert metrics.orders_created() == 0

    @pytest.mark.unit
    @pytest.mark.parametrize("token", ["", "   "])
    async def test_empty_client_token_rejected(self, service, db_session, token):
        with pytest.raises(ValidationException) as exc_info:
            await service.create_order(1, ITEMS, token)

        assert exc_info.value.details["field"] == "client_token"
        assert await _count_orders(db_session) == 0

    @pytest.mark.unit
    async def test_invalid_item_reports_index(self, service):
        items = [ITEMS[0], {"sku": "B", "quantity": 0, "price": 1}]

        with pytest.raises(ValidationException) as exc_info:
            await service.create_order(1, items, "tok-index")

        assert exc_info.value.details["field"] == "items[1]"


class TestListOrders:
    """Tests for ownership-scoped listing"""

    @pytest.mark.unit
    async def test_user_sees_only_own_orders(self, service):
        for i in range(3):
            await service.create_order(USER.user_id, ITEMS, f"own-{i}")
        await service.create_order(OTHER_USER.user_id, ITEMS, "other-0")

        orders, total = await service.list_orders(USER)

        assert total == 3
        assert {o.user_id for o in orders} == {USER.user_id}

    @pytest.mark.unit
    async def test_admin_sees_all_orders(self, service):
        await service.create_order(USER.user_id, ITEMS, "own-0")
        await service.create_order(OTHER_USER.user_id, ITEMS, "other-0")

        orders, total = await service.list_orders(ADMIN)

        assert total == 2
        assert len(orders) == 2

    @pytest.mark.unit
    async def test_newest_first_and_paged(self, service):
        for i in range(5):
            await service.create_order(USER.user_id, ITEMS, f"page-{i}")

        first_page, total = await service.list_orders(USER, page=1, limit=2)
        last_page, _ = await service.list_orders(USER, page=3, limit=2)

        assert total == 5
        assert len(first_page) == 2
        assert len(last_page) == 1
        keys = [(o.created_at, o.id) for o in first_page]
        assert keys == sorted(keys, reverse=True)

    @pytest.mark.unit
    async def test_status_filter(self, service):
        kept = await service.create_order(USER.user_id, ITEMS, "status-0")
        await service.create_order(USER.user_id, ITEMS, "status-1")
        await service.update_order_status(kept.id, OrderStatus.CANCELLED)

        orders, total = await service.list_orders(USER, status=OrderStatus.CANCELLED)

        assert total == 1
        assert orders[0].id == kept.id

    @pytest.mark.unit
    async def test_sku_search_is_case_insensitive_substring(self, service):
        widget = await service.create_order(
            USER.user_id, [{"sku": "WIDGET-9", "quantity": 1, "price": 10}], "search-0"
        )
        await service.create_order(USER.user_id, ITEMS, "search-1")

        orders, total = await service.list_orders(USER, q="widget")

        assert total == 1
        assert orders[0].id == widget.id

    @pytest.mark.unit
    @pytest.mark.parametrize("q", ["price", "quantity", "%", "_"])
    async def test_sku_search_does_not_match_json_keys_or_wildcards(self, service, q):
        await service.create_order(USER.user_id, ITEMS, "search-keys")

        _, total = await service.list_orders(USER, q=q)

        assert total == 0

    @pytest.mark.unit
    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (1, 101)])
    async def test_paging_bounds(self, service, page, limit):
        with pytest.raises(ValidationException):
            await service.list_orders(USER, page=page, limit=limit)


class TestGetOrderById:
    """Tests for cached, owner-scoped reads"""

    @pytest.mark.unit
    async def test_owner_gets_snapshot(self, service):
        order = await service.create_order(USER.user_id, ITEMS, "get-0")

        snapshot = await service.get_order_by_id(order.id, USER)

        assert isinstance(snapshot, OrderRead)
        assert snapshot.id == order.id
        assert snapshot.items[0].sku == "A1"

    @pytest.mark.unit
    async def test_non_owner_gets_not_found(self, service):
        order = await service.create_order(USER.user_id, ITEMS, "get-1")

        with pytest.raises(OrderNotFoundError):
            await service.get_order_by_id(order.id, OTHER_USER)

    @pytest.mark.unit
    async def test_admin_reads_any_order(self, service):
        order = await service.create_order(USER.user_id, ITEMS, "get-2")

        snapshot = await service.get_order_by_id(order.id, ADMIN)

        assert snapshot.user_id == USER.user_id

    @pytest.mark.unit
    async def test_missing_order(self, service):
        with pytest.raises(OrderNotFoundError):
            await service.get_order_by_id("does-not-exist", ADMIN)

    @pytest.mark.unit
    async def test_cache_serves_until_ttl(self, service, db_session, fake_clock):
        order = await service.create_order(USER.user_id, ITEMS, "get-3")
        await service.get_order_by_id(order.id, USER)

        # write behind the service's back: only the TTL bounds staleness
        await db_session.execute(
            update(Order).where(Order.id == order.id).values(status=OrderStatus.SHIPPED)
        )
        await db_session.commit()

        cached = await service.get_order_by_id(order.id, USER)
        assert cached.status == OrderStatus.PENDING

        fake_clock.advance(31)
        fresh = await service.get_order_by_id(order.id, USER)
        assert fresh.status == OrderStatus.SHIPPED

    @pytest.mark.unit
    async def test_snapshot_read_before_concurrent_update_is_not_cached(self, service, order_cache):
        order = await service.create_order(USER.user_id, ITEMS, "get-4")
        real_get = OrderLedger.get
        interleaved = []

        async def get_then_concurrent_update(self, order_id, owner_id=None, *, refresh=False):
            row = await real_get(self, order_id, owner_id, refresh=refresh)
            if interleaved:
                return row
            interleaved.append(order_id)
            read_before_update = OrderRead.model_validate(row)
            await service.update_order_status(order_id, OrderStatus.CANCELLED)
            return read_before_update

        with patch.object(OrderLedger, "get", new=get_then_concurrent_update):
            first = await service.get_order_by_id(order.id, USER)

        assert first.status == OrderStatus.PENDING
        assert len(order_cache) == 0
        fresh = await service.get_order_by_id(order.id, USER)
        assert (fresh.status, fresh.version) == (OrderStatus.CANCELLED, 2)


class TestUpdateOrderStatus:
    """Tests for optimistic-concurrency status changes"""

    @pytest.mark.unit
    async def test_tolerant_update_bumps_version(self, service):
        order = await service.create_order(USER.user_id, ITEMS, "upd-0")

        updated = await service.update_order_status(order.id, OrderStatus.PAID)

        assert updated.status == OrderStatus.PAID
        assert updated.version == 2

    @pytest.mark.unit
    async def test_matching_version_applies(self, service):
        order = await service.create_order(USER.user_id, ITEMS, "upd-1")

        updated = await service.update_order_status(order.id, OrderStatus.CONFIRMED, 1)

        assert updated.status == OrderStatus.CONFIRMED
        assert updated.version == 2

    @pytest.mark.unit
    async def test_stale_version_conflicts(self, service):
        order = await service.create_order(USER.user_id, ITEMS, "upd-2")
        await service.update_order_status(order.id, OrderStatus.PAID)

        with pytest.raises(OrderVersionConflictError) as exc_info:
            await service.update_order_status(order.id, OrderStatus.CANCELLED, 1)

        assert exc_info.value.status_code == 409
        assert exc_info.value.details["current_version"] == 2
        current = await service.get_order_by_id(order.id, ADMIN)
        assert current.status == OrderStatus.PAID
        assert current.version == 2

    @pytest.mark.unit
    async def test_stale_version_conflicts_across_sessions(self, session_factory, order_cache, metrics):
        async with session_factory() as session:
            order = await OrderService(session, order_cache, metrics).create_order(
                USER.user_id, ITEMS, "upd-6"
            )
        async with session_factory() as session:
            await OrderService(session, order_cache, metrics).update_order_status(
                order.id, OrderStatus.PAID
            )

        async with session_factory() as session:
            with pytest.raises(OrderVersionConflictError) as exc_info:
                await OrderService(session, order_cache, metrics).update_order_status(
                    order.id, OrderStatus.CANCELLED, 1
                )

        assert exc_info.value.details == {
            "order_id": order.id,
            "expected_version": 1,
            "current_version": 2,
        }

    @pytest.mark.unit
    async def test_guarded_update_affecting_nothing_conflicts(self, service):
        """Another writer moved the version between our read and our UPDATE"""
        order = await service.create_order(USER.user_id, ITEMS, "upd-3")

        async def lost_race(self, *args, **kwargs):
            return 0

        with patch.object(OrderLedger, "compare_and_set_status", lost_race):
            with pytest.raises(OrderVersionConflictError):
                await service.update_order_status(order.id, OrderStatus.PAID, 1)

    @pytest.mark.unit
    async def test_missing_order(self, service):
        with pytest.raises(OrderNotFoundError):
            await service.update_order_status("missing", OrderStatus.PAID)

    @pytest.mark.unit
    async def test_unknown_status_rejected(self, service):
        order = await service.create_order(USER.user_id, ITEMS, "upd-4")

        with pytest.raises(ValidationException):
            await service.update_order_status(order.id, "TELEPORTED")

    @pytest.mark.unit
    async def test_update_invalidates_every_viewer_scope(self, service, order_cache):
        order = await service.create_order(USER.user_id, ITEMS, "upd-5")
        await service.get_order_by_id(order.id, USER)
        await service.get_order_by_id(order.id, ADMIN)
        assert len(order_cache) == 2

        await service.update_order_status(order.id, OrderStatus.SHIPPED)

        assert len(order_cache) == 0
        assert (await service.get_order_by_id(order.id, USER)).status == OrderStatus.SHIPPED
        assert (await service.get_order_by_id(order.id, ADMIN)).version == 2


@pytest.mark.unit
async def test_worked_example(service):
    """Create, replay, tolerant update, then a stale writer loses"""
    order = await service.create_order(5, ITEMS, "tok-1")
    assert (order.total_amount, order.status, order.version) == (1000, OrderStatus.PENDING, 1)

    replay = await service.create_order(5, ITEMS, "tok-1")
    assert (replay.id, replay.version) == (order.id, 1)

    paid = await service.update_order_status(order.id, OrderStatus.PAID)
    assert paid.version == 2

    with pytest.raises(OrderVersionConflictError):
        await service.update_order_status(order.id, OrderStatus.CANCELLED, 1)
