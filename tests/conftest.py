"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- Cache, metrics and a recording retry scheduler
- HTTP test client with auth helpers
- Test data factories
"""
# Secrets must exist before orderpay is imported; the settings validator
# refuses empty ones when DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret-for-testing-only")

import itertools
import json
from datetime import timedelta
from typing import AsyncGenerator, List, Optional, Tuple

import jwt as pyjwt
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from orderpay.core.cache import EphemeralCache
from orderpay.core.clock import utcnow
from orderpay.core.config import settings
from orderpay.core.metrics import OrderMetrics
from orderpay.db.database import Base, get_db
from orderpay.db.models import Order, OrderStatus, Payment, PaymentStatus
from orderpay.domain.schemas import PaymentWebhookEvent
from orderpay.domain.services.webhook_processor import PaymentWebhookProcessor, compute_signature
from orderpay.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed "now" for webhook signature checks
WEBHOOK_NOW = 1_700_000_000

_token_counter = itertools.count(1)


class FakeClock:
    """Monotonic clock that only moves when told to"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingRetryScheduler:
    """Delay queue that records instead of sleeping"""

    def __init__(self):
        self.scheduled: List[Tuple[PaymentWebhookEvent, int, float]] = []

    def schedule(self, event: PaymentWebhookEvent, attempt: int, delay_seconds: float) -> None:
        self.scheduled.append((event, attempt, delay_seconds))


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def order_cache(fake_clock) -> EphemeralCache:
    return EphemeralCache(settings.ORDER_CACHE_TTL_SECONDS, clock=fake_clock)


@pytest.fixture
def metrics() -> OrderMetrics:
    return OrderMetrics()


@pytest.fixture
def retry_scheduler() -> RecordingRetryScheduler:
    return RecordingRetryScheduler()


@pytest.fixture
def webhook_processor(session_factory, order_cache, metrics, retry_scheduler) -> PaymentWebhookProcessor:
    return PaymentWebhookProcessor(
        session_factory,
        order_cache,
        metrics,
        retry_scheduler,
        secret=settings.WEBHOOK_SECRET,
        tolerance_seconds=300,
        max_attempts=3,
        clock=lambda: WEBHOOK_NOW,
    )


@pytest.fixture(scope="function")
async def test_client(session_factory, order_cache, metrics, webhook_processor):
    """Create test client with database override and in-process state"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.order_cache = order_cache
    app.state.metrics = metrics
    app.state.webhook_processor = webhook_processor

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Auth and webhook helpers
# ============================================================================

def make_token(user_id: int, role: str = "USER", secret: Optional[str] = None) -> str:
    return pyjwt.encode(
        {"user_id": user_id, "role": role},
        secret or settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


def auth_headers(user_id: int, role: str = "USER") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


def signed_webhook(payload: dict, timestamp: int = WEBHOOK_NOW, prefix: bool = True) -> Tuple[bytes, dict]:
    """Body and headers for a correctly signed provider webhook"""
    body = json.dumps(payload).encode("utf-8")
    signature = compute_signature(settings.WEBHOOK_SECRET, str(timestamp), body)
    return body, {
        "Content-Type": "application/json",
        "X-Webhook-Signature": f"sha256={signature}" if prefix else signature,
        "X-Webhook-Timestamp": str(timestamp),
    }


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for committed orders"""
    async def _create_order(
        user_id: int = 1,
        items: Optional[list] = None,
        status: OrderStatus = OrderStatus.PENDING,
        client_token: Optional[str] = None,
        version: int = 1,
    ) -> Order:
        items = items if items is not None else [{"sku": "A1", "quantity": 2, "price": 500}]
        order = Order(
            user_id=user_id,
            client_token=client_token or f"factory-token-{next(_token_counter)}",
            status=status,
            items=items,
            total_amount=sum(i["price"] * i["quantity"] for i in items),
            currency=settings.DEFAULT_CURRENCY,
            version=version,
        )
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_order


@pytest.fixture
def payment_factory(db_session: AsyncSession):
    """Factory for committed payments"""
    async def _create_payment(
        order: Order,
        status: PaymentStatus = PaymentStatus.PENDING,
        expires_in: timedelta = timedelta(minutes=30),
        transaction_id: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> Payment:
        now = utcnow()
        payment = Payment(
            id=payment_id or f"pay_{next(_token_counter):032x}",
            order_id=order.id,
            amount=order.total_amount,
            currency=order.currency,
            payment_method=settings.DEFAULT_PAYMENT_METHOD,
            redirect_url="https://payment-provider.example.com/pay/test",
            status=status,
            transaction_id=transaction_id,
            expires_at=now + expires_in,
            created_at=now,
            updated_at=now,
        )
        db_session.add(payment)
        await db_session.commit()
        await db_session.refresh(payment)
        return payment

    return _create_payment


async def fetch(session_factory, model, pk):
    """Read a row through a fresh session (no identity-map staleness)"""
    async with session_factory() as session:
        return await session.get(model, pk)
