"""
Order Model - idempotently created, version-fenced order records
"""
import enum
import uuid

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Index
from sqlalchemy.orm import relationship

from orderpay.core.clock import utcnow
from orderpay.db.database import Base


def generate_order_id() -> str:
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class Order(Base):
    """Order record.

    ``client_token`` is the idempotency key; the unique constraint on it is
    the only thing standing between two concurrent creates and a duplicate.
    ``version`` is bumped in the same UPDATE that changes ``status``.
    """

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=generate_order_id)
    user_id = Column(Integer, nullable=False, index=True)
    client_token = Column(String(255), unique=True, nullable=False)

    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    # Minor currency units; fixed at creation
    total_amount = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)
    # [{"sku": str, "quantity": int, "price": int}]
    items = Column(JSON, nullable=False)

    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    paid_at = Column(DateTime, nullable=True)

    payments = relationship("Payment", back_populates="order", lazy="noload")

    __table_args__ = (
        Index("ix_orders_created_at_id", "created_at", "id"),
    )
