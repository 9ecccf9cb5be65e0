"""
Payment Model - provider payment intents attached to an order
"""
import enum
import secrets

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, ForeignKey, Index, text
from sqlalchemy.orm import relationship

from orderpay.core.clock import utcnow
from orderpay.db.database import Base


def generate_payment_id() -> str:
    """Provider-facing payment identifier"""
    return f"pay_{secrets.token_hex(16)}"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class Payment(Base):
    """Payment intent.

    Leaves PENDING exactly once; every write that moves it out of PENDING
    carries ``status = PENDING`` in its WHERE clause. An order holds at most
    one PENDING payment, enforced by a partial unique index.
    """

    __tablename__ = "payments"

    id = Column(String(40), primary_key=True, default=generate_payment_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False)

    amount = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)
    payment_method = Column(String(32), nullable=False)
    redirect_url = Column(String(500), nullable=True)

    status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    transaction_id = Column(String(255), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    # Timestamps
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="payments", lazy="noload")

    __table_args__ = (
        Index("ix_payments_order_status", "order_id", "status"),
        Index("ix_payments_status_expires", "status", "expires_at"),
        Index(
            "uq_payments_order_pending",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )
