"""
Webhook Retry Log - append-only record of failed webhook attempts.

Written for diagnostics and dead-letter visibility only; no code path reads
it back to decide anything.
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, String

from orderpay.core.clock import utcnow
from orderpay.db.database import Base


class WebhookRetryLog(Base):
    __tablename__ = "webhook_retry_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String(40), nullable=False, index=True)
    order_id = Column(String(36), nullable=True)
    attempt_number = Column(Integer, nullable=False)
    error_message = Column(String(1000), nullable=True)
    # When the next attempt is due; NULL on the final record
    retry_at = Column(DateTime, nullable=True)
    final_failure = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
