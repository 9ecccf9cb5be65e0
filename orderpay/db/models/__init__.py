"""
Database Models
"""
from orderpay.db.models.order import Order, OrderStatus
from orderpay.db.models.payment import Payment, PaymentStatus
from orderpay.db.models.webhook_retry_log import WebhookRetryLog

__all__ = [
    "Order",
    "OrderStatus",
    "Payment",
    "PaymentStatus",
    "WebhookRetryLog",
]
