"""
API Routes
"""
from fastapi import APIRouter

from orderpay.api.routes.orders import router as orders_router
from orderpay.api.routes.payments import router as payments_router
from orderpay.api.webhooks.payments import router as payment_webhook_router

router = APIRouter()

router.include_router(orders_router, prefix="/orders", tags=["orders"])
# Webhook first so "/webhook" is never read as a payment id
router.include_router(payment_webhook_router, prefix="/payments", tags=["webhooks"])
router.include_router(payments_router, prefix="/payments", tags=["payments"])
