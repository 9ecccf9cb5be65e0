"""
Payment provider webhook

The provider is acknowledged as soon as the signature checks out; applying
the event (and any retries) happens after the response.
"""
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request

from orderpay.api.dependencies.services import get_webhook_processor
from orderpay.core.clock import utcnow
from orderpay.core.logging import get_logger
from orderpay.domain.services.webhook_processor import PaymentWebhookProcessor

logger = get_logger(__name__)

router = APIRouter()


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_webhook_signature: Optional[str] = Header(default=None),
    x_webhook_timestamp: Optional[str] = Header(default=None),
    processor: PaymentWebhookProcessor = Depends(get_webhook_processor),
) -> dict:
    raw_body = await request.body()
    processor.verify(raw_body, x_webhook_signature, x_webhook_timestamp)
    event = processor.parse_event(raw_body)

    background_tasks.add_task(processor.process, event)

    logger.info(
        "Payment webhook accepted",
        extra_data={
            "payment_id": event.payment_id,
            "order_id": event.order_id,
            "status": event.status.value,
        },
    )
    return {"success": True, "processed_at": utcnow().isoformat()}
