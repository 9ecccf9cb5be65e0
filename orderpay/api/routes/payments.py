"""
Payment API Routes
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from orderpay.api.dependencies.auth import get_current_principal
from orderpay.api.dependencies.services import get_payment_service
from orderpay.core.auth import Principal
from orderpay.db.models.payment import PaymentStatus
from orderpay.domain.schemas import PaymentRead
from orderpay.domain.services.payment_service import PaymentService

router = APIRouter()


class PaymentInitiate(BaseModel):
    order_id: str = Field(min_length=1, max_length=36)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=8)
    payment_method: Optional[str] = Field(default=None, min_length=1, max_length=32)


class PaymentInitiateResponse(BaseModel):
    payment_id: str
    order_id: str
    amount: int
    currency: str
    status: PaymentStatus
    redirect_url: Optional[str] = None
    expires_at: datetime
    reused: bool


@router.post(
    "/initiate",
    response_model=PaymentInitiateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def initiate_payment(
    payload: PaymentInitiate,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentInitiateResponse:
    payment, reused = await service.initiate_payment(
        payload.order_id,
        principal,
        currency=payload.currency,
        payment_method=payload.payment_method,
    )
    if reused:
        response.status_code = status.HTTP_200_OK
    return PaymentInitiateResponse(
        payment_id=payment.id,
        order_id=payment.order_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        redirect_url=payment.redirect_url,
        expires_at=payment.expires_at,
        reused=reused,
    )


@router.get("/{payment_id}/status", response_model=PaymentRead)
async def get_payment_status(
    payment_id: str,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentRead:
    payment = await service.get_payment(payment_id, principal)
    return PaymentRead.model_validate(payment)


@router.post("/{payment_id}/cancel", response_model=PaymentRead)
async def cancel_payment(
    payment_id: str,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentRead:
    payment = await service.cancel_payment(payment_id, principal)
    return PaymentRead.model_validate(payment)
