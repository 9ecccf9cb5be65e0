"""
Domain snapshots shared by services, the cache and the API layer
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orderpay.db.models.order import OrderStatus
from orderpay.db.models.payment import PaymentStatus


class OrderItem(BaseModel):
    """Line item; ``price`` is the unit price in minor units"""
    sku: str = Field(min_length=1, max_length=100)
    quantity: int = Field(gt=0)
    price: int = Field(ge=0)

    @field_validator("sku")
    @classmethod
    def strip_sku(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("SKU is required")
        return v

    @property
    def subtotal(self) -> int:
        return self.price * self.quantity


class OrderRead(BaseModel):
    """Immutable order snapshot, safe to hand out from the cache"""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    user_id: int
    client_token: str
    status: OrderStatus
    total_amount: int
    currency: str
    items: List[OrderItem]
    version: int
    created_at: datetime
    updated_at: datetime
    paid_at: Optional[datetime] = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    amount: int
    currency: str
    payment_method: str
    status: PaymentStatus
    redirect_url: Optional[str] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime


class WebhookEventStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PaymentWebhookEvent(BaseModel):
    """Provider notification about one payment; also the retry job payload"""
    payment_id: str = Field(min_length=1, max_length=40)
    order_id: str = Field(min_length=1, max_length=36)
    status: WebhookEventStatus
    transaction_id: Optional[str] = Field(default=None, max_length=255)
    failure_reason: Optional[str] = Field(default=None, max_length=500)
