"""
Order API Routes
"""
import math
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from orderpay.api.dependencies.auth import get_current_principal, require_admin
from orderpay.api.dependencies.services import get_order_service
from orderpay.core.auth import Principal
from orderpay.db.models.order import OrderStatus
from orderpay.domain.schemas import OrderItem, OrderRead
from orderpay.domain.services.order_service import MAX_PAGE_SIZE, OrderService

router = APIRouter()


class OrderCreate(BaseModel):
    """Schema for creating an order; resubmitting the same client_token is safe"""
    items: List[OrderItem]
    client_token: str = Field(min_length=1, max_length=255)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    version: Optional[int] = Field(default=None, ge=1)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class OrderListResponse(BaseModel):
    orders: List[OrderRead]
    pagination: Pagination


@router.post("", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    service: OrderService = Depends(get_order_service),
) -> OrderRead:
    """Create an order; a replayed client_token answers 200 with the stored order"""
    order, created = await service.create_order_with_outcome(
        owner_id=principal.user_id,
        items=payload.items,
        client_token=payload.client_token,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return OrderRead.model_validate(order)


@router.get("", response_model=OrderListResponse)
async def list_orders(
    status_filter: Optional[OrderStatus] = Query(default=None, alias="status"),
    q: Optional[str] = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=MAX_PAGE_SIZE),
    principal: Principal = Depends(get_current_principal),
    service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    orders, total = await service.list_orders(
        principal, status=status_filter, q=q, page=page, limit=limit
    )
    return OrderListResponse(
        orders=[OrderRead.model_validate(order) for order in orders],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit),
        ),
    )


@router.get("/{order_id}", response_model=OrderRead)
async def get_order(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    service: OrderService = Depends(get_order_service),
) -> OrderRead:
    return await service.get_order_by_id(order_id, principal)


@router.patch("/{order_id}/status", response_model=OrderRead)
async def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    admin: Principal = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
) -> OrderRead:
    """Admin-only status change; send ``version`` to fail on concurrent edits"""
    order = await service.update_order_status(order_id, payload.status, payload.version)
    return OrderRead.model_validate(order)
