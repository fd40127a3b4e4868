"""
api/routes/v1/orders.py -- Order history and back-office order views.

Routes:
  GET /api/v1/orders/history   -- the caller's own orders (authenticated)
  GET /api/v1/orders/{id}      -- owner, or PRODUCT_MANAGER VIEW_DETAIL
  GET /api/v1/orders           -- all orders, ?status= filter (PRODUCT_MANAGER VIEW_LIST)

An order that belongs to someone else is reported as 404 to callers without
the back-office permission, so order ids cannot be enumerated.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import OrderResponse
from auth.constants import ModuleCodes, PermissionCodes
from auth.dependencies import get_current_user, require_permission
from auth.models import User
from shop.store import ShopStore

router = APIRouter()


@router.get("/orders/history", response_model=list[OrderResponse])
def order_history(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> list[OrderResponse]:
    store: ShopStore = request.app.state.shop
    return [OrderResponse.from_order(o) for o in store.list_orders(user_id=current_user.id)]


@router.get("/orders", response_model=list[OrderResponse])
def list_orders(
    request: Request,
    status: Optional[str] = Query(default=None, max_length=30),
    current_user: User = Depends(require_permission(ModuleCodes.PRODUCT_MANAGER, PermissionCodes.VIEW_LIST)),
) -> list[OrderResponse]:
    store: ShopStore = request.app.state.shop
    return [OrderResponse.from_order(o) for o in store.list_orders(status=status)]


@router.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(
    request: Request,
    order_id: int,
    current_user: User = Depends(get_current_user),
) -> OrderResponse:
    store: ShopStore = request.app.state.shop
    order = store.get_order(order_id)
    if order is not None and order.user_id != current_user.id:
        allowed = request.app.state.user_store.has_permission(
            current_user.id, ModuleCodes.PRODUCT_MANAGER, PermissionCodes.VIEW_DETAIL
        )
        if not allowed:
            order = None
    if order is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Order not found."})
    return OrderResponse.from_order(order)
