"""
api/routes/v1/payments.py -- PayOS webhook, return-page confirm/cancel, support-plan
purchase, the back-office payment list, and support-plan lookups.

Routes (all under /api/v1):
  POST /payments/payos/webhook                     anonymous, rate-limited, signature-checked
  POST /payments/order/confirm-from-return         anonymous, by return token: current status
  POST /payments/order/cancel-from-return          anonymous, by return token: Pending -> Cancelled
  POST /payments/support-plan/confirm-from-return  anonymous
  POST /payments/support-plan/cancel-from-return   anonymous
  POST /payments/payos/create-support-plan         authenticated
  GET  /payments                                   PRODUCT_MANAGER VIEW_LIST
  GET  /payments/{paymentId}                       PRODUCT_MANAGER VIEW_DETAIL
  GET  /support-plans/active                       public
  GET  /support-plans/me/current                   authenticated

Webhook body parsing: the raw body is decoded with parse_float=Decimal so
numeric literals keep their exact text for the signature (see
payments/payos.signature_value). PayOS retries on non-2xx, so every outcome
after a valid signature is answered 200 with a message describing what
happened; only malformed payloads (400) and bad signatures (401) are errors.

The return-page calls identify the payment by its return token (an opaque
value issued at checkout and carried only in the PayOS return URL), never by
the sequential id. A token for a payment of the other target type is 404.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    CurrentSupportPlanResponse,
    PaymentResponse,
    PaymentStatusResponse,
    ReturnPaymentRequest,
    SupportPlanPaymentRequest,
    SupportPlanPaymentResponse,
    SupportPlanResponse,
)
from auth.constants import ModuleCodes, PermissionCodes
from auth.dependencies import get_current_user, require_permission
from auth.models import User
from payments.payos import PayOSError
from payments.service import SupportPlanError, cancel_from_return, create_support_plan_payment, process_webhook
from realtime.hub import user_group
from shop.models import Payment, PaymentTarget
from shop.store import ShopStore

logger = logging.getLogger("ktk.api")

router = APIRouter()

_M = ModuleCodes.PRODUCT_MANAGER


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


@limiter.limit("120/minute")
@router.post("/payments/payos/webhook")
async def payos_webhook(request: Request) -> JSONResponse:
    body = await request.body()
    try:
        payload = json.loads(body or b"null", parse_float=Decimal)
    except ValueError:
        payload = None
    outcome = process_webhook(request.app.state.shop, request.app.state.user_store, payload)

    if outcome.status_code == 401:
        raise HTTPException(status_code=401, detail={"code": "invalid_signature", "message": outcome.message})
    if outcome.status_code == 400:
        raise HTTPException(status_code=400, detail={"code": "invalid_payload", "message": outcome.message})

    hub = request.app.state.notification_hub
    order = outcome.fulfilled_order
    if order is not None and order.user_id:
        await hub.send_group(
            user_group(order.user_id),
            "ReceiveNotification",
            {"type": "OrderCompleted", "orderId": order.id, "message": f"Order #{order.id} has been paid."},
        )
    if outcome.subscribed_user_id:
        await hub.send_group(
            user_group(outcome.subscribed_user_id),
            "ReceiveNotification",
            {"type": "SupportPlanActivated", "message": "Your support plan is now active."},
        )
    return JSONResponse(content={"message": outcome.message})


# ---------------------------------------------------------------------------
# Return pages
# ---------------------------------------------------------------------------


def _returned_payment(request: Request, body: ReturnPaymentRequest, target_type: str) -> Payment:
    payment = request.app.state.shop.get_payment_by_return_token(body.payment_token)
    if payment is None or payment.target_type != target_type:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Payment not found."})
    return payment


def _confirm(request: Request, body: ReturnPaymentRequest, target_type: str, message: str) -> PaymentStatusResponse:
    return PaymentStatusResponse.from_payment(message, _returned_payment(request, body, target_type))


def _cancel(request: Request, body: ReturnPaymentRequest, target_type: str, message: str) -> PaymentStatusResponse:
    payment = cancel_from_return(request.app.state.shop, _returned_payment(request, body, target_type))
    return PaymentStatusResponse.from_payment(message, payment)


@router.post("/payments/order/confirm-from-return", response_model=PaymentStatusResponse)
def confirm_order_from_return(request: Request, body: ReturnPaymentRequest) -> PaymentStatusResponse:
    return _confirm(request, body, PaymentTarget.ORDER, "Payment status")


@router.post("/payments/order/cancel-from-return", response_model=PaymentStatusResponse)
def cancel_order_from_return(request: Request, body: ReturnPaymentRequest) -> PaymentStatusResponse:
    return _cancel(request, body, PaymentTarget.ORDER, "Payment status")


@router.post("/payments/support-plan/confirm-from-return", response_model=PaymentStatusResponse)
def confirm_support_plan_from_return(request: Request, body: ReturnPaymentRequest) -> PaymentStatusResponse:
    return _confirm(request, body, PaymentTarget.SUPPORT_PLAN, "Support plan payment status")


@router.post("/payments/support-plan/cancel-from-return", response_model=PaymentStatusResponse)
def cancel_support_plan_from_return(request: Request, body: ReturnPaymentRequest) -> PaymentStatusResponse:
    return _cancel(request, body, PaymentTarget.SUPPORT_PLAN, "Support plan payment status")


# ---------------------------------------------------------------------------
# Support-plan purchase
# ---------------------------------------------------------------------------


@limiter.limit("20/minute")
@router.post("/payments/payos/create-support-plan", response_model=SupportPlanPaymentResponse)
def create_support_plan(
    request: Request,
    body: SupportPlanPaymentRequest,
    current_user: User = Depends(get_current_user),
) -> SupportPlanPaymentResponse:
    """Open a PayOS link for an upgrade; the price is prorated against the current plan."""
    try:
        quote, payment, checkout_url = create_support_plan_payment(
            request.app.state.shop, current_user, body.support_plan_id
        )
    except SupportPlanError as exc:
        raise HTTPException(status_code=400, detail={"code": "support_plan_invalid", "message": str(exc)}) from exc
    except PayOSError as exc:
        logger.warning("Support-plan payment for user %s failed at PayOS: %s", current_user.id, exc)
        raise HTTPException(
            status_code=502,
            detail={"code": "payment_gateway_error", "message": "Could not create the payment link. Please retry."},
        ) from exc
    return SupportPlanPaymentResponse(
        payment_id=payment.id,
        payment_token=payment.return_token,
        support_plan_id=quote.plan.id,
        support_plan_name=quote.plan.name,
        priority_level=quote.plan.priority_level,
        price=quote.plan.price,
        amount=quote.amount,
        checkout_url=checkout_url,
    )


# ---------------------------------------------------------------------------
# Back office
# ---------------------------------------------------------------------------


@router.get("/payments", response_model=list[PaymentResponse])
def list_payments(
    request: Request,
    status: Optional[str] = Query(default=None, max_length=30),
    provider: Optional[str] = Query(default=None, max_length=30),
    email: Optional[str] = Query(default=None, max_length=255),
    target_type: Optional[str] = Query(default=None, alias="targetType", max_length=30),
    sort_by: Optional[str] = Query(default=None, alias="sortBy", max_length=30),
    sort_dir: Optional[str] = Query(default=None, alias="sortDir", max_length=4),
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_LIST)),
) -> list[PaymentResponse]:
    store: ShopStore = request.app.state.shop
    payments = store.list_payments(
        status=status,
        provider=provider,
        email=email,
        target_type=target_type,
        sort_by=sort_by,
        sort_dir=sort_dir,
    )
    return [PaymentResponse.from_payment(p) for p in payments]


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(
    request: Request,
    payment_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> PaymentResponse:
    payment = request.app.state.shop.get_payment(payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Payment not found."})
    return PaymentResponse.from_payment(payment)


# ---------------------------------------------------------------------------
# Support plans
# ---------------------------------------------------------------------------


@router.get("/support-plans/active", response_model=list[SupportPlanResponse])
def active_support_plans(request: Request) -> list[SupportPlanResponse]:
    return [SupportPlanResponse.from_plan(p) for p in request.app.state.shop.list_support_plans(active_only=True)]


@router.get("/support-plans/me/current", response_model=CurrentSupportPlanResponse)
def my_support_plan(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> CurrentSupportPlanResponse:
    subscription = request.app.state.shop.get_active_subscription(current_user.id)
    return CurrentSupportPlanResponse.build(current_user, subscription)
