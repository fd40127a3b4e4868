"""
api/routes/v1/payment_gateways.py -- PayOS credentials screen (SETTINGS_MANAGER).

Routes (all under /api/v1):
  GET /admin/payment-gateways/payos   VIEW_DETAIL
  PUT /admin/payment-gateways/payos   EDIT

The PayOS row is created on first access so the screen always has something
to edit. The API key and checksum key are write-only: the response only says
whether one is stored, and a blank value in an update keeps the stored one.
Whatever is saved here is what payments/payos.resolve_payos_config picks up
for the next checkout and the next webhook.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.models import PaymentGatewayResponse, PaymentGatewayUpdate
from auth.constants import ModuleCodes, PermissionCodes
from auth.dependencies import require_permission
from auth.models import User
from payments.payos import PROVIDER
from shop.models import PaymentGateway
from shop.store import ShopStore

logger = logging.getLogger("ktk.api")

router = APIRouter()

_M = ModuleCodes.SETTINGS_MANAGER


def _ensure_payos(store: ShopStore) -> PaymentGateway:
    gateway = store.get_gateway(PROVIDER, active_only=False)
    if gateway is None:
        store.upsert_gateway(PaymentGateway(name=PROVIDER))
        gateway = store.get_gateway(PROVIDER, active_only=False)
    return gateway


@router.get("/admin/payment-gateways/payos", response_model=PaymentGatewayResponse)
def get_payos(
    request: Request,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> PaymentGatewayResponse:
    return PaymentGatewayResponse.from_gateway(_ensure_payos(request.app.state.shop))


@router.put("/admin/payment-gateways/payos", response_model=PaymentGatewayResponse)
def update_payos(
    request: Request,
    body: PaymentGatewayUpdate,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> PaymentGatewayResponse:
    store: ShopStore = request.app.state.shop
    gateway = _ensure_payos(store)
    if body.client_id is not None:
        gateway.client_id = body.client_id or None
    if body.endpoint is not None:
        gateway.endpoint = body.endpoint or None
    if body.api_key:
        gateway.api_key = body.api_key
    if body.checksum_key:
        gateway.checksum_key = body.checksum_key
    if body.is_active is not None:
        gateway.is_active = body.is_active
    store.upsert_gateway(gateway)
    logger.info(
        "PayOS settings updated by user %s (api key %s, checksum key %s)",
        current_user.id,
        "replaced" if body.api_key else "kept",
        "replaced" if body.checksum_key else "kept",
    )
    return PaymentGatewayResponse.from_gateway(store.get_gateway(PROVIDER, active_only=False))
