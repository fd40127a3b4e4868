"""
api/routes/v1/storefront.py -- Public catalog, cart and checkout.

Routes (all under /api/v1/storefront):
  GET    /products                      -- listed products with visible variants
  GET    /products/{slug}               -- one product
  GET    /cart                          -- current cart (created empty if absent)
  POST   /cart/items                    -- add {variantId, quantity}
  PUT    /cart/items/{variantId}        -- set quantity (<= 0 removes)
  DELETE /cart/items/{variantId}        -- remove line                 204
  DELETE /cart  and  POST /cart/clear   -- empty the cart              204
  PUT    /cart/receiver-email           -- set the delivery email
  POST   /cart/checkout                 -- order + PayOS link

Cart ownership: a signed-in user owns their cart; anyone else is a guest
identified by the ktk_anon_id cookie or the X-Guest-Cart-Id header. A guest
without either is issued a fresh id in the cookie on the response.

Every write is refused with 409 while the cart is Converting (a checkout holds
it). Stock is checked against current + requested quantity on add and against
the requested quantity on update; the line price is always the variant's
current sell price.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.limiter import limiter
from api.models import (
    CartItemAdd,
    CartItemUpdate,
    CartResponse,
    CheckoutRequest,
    CheckoutResponse,
    ReceiverEmailUpdate,
    StorefrontProduct,
)
from auth.dependencies import try_get_current_user
from auth.models import User
from core.config import get_settings
from payments.payos import PayOSError
from payments.service import CartLockedError, CheckoutError, ItemUnavailableError, checkout_cart
from shop.models import Cart, CartStatus, ProductVariant
from shop.store import GUEST_CART_TTL, InsufficientStockError, ShopStore

logger = logging.getLogger("ktk.api")

router = APIRouter(prefix="/storefront")

GUEST_COOKIE = "ktk_anon_id"
GUEST_HEADER = "X-Guest-Cart-Id"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@router.get("/products", response_model=list[StorefrontProduct])
def list_products(
    request: Request,
    search: Optional[str] = Query(default=None, max_length=100),
) -> list[StorefrontProduct]:
    """Products that are not INACTIVE, each with its non-hidden variants."""
    store: ShopStore = request.app.state.shop
    result = []
    for product in store.list_products(search=search):
        if product.status == "INACTIVE":
            continue
        result.append(StorefrontProduct.from_product(product, store.list_variants(product.id)))
    return result


@router.get("/products/{slug}", response_model=StorefrontProduct)
def get_product(request: Request, slug: str) -> StorefrontProduct:
    store: ShopStore = request.app.state.shop
    product = store.get_product_by_slug(slug)
    if product is None or product.status == "INACTIVE":
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Product not found."})
    return StorefrontProduct.from_product(product, store.list_variants(product.id))


# ---------------------------------------------------------------------------
# Cart helpers
# ---------------------------------------------------------------------------


def _guest_id(request: Request) -> Optional[str]:
    value = request.cookies.get(GUEST_COOKIE) or request.headers.get(GUEST_HEADER)
    value = (value or "").strip()
    return value[:64] or None


def _current_cart(request: Request, response: Response, user: Optional[User]) -> Cart:
    """Load or create the caller's cart, issuing a guest id when needed."""
    store: ShopStore = request.app.state.shop
    if user is not None:
        return store.get_or_create_cart(user_id=user.id)
    guest_id = _guest_id(request)
    if guest_id is None:
        guest_id = uuid.uuid4().hex
        response.set_cookie(
            GUEST_COOKIE,
            value=guest_id,
            httponly=True,
            samesite="lax",
            secure=get_settings().secure_cookies,
            max_age=int(GUEST_CART_TTL.total_seconds()),
        )
    return store.get_or_create_cart(guest_id=guest_id)


def _writable_cart(request: Request, response: Response, user: Optional[User]) -> Cart:
    cart = _current_cart(request, response, user)
    if cart.status == CartStatus.CONVERTING:
        raise HTTPException(
            status_code=409,
            detail={"code": "cart_locked", "message": "Cart is being checked out. Please try again later."},
        )
    return cart


def _sellable_variant(store: ShopStore, variant_id: int) -> ProductVariant:
    variant = store.get_variant(variant_id)
    product = store.get_product(variant.product_id) if variant is not None else None
    if variant is None or product is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Variant not found."})
    if variant.status != "ACTIVE" or product.status != "ACTIVE":
        raise HTTPException(
            status_code=409,
            detail={"code": "unavailable", "message": "This product is not available for sale."},
        )
    return variant


def _insufficient_stock(available: int) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "insufficient_stock", "message": f"Only {available} item(s) left in stock."},
    )


def _reload(request: Request, cart: Cart) -> CartResponse:
    return CartResponse.from_cart(request.app.state.shop.get_cart_by_id(cart.id))


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


@router.get("/cart", response_model=CartResponse)
def get_cart(
    request: Request,
    response: Response,
    user: Optional[User] = Depends(try_get_current_user),
) -> CartResponse:
    return CartResponse.from_cart(_current_cart(request, response, user))


@router.post("/cart/items", response_model=CartResponse)
def add_item(
    request: Request,
    response: Response,
    body: CartItemAdd,
    user: Optional[User] = Depends(try_get_current_user),
) -> CartResponse:
    store: ShopStore = request.app.state.shop
    cart = _writable_cart(request, response, user)
    variant = _sellable_variant(store, body.variant_id)
    current = next((i.quantity for i in cart.items if i.variant_id == variant.id), 0)
    if current + body.quantity > variant.stock_qty:
        raise _insufficient_stock(variant.stock_qty)
    store.set_cart_item(cart.id, variant.id, current + body.quantity, variant.sell_price)
    return _reload(request, cart)


@router.put("/cart/items/{variant_id}", response_model=CartResponse)
def update_item(
    request: Request,
    response: Response,
    variant_id: int,
    body: CartItemUpdate,
    user: Optional[User] = Depends(try_get_current_user),
) -> CartResponse:
    store: ShopStore = request.app.state.shop
    cart = _writable_cart(request, response, user)
    if body.quantity <= 0:
        store.remove_cart_item(cart.id, variant_id)
        return _reload(request, cart)
    variant = _sellable_variant(store, variant_id)
    if body.quantity > variant.stock_qty:
        raise _insufficient_stock(variant.stock_qty)
    store.set_cart_item(cart.id, variant.id, body.quantity, variant.sell_price)
    return _reload(request, cart)


@router.delete("/cart/items/{variant_id}", status_code=204)
def remove_item(
    request: Request,
    response: Response,
    variant_id: int,
    user: Optional[User] = Depends(try_get_current_user),
) -> Response:
    cart = _writable_cart(request, response, user)
    request.app.state.shop.remove_cart_item(cart.id, variant_id)
    response.status_code = 204
    return response


@router.delete("/cart", status_code=204)
@router.post("/cart/clear", status_code=204)
def clear_cart(
    request: Request,
    response: Response,
    user: Optional[User] = Depends(try_get_current_user),
) -> Response:
    cart = _writable_cart(request, response, user)
    request.app.state.shop.clear_cart(cart.id)
    response.status_code = 204
    return response


@router.put("/cart/receiver-email", response_model=CartResponse)
def set_receiver_email(
    request: Request,
    response: Response,
    body: ReceiverEmailUpdate,
    user: Optional[User] = Depends(try_get_current_user),
) -> CartResponse:
    cart = _writable_cart(request, response, user)
    request.app.state.shop.set_receiver_email(cart.id, str(body.email).lower())
    return _reload(request, cart)


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


@limiter.limit("20/minute")
@router.post("/cart/checkout", response_model=CheckoutResponse)
def checkout(
    request: Request,
    response: Response,
    body: CheckoutRequest,
    user: Optional[User] = Depends(try_get_current_user),
) -> CheckoutResponse:
    """Reserve stock, create a PendingPayment order and return the PayOS checkout URL."""
    store: ShopStore = request.app.state.shop
    cart = _current_cart(request, response, user)
    email = str(body.email or cart.receiver_email or (user.email if user else "") or "").strip().lower()
    buyer_name = body.buyer_name or (user.display_name if user else "")
    buyer_phone = body.buyer_phone or (user.phone if user and user.phone else "")
    try:
        result = checkout_cart(store, cart, email, buyer_name=buyer_name, buyer_phone=buyer_phone)
    except CheckoutError as exc:
        raise HTTPException(status_code=400, detail={"code": "checkout_invalid", "message": str(exc)}) from exc
    except CartLockedError as exc:
        raise HTTPException(status_code=409, detail={"code": "cart_locked", "message": str(exc)}) from exc
    except ItemUnavailableError as exc:
        raise HTTPException(status_code=409, detail={"code": "unavailable", "message": str(exc)}) from exc
    except InsufficientStockError as exc:
        raise HTTPException(status_code=409, detail={"code": "insufficient_stock", "message": str(exc)}) from exc
    except PayOSError as exc:
        logger.warning("Checkout for cart %s failed at PayOS: %s", cart.id, exc)
        raise HTTPException(
            status_code=502,
            detail={"code": "payment_gateway_error", "message": "Could not create the payment link. Please retry."},
        ) from exc
    return CheckoutResponse(
        order_id=result.order.id,
        payment_id=result.payment_id,
        payment_token=result.payment_token,
        amount=result.order.final_amount,
        checkout_url=result.checkout_url,
    )
