"""
api/routes/v1/products.py -- Admin catalog: products and their variants (PRODUCT_MANAGER).

Routes (all under /api/v1):
  GET    /products                                    VIEW_LIST
  GET    /products/{productId}                        VIEW_DETAIL
  POST   /products                                    CREATE
  PATCH  /products/{productId}                        EDIT
  DELETE /products/{productId}                        DELETE (409 while variants exist)
  GET    /products/{productId}/variants               VIEW_LIST  (search, status, sortBy, sortDir)
  GET    /products/{productId}/variants/{variantId}   VIEW_DETAIL
  POST   /products/{productId}/variants               CREATE
  PUT    /products/{productId}/variants/{variantId}   EDIT
  PATCH  /products/{productId}/variants/{variantId}/toggle   EDIT
  DELETE /products/{productId}/variants/{variantId}   DELETE (409 once ordered)

Variant validation: title and variant code unique per product
(case-insensitive, 409), sell price not above list price (400). Status is
always re-derived from stock by the store.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import ProductCreate, ProductPatch, ProductResponse, VariantResponse, VariantWrite
from auth.constants import ModuleCodes, PermissionCodes
from auth.dependencies import require_permission
from auth.models import User
from core.text import slugify
from shop.models import PRODUCT_STATUSES, Product, ProductVariant
from shop.store import ShopStore

router = APIRouter()

_M = ModuleCodes.PRODUCT_MANAGER


def _product_not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "Product not found."})


def _variant_not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "Variant not found."})


def _checked_status(status: Optional[str]) -> Optional[str]:
    if status is None:
        return None
    value = status.strip().upper()
    if value not in PRODUCT_STATUSES:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_status", "message": f"Status must be one of {', '.join(PRODUCT_STATUSES)}."},
        )
    return value


def _load_variant(store: ShopStore, product_id: int, variant_id: int) -> ProductVariant:
    variant = store.get_variant(variant_id)
    if variant is None or variant.product_id != product_id:
        raise _variant_not_found()
    return variant


def _validate_variant(store: ShopStore, product_id: int, body: VariantWrite, exclude_id: Optional[int] = None) -> None:
    if body.sell_price > body.list_price:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_price", "message": "Sell price cannot be greater than list price."},
        )
    clash = store.variant_conflict(product_id, title=body.title, variant_code=body.variant_code, exclude_id=exclude_id)
    if clash == "title":
        raise HTTPException(
            status_code=409,
            detail={"code": "duplicate_title", "message": "Another variant of this product has the same title."},
        )
    if clash == "variant_code":
        raise HTTPException(
            status_code=409,
            detail={"code": "duplicate_code", "message": "Another variant of this product has the same code."},
        )


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


@router.get("/products", response_model=list[ProductResponse])
def list_products(
    request: Request,
    search: Optional[str] = Query(default=None, max_length=100),
    status: Optional[str] = Query(default=None, max_length=20),
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_LIST)),
) -> list[ProductResponse]:
    store: ShopStore = request.app.state.shop
    return [ProductResponse.from_product(p) for p in store.list_products(search=search, status=status)]


@router.get("/products/{product_id}", response_model=ProductResponse)
def get_product(
    request: Request,
    product_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> ProductResponse:
    product = request.app.state.shop.get_product(product_id)
    if product is None:
        raise _product_not_found()
    return ProductResponse.from_product(product)


@router.post("/products", response_model=ProductResponse, status_code=201)
def create_product(
    request: Request,
    body: ProductCreate,
    current_user: User = Depends(require_permission(_M, PermissionCodes.CREATE)),
) -> ProductResponse:
    store: ShopStore = request.app.state.shop
    slug = slugify(body.slug or body.name)
    if not slug:
        raise HTTPException(status_code=400, detail={"code": "invalid_slug", "message": "Slug cannot be empty."})
    product = Product(
        name=body.name,
        slug=slug,
        description=body.description,
        status=_checked_status(body.status) or "ACTIVE",
    )
    try:
        product_id = store.create_product(product)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "duplicate_slug", "message": "A product with that slug already exists."},
        ) from exc
    return ProductResponse.from_product(store.get_product(product_id))


@router.patch("/products/{product_id}", response_model=ProductResponse)
def update_product(
    request: Request,
    product_id: int,
    body: ProductPatch,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> ProductResponse:
    store: ShopStore = request.app.state.shop
    fields = body.model_dump(exclude_unset=True)
    if "slug" in fields:
        fields["slug"] = slugify(fields["slug"])
    if "status" in fields:
        fields["status"] = _checked_status(fields["status"])
    try:
        updated = store.update_product(product_id, **fields)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "duplicate_slug", "message": "A product with that slug already exists."},
        ) from exc
    if not updated:
        raise _product_not_found()
    return ProductResponse.from_product(store.get_product(product_id))


@router.delete("/products/{product_id}", status_code=204)
def delete_product(
    request: Request,
    product_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.DELETE)),
) -> Response:
    store: ShopStore = request.app.state.shop
    if store.get_product(product_id) is None:
        raise _product_not_found()
    variant_count = len(store.list_variants(product_id))
    if variant_count:
        raise HTTPException(
            status_code=409,
            detail={
                "code": "product_in_use",
                "message": f"Product has {variant_count} variant(s). Hide it or delete the variants first.",
            },
        )
    store.delete_product(product_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


@router.get("/products/{product_id}/variants", response_model=list[VariantResponse])
def list_variants(
    request: Request,
    product_id: int,
    search: Optional[str] = Query(default=None, max_length=100),
    status: Optional[str] = Query(default=None, max_length=20),
    sort_by: Optional[str] = Query(default=None, alias="sortBy", max_length=30),
    sort_dir: str = Query(default="asc", alias="sortDir", pattern="^(asc|desc|ASC|DESC)$"),
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_LIST)),
) -> list[VariantResponse]:
    store: ShopStore = request.app.state.shop
    if store.get_product(product_id) is None:
        raise _product_not_found()
    variants = store.list_variants(product_id, search=search, status=status, sort_by=sort_by, sort_dir=sort_dir)
    return [VariantResponse.from_variant(v) for v in variants]


@router.get("/products/{product_id}/variants/{variant_id}", response_model=VariantResponse)
def get_variant(
    request: Request,
    product_id: int,
    variant_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> VariantResponse:
    return VariantResponse.from_variant(_load_variant(request.app.state.shop, product_id, variant_id))


@router.post("/products/{product_id}/variants", response_model=VariantResponse, status_code=201)
def create_variant(
    request: Request,
    product_id: int,
    body: VariantWrite,
    current_user: User = Depends(require_permission(_M, PermissionCodes.CREATE)),
) -> VariantResponse:
    store: ShopStore = request.app.state.shop
    if store.get_product(product_id) is None:
        raise _product_not_found()
    _validate_variant(store, product_id, body)
    variant_id = store.create_variant(
        ProductVariant(
            product_id=product_id,
            variant_code=body.variant_code,
            title=body.title,
            duration_days=body.duration_days,
            warranty_days=body.warranty_days,
            stock_qty=body.stock_qty,
            sell_price=body.sell_price,
            list_price=body.list_price,
            status=_checked_status(body.status) or "ACTIVE",
        )
    )
    return VariantResponse.from_variant(store.get_variant(variant_id))


@router.put("/products/{product_id}/variants/{variant_id}", response_model=VariantResponse)
def update_variant(
    request: Request,
    product_id: int,
    variant_id: int,
    body: VariantWrite,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> VariantResponse:
    store: ShopStore = request.app.state.shop
    current = _load_variant(store, product_id, variant_id)
    _validate_variant(store, product_id, body, exclude_id=variant_id)
    fields = body.model_dump()
    fields["status"] = _checked_status(body.status) or current.status
    store.update_variant(variant_id, **fields)
    return VariantResponse.from_variant(store.get_variant(variant_id))


@router.patch("/products/{product_id}/variants/{variant_id}/toggle", response_model=VariantResponse)
def toggle_variant(
    request: Request,
    product_id: int,
    variant_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> VariantResponse:
    store: ShopStore = request.app.state.shop
    _load_variant(store, product_id, variant_id)
    return VariantResponse.from_variant(store.toggle_variant(variant_id))


@router.delete("/products/{product_id}/variants/{variant_id}", status_code=204)
def delete_variant(
    request: Request,
    product_id: int,
    variant_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.DELETE)),
) -> Response:
    store: ShopStore = request.app.state.shop
    _load_variant(store, product_id, variant_id)
    if store.variant_has_orders(variant_id):
        raise HTTPException(
            status_code=409,
            detail={"code": "variant_in_use", "message": "Variant has orders. Hide it instead of deleting."},
        )
    store.delete_variant(variant_id)
    return Response(status_code=204)
