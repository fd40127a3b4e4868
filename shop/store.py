"""
shop/store.py -- SQLAlchemy Core persistence layer for catalog, cart, orders and payments.

Pattern: Repository + Data Mapper. ShopStore is the repository; the _row_to_*
functions are the mappers. Route handlers and payments/service.py never touch
SQL directly.

Everything that must change together lives in this one store so multi-row
transitions run in a single transaction:
  - checkout:   stock reservation + order + order lines
  - webhook:    payment status + order status + reservation + duplicate attempts
  - timeout:    payment Timeout + order CancelledByTimeout + reservation release

Stock reservation model: checkout decrements stock_qty immediately and marks
the order reservation_status=Reserved. Cancelling or timing out an unpaid
order adds the quantity back (Released); paying it makes the decrement
permanent (Finalized).

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = ShopStore()                                 # SQLite default
    store = ShopStore("postgresql://user:pw@host/db")   # PostgreSQL
    pid = store.create_product(Product(name="Windows 11 Pro", slug="windows-11-pro"))
    store.create_variant(ProductVariant(product_id=pid, variant_code="W11-1Y", title="1 year", stock_qty=5))
    store.close()
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from shop.models import (
    PRODUCT_STATUSES,
    Cart,
    CartItem,
    CartStatus,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentGateway,
    PaymentStatus,
    PaymentTarget,
    Product,
    ProductVariant,
    ReservationStatus,
    SupportPlan,
    SupportSubscription,
)

logger = logging.getLogger("ktk.shop")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'ktk_shop.db'}"

GUEST_CART_TTL = timedelta(days=7)
USER_CART_TTL = timedelta(days=30)
CONVERTING_LOCK_TIMEOUT = timedelta(minutes=5)
SUBSCRIPTION_PERIOD_DAYS = 30

DEFAULT_SUPPORT_PLANS = (
    SupportPlan("Standard", priority_level=0, price=0, description="Email and ticket support."),
    SupportPlan("Priority", priority_level=1, price=49_000, description="Faster ticket handling."),
    SupportPlan("Premium", priority_level=2, price=99_000, description="Priority chat queue."),
    SupportPlan("VIP", priority_level=3, price=199_000, description="Top of every queue."),
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_products = Table(
    "products",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(255), nullable=False, unique=True),
    Column("description", Text),
    Column("status", String(20), nullable=False, server_default="ACTIVE"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40)),
)

_variants = Table(
    "product_variants",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
    Column("variant_code", String(50), nullable=False),
    Column("title", String(60), nullable=False),
    Column("duration_days", Integer),
    Column("warranty_days", Integer),
    Column("stock_qty", Integer, nullable=False, server_default="0"),
    Column("sell_price", Integer, nullable=False, server_default="0"),
    Column("list_price", Integer, nullable=False, server_default="0"),
    Column("status", String(20), nullable=False, server_default="ACTIVE"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40)),
)

_carts = Table(
    "carts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),
    Column("guest_id", String(64)),
    Column("status", String(20), nullable=False, server_default="Active"),
    Column("receiver_email", String(255)),
    Column("converted_order_id", Integer),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
)

_cart_items = Table(
    "cart_items",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("cart_id", Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False),
    Column("variant_id", Integer, ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Integer, nullable=False),
    UniqueConstraint("cart_id", "variant_id", name="uq_cart_variant"),
)

_orders = Table(
    "orders",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),
    Column("email", String(255), nullable=False),
    Column("total_amount", Integer, nullable=False),
    Column("discount_amount", Integer, nullable=False, server_default="0"),
    Column("final_amount", Integer, nullable=False),
    Column("status", String(30), nullable=False),
    Column("reservation_status", String(20)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40)),
)

_order_items = Table(
    "order_items",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
    Column("variant_id", Integer, nullable=False),
    Column("product_id", Integer, nullable=False),
    Column("title", String(255), nullable=False, server_default=""),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Integer, nullable=False),
)

_payments = Table(
    "payments",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("amount", Integer, nullable=False),
    Column("provider", String(30), nullable=False),
    Column("status", String(20), nullable=False),
    Column("target_type", String(20), nullable=False),
    Column("target_id", Integer, nullable=False),
    Column("provider_order_code", Integer),
    Column("payment_link_id", String(100)),
    Column("checkout_url", Text),
    Column("email", String(255)),
    Column("return_token", String(64), unique=True),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40)),
)

_gateways = Table(
    "payment_gateways",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("client_id", String(255)),
    Column("api_key", String(255)),
    Column("checksum_key", String(255)),
    Column("endpoint", String(255)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_support_plans = Table(
    "support_plans",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(120), nullable=False),
    Column("description", Text),
    Column("priority_level", Integer, nullable=False),
    Column("price", Integer, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_subscriptions = Table(
    "support_subscriptions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("plan_id", Integer, ForeignKey("support_plans.id"), nullable=False),
    Column("status", String(20), nullable=False),
    Column("started_at", String(40), nullable=False),
    Column("expires_at", String(40)),
)

# Allowed sortBy values for list_payments (lower-cased) -> column.
_PAYMENT_SORT_COLUMNS = {
    "paymentid": _payments.c.id,
    "amount": _payments.c.amount,
    "status": _payments.c.status,
    "provider": _payments.c.provider,
    "email": _payments.c.email,
    "targettype": _payments.c.target_type,
    "providerordercode": _payments.c.provider_order_code,
    "createdat": _payments.c.created_at,
}

_VARIANT_SORT_COLUMNS = {
    "title": _variants.c.title,
    "variantcode": _variants.c.variant_code,
    "stockqty": _variants.c.stock_qty,
    "sellprice": _variants.c.sell_price,
    "status": _variants.c.status,
    "createdat": _variants.c.created_at,
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class InsufficientStockError(Exception):
    """Raised when a reservation cannot be satisfied. Carries the variant id."""

    def __init__(self, variant_id: int) -> None:
        super().__init__(f"Insufficient stock for variant {variant_id}")
        self.variant_id = variant_id


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    # Fixed precision keeps ISO strings lexicographically comparable in SQL.
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def cart_ttl(user_id: Optional[int]) -> timedelta:
    return USER_CART_TTL if user_id else GUEST_CART_TTL


def resolve_status_from_stock(stock_qty: int, desired: Optional[str]) -> str:
    """Derive a variant status from stock and the status an admin asked for.

    INACTIVE is an explicit admin decision and always sticks. Otherwise zero
    stock means OUT_OF_STOCK (still listed). With stock, any other valid
    status is honoured, and ACTIVE is the default.
    """
    d = (desired or "").strip().upper()
    if d == "INACTIVE":
        return "INACTIVE"
    if stock_qty <= 0:
        return "OUT_OF_STOCK"
    if d in PRODUCT_STATUSES and d != "OUT_OF_STOCK":
        return d
    return "ACTIVE"


def toggle_visibility(current: Optional[str], stock_qty: int) -> str:
    """ACTIVE <-> INACTIVE; a variant without stock can only be OUT_OF_STOCK."""
    if stock_qty <= 0:
        return "OUT_OF_STOCK"
    return "INACTIVE" if (current or "").strip().upper() == "ACTIVE" else "ACTIVE"


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and FK enforcement per connection."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ShopStore:
    """Repository for catalog, cart, order, payment and support-plan entities."""

    _PRODUCT_FIELDS: set = {"name", "slug", "description", "status"}
    _PLAN_FIELDS: set = {"name", "description", "priority_level", "price"}
    _VARIANT_FIELDS: set = {
        "variant_code",
        "title",
        "duration_days",
        "warranty_days",
        "stock_qty",
        "sell_price",
        "list_price",
        "status",
    }

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ==================================================================
    # Catalog -- products
    # ==================================================================

    def create_product(self, product: Product) -> int:
        """Insert a product. Raises IntegrityError when the slug is taken."""
        status = (product.status or "ACTIVE").upper()
        with self.engine.connect() as conn:
            result = conn.execute(
                _products.insert().values(
                    name=product.name,
                    slug=product.slug,
                    description=product.description,
                    status=status if status in PRODUCT_STATUSES else "ACTIVE",
                    created_at=_iso(_now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_product(self, product_id: int) -> Optional[Product]:
        with self.engine.connect() as conn:
            row = conn.execute(_products.select().where(_products.c.id == product_id)).fetchone()
        return _row_to_product(row) if row is not None else None

    def get_product_by_slug(self, slug: str) -> Optional[Product]:
        with self.engine.connect() as conn:
            row = conn.execute(_products.select().where(_products.c.slug == slug)).fetchone()
        return _row_to_product(row) if row is not None else None

    def list_products(self, search: Optional[str] = None, status: Optional[str] = None) -> list[Product]:
        query = _products.select().order_by(_products.c.name)
        if search:
            pattern = f"%{search.strip().lower()}%"
            query = query.where(
                or_(func.lower(_products.c.name).like(pattern), func.lower(_products.c.slug).like(pattern))
            )
        if status:
            query = query.where(_products.c.status == status.strip().upper())
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_product(r) for r in rows]

    def update_product(self, product_id: int, **fields) -> bool:
        unknown = set(fields) - self._PRODUCT_FIELDS
        if unknown:
            raise ValueError(f"Unknown product fields: {unknown!r}")
        desired = fields.pop("status", None)
        with self.engine.connect() as conn:
            if fields:
                fields["updated_at"] = _iso(_now())
                result = conn.execute(_products.update().where(_products.c.id == product_id).values(**fields))
                if result.rowcount == 0:
                    conn.rollback()
                    return False
            elif conn.execute(select(_products.c.id).where(_products.c.id == product_id)).first() is None:
                return False
            self._recalc_product_status(conn, product_id, desired)
            conn.commit()
        return True

    def delete_product(self, product_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_products.delete().where(_products.c.id == product_id))
            conn.commit()
        return result.rowcount > 0

    def _recalc_product_status(self, conn, product_id: int, desired: Optional[str] = None) -> None:
        """Recompute a product's status from the total stock of its variants.

        An explicit INACTIVE (current, without a new desired status, or newly
        requested) is left alone. Otherwise zero total stock -> OUT_OF_STOCK,
        any stock -> the requested status if valid, else ACTIVE.
        """
        row = conn.execute(select(_products.c.status).where(_products.c.id == product_id)).first()
        if row is None:
            return
        d = (desired or "").strip().upper()
        if not d and (row.status or "").upper() == "INACTIVE":
            return
        total = conn.execute(
            select(func.coalesce(func.sum(_variants.c.stock_qty), 0)).where(_variants.c.product_id == product_id)
        ).scalar_one()
        status = resolve_status_from_stock(int(total), d or None)
        conn.execute(
            _products.update().where(_products.c.id == product_id).values(status=status, updated_at=_iso(_now()))
        )

    # ==================================================================
    # Catalog -- variants
    # ==================================================================

    def create_variant(self, variant: ProductVariant) -> int:
        """Insert a variant with a stock-derived status and refresh the product status."""
        now = _iso(_now())
        with self.engine.connect() as conn:
            result = conn.execute(
                _variants.insert().values(
                    product_id=variant.product_id,
                    variant_code=variant.variant_code,
                    title=variant.title,
                    duration_days=variant.duration_days,
                    warranty_days=variant.warranty_days,
                    stock_qty=variant.stock_qty,
                    sell_price=variant.sell_price,
                    list_price=variant.list_price,
                    status=resolve_status_from_stock(variant.stock_qty, variant.status),
                    created_at=now,
                )
            )
            self._recalc_product_status(conn, variant.product_id)
            conn.commit()
            return result.inserted_primary_key[0]

    def get_variant(self, variant_id: int) -> Optional[ProductVariant]:
        with self.engine.connect() as conn:
            row = conn.execute(_variants.select().where(_variants.c.id == variant_id)).fetchone()
        return _row_to_variant(row) if row is not None else None

    def list_variants(
        self,
        product_id: int,
        search: Optional[str] = None,
        status: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_dir: str = "asc",
    ) -> list[ProductVariant]:
        column = _VARIANT_SORT_COLUMNS.get((sort_by or "").lower(), _variants.c.created_at)
        order = column.desc() if sort_dir.lower() == "desc" else column.asc()
        query = _variants.select().where(_variants.c.product_id == product_id).order_by(order, _variants.c.id)
        if search:
            pattern = f"%{search.strip().lower()}%"
            query = query.where(
                or_(func.lower(_variants.c.title).like(pattern), func.lower(_variants.c.variant_code).like(pattern))
            )
        if status:
            query = query.where(_variants.c.status == status.strip().upper())
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_variant(r) for r in rows]

    def variant_conflict(
        self,
        product_id: int,
        title: Optional[str] = None,
        variant_code: Optional[str] = None,
        exclude_id: Optional[int] = None,
    ) -> Optional[str]:
        """Return "title" or "variant_code" if another variant of the product uses it.

        Comparison is case-insensitive. Returns None when there is no clash.
        """
        with self.engine.connect() as conn:
            for field_name, value, column in (
                ("title", title, _variants.c.title),
                ("variant_code", variant_code, _variants.c.variant_code),
            ):
                if not value:
                    continue
                query = select(_variants.c.id).where(
                    (_variants.c.product_id == product_id) & (func.lower(column) == value.strip().lower())
                )
                if exclude_id is not None:
                    query = query.where(_variants.c.id != exclude_id)
                if conn.execute(query).first() is not None:
                    return field_name
        return None

    def update_variant(self, variant_id: int, **fields) -> bool:
        """Update a variant. Status is re-derived from the resulting stock."""
        unknown = set(fields) - self._VARIANT_FIELDS
        if unknown:
            raise ValueError(f"Unknown variant fields: {unknown!r}")
        with self.engine.connect() as conn:
            row = conn.execute(_variants.select().where(_variants.c.id == variant_id)).fetchone()
            if row is None:
                return False
            stock = fields.get("stock_qty", row.stock_qty)
            fields["status"] = resolve_status_from_stock(stock, fields.get("status", row.status))
            fields["updated_at"] = _iso(_now())
            conn.execute(_variants.update().where(_variants.c.id == variant_id).values(**fields))
            self._recalc_product_status(conn, row.product_id)
            conn.commit()
        return True

    def toggle_variant(self, variant_id: int) -> Optional[ProductVariant]:
        with self.engine.connect() as conn:
            row = conn.execute(_variants.select().where(_variants.c.id == variant_id)).fetchone()
            if row is None:
                return None
            conn.execute(
                _variants.update()
                .where(_variants.c.id == variant_id)
                .values(status=toggle_visibility(row.status, row.stock_qty), updated_at=_iso(_now()))
            )
            self._recalc_product_status(conn, row.product_id)
            conn.commit()
        return self.get_variant(variant_id)

    def variant_has_orders(self, variant_id: int) -> bool:
        with self.engine.connect() as conn:
            hit = conn.execute(select(_order_items.c.id).where(_order_items.c.variant_id == variant_id).limit(1))
            return hit.first() is not None

    def delete_variant(self, variant_id: int) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_variants.c.product_id).where(_variants.c.id == variant_id)).first()
            if row is None:
                return False
            conn.execute(_cart_items.delete().where(_cart_items.c.variant_id == variant_id))
            conn.execute(_variants.delete().where(_variants.c.id == variant_id))
            self._recalc_product_status(conn, row.product_id)
            conn.commit()
        return True

    # ==================================================================
    # Cart
    # ==================================================================

    def get_cart(self, user_id: Optional[int] = None, guest_id: Optional[str] = None) -> Optional[Cart]:
        """Return the owner's live cart (Active or Converting), or None.

        Lazily expires carts past expires_at and releases Converting locks that
        outlived CONVERTING_LOCK_TIMEOUT without producing an order.
        """
        if not user_id and not guest_id:
            return None
        owner = _carts.c.user_id == user_id if user_id else _carts.c.guest_id == guest_id
        now = _now()
        with self.engine.connect() as conn:
            row = conn.execute(
                _carts.select()
                .where(owner & _carts.c.status.in_([CartStatus.ACTIVE, CartStatus.CONVERTING]))
                .order_by(_carts.c.id.desc())
                .limit(1)
            ).fetchone()
            if row is None:
                return None
            if row.status == CartStatus.ACTIVE and (_parse_iso(row.expires_at) or now) < now:
                conn.execute(_carts.update().where(_carts.c.id == row.id).values(status=CartStatus.EXPIRED))
                conn.commit()
                return None
            if (
                row.status == CartStatus.CONVERTING
                and row.converted_order_id is None
                and (_parse_iso(row.updated_at) or now) < now - CONVERTING_LOCK_TIMEOUT
            ):
                self._touch_cart(conn, row.id, row.user_id, status=CartStatus.ACTIVE)
                conn.commit()
            return self._load_cart(conn, row.id)

    def get_cart_by_id(self, cart_id: int) -> Optional[Cart]:
        with self.engine.connect() as conn:
            return self._load_cart(conn, cart_id)

    def get_or_create_cart(self, user_id: Optional[int] = None, guest_id: Optional[str] = None) -> Cart:
        cart = self.get_cart(user_id=user_id, guest_id=guest_id)
        if cart is not None:
            return cart
        now = _now()
        with self.engine.connect() as conn:
            result = conn.execute(
                _carts.insert().values(
                    user_id=user_id,
                    guest_id=None if user_id else guest_id,
                    status=CartStatus.ACTIVE,
                    created_at=_iso(now),
                    updated_at=_iso(now),
                    expires_at=_iso(now + cart_ttl(user_id)),
                )
            )
            cart_id = result.inserted_primary_key[0]
            conn.commit()
            return self._load_cart(conn, cart_id)

    def set_cart_item(self, cart_id: int, variant_id: int, quantity: int, unit_price: int) -> None:
        """Set the absolute quantity of a line, inserting it if needed. quantity <= 0 removes it."""
        with self.engine.connect() as conn:
            if quantity <= 0:
                conn.execute(
                    _cart_items.delete().where(
                        (_cart_items.c.cart_id == cart_id) & (_cart_items.c.variant_id == variant_id)
                    )
                )
            else:
                result = conn.execute(
                    _cart_items.update()
                    .where((_cart_items.c.cart_id == cart_id) & (_cart_items.c.variant_id == variant_id))
                    .values(quantity=quantity, unit_price=unit_price)
                )
                if result.rowcount == 0:
                    conn.execute(
                        _cart_items.insert().values(
                            cart_id=cart_id, variant_id=variant_id, quantity=quantity, unit_price=unit_price
                        )
                    )
            self._touch_cart(conn, cart_id)
            conn.commit()

    def remove_cart_item(self, cart_id: int, variant_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _cart_items.delete().where((_cart_items.c.cart_id == cart_id) & (_cart_items.c.variant_id == variant_id))
            )
            self._touch_cart(conn, cart_id)
            conn.commit()
        return result.rowcount > 0

    def clear_cart(self, cart_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_cart_items.delete().where(_cart_items.c.cart_id == cart_id))
            self._touch_cart(conn, cart_id)
            conn.commit()

    def set_receiver_email(self, cart_id: int, email: Optional[str]) -> None:
        with self.engine.connect() as conn:
            conn.execute(_carts.update().where(_carts.c.id == cart_id).values(receiver_email=email))
            self._touch_cart(conn, cart_id)
            conn.commit()

    def lock_cart(self, cart_id: int) -> bool:
        """Atomically move an Active cart to Converting. False if it was not Active."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _carts.update()
                .where((_carts.c.id == cart_id) & (_carts.c.status == CartStatus.ACTIVE))
                .values(status=CartStatus.CONVERTING, updated_at=_iso(_now()))
            )
            conn.commit()
        return result.rowcount > 0

    def unlock_cart(self, cart_id: int) -> None:
        with self.engine.connect() as conn:
            self._touch_cart(conn, cart_id, status=CartStatus.ACTIVE)
            conn.commit()

    def mark_cart_converted(self, cart_id: int, order_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _carts.update()
                .where(_carts.c.id == cart_id)
                .values(status=CartStatus.EXPIRED, converted_order_id=order_id, updated_at=_iso(_now()))
            )
            conn.commit()

    def recover_stuck_carts(self, now: Optional[datetime] = None) -> int:
        """Revert Converting carts older than the lock timeout that never converted."""
        now = now or _now()
        cutoff = _iso(now - CONVERTING_LOCK_TIMEOUT)
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_carts.c.id, _carts.c.user_id).where(
                    (_carts.c.status == CartStatus.CONVERTING)
                    & (_carts.c.converted_order_id.is_(None))
                    & (_carts.c.updated_at < cutoff)
                )
            ).fetchall()
            for row in rows:
                self._touch_cart(conn, row.id, row.user_id, status=CartStatus.ACTIVE, now=now)
            conn.commit()
        return len(rows)

    def _touch_cart(
        self,
        conn,
        cart_id: int,
        user_id: Optional[int] = None,
        status: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or _now()
        if user_id is None:
            user_id = conn.execute(select(_carts.c.user_id).where(_carts.c.id == cart_id)).scalar()
        values = {"updated_at": _iso(now), "expires_at": _iso(now + cart_ttl(user_id))}
        if status is not None:
            values["status"] = status
        conn.execute(_carts.update().where(_carts.c.id == cart_id).values(**values))

    def _load_cart(self, conn, cart_id: int) -> Optional[Cart]:
        row = conn.execute(_carts.select().where(_carts.c.id == cart_id)).fetchone()
        if row is None:
            return None
        item_rows = conn.execute(
            select(
                _cart_items,
                _variants.c.product_id,
                _variants.c.title,
                _variants.c.stock_qty,
                _products.c.name.label("product_name"),
            )
            .join(_variants, _variants.c.id == _cart_items.c.variant_id)
            .join(_products, _products.c.id == _variants.c.product_id)
            .where(_cart_items.c.cart_id == cart_id)
            .order_by(_cart_items.c.id)
        ).fetchall()
        return _row_to_cart(row, [_row_to_cart_item(r) for r in item_rows])

    # ==================================================================
    # Orders and stock reservation
    # ==================================================================

    def create_order(self, order: Order) -> int:
        """Insert a PendingPayment order and reserve stock for every line.

        Runs in one transaction: stock is decremented with a guarded UPDATE
        (stock_qty >= quantity), so two concurrent checkouts cannot oversell.
        Raises InsufficientStockError and writes nothing when any line fails.
        """
        now = _iso(_now())
        with self.engine.connect() as conn:
            for item in order.items:
                result = conn.execute(
                    _variants.update()
                    .where((_variants.c.id == item.variant_id) & (_variants.c.stock_qty >= item.quantity))
                    .values(stock_qty=_variants.c.stock_qty - item.quantity, updated_at=now)
                )
                if result.rowcount == 0:
                    conn.rollback()
                    raise InsufficientStockError(item.variant_id)
            total = sum(i.quantity * i.unit_price for i in order.items)
            result = conn.execute(
                _orders.insert().values(
                    user_id=order.user_id,
                    email=order.email,
                    total_amount=total,
                    discount_amount=order.discount_amount,
                    final_amount=max(total - order.discount_amount, 0),
                    status=OrderStatus.PENDING_PAYMENT,
                    reservation_status=ReservationStatus.RESERVED,
                    created_at=now,
                )
            )
            order_id = result.inserted_primary_key[0]
            for item in order.items:
                conn.execute(
                    _order_items.insert().values(
                        order_id=order_id,
                        variant_id=item.variant_id,
                        product_id=item.product_id,
                        title=item.title,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                    )
                )
            self._refresh_variant_statuses(conn, [i.variant_id for i in order.items])
            conn.commit()
            return order_id

    def get_order(self, order_id: int) -> Optional[Order]:
        with self.engine.connect() as conn:
            row = conn.execute(_orders.select().where(_orders.c.id == order_id)).fetchone()
            if row is None:
                return None
            items = conn.execute(
                _order_items.select().where(_order_items.c.order_id == order_id).order_by(_order_items.c.id)
            ).fetchall()
        return _row_to_order(row, [_row_to_order_item(i) for i in items])

    def list_orders(self, user_id: Optional[int] = None, status: Optional[str] = None) -> list[Order]:
        query = _orders.select().order_by(_orders.c.created_at.desc(), _orders.c.id.desc())
        if user_id is not None:
            query = query.where(_orders.c.user_id == user_id)
        if status:
            query = query.where(_orders.c.status == status)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_order(r, []) for r in rows]

    def cancel_order(self, order_id: int, status: str = OrderStatus.CANCELLED) -> bool:
        """Cancel an order and release its reservation (used when checkout fails)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _orders.update().where(_orders.c.id == order_id).values(status=status, updated_at=_iso(_now()))
            )
            self._release_reservation(conn, order_id)
            conn.commit()
        return result.rowcount > 0

    def complete_order(self, order_id: int) -> bool:
        """Fulfil a Paid order (Paid -> Completed). False if the order is not Paid."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _orders.update()
                .where((_orders.c.id == order_id) & (_orders.c.status == OrderStatus.PAID))
                .values(status=OrderStatus.COMPLETED, updated_at=_iso(_now()))
            )
            conn.commit()
        return result.rowcount > 0

    def _set_order_status(self, conn, order_id: int, status: str) -> None:
        conn.execute(_orders.update().where(_orders.c.id == order_id).values(status=status, updated_at=_iso(_now())))

    def _release_reservation(self, conn, order_id: int) -> None:
        row = conn.execute(select(_orders.c.reservation_status).where(_orders.c.id == order_id)).first()
        if row is None or row.reservation_status != ReservationStatus.RESERVED:
            return
        items = conn.execute(
            select(_order_items.c.variant_id, _order_items.c.quantity).where(_order_items.c.order_id == order_id)
        ).fetchall()
        for item in items:
            conn.execute(
                _variants.update()
                .where(_variants.c.id == item.variant_id)
                .values(stock_qty=_variants.c.stock_qty + item.quantity)
            )
        conn.execute(
            _orders.update().where(_orders.c.id == order_id).values(reservation_status=ReservationStatus.RELEASED)
        )
        self._refresh_variant_statuses(conn, [i.variant_id for i in items])

    def _finalize_reservation(self, conn, order_id: int) -> None:
        conn.execute(
            _orders.update()
            .where((_orders.c.id == order_id) & (_orders.c.reservation_status == ReservationStatus.RESERVED))
            .values(reservation_status=ReservationStatus.FINALIZED)
        )

    def _refresh_variant_statuses(self, conn, variant_ids: list[int]) -> None:
        product_ids: set[int] = set()
        for variant_id in set(variant_ids):
            row = conn.execute(
                select(_variants.c.product_id, _variants.c.stock_qty, _variants.c.status).where(
                    _variants.c.id == variant_id
                )
            ).first()
            if row is None:
                continue
            conn.execute(
                _variants.update()
                .where(_variants.c.id == variant_id)
                .values(status=resolve_status_from_stock(row.stock_qty, row.status))
            )
            product_ids.add(row.product_id)
        for product_id in product_ids:
            self._recalc_product_status(conn, product_id)

    # ==================================================================
    # Payments
    # ==================================================================

    def create_payment(self, payment: Payment) -> int:
        """Insert a payment attempt and return its id.

        A missing return_token is generated here and written back onto
        payment so the caller can put it in the PayOS return URLs.
        """
        if not payment.return_token:
            payment.return_token = uuid.uuid4().hex
        with self.engine.connect() as conn:
            result = conn.execute(
                _payments.insert().values(
                    amount=payment.amount,
                    provider=payment.provider,
                    status=payment.status,
                    target_type=payment.target_type,
                    target_id=payment.target_id,
                    provider_order_code=payment.provider_order_code,
                    payment_link_id=payment.payment_link_id,
                    checkout_url=payment.checkout_url,
                    email=payment.email,
                    return_token=payment.return_token,
                    created_at=payment.created_at or _iso(_now()),
                )
            )
            conn.commit()
            payment.id = result.inserted_primary_key[0]
            return payment.id

    def attach_payment_link(self, payment_id: int, payment_link_id: str, checkout_url: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _payments.update()
                .where(_payments.c.id == payment_id)
                .values(payment_link_id=payment_link_id, checkout_url=checkout_url, updated_at=_iso(_now()))
            )
            conn.commit()

    def get_payment(self, payment_id: int) -> Optional[Payment]:
        with self.engine.connect() as conn:
            row = conn.execute(_payments.select().where(_payments.c.id == payment_id)).fetchone()
        return _row_to_payment(row) if row is not None else None

    def get_payment_by_return_token(self, token: str) -> Optional[Payment]:
        if not token:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_payments.select().where(_payments.c.return_token == token)).fetchone()
        return _row_to_payment(row) if row is not None else None

    def get_payment_by_order_code(self, provider: str, order_code: int) -> Optional[Payment]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _payments.select()
                .where((_payments.c.provider == provider) & (_payments.c.provider_order_code == order_code))
                .order_by(_payments.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_payment(row) if row is not None else None

    def list_payments(
        self,
        status: Optional[str] = None,
        provider: Optional[str] = None,
        email: Optional[str] = None,
        target_type: Optional[str] = None,
        target_id: Optional[int] = None,
        sort_by: Optional[str] = None,
        sort_dir: Optional[str] = None,
    ) -> list[Payment]:
        """Filtered payment list. Unknown sort_by falls back to createdAt; sort_dir defaults to desc."""
        column = _PAYMENT_SORT_COLUMNS.get((sort_by or "createdat").strip().lower(), _payments.c.created_at)
        ascending = (sort_dir or "desc").strip().lower() == "asc"
        query = _payments.select().order_by(
            column.asc() if ascending else column.desc(), _payments.c.id.asc() if ascending else _payments.c.id.desc()
        )
        if status:
            query = query.where(func.lower(_payments.c.status) == status.strip().lower())
        if provider:
            query = query.where(func.lower(_payments.c.provider) == provider.strip().lower())
        if email:
            query = query.where(func.lower(_payments.c.email).like(f"%{email.strip().lower()}%"))
        if target_type:
            query = query.where(func.lower(_payments.c.target_type) == target_type.strip().lower())
        if target_id is not None:
            query = query.where(_payments.c.target_id == target_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_payment(r) for r in rows]

    def mark_for_review(self, payment_id: int) -> None:
        """Payment -> NeedReview and, for order payments, order -> NeedsManualAction."""
        with self.engine.connect() as conn:
            row = conn.execute(_payments.select().where(_payments.c.id == payment_id)).fetchone()
            if row is None:
                return
            self._set_payment_status(conn, payment_id, PaymentStatus.NEED_REVIEW)
            if row.target_type == PaymentTarget.ORDER:
                self._set_order_status(conn, row.target_id, OrderStatus.NEEDS_MANUAL_ACTION)
            conn.commit()

    def settle_order_payment(self, payment_id: int) -> str:
        """Apply a successful gateway result to an order payment in one transaction.

        Returns the outcome:
          "paid"    -- order was PendingPayment: order Paid, reservation
                       finalized, other Pending attempts DupCancelled.
          "late"    -- order was Cancelled/CancelledByTimeout: payment Paid,
                       order NeedsManualAction.
          "manual"  -- any other order state (or no order): payment Paid,
                       order NeedsManualAction.
        """
        with self.engine.connect() as conn:
            payment = conn.execute(_payments.select().where(_payments.c.id == payment_id)).fetchone()
            if payment is None:
                raise LookupError(f"payment {payment_id} not found")
            order = conn.execute(_orders.select().where(_orders.c.id == payment.target_id)).fetchone()
            self._set_payment_status(conn, payment_id, PaymentStatus.PAID)
            if order is None:
                outcome = "manual"
            elif order.status in (OrderStatus.CANCELLED, OrderStatus.CANCELLED_BY_TIMEOUT):
                self._set_order_status(conn, order.id, OrderStatus.NEEDS_MANUAL_ACTION)
                outcome = "late"
            elif order.status == OrderStatus.PENDING_PAYMENT:
                self._finalize_reservation(conn, order.id)
                self._set_order_status(conn, order.id, OrderStatus.PAID)
                self._dup_cancel_others(conn, payment)
                outcome = "paid"
            else:
                self._set_order_status(conn, order.id, OrderStatus.NEEDS_MANUAL_ACTION)
                outcome = "manual"
            conn.commit()
        return outcome

    def settle_support_plan_payment(
        self,
        payment_id: int,
        user_id: int,
        plan_id: int,
        now: Optional[datetime] = None,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> SupportSubscription:
        """Start the purchased subscription and mark the payment Paid, atomically.

        The buyer's other Pending attempts for the plan become DupCancelled.
        before_commit runs last inside the transaction; if it raises, none of
        the subscription or payment writes are kept.
        """
        now = now or _now()
        with self.engine.begin() as conn:
            payment = conn.execute(_payments.select().where(_payments.c.id == payment_id)).fetchone()
            if payment is None:
                raise LookupError(f"payment {payment_id} not found")
            self._start_subscription(conn, user_id, plan_id, now)
            self._set_payment_status(conn, payment_id, PaymentStatus.PAID)
            self._dup_cancel_others(conn, payment, same_email=True)
            if before_commit is not None:
                before_commit()
        subscription = self.get_active_subscription(user_id, now)
        if subscription is None:
            raise LookupError(f"subscription for user {user_id} was not persisted")
        return subscription

    def cancel_payment_attempt(
        self,
        payment_id: int,
        status: str = PaymentStatus.CANCELLED,
        order_status: str = OrderStatus.CANCELLED,
    ) -> bool:
        """Close a payment attempt and cancel its order when nothing else can pay it.

        The order is cancelled (and its reservation released) only when it is
        still PendingPayment and no other attempt for it is Pending or Paid.
        Returns True when the order was cancelled.
        """
        with self.engine.connect() as conn:
            payment = conn.execute(_payments.select().where(_payments.c.id == payment_id)).fetchone()
            if payment is None:
                return False
            self._set_payment_status(conn, payment_id, status)
            cancelled = False
            if payment.target_type == PaymentTarget.ORDER:
                order = conn.execute(
                    select(_orders.c.id, _orders.c.status).where(_orders.c.id == payment.target_id)
                ).first()
                if order is not None and order.status == OrderStatus.PENDING_PAYMENT:
                    other_active = conn.execute(
                        select(_payments.c.id)
                        .where(
                            (_payments.c.target_type == PaymentTarget.ORDER)
                            & (_payments.c.target_id == payment.target_id)
                            & (_payments.c.id != payment_id)
                            & (_payments.c.status.in_([PaymentStatus.PENDING, PaymentStatus.PAID]))
                        )
                        .limit(1)
                    ).first()
                    if other_active is None:
                        self._set_order_status(conn, order.id, order_status)
                        self._release_reservation(conn, order.id)
                        cancelled = True
            conn.commit()
        return cancelled

    def list_stale_pending_payments(self, cutoff: datetime, provider: str = "PayOS") -> list[Payment]:
        """Pending order payments created before cutoff (candidates for Timeout)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _payments.select().where(
                    (_payments.c.provider == provider)
                    & (_payments.c.status == PaymentStatus.PENDING)
                    & (_payments.c.target_type == PaymentTarget.ORDER)
                    & (_payments.c.created_at < _iso(cutoff))
                )
            ).fetchall()
        return [_row_to_payment(r) for r in rows]

    def _set_payment_status(self, conn, payment_id: int, status: str) -> None:
        conn.execute(
            _payments.update().where(_payments.c.id == payment_id).values(status=status, updated_at=_iso(_now()))
        )

    def _dup_cancel_others(self, conn, payment, same_email: bool = False) -> None:
        condition = (
            (_payments.c.target_type == payment.target_type)
            & (_payments.c.target_id == payment.target_id)
            & (_payments.c.id != payment.id)
            & (_payments.c.status == PaymentStatus.PENDING)
        )
        if same_email:
            condition = condition & (_payments.c.email == payment.email)
        conn.execute(
            _payments.update().where(condition).values(status=PaymentStatus.DUP_CANCELLED, updated_at=_iso(_now()))
        )

    # ==================================================================
    # Payment gateways
    # ==================================================================

    def get_gateway(self, name: str, active_only: bool = True) -> Optional[PaymentGateway]:
        """Return the gateway with this name (case-insensitive), or None.

        By default only an active gateway is returned; the settings screen
        passes active_only=False to edit a disabled one.
        """
        query = _gateways.select().where(func.lower(_gateways.c.name) == name.strip().lower())
        if active_only:
            query = query.where(_gateways.c.is_active == 1)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_gateway(row) if row is not None else None

    def upsert_gateway(self, gateway: PaymentGateway) -> int:
        values = {
            "client_id": gateway.client_id,
            "api_key": gateway.api_key,
            "checksum_key": gateway.checksum_key,
            "endpoint": gateway.endpoint,
            "is_active": 1 if gateway.is_active else 0,
        }
        with self.engine.connect() as conn:
            row = conn.execute(select(_gateways.c.id).where(_gateways.c.name == gateway.name)).first()
            if row is not None:
                conn.execute(_gateways.update().where(_gateways.c.id == row.id).values(**values))
                gateway_id = row.id
            else:
                gateway_id = conn.execute(_gateways.insert().values(name=gateway.name, **values)).inserted_primary_key[0]
            conn.commit()
        return gateway_id

    # ==================================================================
    # Support plans and subscriptions
    # ==================================================================

    def seed_defaults(self) -> None:
        """Create the default support plans when none exist."""
        if self.list_support_plans(active_only=False):
            return
        for plan in DEFAULT_SUPPORT_PLANS:
            self.create_support_plan(plan)
        logger.info("Seeded %d default support plans", len(DEFAULT_SUPPORT_PLANS))

    def create_support_plan(self, plan: SupportPlan) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _support_plans.insert().values(
                    name=plan.name,
                    description=plan.description,
                    priority_level=plan.priority_level,
                    price=plan.price,
                    is_active=1 if plan.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_support_plan(self, plan_id: int, active_only: bool = False) -> Optional[SupportPlan]:
        query = _support_plans.select().where(_support_plans.c.id == plan_id)
        if active_only:
            query = query.where(_support_plans.c.is_active == 1)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_plan(row) if row is not None else None

    def support_plan_taken(self, priority_level: int, price: int, exclude_id: Optional[int] = None) -> bool:
        """True when another plan already has this (priority level, price) pair."""
        query = select(_support_plans.c.id).where(
            (_support_plans.c.priority_level == priority_level) & (_support_plans.c.price == price)
        )
        if exclude_id is not None:
            query = query.where(_support_plans.c.id != exclude_id)
        with self.engine.connect() as conn:
            return conn.execute(query.limit(1)).first() is not None

    def price_order_conflict(
        self, priority_level: int, price: int, exclude_id: Optional[int] = None
    ) -> Optional[SupportPlan]:
        """First active plan at another level whose price breaks the level ordering.

        Among active plans a higher level must cost more than every lower
        level, and a lower level less than every higher one.
        """
        query = (
            _support_plans.select()
            .where(
                (_support_plans.c.is_active == 1)
                & (
                    ((_support_plans.c.priority_level < priority_level) & (_support_plans.c.price >= price))
                    | ((_support_plans.c.priority_level > priority_level) & (_support_plans.c.price <= price))
                )
            )
            .order_by(_support_plans.c.priority_level, _support_plans.c.id)
        )
        if exclude_id is not None:
            query = query.where(_support_plans.c.id != exclude_id)
        with self.engine.connect() as conn:
            row = conn.execute(query.limit(1)).fetchone()
        return _row_to_plan(row) if row is not None else None

    def update_support_plan(self, plan_id: int, **fields) -> bool:
        unknown = set(fields) - self._PLAN_FIELDS
        if unknown:
            raise ValueError(f"Unknown support plan fields: {unknown!r}")
        with self.engine.connect() as conn:
            result = conn.execute(_support_plans.update().where(_support_plans.c.id == plan_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def set_support_plan_active(self, plan_id: int, active: bool) -> bool:
        """Switch a plan on or off. Switching on turns off every other plan at its level."""
        with self.engine.begin() as conn:
            row = conn.execute(select(_support_plans.c.priority_level).where(_support_plans.c.id == plan_id)).first()
            if row is None:
                return False
            if active:
                conn.execute(
                    _support_plans.update()
                    .where((_support_plans.c.priority_level == row.priority_level) & (_support_plans.c.id != plan_id))
                    .values(is_active=0)
                )
            conn.execute(
                _support_plans.update().where(_support_plans.c.id == plan_id).values(is_active=1 if active else 0)
            )
        return True

    def delete_support_plan(self, plan_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_support_plans.delete().where(_support_plans.c.id == plan_id))
            conn.commit()
        return result.rowcount > 0

    def list_support_plans(self, active_only: bool = True) -> list[SupportPlan]:
        query = _support_plans.select().order_by(_support_plans.c.priority_level, _support_plans.c.price)
        if active_only:
            query = query.where(_support_plans.c.is_active == 1)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_plan(r) for r in rows]

    def cheapest_plan_for_level(self, priority_level: int) -> Optional[SupportPlan]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _support_plans.select()
                .where((_support_plans.c.is_active == 1) & (_support_plans.c.priority_level == priority_level))
                .order_by(_support_plans.c.price)
                .limit(1)
            ).fetchone()
        return _row_to_plan(row) if row is not None else None

    def get_active_subscription(self, user_id: int, now: Optional[datetime] = None) -> Optional[SupportSubscription]:
        now = now or _now()
        with self.engine.connect() as conn:
            return self._active_subscription(conn, user_id, now)

    def _active_subscription(self, conn, user_id: int, now: datetime) -> Optional[SupportSubscription]:
        row = conn.execute(
            select(
                _subscriptions,
                _support_plans.c.name.label("plan_name"),
                _support_plans.c.priority_level.label("plan_priority_level"),
                _support_plans.c.price.label("plan_price"),
            )
            .join(_support_plans, _support_plans.c.id == _subscriptions.c.plan_id)
            .where(
                (_subscriptions.c.user_id == user_id)
                & (_subscriptions.c.status == "Active")
                & (_subscriptions.c.expires_at > _iso(now))
            )
            .order_by(_subscriptions.c.started_at.desc())
            .limit(1)
        ).fetchone()
        return _row_to_subscription(row) if row is not None else None

    def _start_subscription(self, conn, user_id: int, plan_id: int, now: datetime) -> None:
        # A running subscription becomes Upgraded and hands its expiry to the
        # new one; otherwise the new one runs SUBSCRIPTION_PERIOD_DAYS.
        current = self._active_subscription(conn, user_id, now)
        if current is not None and current.expires_at:
            expires_at = current.expires_at
            conn.execute(_subscriptions.update().where(_subscriptions.c.id == current.id).values(status="Upgraded"))
        else:
            expires_at = _iso(now + timedelta(days=SUBSCRIPTION_PERIOD_DAYS))
        conn.execute(
            _subscriptions.insert().values(
                user_id=user_id,
                plan_id=plan_id,
                status="Active",
                started_at=_iso(now),
                expires_at=expires_at,
            )
        )

    def count_subscriptions(self, plan_id: int) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(_subscriptions).where(_subscriptions.c.plan_id == plan_id)
            ).scalar()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_product(row) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        slug=row.slug,
        description=row.description,
        status=row.status,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_variant(row) -> ProductVariant:
    return ProductVariant(
        id=row.id,
        product_id=row.product_id,
        variant_code=row.variant_code,
        title=row.title,
        duration_days=row.duration_days,
        warranty_days=row.warranty_days,
        stock_qty=row.stock_qty,
        sell_price=row.sell_price,
        list_price=row.list_price,
        status=row.status,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_cart_item(row) -> CartItem:
    return CartItem(
        id=row.id,
        cart_id=row.cart_id,
        variant_id=row.variant_id,
        quantity=row.quantity,
        unit_price=row.unit_price,
        product_id=row.product_id,
        title=row.title,
        product_name=row.product_name,
        stock_qty=row.stock_qty,
    )


def _row_to_cart(row, items: list[CartItem]) -> Cart:
    return Cart(
        id=row.id,
        user_id=row.user_id,
        guest_id=row.guest_id,
        status=row.status,
        receiver_email=row.receiver_email,
        converted_order_id=row.converted_order_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        expires_at=row.expires_at,
        items=items,
    )


def _row_to_order_item(row) -> OrderItem:
    return OrderItem(
        id=row.id,
        order_id=row.order_id,
        variant_id=row.variant_id,
        product_id=row.product_id,
        title=row.title,
        quantity=row.quantity,
        unit_price=row.unit_price,
    )


def _row_to_order(row, items: list[OrderItem]) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        email=row.email,
        total_amount=row.total_amount,
        discount_amount=row.discount_amount,
        final_amount=row.final_amount,
        status=row.status,
        reservation_status=row.reservation_status,
        created_at=row.created_at,
        updated_at=row.updated_at,
        items=items,
    )


def _row_to_payment(row) -> Payment:
    return Payment(
        id=row.id,
        amount=row.amount,
        provider=row.provider,
        status=row.status,
        target_type=row.target_type,
        target_id=row.target_id,
        provider_order_code=row.provider_order_code,
        payment_link_id=row.payment_link_id,
        checkout_url=row.checkout_url,
        email=row.email,
        return_token=row.return_token,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_gateway(row) -> PaymentGateway:
    return PaymentGateway(
        id=row.id,
        name=row.name,
        client_id=row.client_id,
        api_key=row.api_key,
        checksum_key=row.checksum_key,
        endpoint=row.endpoint,
        is_active=bool(row.is_active),
    )


def _row_to_plan(row) -> SupportPlan:
    return SupportPlan(
        id=row.id,
        name=row.name,
        description=row.description,
        priority_level=row.priority_level,
        price=row.price,
        is_active=bool(row.is_active),
    )


def _row_to_subscription(row) -> SupportSubscription:
    return SupportSubscription(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=row.status,
        started_at=row.started_at,
        expires_at=row.expires_at,
        plan_name=row.plan_name,
        plan_priority_level=row.plan_priority_level,
        plan_price=row.plan_price,
    )
