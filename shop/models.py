"""
shop/models.py -- Domain dataclasses for catalog, cart, orders and payments.

These are pure data containers with zero logic. Status rules (stock-driven
variant status, cart locking, payment/order transitions) live in
shop/store.py and payments/service.py.

Money is stored as integer VND -- PayOS only accepts integer amounts.
"""

from dataclasses import dataclass, field
from typing import Optional

# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------

PRODUCT_STATUSES = ("ACTIVE", "INACTIVE", "OUT_OF_STOCK")


class CartStatus:
    ACTIVE = "Active"
    CONVERTING = "Converting"
    EXPIRED = "Expired"


class OrderStatus:
    PENDING_PAYMENT = "PendingPayment"
    PAID = "Paid"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    CANCELLED_BY_TIMEOUT = "CancelledByTimeout"
    NEEDS_MANUAL_ACTION = "NeedsManualAction"


class PaymentStatus:
    PENDING = "Pending"
    PAID = "Paid"
    CANCELLED = "Cancelled"
    TIMEOUT = "Timeout"
    DUP_CANCELLED = "DupCancelled"
    NEED_REVIEW = "NeedReview"
    REPLACED = "Replaced"


class PaymentTarget:
    ORDER = "Order"
    SUPPORT_PLAN = "SupportPlan"


class ReservationStatus:
    RESERVED = "Reserved"
    RELEASED = "Released"
    FINALIZED = "Finalized"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@dataclass
class Product:
    name: str
    slug: str
    id: Optional[int] = None
    description: Optional[str] = None
    status: str = "ACTIVE"
    created_at: str = ""
    updated_at: Optional[str] = None


@dataclass
class ProductVariant:
    """A sellable SKU of a product (e.g. "1 year licence").

    status is derived from stock on every write (see
    shop/store.resolve_status_from_stock): an explicit INACTIVE sticks,
    zero stock forces OUT_OF_STOCK.
    """

    product_id: int
    variant_code: str
    title: str
    id: Optional[int] = None
    duration_days: Optional[int] = None
    warranty_days: Optional[int] = None
    stock_qty: int = 0
    sell_price: int = 0
    list_price: int = 0
    status: str = "ACTIVE"
    created_at: str = ""
    updated_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


@dataclass
class CartItem:
    cart_id: int
    variant_id: int
    quantity: int
    unit_price: int
    id: Optional[int] = None
    product_id: Optional[int] = None
    title: str = ""
    product_name: str = ""
    stock_qty: int = 0


@dataclass
class Cart:
    """A shopping cart owned either by a user (user_id) or a guest (guest_id).

    Converting is a short-lived lock held while checkout turns the cart into
    an order. converted_order_id is set once that succeeds.
    """

    id: Optional[int] = None
    user_id: Optional[int] = None
    guest_id: Optional[str] = None
    status: str = CartStatus.ACTIVE
    receiver_email: Optional[str] = None
    converted_order_id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
    expires_at: str = ""
    items: list[CartItem] = field(default_factory=list)

    @property
    def total_quantity(self) -> int:
        return sum(i.quantity for i in self.items)

    @property
    def total_amount(self) -> int:
        return sum(i.quantity * i.unit_price for i in self.items)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@dataclass
class OrderItem:
    variant_id: int
    product_id: int
    quantity: int
    unit_price: int
    title: str = ""
    order_id: Optional[int] = None
    id: Optional[int] = None


@dataclass
class Order:
    email: str
    id: Optional[int] = None
    user_id: Optional[int] = None
    total_amount: int = 0
    discount_amount: int = 0
    final_amount: int = 0
    status: str = OrderStatus.PENDING_PAYMENT
    reservation_status: Optional[str] = None
    created_at: str = ""
    updated_at: Optional[str] = None
    items: list[OrderItem] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@dataclass
class Payment:
    """One payment attempt against a target (an Order or a SupportPlan purchase).

    target_id is the order id for Order targets and the support plan id for
    SupportPlan targets (the buyer is identified by email). provider_order_code
    is the numeric orderCode sent to PayOS; the webhook looks payments up by it.
    return_token is the opaque value the PayOS result pages send back; the
    anonymous confirm/cancel calls find the payment by it, never by id.
    """

    amount: int
    target_type: str
    target_id: int
    id: Optional[int] = None
    provider: str = "PayOS"
    status: str = PaymentStatus.PENDING
    provider_order_code: Optional[int] = None
    payment_link_id: Optional[str] = None
    checkout_url: Optional[str] = None
    email: Optional[str] = None
    return_token: Optional[str] = None
    created_at: str = ""
    updated_at: Optional[str] = None


@dataclass
class PaymentGateway:
    name: str
    id: Optional[int] = None
    client_id: Optional[str] = None
    api_key: Optional[str] = None
    checksum_key: Optional[str] = None
    endpoint: Optional[str] = None
    is_active: bool = True


# ---------------------------------------------------------------------------
# Support plans
# ---------------------------------------------------------------------------


@dataclass
class SupportPlan:
    name: str
    priority_level: int
    price: int
    id: Optional[int] = None
    description: Optional[str] = None
    is_active: bool = True


@dataclass
class SupportSubscription:
    """A user's subscription to a support plan.

    status: Active, or Upgraded once a higher plan replaced it mid-period.
    The replacing subscription inherits expires_at of the one it upgrades.
    """

    user_id: int
    plan_id: int
    id: Optional[int] = None
    status: str = "Active"
    started_at: str = ""
    expires_at: Optional[str] = None
    plan_name: str = ""
    plan_priority_level: int = 0
    plan_price: int = 0
