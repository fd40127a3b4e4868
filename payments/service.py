"""
payments/service.py -- Checkout, PayOS webhook processing, support-plan purchase
and the payment-timeout sweep.

Orchestration only: every state change is a ShopStore / UserStore call, and
the PayOS HTTP calls come from payments/payos.py. Functions here are
synchronous and framework-free; routes translate the exceptions below into
HTTP status codes and do any realtime broadcasting themselves.

Exception -> HTTP mapping used by the routes:
  CheckoutError           400
  CartLockedError         409
  ItemUnavailableError    409
  InsufficientStockError  409   (shop/store.py)
  SupportPlanError        400
  PayOSError              502   (payments/payos.py)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.config import get_settings
from payments.payos import (
    PROVIDER,
    PayOSError,
    create_payment_link,
    generate_order_code,
    resolve_payos_config,
    verify_webhook_signature,
)
from shop.models import (
    Cart,
    CartStatus,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    PaymentTarget,
    SupportPlan,
)
from shop.store import SUBSCRIPTION_PERIOD_DAYS, InsufficientStockError

logger = logging.getLogger("ktk.payments")


class CheckoutError(ValueError):
    """The cart cannot be checked out as it is (empty, zero amount, no email)."""


class CartLockedError(ValueError):
    """The cart is Converting: another checkout holds it."""


class ItemUnavailableError(ValueError):
    def __init__(self, variant_id: int) -> None:
        super().__init__(f"Variant {variant_id} is no longer available")
        self.variant_id = variant_id


class SupportPlanError(ValueError):
    """The requested support-plan purchase is not allowed."""


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


@dataclass
class CheckoutResult:
    order: Order
    payment_id: int
    payment_token: str
    checkout_url: str


def _round_vnd(value: Any) -> int:
    try:
        return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        raise ValueError(f"not a number: {value!r}")


def checkout_cart(store, cart: Cart, email: str, buyer_name: str = "", buyer_phone: str = "") -> CheckoutResult:
    """Turn an Active cart into a PendingPayment order with a PayOS link.

    Sequence: lock cart -> re-price lines from the catalog -> reserve stock and
    create the order -> create the Pending payment -> PayOS link -> cart
    converted. Any failure after the lock unwinds: the payment attempt is
    cancelled (which cancels the order and releases stock) and the cart is
    unlocked.
    """
    if not cart.items:
        raise CheckoutError("Cart is empty.")
    if not email:
        raise CheckoutError("A receiver email is required.")
    if cart.status != CartStatus.ACTIVE or not store.lock_cart(cart.id):
        raise CartLockedError("Cart is being checked out. Please try again later.")

    try:
        lines = []
        for item in cart.items:
            variant = store.get_variant(item.variant_id)
            product = store.get_product(variant.product_id) if variant is not None else None
            if variant is None or variant.status != "ACTIVE" or product is None or product.status == "INACTIVE":
                raise ItemUnavailableError(item.variant_id)
            lines.append(
                OrderItem(
                    variant_id=variant.id,
                    product_id=variant.product_id,
                    quantity=item.quantity,
                    unit_price=variant.sell_price,
                    title=f"{product.name} - {variant.title}",
                )
            )
        if sum(i.quantity * i.unit_price for i in lines) <= 0:
            raise CheckoutError("Order amount must be greater than zero.")
        order_id = store.create_order(Order(email=email, user_id=cart.user_id, items=lines))
    except (CheckoutError, ItemUnavailableError, InsufficientStockError):
        store.unlock_cart(cart.id)
        raise

    order = store.get_order(order_id)
    order_code = generate_order_code()
    payment = Payment(
        amount=order.final_amount,
        target_type=PaymentTarget.ORDER,
        target_id=order_id,
        provider=PROVIDER,
        provider_order_code=order_code,
        email=email,
    )
    try:
        payment_id = store.create_payment(payment)
    except SQLAlchemyError:
        store.cancel_order(order_id)
        store.unlock_cart(cart.id)
        raise

    frontend = get_settings().payos_frontend_base_url.rstrip("/")
    query = f"paymentToken={payment.return_token}&orderId={order_id}"
    try:
        link = create_payment_link(
            resolve_payos_config(store),
            order_code=order_code,
            amount=order.final_amount,
            description=f"ORD{order_id}",
            return_url=f"{frontend}/cart/payment-result?{query}",
            cancel_url=f"{frontend}/cart/payment-cancel?{query}",
            buyer_name=buyer_name or email,
            buyer_email=email,
            buyer_phone=buyer_phone,
        )
    except PayOSError:
        store.cancel_payment_attempt(payment_id)
        store.unlock_cart(cart.id)
        raise

    store.attach_payment_link(payment_id, link.payment_link_id, link.checkout_url)
    store.mark_cart_converted(cart.id, order_id)
    logger.info("Checkout: cart %s -> order %s, payment %s", cart.id, order_id, payment_id)
    return CheckoutResult(
        order=order, payment_id=payment_id, payment_token=payment.return_token, checkout_url=link.checkout_url
    )


def fulfil_order(store, order_id: int) -> Optional[Order]:
    """Paid -> Completed. Returns the order when it was fulfilled."""
    if not store.complete_order(order_id):
        logger.warning("Fulfilment skipped: order %s is not Paid", order_id)
        return None
    logger.info("Order %s fulfilled", order_id)
    return store.get_order(order_id)


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


@dataclass
class WebhookOutcome:
    message: str
    status_code: int = 200
    fulfilled_order: Optional[Order] = None
    subscribed_user_id: Optional[int] = None


def _is_success(payload: dict, data: dict) -> bool:
    top_code = str(payload.get("code") or "")
    data_code = str(data.get("code") or "") or top_code
    return top_code == "00" and data_code == "00"


def apply_support_plan_payment(store, user_store, payment: Payment, now: Optional[datetime] = None) -> int:
    """Activate the purchased plan for the buyer and settle the payment.

    The subscription, the payment and the buyer's priority level change
    together: the priority is raised inside the shop transaction, so a
    failure there leaves no subscription and the payment still Pending.

    Returns the buyer's user id. Raises LookupError when the buyer or the plan
    no longer exists.
    """
    now = now or datetime.now(timezone.utc)
    user = user_store.get_by_email(payment.email or "")
    if user is None:
        raise LookupError(f"no user with email for payment {payment.id}")
    plan = store.get_support_plan(payment.target_id)
    if plan is None:
        raise LookupError(f"support plan {payment.target_id} not found")
    store.settle_support_plan_payment(
        payment.id,
        user.id,
        plan.id,
        now,
        before_commit=lambda: user_store.raise_support_priority(user.id, plan.priority_level),
    )
    logger.info("Support plan %s applied to user %s (payment %s)", plan.id, user.id, payment.id)
    return user.id


def process_webhook(store, user_store, payload: Any) -> WebhookOutcome:
    """Validate and apply one PayOS webhook delivery."""
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        return WebhookOutcome("Invalid PayOS payload.", 400)

    config = resolve_payos_config(store)
    if not verify_webhook_signature(data, payload.get("signature"), config.checksum_key):
        logger.warning("PayOS webhook with invalid signature (orderCode=%s)", data.get("orderCode"))
        return WebhookOutcome("Invalid signature.", 401)

    try:
        order_code = _round_vnd(data.get("orderCode", 0))
    except ValueError:
        order_code = 0
    if order_code <= 0:
        return WebhookOutcome("Invalid orderCode.", 400)

    payment = store.get_payment_by_order_code(PROVIDER, order_code)
    if payment is None:
        logger.warning("PayOS webhook for unknown orderCode %s", order_code)
        return WebhookOutcome("Payment not found - ignored.")

    link_id = str(data.get("paymentLinkId") or "").strip()
    if link_id and payment.payment_link_id and link_id.lower() != payment.payment_link_id.lower():
        logger.warning("PayOS paymentLinkId mismatch for orderCode %s", order_code)
        store.mark_for_review(payment.id)
        return WebhookOutcome("Webhook processed - paymentLinkId mismatch (NeedReview).")

    if payment.status == PaymentStatus.PAID:
        return WebhookOutcome("Already paid.")

    try:
        gateway_amount = _round_vnd(data.get("amount", 0))
    except ValueError:
        gateway_amount = -1
    if gateway_amount != payment.amount:
        logger.warning(
            "PayOS amount mismatch for orderCode %s: expected %s, got %s", order_code, payment.amount, gateway_amount
        )
        store.mark_for_review(payment.id)
        return WebhookOutcome("Webhook processed - amount mismatch (NeedReview).")

    try:
        if not _is_success(payload, data):
            store.cancel_payment_attempt(payment.id)
            return WebhookOutcome("Webhook processed - Cancelled.")

        if payment.target_type == PaymentTarget.SUPPORT_PLAN:
            user_id = apply_support_plan_payment(store, user_store, payment)
            return WebhookOutcome("Webhook processed - SupportPlan Paid.", subscribed_user_id=user_id)

        outcome = store.settle_order_payment(payment.id)
        if outcome == "late":
            return WebhookOutcome("Webhook processed - Paid late (NeedsManualAction).")
        if outcome == "manual":
            return WebhookOutcome("Webhook processed - Paid (NeedsManualAction).")
        return WebhookOutcome("Webhook processed - Order Paid.", fulfilled_order=fulfil_order(store, payment.target_id))
    except Exception:
        logger.exception("PayOS webhook processing failed for orderCode %s", order_code)
        store.mark_for_review(payment.id)
        return WebhookOutcome("Webhook processed - NeedReview.")


# ---------------------------------------------------------------------------
# Return-page confirm / cancel
# ---------------------------------------------------------------------------


def cancel_from_return(store, payment: Payment) -> Payment:
    """Cancel a still-Pending attempt the buyer abandoned on the PayOS page.

    Non-Pending payments are returned untouched.
    """
    if payment.status != PaymentStatus.PENDING:
        return payment
    store.cancel_payment_attempt(payment.id)
    return store.get_payment(payment.id)


# ---------------------------------------------------------------------------
# Support-plan purchase
# ---------------------------------------------------------------------------


@dataclass
class SupportPlanQuote:
    plan: SupportPlan
    amount: int
    base_price: Optional[int] = None
    remaining_days: Optional[int] = None


def prorated_amount(plan_price: int, base_price: Optional[int], remaining_days: Optional[int]) -> int:
    """Price of an upgrade with the unused part of the current plan deducted.

    Deduction applies only when the current plan is cheaper than the target
    and some days remain: price - base_price * remaining/period.
    """
    if (
        base_price is not None
        and remaining_days is not None
        and 0 < base_price < plan_price
        and remaining_days > 0
    ):
        adjusted = Decimal(plan_price) - Decimal(base_price) * Decimal(remaining_days) / Decimal(SUBSCRIPTION_PERIOD_DAYS)
    else:
        adjusted = Decimal(plan_price)
    return max(_round_vnd(adjusted), 0)


def quote_support_plan(store, user, plan_id: int, now: Optional[datetime] = None) -> SupportPlanQuote:
    """Check an upgrade to plan_id is allowed for the user and price it."""
    now = now or datetime.now(timezone.utc)
    if not user.email:
        raise SupportPlanError("Your account has no email; a payment cannot be created.")
    plan = store.get_support_plan(plan_id, active_only=True)
    if plan is None:
        raise SupportPlanError("Support plan does not exist or is disabled.")
    if plan.price <= 0:
        raise SupportPlanError("Support plan price is invalid.")

    current = store.get_active_subscription(user.id, now)
    effective = user.support_priority_level
    if current is not None and current.plan_priority_level > effective:
        effective = current.plan_priority_level
    if plan.priority_level <= effective:
        raise SupportPlanError("Your current priority level is already at or above this plan. Only upgrades are allowed.")

    base_price = remaining = None
    if current is not None:
        base_price = current.plan_price
        expires = datetime.fromisoformat(current.expires_at)
        remaining = min(max((expires.date() - now.date()).days, 0), SUBSCRIPTION_PERIOD_DAYS)
    elif user.support_priority_level > 0:
        base_plan = store.cheapest_plan_for_level(user.support_priority_level)
        if base_plan is not None:
            base_price = base_plan.price
            remaining = SUBSCRIPTION_PERIOD_DAYS

    amount = prorated_amount(plan.price, base_price, remaining)
    if amount <= 0:
        raise SupportPlanError("Payment amount is invalid after adjustment.")
    return SupportPlanQuote(plan=plan, amount=amount, base_price=base_price, remaining_days=remaining)


def create_support_plan_payment(store, user, plan_id: int) -> tuple[SupportPlanQuote, Payment, str]:
    """Create a Pending SupportPlan payment and its PayOS link.

    Returns (quote, payment, checkout_url); payment carries the new id and
    the return token.
    """
    quote = quote_support_plan(store, user, plan_id)
    order_code = generate_order_code()
    payment = Payment(
        amount=quote.amount,
        target_type=PaymentTarget.SUPPORT_PLAN,
        target_id=quote.plan.id,
        provider=PROVIDER,
        provider_order_code=order_code,
        email=user.email,
    )
    payment_id = store.create_payment(payment)
    frontend = get_settings().payos_frontend_base_url.rstrip("/")
    url = f"{frontend}/support/subscription?paymentToken={payment.return_token}&supportPlanId={quote.plan.id}"
    try:
        link = create_payment_link(
            resolve_payos_config(store),
            order_code=order_code,
            amount=quote.amount,
            description=f"SP_{quote.plan.id}",
            return_url=url,
            cancel_url=url,
            buyer_name=user.full_name or user.email,
            buyer_email=user.email,
            buyer_phone=user.phone or "",
        )
    except PayOSError:
        store.cancel_payment_attempt(payment_id)
        raise
    store.attach_payment_link(payment_id, link.payment_link_id, link.checkout_url)
    return quote, payment, link.checkout_url


# ---------------------------------------------------------------------------
# Timeout sweep
# ---------------------------------------------------------------------------


def sweep_payment_timeouts(store, timeout_minutes: int, now: Optional[datetime] = None) -> tuple[int, int]:
    """Time out stale Pending PayOS order payments and recover stuck carts.

    Returns (payments_timed_out, carts_recovered).
    """
    now = now or datetime.now(timezone.utc)
    stale = store.list_stale_pending_payments(now - timedelta(minutes=timeout_minutes), provider=PROVIDER)
    for payment in stale:
        store.cancel_payment_attempt(
            payment.id, status=PaymentStatus.TIMEOUT, order_status=OrderStatus.CANCELLED_BY_TIMEOUT
        )
    recovered = store.recover_stuck_carts(now)
    if stale or recovered:
        logger.info("Payment sweep: %d payment(s) timed out, %d cart(s) recovered", len(stale), recovered)
    return len(stale), recovered
