"""
tests/test_checkout_payments.py -- Checkout, the PayOS webhook, return pages,
support-plan purchase and the payment-timeout sweep.

PayOS itself is never called: payments.service.create_payment_link is patched
to hand back a fake link, and webhook deliveries are signed in the test with
the checksum key stored on the "PayOS" gateway row.

Coverage:
  - Checkout reserves stock, creates a PendingPayment order and converts the cart
  - Checkout failures (empty cart, no email, stock, unavailable, gateway down)
    leave the cart Active and the stock untouched
  - Webhook: signature check, unknown orderCode, paymentLinkId and amount
    mismatches (NeedReview), success (order Completed), replay, cancellation
  - Late payment after a timeout -> NeedsManualAction; a failing sweep round is logged
  - Return-page confirm / cancel by return token, never by payment id
  - Order visibility (owner, back office, other customers)
  - Support plans: proration, upgrade-only rule, all-or-nothing activation by webhook
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from api.main import _sweep_once
from payments.payos import PaymentLink, PayOSError, hmac_sha256_hex, webhook_data_string
from payments.service import prorated_amount, sweep_payment_timeouts
from shop.models import OrderStatus, PaymentGateway, PaymentStatus, Product, ProductVariant
from tests.conftest import TestEnv, auth, create_test_user, make_env

CHECKSUM_KEY = "test-checksum-key"
GUEST_HEADER = "X-Guest-Cart-Id"


@pytest.fixture(scope="module")
def env():
    yield from make_env("checkout")


@pytest.fixture(autouse=True)
def _clear_cookies(env: TestEnv):
    yield
    env.client.cookies.clear()


@pytest.fixture(scope="module")
def catalog(env: TestEnv) -> dict:
    shop = env.stores.shop
    shop.upsert_gateway(
        PaymentGateway(
            name="PayOS",
            client_id="client-id",
            api_key="api-key",
            checksum_key=CHECKSUM_KEY,
            endpoint="https://payos.invalid/v2/payment-requests",
        )
    )
    product_id = shop.create_product(Product(name="Office Suite", slug="office-suite"))
    return {
        "plenty": shop.create_variant(
            ProductVariant(product_id, "Y1", "1 year", stock_qty=100, sell_price=250000, list_price=300000)
        ),
        "scarce": shop.create_variant(
            ProductVariant(product_id, "LT", "Lifetime", stock_qty=2, sell_price=900000, list_price=990000)
        ),
    }


def _fake_link(*args, **kwargs) -> PaymentLink:
    link_id = uuid.uuid4().hex
    return PaymentLink(checkout_url=f"https://pay.invalid/web/{link_id}", payment_link_id=link_id)


def _fill_cart(env: TestEnv, headers: dict, variant_id: int, quantity: int = 1) -> None:
    resp = env.client.post(
        "/api/v1/storefront/cart/items", json={"variantId": variant_id, "quantity": quantity}, headers=headers
    )
    assert resp.status_code == 200, resp.text


def _checkout(env: TestEnv, headers: dict, body: dict | None = None):
    with patch("payments.service.create_payment_link", side_effect=_fake_link):
        return env.client.post("/api/v1/storefront/cart/checkout", json=body or {}, headers=headers)


def _guest_order(env: TestEnv, variant_id: int, quantity: int = 1) -> dict:
    headers = {GUEST_HEADER: uuid.uuid4().hex}
    _fill_cart(env, headers, variant_id, quantity)
    resp = _checkout(env, headers, {"email": "guest@example.com", "buyerName": "Guest Buyer"})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _webhook_body(payment, code: str = "00", **overrides) -> dict:
    data = {
        "orderCode": payment.provider_order_code,
        "amount": payment.amount,
        "description": "ORD",
        "accountNumber": "0123456789",
        "reference": "FT26123",
        "transactionDateTime": "2026-05-04 10:00:00",
        "currency": "VND",
        "paymentLinkId": payment.payment_link_id,
        "code": code,
        "desc": "success" if code == "00" else "cancelled",
        "counterAccountName": None,
    }
    data.update(overrides)
    signature = hmac_sha256_hex(webhook_data_string(data), CHECKSUM_KEY)
    return {"code": code, "desc": data["desc"], "success": code == "00", "data": data, "signature": signature}


def _deliver(env: TestEnv, body: dict):
    return env.client.post("/api/v1/payments/payos/webhook", json=body)


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


class TestCheckout:
    def test_checkout_reserves_stock(self, env: TestEnv, catalog: dict) -> None:
        shop = env.stores.shop
        before = shop.get_variant(catalog["plenty"]).stock_qty
        headers = {GUEST_HEADER: uuid.uuid4().hex}
        _fill_cart(env, headers, catalog["plenty"], 2)

        resp = _checkout(env, headers, {"email": "Guest@Example.com"})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["amount"] == 500000
        assert data["checkoutUrl"].startswith("https://pay.invalid/")

        order = shop.get_order(data["orderId"])
        assert order.status == OrderStatus.PENDING_PAYMENT
        assert order.email == "guest@example.com"
        assert order.reservation_status == "Reserved"
        assert [i.title for i in order.items] == ["Office Suite - 1 year"]
        assert shop.get_variant(catalog["plenty"]).stock_qty == before - 2

        payment = shop.get_payment(data["paymentId"])
        assert payment.status == PaymentStatus.PENDING
        assert payment.payment_link_id

        # The converted cart is gone; the guest starts over with an empty one.
        assert env.client.get("/api/v1/storefront/cart", headers=headers).json()["items"] == []

    def test_empty_cart(self, env: TestEnv, catalog: dict) -> None:
        resp = _checkout(env, {GUEST_HEADER: uuid.uuid4().hex}, {"email": "a@example.com"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "checkout_invalid"

    def test_guest_without_email(self, env: TestEnv, catalog: dict) -> None:
        headers = {GUEST_HEADER: uuid.uuid4().hex}
        _fill_cart(env, headers, catalog["plenty"])
        resp = _checkout(env, headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "checkout_invalid"

    def test_stock_gone_before_checkout(self, env: TestEnv, catalog: dict) -> None:
        shop = env.stores.shop
        headers = {GUEST_HEADER: uuid.uuid4().hex}
        _fill_cart(env, headers, catalog["scarce"], 2)
        shop.update_variant(catalog["scarce"], stock_qty=1)
        try:
            resp = _checkout(env, headers, {"email": "a@example.com"})
            assert resp.status_code == 409
            assert resp.json()["error"]["code"] == "insufficient_stock"
            cart = env.client.get("/api/v1/storefront/cart", headers=headers).json()
            assert cart["status"] == "Active"
            assert shop.get_variant(catalog["scarce"]).stock_qty == 1
        finally:
            shop.update_variant(catalog["scarce"], stock_qty=2)

    def test_variant_hidden_before_checkout(self, env: TestEnv, catalog: dict) -> None:
        shop = env.stores.shop
        headers = {GUEST_HEADER: uuid.uuid4().hex}
        _fill_cart(env, headers, catalog["scarce"])
        shop.toggle_variant(catalog["scarce"])
        try:
            resp = _checkout(env, headers, {"email": "a@example.com"})
            assert resp.status_code == 409
            assert resp.json()["error"]["code"] == "unavailable"
        finally:
            shop.toggle_variant(catalog["scarce"])

    def test_gateway_failure_unwinds(self, env: TestEnv, catalog: dict) -> None:
        shop = env.stores.shop
        before = shop.get_variant(catalog["plenty"]).stock_qty
        headers = {GUEST_HEADER: uuid.uuid4().hex}
        _fill_cart(env, headers, catalog["plenty"])
        with patch("payments.service.create_payment_link", side_effect=PayOSError("down")):
            resp = env.client.post(
                "/api/v1/storefront/cart/checkout", json={"email": "a@example.com"}, headers=headers
            )
        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "payment_gateway_error"
        assert shop.get_variant(catalog["plenty"]).stock_qty == before
        cart = env.client.get("/api/v1/storefront/cart", headers=headers).json()
        assert cart["status"] == "Active"
        assert cart["totalQuantity"] == 1

    def test_payment_insert_failure_releases_order(self, env: TestEnv, catalog: dict) -> None:
        shop = env.stores.shop
        before = shop.get_variant(catalog["plenty"]).stock_qty
        headers = {GUEST_HEADER: uuid.uuid4().hex}
        _fill_cart(env, headers, catalog["plenty"], 3)
        failure = OperationalError("INSERT INTO payments", {}, Exception("disk I/O error"))
        with patch.object(shop, "create_payment", side_effect=failure):
            with pytest.raises(OperationalError):
                _checkout(env, headers, {"email": "insert-failure@example.com"})

        order = next(o for o in shop.list_orders() if o.email == "insert-failure@example.com")
        assert order.status == OrderStatus.CANCELLED
        assert order.reservation_status == "Released"
        assert shop.get_variant(catalog["plenty"]).stock_qty == before
        cart = env.client.get("/api/v1/storefront/cart", headers=headers).json()
        assert cart["status"] == "Active"
        assert cart["totalQuantity"] == 3


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


class TestWebhook:
    def test_successful_payment_completes_order(self, env: TestEnv, catalog: dict) -> None:
        shop = env.stores.shop
        checkout = _guest_order(env, catalog["plenty"])
        payment = shop.get_payment(checkout["paymentId"])

        resp = _deliver(env, _webhook_body(payment))
        assert resp.status_code == 200
        assert resp.json()["message"] == "Webhook processed - Order Paid."
        assert shop.get_payment(payment.id).status == PaymentStatus.PAID
        order = shop.get_order(checkout["orderId"])
        assert order.status == OrderStatus.COMPLETED
        assert order.reservation_status == "Finalized"

        replay = _deliver(env, _webhook_body(payment))
        assert replay.json()["message"] == "Already paid."

    def test_bad_signature(self, env: TestEnv, catalog: dict) -> None:
        shop = env.stores.shop
        payment = shop.get_payment(_guest_order(env, catalog["plenty"])["paymentId"])
        body = _webhook_body(payment)
        body["data"]["amount"] = 1
        resp = _deliver(env, body)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_signature"
        assert shop.get_payment(payment.id).status == PaymentStatus.PENDING

    def test_non_string_signature(self, env: TestEnv, catalog: dict) -> None:
        payment = env.stores.shop.get_payment(_guest_order(env, catalog["plenty"])["paymentId"])
        body = _webhook_body(payment)
        body["signature"] = 12345
        resp = _deliver(env, body)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_signature"

    def test_missing_data(self, env: TestEnv, catalog: dict) -> None:
        resp = _deliver(env, {"code": "00", "signature": "abc"})
        assert resp.status_code == 400

    def test_unknown_order_code_is_acknowledged(self, env: TestEnv, catalog: dict) -> None:
        data = {"orderCode": 424242, "amount": 1000, "code": "00"}
        body = {"code": "00", "data": data, "signature": hmac_sha256_hex(webhook_data_string(data), CHECKSUM_KEY)}
        resp = _deliver(env, body)
        assert resp.status_code == 200
        assert resp.json()["message"] == "Payment not found - ignored."

    def test_amount_mismatch_needs_review(self, env: TestEnv, catalog: dict) -> None:
        shop = env.stores.shop
        checkout = _guest_order(env, catalog["plenty"])
        payment = shop.get_payment(checkout["paymentId"])
        resp = _deliver(env, _webhook_body(payment, amount=payment.amount - 1))
        assert resp.status_code == 200
        assert "amount mismatch" in resp.json()["message"]
        assert shop.get_payment(payment.id).status == PaymentStatus.NEED_REVIEW
        assert shop.get_order(checkout["orderId"]).status == OrderStatus.NEEDS_MANUAL_ACTION

    def test_link_id_mismatch_needs_review(self, env: TestEnv, catalog: dict) -> None:
        shop = env.stores.shop
        payment = shop.get_payment(_guest_order(env, catalog["plenty"])["paymentId"])
        resp = _deliver(env, _webhook_body(payment, paymentLinkId="someone-else"))
        assert "paymentLinkId mismatch" in resp.json()["message"]
        assert shop.get_payment(payment.id).status == PaymentStatus.NEED_REVIEW

    def test_cancelled_payment_releases_stock(self, env: TestEnv, catalog: dict) -> None:
        shop = env.stores.shop
        before = shop.get_variant(catalog["plenty"]).stock_qty
        checkout = _guest_order(env, catalog["plenty"], quantity=3)
        assert shop.get_variant(catalog["plenty"]).stock_qty == before - 3

        payment = shop.get_payment(checkout["paymentId"])
        resp = _deliver(env, _webhook_body(payment, code="01"))
        assert resp.json()["message"] == "Webhook processed - Cancelled."
        assert shop.get_payment(payment.id).status == PaymentStatus.CANCELLED
        assert shop.get_order(checkout["orderId"]).status == OrderStatus.CANCELLED
        assert shop.get_variant(catalog["plenty"]).stock_qty == before


# ---------------------------------------------------------------------------
# Return pages and orders
# ---------------------------------------------------------------------------


class TestReturnPages:
    def test_cancel_from_return(self, env: TestEnv, catalog: dict) -> None:
        checkout = _guest_order(env, catalog["plenty"])
        body = {"paymentToken": checkout["paymentToken"]}

        confirm = env.client.post("/api/v1/payments/order/confirm-from-return", json=body)
        assert confirm.json()["status"] == PaymentStatus.PENDING

        cancel = env.client.post("/api/v1/payments/order/cancel-from-return", json=body)
        assert cancel.status_code == 200
        assert cancel.json()["status"] == PaymentStatus.CANCELLED
        assert env.stores.shop.get_order(checkout["orderId"]).status == OrderStatus.CANCELLED

        # A second cancel leaves the payment alone.
        again = env.client.post("/api/v1/payments/order/cancel-from-return", json=body)
        assert again.json()["status"] == PaymentStatus.CANCELLED

    def test_return_urls_carry_the_token_not_the_id(self, env: TestEnv, catalog: dict) -> None:
        headers = {GUEST_HEADER: uuid.uuid4().hex}
        _fill_cart(env, headers, catalog["plenty"])
        with patch("payments.service.create_payment_link", side_effect=_fake_link) as link:
            resp = env.client.post(
                "/api/v1/storefront/cart/checkout", json={"email": "a@example.com"}, headers=headers
            )
        assert resp.status_code == 200, resp.text
        token = resp.json()["paymentToken"]
        assert len(token) == 32
        assert env.stores.shop.get_payment(resp.json()["paymentId"]).return_token == token
        kwargs = link.call_args.kwargs
        for url in (kwargs["return_url"], kwargs["cancel_url"]):
            assert f"paymentToken={token}" in url
            assert "paymentId=" not in url

    def test_stranger_cannot_cancel_by_guessing(self, env: TestEnv, catalog: dict) -> None:
        checkout = _guest_order(env, catalog["plenty"])
        payment_id = checkout["paymentId"]

        # The sequential id is no longer accepted, and a made-up token finds nothing.
        by_id = env.client.post("/api/v1/payments/order/cancel-from-return", json={"paymentId": payment_id})
        assert by_id.status_code == 422
        guessed = {"paymentToken": uuid.uuid4().hex}
        assert env.client.post("/api/v1/payments/order/confirm-from-return", json=guessed).status_code == 404
        assert env.client.post("/api/v1/payments/order/cancel-from-return", json=guessed).status_code == 404

        assert env.stores.shop.get_payment(payment_id).status == PaymentStatus.PENDING
        assert env.stores.shop.get_order(checkout["orderId"]).status == OrderStatus.PENDING_PAYMENT

    def test_token_is_bound_to_its_target_type(self, env: TestEnv, catalog: dict) -> None:
        checkout = _guest_order(env, catalog["plenty"])
        body = {"paymentToken": checkout["paymentToken"]}
        resp = env.client.post("/api/v1/payments/support-plan/cancel-from-return", json=body)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"
        assert env.stores.shop.get_payment(checkout["paymentId"]).status == PaymentStatus.PENDING


class TestOrders:
    def test_signed_in_checkout_and_visibility(self, env: TestEnv, catalog: dict) -> None:
        headers = env.headers("customer")
        _fill_cart(env, headers, catalog["plenty"])
        resp = _checkout(env, headers)
        assert resp.status_code == 200, resp.text
        order_id = resp.json()["orderId"]

        order = env.stores.shop.get_order(order_id)
        assert order.user_id == env.ids["customer"]
        assert order.email == "customer@example.com"

        history = env.client.get("/api/v1/orders/history", headers=headers).json()
        assert order_id in [o["id"] for o in history]
        assert env.client.get(f"/api/v1/orders/{order_id}", headers=headers).status_code == 200
        assert env.client.get(f"/api/v1/orders/{order_id}", headers=env.headers("customer2")).status_code == 404
        assert env.client.get(f"/api/v1/orders/{order_id}", headers=env.headers("admin")).status_code == 200

    def test_back_office_lists(self, env: TestEnv, catalog: dict) -> None:
        orders = env.client.get(
            "/api/v1/orders", params={"status": OrderStatus.COMPLETED}, headers=env.headers("admin")
        ).json()
        assert orders and all(o["status"] == OrderStatus.COMPLETED for o in orders)
        payments = env.client.get(
            "/api/v1/payments", params={"status": "paid"}, headers=env.headers("admin")
        ).json()
        assert payments and all(p["status"] == PaymentStatus.PAID for p in payments)
        assert env.client.get("/api/v1/payments", headers=env.headers("customer")).status_code == 403


# ---------------------------------------------------------------------------
# Timeout sweep
# ---------------------------------------------------------------------------


class TestTimeoutSweep:
    def test_timeout_then_late_payment(self, env: TestEnv, catalog: dict) -> None:
        shop = env.stores.shop
        checkout = _guest_order(env, catalog["plenty"])
        payment = shop.get_payment(checkout["paymentId"])

        # Nothing is stale yet.
        timed_out, _ = sweep_payment_timeouts(shop, timeout_minutes=15)
        assert shop.get_payment(payment.id).status == PaymentStatus.PENDING

        later = datetime.now(timezone.utc) + timedelta(minutes=16)
        timed_out, _ = sweep_payment_timeouts(shop, timeout_minutes=15, now=later)
        assert timed_out >= 1
        assert shop.get_payment(payment.id).status == PaymentStatus.TIMEOUT
        order = shop.get_order(checkout["orderId"])
        assert order.status == OrderStatus.CANCELLED_BY_TIMEOUT
        assert order.reservation_status == "Released"

        resp = _deliver(env, _webhook_body(payment))
        assert resp.json()["message"] == "Webhook processed - Paid late (NeedsManualAction)."
        assert shop.get_payment(payment.id).status == PaymentStatus.PAID
        assert shop.get_order(checkout["orderId"]).status == OrderStatus.NEEDS_MANUAL_ACTION

    def test_failed_round_is_logged_off_the_event_loop(self, caplog) -> None:
        seen = {}

        def broken_sweep(store, timeout_minutes):
            seen["thread"] = threading.get_ident()
            raise RuntimeError("gateway config unreadable")

        app_stub = SimpleNamespace(state=SimpleNamespace(shop=object()))
        with patch("api.main.sweep_payment_timeouts", side_effect=broken_sweep):
            with caplog.at_level(logging.ERROR, logger="ktk.api"):
                asyncio.run(_sweep_once(app_stub))

        assert seen["thread"] != threading.get_ident()
        assert "Payment timeout sweep failed" in caplog.text


# ---------------------------------------------------------------------------
# Support plans
# ---------------------------------------------------------------------------


class TestProration:
    def test_full_price_without_base(self):
        assert prorated_amount(99000, None, None) == 99000

    def test_half_period_left(self):
        assert prorated_amount(99000, 49000, 15) == 74500

    def test_no_deduction_when_base_not_cheaper(self):
        assert prorated_amount(49000, 99000, 20) == 49000

    def test_no_deduction_when_expired(self):
        assert prorated_amount(99000, 49000, 0) == 99000


class TestSupportPlans:
    @pytest.fixture(scope="class")
    def buyer(self, env: TestEnv, catalog: dict) -> tuple[int, dict]:
        uid, token = create_test_user(env.stores.users, "planbuyer", ["CUSTOMER"])
        return uid, auth(token)

    def _plan_id(self, env: TestEnv, name: str) -> int:
        plans = env.client.get("/api/v1/support-plans/active").json()
        return next(p["id"] for p in plans if p["name"] == name)

    def _buy(self, env: TestEnv, headers: dict, plan_id: int):
        with patch("payments.service.create_payment_link", side_effect=_fake_link):
            return env.client.post(
                "/api/v1/payments/payos/create-support-plan", json={"supportPlanId": plan_id}, headers=headers
            )

    def test_active_plans(self, env: TestEnv) -> None:
        plans = env.client.get("/api/v1/support-plans/active").json()
        assert [(p["name"], p["priorityLevel"], p["price"]) for p in plans] == [
            ("Standard", 0, 0),
            ("Priority", 1, 49000),
            ("Premium", 2, 99000),
            ("VIP", 3, 199000),
        ]

    def test_free_plan_cannot_be_bought(self, env: TestEnv, buyer) -> None:
        resp = self._buy(env, buyer[1], self._plan_id(env, "Standard"))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "support_plan_invalid"

    def test_purchase_and_activation(self, env: TestEnv, buyer) -> None:
        uid, headers = buyer
        resp = self._buy(env, headers, self._plan_id(env, "Priority"))
        assert resp.status_code == 200, resp.text
        assert resp.json()["amount"] == 49000

        payment = env.stores.shop.get_payment(resp.json()["paymentId"])
        assert payment.email == "planbuyer@example.com"
        delivered = _deliver(env, _webhook_body(payment))
        assert delivered.json()["message"] == "Webhook processed - SupportPlan Paid."

        assert env.stores.users.get_by_id(uid).support_priority_level == 1
        current = env.client.get("/api/v1/support-plans/me/current", headers=headers).json()
        assert current["planName"] == "Priority"
        assert current["supportPriorityLevel"] == 1

    def test_same_level_is_rejected(self, env: TestEnv, buyer) -> None:
        resp = self._buy(env, buyer[1], self._plan_id(env, "Priority"))
        assert resp.status_code == 400

    def test_upgrade_is_prorated(self, env: TestEnv, buyer) -> None:
        resp = self._buy(env, buyer[1], self._plan_id(env, "Premium"))
        assert resp.status_code == 200, resp.text
        # A fresh 30-day Priority subscription is deducted in full.
        assert resp.json()["amount"] == 99000 - 49000
        assert resp.json()["price"] == 99000

    def test_requires_login(self, env: TestEnv) -> None:
        resp = env.client.post("/api/v1/payments/payos/create-support-plan", json={"supportPlanId": 2})
        assert resp.status_code == 401

    def test_activation_is_all_or_nothing(self, env: TestEnv) -> None:
        uid, token = create_test_user(env.stores.users, "halfbuyer", ["CUSTOMER"])
        resp = self._buy(env, auth(token), self._plan_id(env, "Priority"))
        assert resp.status_code == 200, resp.text
        payment = env.stores.shop.get_payment(resp.json()["paymentId"])

        with patch.object(env.stores.users, "raise_support_priority", side_effect=RuntimeError("users db down")):
            delivered = _deliver(env, _webhook_body(payment))
        assert delivered.json()["message"] == "Webhook processed - NeedReview."
        assert env.stores.shop.get_payment(payment.id).status == PaymentStatus.NEED_REVIEW
        assert env.stores.shop.get_active_subscription(uid) is None
        assert env.stores.users.get_by_id(uid).support_priority_level == 0

    def test_return_pages_use_the_plan_token(self, env: TestEnv) -> None:
        _, token = create_test_user(env.stores.users, "planreturn", ["CUSTOMER"])
        resp = self._buy(env, auth(token), self._plan_id(env, "Premium"))
        assert resp.status_code == 200, resp.text
        body = {"paymentToken": resp.json()["paymentToken"]}

        assert env.client.post("/api/v1/payments/order/cancel-from-return", json=body).status_code == 404
        cancel = env.client.post("/api/v1/payments/support-plan/cancel-from-return", json=body)
        assert cancel.status_code == 200
        assert cancel.json()["status"] == PaymentStatus.CANCELLED
        assert cancel.json()["targetType"] == "SupportPlan"
