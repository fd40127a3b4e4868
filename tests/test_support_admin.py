"""
tests/test_support_admin.py -- Back-office settings: the PayOS credentials screen
and the SLA rule, subject template and support plan screens.

Coverage:
  - Every screen is closed to staff without the module grant (care, customer)
  - PayOS: secrets are write-only, blank secrets keep the stored value, and
    saved values feed resolve_payos_config
  - SLA rules: filters, (severity, level) uniqueness, budget ordering,
    toggle, delete blocked while tickets use the rule
  - Templates: code and title uniqueness, code pattern, severity check,
    toggle hides a template from customers, delete
  - Support plans: one active plan per level, price ordering across levels,
    (level, price) uniqueness, delete blocked once subscribed
"""

from __future__ import annotations

import pytest

from payments.payos import generate_order_code, resolve_payos_config
from shop.models import Payment, PaymentTarget
from tests.conftest import TestEnv, make_env

GATEWAY_URL = "/api/v1/admin/payment-gateways/payos"
RULES_URL = "/api/v1/admin/sla-rules"
TEMPLATES_URL = "/api/v1/admin/ticket-subject-templates"
PLANS_URL = "/api/v1/admin/support-plans"


@pytest.fixture(scope="module")
def env():
    yield from make_env("support_admin")


@pytest.mark.parametrize("url", [GATEWAY_URL, RULES_URL, TEMPLATES_URL, PLANS_URL])
@pytest.mark.parametrize("who", ["care", "customer"])
def test_screens_need_a_grant(env: TestEnv, url: str, who: str) -> None:
    resp = env.client.get(url, headers=env.headers(who))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


@pytest.mark.parametrize("url", [GATEWAY_URL, RULES_URL, TEMPLATES_URL, PLANS_URL])
def test_screens_need_a_login(env: TestEnv, url: str) -> None:
    assert env.client.get(url).status_code == 401


# ---------------------------------------------------------------------------
# PayOS gateway
# ---------------------------------------------------------------------------


class TestPaymentGateway:
    def test_first_read_creates_the_row(self, env: TestEnv) -> None:
        resp = env.client.get(GATEWAY_URL, headers=env.headers("admin"))
        assert resp.status_code == 200
        data = resp.json()
        assert data["name"] == "PayOS"
        assert data["hasApiKey"] is False
        assert data["hasChecksumKey"] is False
        assert env.stores.shop.get_gateway("payos", active_only=False) is not None

    def test_update_feeds_the_payment_config(self, env: TestEnv) -> None:
        body = {"clientId": "  client-42 ", "apiKey": "api-secret", "checksumKey": "checksum-secret"}
        resp = env.client.put(GATEWAY_URL, json=body, headers=env.headers("admin"))
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["clientId"] == "client-42"
        assert data["hasApiKey"] is True
        assert data["hasChecksumKey"] is True
        assert "apiKey" not in data and "checksumKey" not in data

        config = resolve_payos_config(env.stores.shop)
        assert config.client_id == "client-42"
        assert config.checksum_key == "checksum-secret"

    def test_blank_secret_keeps_the_stored_one(self, env: TestEnv) -> None:
        resp = env.client.put(
            GATEWAY_URL, json={"apiKey": "", "checksumKey": "   "}, headers=env.headers("admin")
        )
        assert resp.status_code == 200
        assert resp.json()["hasChecksumKey"] is True
        assert resolve_payos_config(env.stores.shop).checksum_key == "checksum-secret"

    def test_disabled_gateway_is_not_used(self, env: TestEnv) -> None:
        resp = env.client.put(GATEWAY_URL, json={"isActive": False}, headers=env.headers("admin"))
        assert resp.json()["isActive"] is False
        try:
            assert resolve_payos_config(env.stores.shop).checksum_key != "checksum-secret"
        finally:
            env.client.put(GATEWAY_URL, json={"isActive": True}, headers=env.headers("admin"))
        assert resolve_payos_config(env.stores.shop).checksum_key == "checksum-secret"

    def test_care_cannot_update(self, env: TestEnv) -> None:
        resp = env.client.put(GATEWAY_URL, json={"checksumKey": "stolen"}, headers=env.headers("care"))
        assert resp.status_code == 403
        assert resolve_payos_config(env.stores.shop).checksum_key == "checksum-secret"


# ---------------------------------------------------------------------------
# SLA rules
# ---------------------------------------------------------------------------


def _rule(**overrides) -> dict:
    body = {
        "name": "High / P5",
        "severity": "high",
        "priorityLevel": 5,
        "firstResponseMinutes": 30,
        "resolutionMinutes": 240,
    }
    body.update(overrides)
    return body


class TestSlaRules:
    def test_list_filters(self, env: TestEnv) -> None:
        rules = env.client.get(
            RULES_URL, params={"severity": "critical", "active": "true"}, headers=env.headers("admin")
        ).json()
        assert [r["priorityLevel"] for r in rules] == [0, 1, 2, 3]
        assert all(r["severity"] == "Critical" and r["isActive"] for r in rules)

        one = env.client.get(RULES_URL, params={"priorityLevel": 2}, headers=env.headers("admin")).json()
        assert len(one) == 4
        assert env.client.get(RULES_URL, params={"severity": "urgent"}, headers=env.headers("admin")).status_code == 400

    def test_create_update_toggle(self, env: TestEnv) -> None:
        headers = env.headers("admin")
        created = env.client.post(RULES_URL, json=_rule(), headers=headers)
        assert created.status_code == 201, created.text
        rule = created.json()
        assert rule["severity"] == "High"
        assert rule["isActive"] is True
        assert env.stores.support.find_sla_rule("High", 5).id == rule["id"]

        updated = env.client.put(
            f"{RULES_URL}/{rule['id']}", json=_rule(name="High / P5 fast", firstResponseMinutes=15), headers=headers
        )
        assert updated.status_code == 200
        assert updated.json()["firstResponseMinutes"] == 15

        toggled = env.client.patch(f"{RULES_URL}/{rule['id']}/toggle", headers=headers)
        assert toggled.json()["isActive"] is False
        assert env.stores.support.find_sla_rule("High", 5) is None
        assert env.client.patch(f"{RULES_URL}/{rule['id']}/toggle", headers=headers).json()["isActive"] is True

    def test_pair_must_be_unique(self, env: TestEnv) -> None:
        resp = env.client.post(RULES_URL, json=_rule(severity="Low", priorityLevel=0), headers=env.headers("admin"))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_sla_rule"

    def test_update_keeps_its_own_pair(self, env: TestEnv) -> None:
        rule = env.stores.support.find_sla_rule("Medium", 1)
        body = _rule(name="Medium / P1", severity="Medium", priorityLevel=1, firstResponseMinutes=60)
        resp = env.client.put(f"{RULES_URL}/{rule.id}", json=body, headers=env.headers("admin"))
        assert resp.status_code == 200, resp.text

    @pytest.mark.parametrize(
        "overrides,status",
        [
            ({"resolutionMinutes": 10}, 400),
            ({"severity": "Urgent"}, 400),
            ({"firstResponseMinutes": 0}, 422),
            ({"priorityLevel": -1}, 422),
            ({"name": "   "}, 422),
            ({"name": "x" * 121}, 422),
        ],
    )
    def test_validation(self, env: TestEnv, overrides: dict, status: int) -> None:
        body = _rule(**{"priorityLevel": 9, **overrides})
        resp = env.client.post(RULES_URL, json=body, headers=env.headers("admin"))
        assert resp.status_code == status

    def test_delete_blocked_while_in_use(self, env: TestEnv) -> None:
        headers = env.headers("admin")
        rule = env.client.post(RULES_URL, json=_rule(severity="Low", priorityLevel=6), headers=headers).json()
        support = env.stores.support
        ticket = support.create_ticket(env.ids["customer"], support.get_template("OTHER"), None, priority_level=6)
        assert ticket.sla_rule_id == rule["id"]

        resp = env.client.delete(f"{RULES_URL}/{rule['id']}", headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "sla_rule_in_use"

    def test_delete_unused(self, env: TestEnv) -> None:
        headers = env.headers("admin")
        rule = env.client.post(RULES_URL, json=_rule(severity="Low", priorityLevel=7), headers=headers).json()
        assert env.client.delete(f"{RULES_URL}/{rule['id']}", headers=headers).status_code == 204
        assert env.client.get(f"{RULES_URL}/{rule['id']}", headers=headers).status_code == 404

    def test_care_cannot_create(self, env: TestEnv) -> None:
        resp = env.client.post(RULES_URL, json=_rule(priorityLevel=8), headers=env.headers("care"))
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Ticket subject templates
# ---------------------------------------------------------------------------


class TestSubjectTemplates:
    def _customer_codes(self, env: TestEnv) -> set:
        resp = env.client.get("/api/v1/tickets/subject-templates", headers=env.headers("customer"))
        return {t["templateCode"] for t in resp.json()}

    def test_create_toggle_delete(self, env: TestEnv) -> None:
        headers = env.headers("admin")
        body = {"templateCode": "REFUND", "title": "Refund request", "severity": "medium", "category": "Payment"}
        created = env.client.post(TEMPLATES_URL, json=body, headers=headers)
        assert created.status_code == 201, created.text
        assert created.json()["severity"] == "Medium"
        assert "REFUND" in self._customer_codes(env)

        toggled = env.client.patch(f"{TEMPLATES_URL}/REFUND/toggle", headers=headers)
        assert toggled.json()["isActive"] is False
        assert "REFUND" not in self._customer_codes(env)
        listed = env.client.get(TEMPLATES_URL, params={"active": "false"}, headers=headers).json()
        assert [t["templateCode"] for t in listed] == ["REFUND"]

        assert env.client.delete(f"{TEMPLATES_URL}/REFUND", headers=headers).status_code == 204
        assert env.client.get(f"{TEMPLATES_URL}/REFUND", headers=headers).status_code == 404
        assert env.client.delete(f"{TEMPLATES_URL}/REFUND", headers=headers).status_code == 404

    def test_update(self, env: TestEnv) -> None:
        body = {"title": "Other question or feedback", "severity": "Low", "category": "General"}
        resp = env.client.put(f"{TEMPLATES_URL}/OTHER", json=body, headers=env.headers("admin"))
        assert resp.status_code == 200, resp.text
        assert env.stores.support.get_template("OTHER").title == "Other question or feedback"

    def test_duplicates(self, env: TestEnv) -> None:
        headers = env.headers("admin")
        same_code = {"templateCode": "OTHER", "title": "Something new", "severity": "Low"}
        resp = env.client.post(TEMPLATES_URL, json=same_code, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_code"

        same_title = {"templateCode": "NEW_ONE", "title": "RENEWAL OR WARRANTY REQUEST", "severity": "Low"}
        resp = env.client.post(TEMPLATES_URL, json=same_title, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_title"

        rename = {"title": "Renewal or warranty request", "severity": "Low"}
        resp = env.client.put(f"{TEMPLATES_URL}/OTHER", json=rename, headers=headers)
        assert resp.status_code == 409

    @pytest.mark.parametrize(
        "body,status",
        [
            ({"templateCode": "HAS SPACE", "title": "A", "severity": "Low"}, 422),
            ({"templateCode": "X" * 51, "title": "A", "severity": "Low"}, 422),
            ({"templateCode": "OK_CODE", "title": "", "severity": "Low"}, 422),
            ({"templateCode": "OK_CODE", "title": "A", "severity": "Blocker"}, 400),
            ({"templateCode": "OK_CODE", "title": "A", "severity": "Low", "category": "c" * 101}, 422),
        ],
    )
    def test_validation(self, env: TestEnv, body: dict, status: int) -> None:
        assert env.client.post(TEMPLATES_URL, json=body, headers=env.headers("admin")).status_code == status

    def test_care_cannot_delete(self, env: TestEnv) -> None:
        assert env.client.delete(f"{TEMPLATES_URL}/OTHER", headers=env.headers("care")).status_code == 403
        assert env.stores.support.get_template("OTHER") is not None


# ---------------------------------------------------------------------------
# Support plans
# ---------------------------------------------------------------------------


def _active_by_level(env: TestEnv) -> dict:
    plans = env.client.get("/api/v1/support-plans/active").json()
    return {p["priorityLevel"]: p["name"] for p in plans}


class TestSupportPlansAdmin:
    def test_create_top_level(self, env: TestEnv) -> None:
        body = {"name": "Enterprise", "priorityLevel": 4, "price": 399000, "description": "Dedicated agent"}
        resp = env.client.post(PLANS_URL, json=body, headers=env.headers("admin"))
        assert resp.status_code == 201, resp.text
        assert resp.json()["isActive"] is True
        assert _active_by_level(env)[4] == "Enterprise"

    def test_one_active_plan_per_level(self, env: TestEnv) -> None:
        headers = env.headers("admin")
        body = {"name": "Priority Plus", "priorityLevel": 1, "price": 59000}
        created = env.client.post(PLANS_URL, json=body, headers=headers)
        assert created.status_code == 201, created.text
        assert _active_by_level(env)[1] == "Priority Plus"

        old = next(
            p for p in env.client.get(PLANS_URL, headers=headers).json() if p["name"] == "Priority"
        )
        assert old["isActive"] is False
        assert env.client.patch(f"{PLANS_URL}/{old['id']}/toggle", headers=headers).json()["isActive"] is True
        assert _active_by_level(env)[1] == "Priority"
        assert env.stores.shop.get_support_plan(created.json()["id"]).is_active is False

    def test_price_must_rise_with_level(self, env: TestEnv) -> None:
        headers = env.headers("admin")
        too_cheap = {"name": "Cheap Premium", "priorityLevel": 2, "price": 10000}
        resp = env.client.post(PLANS_URL, json=too_cheap, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_price_order"

        too_dear = {"name": "Dear Priority", "priorityLevel": 1, "price": 150000}
        assert env.client.post(PLANS_URL, json=too_dear, headers=headers).status_code == 400

        # An inactive plan is not checked until it is switched on.
        parked = env.client.post(PLANS_URL, json={**too_cheap, "isActive": False}, headers=headers)
        assert parked.status_code == 201
        toggled = env.client.patch(f"{PLANS_URL}/{parked.json()['id']}/toggle", headers=headers)
        assert toggled.status_code == 400
        assert _active_by_level(env)[2] == "Premium"

    def test_level_and_price_pair_is_unique(self, env: TestEnv) -> None:
        body = {"name": "Premium copy", "priorityLevel": 2, "price": 99000, "isActive": False}
        resp = env.client.post(PLANS_URL, json=body, headers=env.headers("admin"))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_plan"

    def test_update(self, env: TestEnv) -> None:
        headers = env.headers("admin")
        plan = next(p for p in env.client.get(PLANS_URL, headers=headers).json() if p["name"] == "VIP")
        body = {"name": "VIP", "priorityLevel": 3, "price": 249000, "description": "Fastest answers"}
        resp = env.client.put(f"{PLANS_URL}/{plan['id']}", json=body, headers=headers)
        assert resp.status_code == 200, resp.text
        assert resp.json()["price"] == 249000
        assert env.stores.shop.get_support_plan(plan["id"]).description == "Fastest answers"

        over = {**body, "price": 999000}
        assert env.client.put(f"{PLANS_URL}/{plan['id']}", json=over, headers=headers).status_code == 400

    def test_delete_blocked_once_subscribed(self, env: TestEnv) -> None:
        headers = env.headers("admin")
        shop = env.stores.shop
        plan = env.client.post(
            PLANS_URL, json={"name": "Trial", "priorityLevel": 9, "price": 1000, "isActive": False}, headers=headers
        ).json()
        payment_id = shop.create_payment(
            Payment(
                amount=1000,
                target_type=PaymentTarget.SUPPORT_PLAN,
                target_id=plan["id"],
                provider_order_code=generate_order_code(),
                email="customer@example.com",
            )
        )
        shop.settle_support_plan_payment(payment_id, env.ids["customer"], plan["id"])

        resp = env.client.delete(f"{PLANS_URL}/{plan['id']}", headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "support_plan_in_use"

    def test_delete_unused(self, env: TestEnv) -> None:
        headers = env.headers("admin")
        plan = env.client.post(
            PLANS_URL, json={"name": "Draft", "priorityLevel": 8, "price": 5000, "isActive": False}, headers=headers
        ).json()
        assert env.client.delete(f"{PLANS_URL}/{plan['id']}", headers=headers).status_code == 204
        assert env.client.get(f"{PLANS_URL}/{plan['id']}", headers=headers).status_code == 404

    @pytest.mark.parametrize(
        "body",
        [
            {"name": "", "priorityLevel": 1, "price": 1},
            {"name": "n" * 121, "priorityLevel": 1, "price": 1},
            {"name": "Ok", "priorityLevel": -1, "price": 1},
            {"name": "Ok", "priorityLevel": 1, "price": -1},
            {"name": "Ok", "priorityLevel": 1, "price": 1, "description": "d" * 501},
        ],
    )
    def test_validation(self, env: TestEnv, body: dict) -> None:
        assert env.client.post(PLANS_URL, json=body, headers=env.headers("admin")).status_code == 422

    def test_care_cannot_toggle(self, env: TestEnv) -> None:
        plan = env.client.get(PLANS_URL, headers=env.headers("admin")).json()[0]
        assert env.client.patch(f"{PLANS_URL}/{plan['id']}/toggle", headers=env.headers("care")).status_code == 403
