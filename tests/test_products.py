"""
tests/test_products.py -- Catalog rules and the PRODUCT_MANAGER admin routes.

Coverage:
  - Stock-driven status derivation and the ACTIVE/INACTIVE toggle
  - Slugs with Vietnamese diacritics
  - Product create/patch/delete, duplicate slug, product_in_use guard
  - Variant create/replace/toggle/delete, price rule, per-product uniqueness
    of title and code, list filters and sorting
  - Permission gate: roles without a PRODUCT_MANAGER grant get 403
"""

from __future__ import annotations

import pytest

from core.text import slugify
from shop.store import resolve_status_from_stock, toggle_visibility
from tests.conftest import TestEnv, make_env

# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestStatusRules:
    @pytest.mark.parametrize(
        "stock,desired,expected",
        [
            (5, None, "ACTIVE"),
            (5, "active", "ACTIVE"),
            (0, "ACTIVE", "OUT_OF_STOCK"),
            (0, "INACTIVE", "INACTIVE"),
            (3, "INACTIVE", "INACTIVE"),
            (3, "OUT_OF_STOCK", "ACTIVE"),
            (3, "bogus", "ACTIVE"),
        ],
    )
    def test_resolve_status_from_stock(self, stock, desired, expected):
        assert resolve_status_from_stock(stock, desired) == expected

    def test_toggle(self):
        assert toggle_visibility("ACTIVE", 2) == "INACTIVE"
        assert toggle_visibility("INACTIVE", 2) == "ACTIVE"
        assert toggle_visibility("ACTIVE", 0) == "OUT_OF_STOCK"

    def test_slugify_folds_diacritics(self):
        assert slugify("Hướng dẫn kích hoạt Windows 11") == "huong-dan-kich-hoat-windows-11"
        assert slugify("  Đồ họa / Design!  ") == "do-hoa-design"
        assert slugify("!!!") == ""


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def env():
    yield from make_env("products")


def _product(env: TestEnv, name: str) -> dict:
    resp = env.client.post("/api/v1/products", json={"name": name}, headers=env.headers("admin"))
    assert resp.status_code == 201, resp.text
    return resp.json()


def _variant(env: TestEnv, product_id: int, **overrides) -> dict:
    body = {
        "variantCode": "Y1",
        "title": "1 year",
        "durationDays": 365,
        "warrantyDays": 30,
        "stockQty": 10,
        "sellPrice": 390000,
        "listPrice": 490000,
    }
    body.update(overrides)
    resp = env.client.post(f"/api/v1/products/{product_id}/variants", json=body, headers=env.headers("admin"))
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestProducts:
    def test_create_derives_slug(self, env: TestEnv) -> None:
        product = _product(env, "Phần mềm Diệt Virus")
        assert product["slug"] == "phan-mem-diet-virus"
        assert product["status"] == "ACTIVE"

    def test_duplicate_slug(self, env: TestEnv) -> None:
        _product(env, "Office 2024")
        resp = env.client.post(
            "/api/v1/products", json={"name": "Another", "slug": "office-2024"}, headers=env.headers("admin")
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_slug"

    def test_invalid_status(self, env: TestEnv) -> None:
        resp = env.client.post(
            "/api/v1/products", json={"name": "Broken", "status": "SOMETIMES"}, headers=env.headers("admin")
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_status"

    def test_patch_and_search(self, env: TestEnv) -> None:
        product = _product(env, "Antivirus Basic")
        resp = env.client.patch(
            f"/api/v1/products/{product['id']}", json={"description": "Home edition"}, headers=env.headers("admin")
        )
        assert resp.status_code == 200
        assert resp.json()["description"] == "Home edition"

        found = env.client.get("/api/v1/products", params={"search": "antivirus"}, headers=env.headers("admin"))
        assert [p["id"] for p in found.json()] == [product["id"]]

    def test_missing_product(self, env: TestEnv) -> None:
        resp = env.client.patch("/api/v1/products/99999", json={"name": "x"}, headers=env.headers("admin"))
        assert resp.status_code == 404

    def test_delete_blocked_by_variants(self, env: TestEnv) -> None:
        product = _product(env, "VPN Pro")
        variant = _variant(env, product["id"])
        resp = env.client.delete(f"/api/v1/products/{product['id']}", headers=env.headers("admin"))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "product_in_use"

        env.client.delete(f"/api/v1/products/{product['id']}/variants/{variant['id']}", headers=env.headers("admin"))
        assert env.client.delete(f"/api/v1/products/{product['id']}", headers=env.headers("admin")).status_code == 204

    def test_requires_product_permission(self, env: TestEnv) -> None:
        for name in ("customer", "care", "creator"):
            assert env.client.get("/api/v1/products", headers=env.headers(name)).status_code == 403


class TestVariants:
    def test_zero_stock_is_out_of_stock(self, env: TestEnv) -> None:
        product = _product(env, "Cloud Backup")
        variant = _variant(env, product["id"], stockQty=0)
        assert variant["status"] == "OUT_OF_STOCK"
        refreshed = env.client.get(f"/api/v1/products/{product['id']}", headers=env.headers("admin")).json()
        assert refreshed["status"] == "OUT_OF_STOCK"

    def test_restock_reactivates(self, env: TestEnv) -> None:
        product = _product(env, "Password Vault")
        variant = _variant(env, product["id"], stockQty=0)
        body = {
            "variantCode": "Y1",
            "title": "1 year",
            "stockQty": 4,
            "sellPrice": 100000,
            "listPrice": 150000,
        }
        resp = env.client.put(
            f"/api/v1/products/{product['id']}/variants/{variant['id']}", json=body, headers=env.headers("admin")
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "ACTIVE"
        assert resp.json()["stockQty"] == 4
        refreshed = env.client.get(f"/api/v1/products/{product['id']}", headers=env.headers("admin")).json()
        assert refreshed["status"] == "ACTIVE"

    def test_sell_above_list_price(self, env: TestEnv) -> None:
        product = _product(env, "Photo Editor")
        resp = env.client.post(
            f"/api/v1/products/{product['id']}/variants",
            json={"variantCode": "M1", "title": "1 month", "sellPrice": 200, "listPrice": 100},
            headers=env.headers("admin"),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_price"

    def test_title_and_code_unique_per_product(self, env: TestEnv) -> None:
        product = _product(env, "Video Editor")
        _variant(env, product["id"])
        same_title = env.client.post(
            f"/api/v1/products/{product['id']}/variants",
            json={"variantCode": "Y1B", "title": "1 YEAR", "sellPrice": 1, "listPrice": 1},
            headers=env.headers("admin"),
        )
        assert same_title.status_code == 409
        assert same_title.json()["error"]["code"] == "duplicate_title"

        same_code = env.client.post(
            f"/api/v1/products/{product['id']}/variants",
            json={"variantCode": "y1", "title": "12 months", "sellPrice": 1, "listPrice": 1},
            headers=env.headers("admin"),
        )
        assert same_code.status_code == 409
        assert same_code.json()["error"]["code"] == "duplicate_code"

        # Another product may reuse both.
        other = _product(env, "Audio Editor")
        _variant(env, other["id"])

    def test_replace_keeps_own_title(self, env: TestEnv) -> None:
        product = _product(env, "Mail Client")
        variant = _variant(env, product["id"])
        body = {"variantCode": "Y1", "title": "1 year", "stockQty": 10, "sellPrice": 350000, "listPrice": 490000}
        resp = env.client.put(
            f"/api/v1/products/{product['id']}/variants/{variant['id']}", json=body, headers=env.headers("admin")
        )
        assert resp.status_code == 200
        assert resp.json()["sellPrice"] == 350000

    def test_toggle_visibility(self, env: TestEnv) -> None:
        product = _product(env, "Screen Recorder")
        variant = _variant(env, product["id"])
        url = f"/api/v1/products/{product['id']}/variants/{variant['id']}/toggle"
        assert env.client.patch(url, headers=env.headers("admin")).json()["status"] == "INACTIVE"
        assert env.client.patch(url, headers=env.headers("admin")).json()["status"] == "ACTIVE"

    def test_list_filter_and_sort(self, env: TestEnv) -> None:
        product = _product(env, "Design Suite")
        _variant(env, product["id"], variantCode="M1", title="1 month", sellPrice=50000, listPrice=60000)
        _variant(env, product["id"], variantCode="Y1", title="1 year", sellPrice=390000, listPrice=490000)
        _variant(env, product["id"], variantCode="LT", title="Lifetime", sellPrice=990000, listPrice=990000, stockQty=0)

        url = f"/api/v1/products/{product['id']}/variants"
        by_price = env.client.get(url, params={"sortBy": "sellPrice", "sortDir": "desc"}, headers=env.headers("admin"))
        assert [v["variantCode"] for v in by_price.json()] == ["LT", "Y1", "M1"]

        out = env.client.get(url, params={"status": "out_of_stock"}, headers=env.headers("admin"))
        assert [v["variantCode"] for v in out.json()] == ["LT"]

        search = env.client.get(url, params={"search": "month"}, headers=env.headers("admin"))
        assert [v["variantCode"] for v in search.json()] == ["M1"]

    def test_variant_of_other_product_is_404(self, env: TestEnv) -> None:
        first = _product(env, "Firewall")
        second = _product(env, "Firewall Plus")
        variant = _variant(env, first["id"])
        resp = env.client.get(f"/api/v1/products/{second['id']}/variants/{variant['id']}", headers=env.headers("admin"))
        assert resp.status_code == 404
