"""
tests/test_posts.py -- Posts and post types under POST_MANAGER, and the public post page.

The CONTENT_CREATOR role starts with no grants; the module fixture gives it
every POST_MANAGER permission except DELETE, so the tests can show both a
granted and a withheld action for the same user.
"""

from __future__ import annotations

import pytest

from auth.constants import ModuleCodes, PermissionCodes, RoleCodes
from tests.conftest import TestEnv, make_env


@pytest.fixture(scope="module")
def env():
    yield from make_env("posts")


@pytest.fixture(scope="module", autouse=True)
def creator_grants(env: TestEnv) -> None:
    users = env.stores.users
    module_id = next(m.id for m in users.list_modules() if m.code == ModuleCodes.POST_MANAGER)
    wanted = {PermissionCodes.VIEW_LIST, PermissionCodes.VIEW_DETAIL, PermissionCodes.CREATE, PermissionCodes.EDIT}
    grants = [(module_id, p.id, True) for p in users.list_permissions() if p.code in wanted]
    users.set_role_permissions(users.get_role_by_code(RoleCodes.CONTENT_CREATOR).id, grants)


def _post(env: TestEnv, title: str, **fields) -> dict:
    resp = env.client.post("/api/v1/posts", json={"title": title, **fields}, headers=env.headers("creator"))
    assert resp.status_code == 201, resp.text
    return resp.json()


def _post_type(env: TestEnv, name: str) -> dict:
    resp = env.client.post("/api/v1/post-types", json={"name": name}, headers=env.headers("creator"))
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestPostTypes:
    def test_create_and_list(self, env: TestEnv) -> None:
        _post_type(env, "Tin tức")
        _post_type(env, "Guides")
        listed = env.client.get("/api/v1/post-types", headers=env.headers("creator")).json()
        names = [t["name"] for t in listed]
        assert names == sorted(names)
        assert next(t for t in listed if t["name"] == "Tin tức")["slug"] == "tin-tuc"

    def test_duplicate_name(self, env: TestEnv) -> None:
        _post_type(env, "Promotions")
        resp = env.client.post("/api/v1/post-types", json={"name": "PROMOTIONS"}, headers=env.headers("creator"))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_post_type"

    def test_rename(self, env: TestEnv) -> None:
        post_type = _post_type(env, "Release notes")
        resp = env.client.put(
            f"/api/v1/post-types/{post_type['id']}",
            json={"name": "Changelog", "description": "What changed"},
            headers=env.headers("creator"),
        )
        assert resp.status_code == 200
        assert resp.json()["slug"] == "changelog"
        assert resp.json()["description"] == "What changed"

        missing = env.client.put("/api/v1/post-types/99999", json={"name": "x"}, headers=env.headers("creator"))
        assert missing.status_code == 404

    def test_delete_blocked_while_in_use(self, env: TestEnv) -> None:
        post_type = _post_type(env, "Tutorials")
        post = _post(env, "First tutorial", postTypeId=post_type["id"])
        url = f"/api/v1/post-types/{post_type['id']}"

        blocked = env.client.delete(url, headers=env.headers("admin"))
        assert blocked.status_code == 400
        assert blocked.json()["error"]["code"] == "post_type_in_use"

        env.client.delete(f"/api/v1/posts/{post['id']}", headers=env.headers("admin"))
        assert env.client.delete(url, headers=env.headers("admin")).status_code == 204
        assert env.client.delete(url, headers=env.headers("admin")).status_code == 404


class TestPosts:
    def test_create_defaults(self, env: TestEnv) -> None:
        post = _post(env, "Cách kích hoạt bản quyền", shortDescription="Step by step")
        assert post["slug"] == "cach-kich-hoat-ban-quyen"
        assert post["status"] == "Draft"
        assert post["authorId"] == env.ids["creator"]
        assert post["viewCount"] == 0

    def test_explicit_slug_and_status(self, env: TestEnv) -> None:
        post = _post(env, "Spring sale", slug="Spring Sale 2026", status="published")
        assert post["slug"] == "spring-sale-2026"
        assert post["status"] == "Published"

    def test_duplicate_slug(self, env: TestEnv) -> None:
        _post(env, "Weekly digest")
        resp = env.client.post("/api/v1/posts", json={"title": "Weekly Digest!"}, headers=env.headers("creator"))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_slug"

    def test_rejections(self, env: TestEnv) -> None:
        headers = env.headers("creator")
        bad_type = env.client.post("/api/v1/posts", json={"title": "Orphan", "postTypeId": 99999}, headers=headers)
        assert bad_type.status_code == 400
        assert bad_type.json()["error"]["code"] == "invalid_post_type"

        no_slug = env.client.post("/api/v1/posts", json={"title": "!!!"}, headers=headers)
        assert no_slug.status_code == 400
        assert no_slug.json()["error"]["code"] == "invalid_slug"

        bad_status = env.client.post("/api/v1/posts", json={"title": "Limbo", "status": "Hidden"}, headers=headers)
        assert bad_status.status_code == 422

    def test_list_filters(self, env: TestEnv) -> None:
        guides = _post_type(env, "How-to")
        in_type = _post(env, "Install the VPN client", postTypeId=guides["id"], status="Published")
        _post(env, "Unrelated draft", shortDescription="mentions nothing useful")
        headers = env.headers("creator")

        by_type = env.client.get("/api/v1/posts", params={"postTypeId": guides["id"]}, headers=headers).json()
        assert [p["id"] for p in by_type] == [in_type["id"]]

        published = env.client.get("/api/v1/posts", params={"status": "Published"}, headers=headers).json()
        assert in_type["id"] in [p["id"] for p in published]
        assert all(p["status"] == "Published" for p in published)

        found = env.client.get("/api/v1/posts", params={"search": "NOTHING USEFUL"}, headers=headers).json()
        assert [p["title"] for p in found] == ["Unrelated draft"]

    def test_update(self, env: TestEnv) -> None:
        post = _post(env, "Old headline")
        _post(env, "Taken headline")
        url = f"/api/v1/posts/{post['id']}"
        headers = env.headers("creator")

        renamed = env.client.put(url, json={"title": "New headline", "status": "Archived"}, headers=headers)
        assert renamed.status_code == 200, renamed.text
        assert renamed.json()["slug"] == "new-headline"
        assert renamed.json()["status"] == "Archived"
        assert renamed.json()["updatedAt"]

        # Saving again with its own slug is not a conflict.
        assert env.client.put(url, json={"title": "New headline"}, headers=headers).status_code == 200

        clash = env.client.put(url, json={"title": "Taken headline"}, headers=headers)
        assert clash.status_code == 409

        missing = env.client.put("/api/v1/posts/99999", json={"title": "x"}, headers=headers)
        assert missing.status_code == 404

    def test_delete_needs_delete_grant(self, env: TestEnv) -> None:
        post = _post(env, "Short-lived")
        url = f"/api/v1/posts/{post['id']}"
        assert env.client.delete(url, headers=env.headers("creator")).status_code == 403
        assert env.client.delete(url, headers=env.headers("admin")).status_code == 204
        assert env.client.get(url, headers=env.headers("creator")).status_code == 404

    def test_other_roles(self, env: TestEnv) -> None:
        assert env.client.get("/api/v1/posts", headers=env.headers("customer")).status_code == 403
        assert env.client.get("/api/v1/posts", headers=env.headers("care")).status_code == 403
        assert env.client.get("/api/v1/posts").status_code == 401


class TestPublicPage:
    def test_published_post_counts_views(self, env: TestEnv) -> None:
        _post(env, "Launch announcement", status="Published")
        first = env.client.get("/api/v1/posts/public/launch-announcement")
        assert first.status_code == 200
        assert first.json()["viewCount"] == 1
        second = env.client.get("/api/v1/posts/public/launch-announcement")
        assert second.json()["viewCount"] == 2

    def test_draft_is_hidden(self, env: TestEnv) -> None:
        _post(env, "Secret roadmap")
        assert env.client.get("/api/v1/posts/public/secret-roadmap").status_code == 404
        assert env.client.get("/api/v1/posts/public/no-such-post").status_code == 404
