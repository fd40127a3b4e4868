"""
tests/test_notifications.py -- POST /api/v1/notifications broadcast routing.

A socket is connected to /hubs/notifications for the recipient so the
delivered count and the event name can be checked end to end.
"""

from __future__ import annotations

import pytest

from tests.conftest import TestEnv, make_env


@pytest.fixture(scope="module")
def env():
    yield from make_env("notifications")


def _drain_joins(ws, count: int = 3) -> None:
    for _ in range(count):
        assert ws.receive_json()["event"] == "Joined"


def _send(env: TestEnv, body: dict, who: str = "admin"):
    return env.client.post("/api/v1/notifications", json=body, headers=env.headers(who))


class TestBroadcast:
    def test_to_one_user(self, env: TestEnv) -> None:
        with env.client.websocket_connect("/hubs/notifications", headers=env.headers("customer")) as ws:
            _drain_joins(ws)
            resp = _send(env, {"title": "Key ready", "message": "Check your email", "userId": env.ids["customer"]})
            assert resp.status_code == 202
            assert resp.json() == {"group": f"user:{env.ids['customer']}", "delivered": 1}
            event = ws.receive_json()
        assert event["event"] == "ReceiveNotification"
        assert event["data"]["title"] == "Key ready"
        assert event["data"]["createdBy"] == env.ids["admin"]

    def test_to_role(self, env: TestEnv) -> None:
        with env.client.websocket_connect("/hubs/notifications", headers=env.headers("care")) as ws:
            _drain_joins(ws)
            resp = _send(env, {"title": "Shift", "message": "Queue is long", "roleCode": "customer_care"})
            assert resp.json()["group"] == "role:CUSTOMER_CARE"
            assert resp.json()["delivered"] == 1
            assert ws.receive_json()["data"]["message"] == "Queue is long"

    def test_global_uses_its_own_event(self, env: TestEnv) -> None:
        with env.client.websocket_connect("/hubs/notifications", headers=env.headers("creator")) as ws:
            _drain_joins(ws)
            resp = _send(env, {"title": "Maintenance", "message": "Tonight 23:00", "data": {"minutes": 30}})
            assert resp.json()["group"] == "global"
            event = ws.receive_json()
        assert event["event"] == "ReceiveGlobalNotification"
        assert event["data"]["data"] == {"minutes": 30}

    def test_nobody_listening(self, env: TestEnv) -> None:
        resp = _send(env, {"title": "Hello", "message": "Anyone?", "userId": env.ids["customer2"]})
        assert resp.status_code == 202
        assert resp.json()["delivered"] == 0


class TestValidation:
    def test_requires_settings_permission(self, env: TestEnv) -> None:
        for who in ("care", "customer", "creator"):
            assert _send(env, {"title": "x", "message": "y"}, who=who).status_code == 403

    def test_blank_title(self, env: TestEnv) -> None:
        assert _send(env, {"title": "", "message": "y"}).status_code == 422

    def test_user_id_positive(self, env: TestEnv) -> None:
        assert _send(env, {"title": "x", "message": "y", "userId": 0}).status_code == 422
