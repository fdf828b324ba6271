import re

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from keyshop import config
from keyshop.notify import KIND_CUSTOMER_CONFIRMATION, KIND_OPERATOR_ALERT
from keyshop.server import app, keystore

ORDER_ID_IN_LINK = re.compile(r"confirm-order\?id=([0-9a-f]{32})")


@pytest.fixture
async def client(r, reconciler, notifier):
    app.dependency_overrides[keystore] = lambda: r
    app.state.reconciler = reconciler
    app.state.notifier = notifier
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
async def admin(client):
    resp = await client.post("/admin/login", data={
        "username": config.ADMIN_USERNAME,
        "password": config.ADMIN_PASSWORD,
    })
    assert resp.status_code == 303
    return client


async def _submit(client, notifier, payload):
    resp = await client.post("/api/submit-order", json=payload)
    assert resp.status_code == 200, resp.text
    msg = notifier.sent_of_kind(KIND_CUSTOMER_CONFIRMATION)[-1]
    return ORDER_ID_IN_LINK.search(msg.text).group(1)


class TestInventoryApi:

    async def test_all_stock(self, client):
        resp = await client.get("/api/inventory")
        assert resp.status_code == 200
        assert resp.json() == {
            "shadow-weekly": 1, "shadow-monthly": 1, "shadow-lifetime": 0,
        }

    async def test_one_product(self, client):
        resp = await client.get("/api/inventory/shadow-weekly")
        assert resp.json() == {"productId": "shadow-weekly", "stock": 1}
        resp = await client.get("/api/inventory/unknown")
        assert resp.json() == {"productId": "unknown", "stock": 0}

    async def test_store_down_is_503(self, client, r, monkeypatch):
        def boom(*args, **kwargs):
            raise RedisConnectionError("10.0.0.7:6379 refused")

        monkeypatch.setattr(r, "pipeline", boom)
        resp = await client.get("/api/inventory")
        assert resp.status_code == 503
        assert "10.0.0.7" not in resp.text

    async def test_source_missing_is_503(self, client, keys_file):
        keys_file.unlink()
        resp = await client.get("/api/inventory")
        assert resp.status_code == 503
        assert str(keys_file) not in resp.text


class TestOrderFlow:

    async def test_submit_then_confirm_by_link(self, client, notifier,
                                               order_payload):
        oid = await _submit(client, notifier, order_payload)
        assert notifier.sent_of_kind(KIND_OPERATOR_ALERT) == []

        resp = await client.get("/api/confirm-order", params={"id": oid})
        assert resp.status_code == 303
        assert resp.headers["location"] == "/confirm-order?status=confirmed"
        assert len(notifier.sent_of_kind(KIND_OPERATOR_ALERT)) == 1

        resp = await client.get("/api/confirm-order", params={"id": oid})
        assert resp.headers["location"] == "/confirm-order?status=already"
        assert len(notifier.sent_of_kind(KIND_OPERATOR_ALERT)) == 1

    async def test_confirm_api(self, client, notifier, order_payload):
        oid = await _submit(client, notifier, order_payload)
        resp = await client.post(f"/api/orders/{oid}/confirm")
        assert resp.json() == {"status": "confirmed"}
        resp = await client.post(f"/api/orders/{oid}/confirm")
        assert resp.json() == {"status": "already"}

    @pytest.mark.parametrize("params, status", [
        ({}, "invalid"),
        ({"id": ""}, "invalid"),
        ({"id": "not an id"}, "invalid"),
        ({"id": "o1"}, "expired"),
        ({"id": "d" * 32}, "expired"),
    ])
    async def test_confirm_link_outcomes(self, client, params, status):
        resp = await client.get("/api/confirm-order", params=params)
        assert resp.status_code == 303
        assert resp.headers["location"] == f"/confirm-order?status={status}"

    async def test_confirm_store_down(self, client, r, monkeypatch):
        def boom(*args, **kwargs):
            raise RedisConnectionError("down")

        monkeypatch.setattr(r, "pipeline", boom)
        resp = await client.post(f"/api/orders/{'e' * 32}/confirm")
        assert resp.status_code == 200
        assert resp.json() == {"status": "error"}

    async def test_submit_missing_fields(self, client, order_payload):
        del order_payload["tierPrice"]
        resp = await client.post("/api/submit-order", json=order_payload)
        assert resp.status_code == 400
        assert "tierPrice" in resp.json()["detail"]

    async def test_submit_mail_failure(self, client, notifier,
                                       order_payload):
        notifier.fail = True
        resp = await client.post("/api/submit-order", json=order_payload)
        assert resp.status_code == 500
        assert "confirmation email" in resp.json()["error"]

    @pytest.mark.parametrize("status, title", [
        ("confirmed", "Order confirmed"),
        ("already", "Already confirmed"),
        ("expired", "Order expired"),
        ("error", "Something went wrong"),
        ("bogus", "Invalid link"),
    ])
    async def test_confirm_page(self, client, status, title):
        resp = await client.get("/confirm-order", params={"status": status})
        assert resp.status_code == 200
        assert title in resp.text


class TestAdmin:

    @pytest.mark.parametrize("method, path", [
        ("post", "/api/admin/keys"),
        ("post", "/api/admin/claim/shadow-weekly"),
        ("post", "/api/admin/resync"),
        ("get", f"/api/admin/orders/{'a' * 32}"),
        ("get", "/api/admin/timings"),
    ])
    async def test_requires_login(self, client, method, path):
        kwargs = {"json": {}} if method == "post" else {}
        resp = await getattr(client, method)(path, **kwargs)
        assert resp.status_code == 401

    async def test_bad_login(self, client):
        resp = await client.post("/admin/login", data={
            "username": config.ADMIN_USERNAME, "password": "wrong",
        })
        assert resp.status_code == 401

    async def test_login_redirect_stays_local(self, client):
        resp = await client.post("/admin/login", data={
            "username": config.ADMIN_USERNAME,
            "password": config.ADMIN_PASSWORD,
            "next": "//evil.example.com/",
        })
        assert resp.headers["location"] == "/api/inventory"

    async def test_add_keys(self, admin):
        resp = await admin.post("/api/admin/keys", json={"keys": [
            {"key": "LLL1", "productId": "shadow-lifetime"},
            {"key": "LLL2", "productId": "shadow-lifetime"},
        ]})
        assert resp.status_code == 200
        assert resp.json()["stock"]["shadow-lifetime"] == 2

    async def test_add_keys_as_lines(self, admin):
        resp = await admin.post("/api/admin/keys", json={
            "lines": "# batch 2\nWWW9|shadow-weekly\n",
        })
        assert resp.json()["stock"]["shadow-weekly"] == 2

    async def test_add_keys_rejected(self, admin):
        resp = await admin.post("/api/admin/keys", json={"keys": [
            {"key": "Z", "productId": "shadow-yearly"},
        ]})
        assert resp.status_code == 400
        resp = await admin.post("/api/admin/keys", json={"nothing": 1})
        assert resp.status_code == 400

    async def test_claim(self, admin):
        resp = await admin.post("/api/admin/claim/shadow-weekly")
        assert resp.json() == {"productId": "shadow-weekly", "key": "AAA111"}
        resp = await admin.post("/api/admin/claim/shadow-weekly")
        assert resp.json() == {"productId": "shadow-weekly", "key": None}

    async def test_resync(self, admin, keys_file):
        resp = await admin.post("/api/admin/resync")
        assert resp.json()["reseeded"] is True

        keys_file.write_text("W1|shadow-weekly\nW2|shadow-weekly\n")
        resp = await admin.post("/api/admin/resync")
        body = resp.json()
        assert body["reseeded"] is True
        assert body["stock"] == {
            "shadow-weekly": 2, "shadow-monthly": 0, "shadow-lifetime": 0,
        }

    async def test_get_order(self, admin, notifier, order_payload):
        oid = await _submit(admin, notifier, order_payload)
        resp = await admin.get(f"/api/admin/orders/{oid}")
        body = resp.json()
        assert body["status"] == "pending"
        assert body["serviceName"] == "Shadow Setup"
        assert body["confirmedAt"] is None

        resp = await admin.get(f"/api/admin/orders/{'f' * 32}")
        assert resp.status_code == 404

    async def test_timings(self, admin):
        await admin.get("/api/inventory")
        resp = await admin.get("/api/admin/timings")
        kinds = {rec["kind"] for rec in resp.json()["items"]}
        assert "inventory.stock_all" in kinds

    async def test_logout(self, admin):
        await admin.get("/admin/logout")
        resp = await admin.post("/api/admin/resync")
        assert resp.status_code == 401
