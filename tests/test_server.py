"""HTTP surface: admin auth, restock, webhook capture, voucher checkout."""

import asyncio
import json
from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from conftest import RecordingNotifier, make_order
from softcrate import server
from softcrate.errors import StoreError
from softcrate.model.inventory import LicenseInventory
from softcrate.model.kv import MemoryKVStore
from softcrate.model.orders import OrderStore
from softcrate.payments import SIGNATURE_HEADER, SignedCapture, sign_payload

SECRET = "whsec_test"
PASSWORD = "hunter2"
SLUG = "windows-11-pro"


@pytest.fixture
def store():
    return MemoryKVStore()


@pytest.fixture
def mails():
    return RecordingNotifier()


@pytest.fixture
def client(store, mails, monkeypatch):
    monkeypatch.setattr(server, "ADMIN_PASSWORD", PASSWORD)
    monkeypatch.setattr(server, "adapter", SignedCapture(secret=SECRET))
    server.app.dependency_overrides[server.get_kv] = lambda: store
    server.app.dependency_overrides[server.get_notifier] = lambda: mails
    with TestClient(server.app) as c:
        yield c
    server.app.dependency_overrides.clear()


def admin(body=None):
    return dict(body or {}, password=PASSWORD)


def post_event(client, event):
    payload = json.dumps(event).encode()
    return client.post(
        "/payments/webhook",
        content=payload,
        headers={SIGNATURE_HEADER: sign_payload(payload, SECRET),
                 "content-type": "application/json"},
    )


def capture_event(capture_id="CAP-1", **extra):
    return dict({
        "type": "payment.succeeded",
        "capture_id": capture_id,
        "idempotency_key": f"evt_{capture_id}",
        "email": "buyer@example.com",
        "product_slug": SLUG,
        "amount": "19.99",
        "currency": "EUR",
    }, **extra)


@pytest.mark.unit
def test_health(client):
    assert client.get("/api/health").json() == {"ok": True}


@pytest.mark.unit
def test_admin_requires_password(client):
    r = client.post("/api/admin/view-orders", json={"password": "nope"})
    assert r.status_code == 401
    assert r.json()["error"] == "unauthorized"


@pytest.mark.unit
def test_admin_header_password(client):
    r = client.post("/api/admin/view-keys",
                    headers={"x-admin-password": PASSWORD})
    assert r.status_code == 200
    assert r.json()[SLUG] == {"name": SLUG, "available": 0, "keys": []}


@pytest.mark.unit
def test_missing_admin_password_is_configuration_error(client, monkeypatch):
    monkeypatch.setattr(server, "ADMIN_PASSWORD", "")
    r = client.post("/api/admin/add-keys",
                    json={"product": SLUG, "keys": ["K"]})
    assert r.status_code == 500
    assert r.json()["error"] == "configuration_error"


@pytest.mark.unit
def test_session_login(client):
    r = client.post("/admin/login", data={"password": PASSWORD},
                    follow_redirects=False)
    assert r.status_code == 303
    r = client.post("/api/admin/view-orders", json={})
    assert r.status_code == 200

    client.get("/admin/logout", follow_redirects=False)
    assert client.post("/api/admin/view-orders", json={}).status_code == 401


@pytest.mark.unit
def test_add_keys_drains_backorders(client, store, mails):
    orders = OrderStore(store)
    asyncio.run(orders.put(make_order("o1", "2026-01-01T10:00:00+00:00")))

    r = client.post("/api/admin/add-keys",
                    json=admin({"product": SLUG, "keys": ["K1", "K2"]}))

    assert r.status_code == 200
    body = r.json()
    assert body["fulfilled_count"] == 1
    assert body["restocked"] == 1
    assert body["added"] == 2
    assert body["fulfilled_orders"] == ["o1"]
    assert asyncio.run(LicenseInventory(store).get(SLUG)) == ["K2"]
    assert mails.kinds() == ["restock_delivery"]


@pytest.mark.unit
def test_add_keys_validation(client):
    r = client.post("/api/admin/add-keys",
                    json=admin({"product": SLUG, "keys": "K1"}))
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


@pytest.mark.unit
def test_webhook_capture_and_replay(client, store, mails):
    asyncio.run(LicenseInventory(store).put(SLUG, ["K1"]))

    r = post_event(client, capture_event())
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "completed"

    r2 = post_event(client, capture_event())
    assert r2.json() == {"ok": True, "idempotent": True}

    order = client.get(f"/api/orders/{body['order_id']}").json()
    assert order["license_key"] == "K1"
    assert mails.kinds() == ["delivery"]


@pytest.mark.unit
def test_webhook_without_stock_waits(client, mails):
    r = post_event(client, capture_event("CAP-2"))
    body = r.json()
    assert body["status"] == "waiting_for_stock"

    order = client.get(f"/api/orders/{body['order_id']}").json()
    assert order["status"] == "waiting_for_stock"
    assert order["license_key"] is None
    assert mails.kinds() == ["backorder"]


@pytest.mark.unit
def test_webhook_rejects_bad_signature(client):
    r = client.post("/payments/webhook",
                    content=json.dumps(capture_event()).encode(),
                    headers={SIGNATURE_HEADER: "bogus"})
    assert r.status_code == 400


@pytest.mark.unit
def test_webhook_failed_payment_records_nothing(client, store):
    r = post_event(client, capture_event(type="payment.failed"))
    assert r.json()["status"] == "pending"
    assert asyncio.run(store.keys("order:")) == []


@pytest.mark.unit
def test_giftcard_checkout_then_manual_fulfill(client, store, mails):
    asyncio.run(LicenseInventory(store).put("office-2024-ltsc", ["OFF-1"]))
    r = client.post("/api/giftcard-checkout", json={
        "email": "buyer@example.com",
        "amazonCode": "AMZ-123",
        "voucherType": "amazon",
        "items": [{"name": "Windows 11 Pro", "slug": SLUG, "price": 19.99,
                   "quantity": 1}],
    })
    assert r.status_code == 200
    oid = r.json()["order_id"]
    assert r.json()["status"] == "pending_amazon"

    r = client.post("/api/admin/manual-fulfill",
                    json=admin({"orderId": oid, "product": "office-2024-ltsc"}))
    assert r.status_code == 200
    order = r.json()["order"]
    assert order["license_key"] == "OFF-1"
    assert order["manual_fulfillment_product"] == "office-2024-ltsc"


@pytest.mark.unit
def test_update_status_rejects_undefined_transition(client, store):
    asyncio.run(OrderStore(store).put(make_order(
        "o1", "2026-01-01T10:00:00+00:00", status="completed",
        license_key="K1",
    )))

    r = client.post("/api/admin/update-order-status",
                    json=admin({"orderId": "o1",
                                "newStatus": "waiting_for_stock"}))
    assert r.status_code == 409

    r = client.post("/api/admin/update-order-status",
                    json=admin({"orderId": "o1", "newStatus": "refunded"}))
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "refunded"
    assert r.json()["emailSent"] is True

    r = client.post("/api/admin/update-order-status",
                    json=admin({"orderId": "nope", "newStatus": "refunded"}))
    assert r.status_code == 404


@pytest.mark.unit
def test_view_orders_newest_first(client, store):
    orders = OrderStore(store)
    asyncio.run(orders.put(make_order("old", "2026-01-01T10:00:00+00:00")))
    asyncio.run(orders.put(make_order("new", "2026-02-01T10:00:00+00:00")))

    r = client.post("/api/admin/view-orders", json=admin({"limit": 1}))
    body = r.json()
    assert body["total"] == 2
    assert [o["id"] for o in body["orders"]] == ["new"]


@pytest.mark.unit
def test_delete_key(client, store):
    asyncio.run(LicenseInventory(store).put(SLUG, ["K1", "K2"]))

    r = client.post("/api/admin/delete-key",
                    json=admin({"product": SLUG, "keyString": "K1"}))
    assert r.json() == {"success": True, "product": SLUG, "remaining": 1}

    r = client.post("/api/admin/delete-key",
                    json=admin({"product": SLUG, "keyString": "K1"}))
    assert r.status_code == 404


@pytest.mark.unit
def test_catalog_lifecycle(client, store):
    asyncio.run(LicenseInventory(store).put("game-x", ["G1"]))
    product = {"name": "Game X", "slug": "game-x", "imageUrl": "/x.png",
               "price": 9.5}

    r = client.post("/api/admin/create-product", json=admin(product))
    assert r.status_code == 200
    assert r.json()["product"]["price"] == "9.50"
    assert client.post("/api/admin/create-product",
                       json=admin(product)).status_code == 409

    public = client.get("/api/products").json()
    assert [p["slug"] for p in public] == ["game-x"]

    keys = client.post("/api/admin/view-keys", json=admin()).json()
    assert keys["game-x"] == {"name": "Game X", "available": 1,
                              "keys": ["G1"]}

    r = client.post("/api/admin/delete-product",
                    json=admin({"slug": "game-x"}))
    assert r.status_code == 200
    assert client.get("/api/products").json() == []
    assert asyncio.run(LicenseInventory(store).get("game-x")) == ["G1"]
    assert client.post("/api/admin/delete-product",
                       json=admin({"slug": "game-x"})).status_code == 404


@pytest.mark.unit
def test_download_link_override(client, store):
    for url in ("https://dl/1", "https://dl/2"):
        r = client.post("/api/admin/download-link",
                        json=admin({"product": SLUG, "url": url}))
        assert r.status_code == 200
    assert asyncio.run(LicenseInventory(store).download_link(SLUG)) \
        == "https://dl/2"


@pytest.mark.unit
def test_timings_require_admin(client):
    assert client.get("/api/admin/timings").status_code == 401
    r = client.get("/api/admin/timings",
                   headers={"x-admin-password": PASSWORD})
    assert r.status_code == 200


@pytest.mark.unit
def test_failed_capture_can_be_retried(client, store, monkeypatch):
    real_lock = store.lock
    calls = []

    @asynccontextmanager
    async def busy_once(name):
        calls.append(name)
        if len(calls) == 1:
            raise StoreError(f"lock busy: {name}")
        async with real_lock(name):
            yield

    monkeypatch.setattr(store, "lock", busy_once)

    first = post_event(client, capture_event("CAP-9"))
    assert first.status_code == 503
    assert asyncio.run(store.keys("order:")) == []

    retry = post_event(client, capture_event("CAP-9"))
    assert retry.status_code == 200
    assert retry.json()["status"] == "waiting_for_stock"
    assert len(asyncio.run(store.keys("order:"))) == 1

    again = post_event(client, capture_event("CAP-9"))
    assert again.json() == {"ok": True, "idempotent": True}


@pytest.mark.unit
@pytest.mark.parametrize("extra", [
    {"product_slug": 123},
    {"currency": ["EUR"]},
    {"customer_name": {"first": "A"}},
    {"email": 42},
])
def test_webhook_rejects_non_string_fields(client, store, extra):
    r = post_event(client, capture_event("CAP-7", **extra))
    assert r.status_code == 400
    assert asyncio.run(store.keys("order:")) == []

    # the gate was never claimed
    r = post_event(client, capture_event("CAP-7"))
    assert r.json()["status"] == "waiting_for_stock"


@pytest.mark.unit
@pytest.mark.parametrize("price", ["inf", "nan", -1])
def test_create_product_rejects_bad_price(client, price):
    r = client.post("/api/admin/create-product", json=admin({
        "name": "Game X", "slug": "game-x", "imageUrl": "/x.png",
        "price": price,
    }))
    assert r.status_code == 400
