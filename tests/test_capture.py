"""Paid orders: key assignment at capture time and voucher checkouts."""

import re

import pytest

from softcrate.errors import ValidationError
from softcrate.model.orders import COMPLETED, PENDING_AMAZON, WAITING_FOR_STOCK

SLUG = "windows-11-pro"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_try_immediate_assign_takes_front_key(service):
    await service.inventory.put(SLUG, ["K1", "K2"])

    assert await service.try_immediate_assign(SLUG) == "K1"
    assert await service.inventory.get(SLUG) == ["K2"]
    assert await service.try_immediate_assign(SLUG) == "K2"
    assert await service.try_immediate_assign(SLUG) is None
    assert await service.inventory.get(SLUG) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_try_immediate_assign_without_entry_writes_nothing(service, kv):
    assert await service.try_immediate_assign("capcut-pro") is None
    assert await kv.keys("keys:") == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_capture_with_stock_completes(service, notifier):
    await service.catalog.create(name="Windows 11 Pro", slug=SLUG,
                                 image_url="/img/w11.png", price="24.90")
    await service.inventory.put(SLUG, ["K1"])

    order = await service.record_capture(capture_id="CAP-1",
                                         email="buyer@example.com",
                                         product_slug=SLUG)

    assert order.status == COMPLETED
    assert order.license_key == "K1"
    assert order.fulfillment_date == order.timestamp
    assert order.product == "Windows 11 Pro"
    assert order.amount == "24.90"
    assert order.transaction_id == "CAP-1"
    assert re.fullmatch(r"ORD-PP-\d{8}-\d{4}", order.order_number)
    assert re.fullmatch(r"order_\d+_[0-9a-z]{9}", order.id)
    assert (await service.orders.get(order.id)).license_key == "K1"
    assert notifier.kinds() == ["delivery"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_capture_without_stock_waits_then_restock_serves_it(
        service, notifier):
    order = await service.record_capture(capture_id="CAP-1",
                                         email="buyer@example.com",
                                         amount="19.99")

    assert order.product_slug == SLUG
    assert order.status == WAITING_FOR_STOCK
    assert order.license_key is None
    assert order.amount == "19.99"

    result = await service.fulfill_backorders(SLUG, ["NEW-1"])

    assert [o.id for o in result.fulfilled] == [order.id]
    assert notifier.kinds() == ["backorder", "restock_delivery"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_capture_requires_email_and_id(service):
    with pytest.raises(ValidationError):
        await service.record_capture(capture_id="", email="a@b.de")
    with pytest.raises(ValidationError):
        await service.record_capture(capture_id="CAP", email="nope")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_voucher_order_is_pending_review(service, notifier):
    order = await service.record_voucher_order(
        email="buyer@example.com",
        code="AMZN-1234",
        voucher_type="psc",
        items=[
            {"name": "Windows 11 Pro", "slug": SLUG, "price": 19.99,
             "quantity": 2},
            {"name": "CapCut Pro", "slug": "capcut-pro", "price": "5.00"},
        ],
    )

    assert order.status == PENDING_AMAZON
    assert order.amount == "44.98"
    assert order.product == "Windows 11 Pro (+1 more)"
    assert order.product_slug == SLUG
    assert order.voucher_type == "psc"
    assert order.payment_method == "psc"
    assert order.customer_name == "Paysafecard PIN customer"
    assert re.fullmatch(r"ORD-PSC-\d{8}-\d{4}", order.order_number)
    assert order.license_key is None

    to, kind, data = notifier.sent[0]
    assert (to, kind) == ("admin@softcrate.test", "admin_voucher")
    assert data["voucher_code"] == "AMZN-1234"
    assert data["voucher_label"] == "Paysafecard PIN"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_voucher_unknown_type_falls_back(service):
    order = await service.record_voucher_order(
        email="buyer@example.com", code="X", voucher_type="steam",
        items=[{"name": "Game", "slug": "game", "price": 10}],
    )
    assert order.customer_name == "Voucher customer"
    assert order.order_number.startswith("ORD-STE-")


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize("kwargs", [
    {"email": "", "code": "X", "items": [{"name": "A", "price": 1}]},
    {"email": "a@b.de", "code": "", "items": [{"name": "A", "price": 1}]},
    {"email": "a@b.de", "code": "X", "items": []},
    {"email": "a@b.de", "code": "X", "items": "A"},
    {"email": "a@b.de", "code": "X", "items": [{"price": 1}]},
    {"email": "a@b.de", "code": "X",
     "items": [{"name": "A", "price": "free"}]},
    {"email": "a@b.de", "code": "X",
     "items": [{"name": "A", "price": 1, "quantity": 0}]},
    {"email": "a@b.de", "code": "X",
     "items": [{"name": "A", "price": "nan"}]},
    {"email": "a@b.de", "code": "X",
     "items": [{"name": "A", "price": float("inf")}]},
])
async def test_voucher_validation(service, kv, kwargs):
    with pytest.raises(ValidationError):
        await service.record_voucher_order(**kwargs)
    assert await kv.keys("order:") == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_capture_takes_key_through_immediate_assign(service,
                                                          monkeypatch):
    await service.inventory.put(SLUG, ["K1"])
    calls = []
    assign = service.try_immediate_assign

    async def spy(slug, **kwargs):
        calls.append((slug, kwargs))
        return await assign(slug, **kwargs)

    monkeypatch.setattr(service, "try_immediate_assign", spy)

    order = await service.record_capture(capture_id="CAP-1",
                                         email="buyer@example.com")

    assert order.license_key == "K1"
    assert calls == [(SLUG, {"locked": True})]


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize("field", [
    "product_slug", "product", "currency", "customer_name", "payment_method",
])
async def test_capture_rejects_non_string_fields(service, kv, field):
    with pytest.raises(ValidationError):
        await service.record_capture(capture_id="CAP-1",
                                     email="buyer@example.com",
                                     **{field: 123})
    assert await kv.keys("order:") == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_capture_ignores_non_finite_amount(service):
    await service.catalog.create(name="Windows 11 Pro", slug=SLUG,
                                 image_url="/img/w11.png", price="24.90")
    order = await service.record_capture(capture_id="CAP-1",
                                         email="buyer@example.com",
                                         amount="inf")
    assert order.amount == "24.90"
