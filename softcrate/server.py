from __future__ import annotations

import logging
import math
import os
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Body, Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .errors import (
    AuthError, ConfigurationError, NotFoundError, SoftcrateError, StoreError,
    ValidationError,
)
from .fulfillment import Fulfillment
from .helpers import ct_equal, is_valid_email
from .infra import timings
from .infra.timings import timeit
from .model.catalog import ProductCatalog
from .model.inventory import LicenseInventory
from .model.kv import KVStore, new_store, BACKEND as KV_BACKEND
from .model.orders import COMPLETED, OrderStore, STATUSES
from .notify import LogNotifier, Notifier, ResendNotifier
from .payments import PaymentAdapter, SignedCapture

# ----------------------------
# Config & Constants
# ----------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")
SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "")
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "")
SUPPORT_EMAIL = os.environ.get("SUPPORT_EMAIL", "support@softcrate.de")
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
RESEND_FROM_EMAIL = os.environ.get(
    "RESEND_FROM_EMAIL", "Softcrate <noreply@softcrate.de>"
)
DEFAULT_PRODUCT_SLUG = os.environ.get("DEFAULT_PRODUCT_SLUG",
                                      "windows-11-pro")
MAX_ORDER_LIST = 500

adapter: PaymentAdapter = SignedCapture()

app = FastAPI(
    title="Softcrate",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


@app.exception_handler(SoftcrateError)
async def _softcrate_error(request: Request, exc: SoftcrateError):
    if isinstance(exc, (ConfigurationError, StoreError)):
        logger.error("%s %s failed: %s", request.method, request.url.path,
                     exc.detail)
    return ORJSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "detail": exc.detail},
    )


# ----------------------------
# Dependencies
# ----------------------------
def get_kv(request: Request) -> KVStore:
    kv = getattr(request.app.state, "kv", None)
    if kv is None:
        raise ConfigurationError("key-value store is not initialized")
    return kv


def get_notifier(request: Request) -> Notifier:
    notifier = getattr(request.app.state, "notifier", None)
    if notifier is None:
        raise ConfigurationError("notifier is not initialized")
    return notifier


def get_fulfillment(
    kv: KVStore = Depends(get_kv),
    notifier: Notifier = Depends(get_notifier),
) -> Fulfillment:
    return Fulfillment(
        orders=OrderStore(kv),
        inventory=LicenseInventory(kv),
        catalog=ProductCatalog(kv),
        notifier=notifier,
        admin_email=ADMIN_EMAIL,
        support_email=SUPPORT_EMAIL,
        default_product_slug=DEFAULT_PRODUCT_SLUG,
    )


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info("=" * 50)
    logger.info("Softcrate is starting up...")
    logger.info("   - Key-value backend: %s", KV_BACKEND)
    logger.info("   - Email: %s",
                "Resend" if RESEND_API_KEY else "log only")
    logger.info("=" * 50)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=16
        ),
    )


@app.on_event("startup")
async def _kv_start():
    if KV_BACKEND == "memory":
        app.state.redis = None
        app.state.kv = new_store(backend="memory")
        return
    app.state.redis = redis.from_url(
        REDIS_URL,
        decode_responses=True,
        max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
        retry_on_timeout=True,
    )
    app.state.kv = new_store(r=app.state.redis)


@app.on_event("startup")
async def _notifier_start():
    if RESEND_API_KEY and RESEND_FROM_EMAIL:
        app.state.notifier = ResendNotifier(
            app.state.http,
            api_key=RESEND_API_KEY,
            sender=RESEND_FROM_EMAIL,
            reply_to=SUPPORT_EMAIL or None,
        )
    else:
        logger.warning("RESEND_API_KEY not set; emails are only logged")
        app.state.notifier = LogNotifier()


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request, payload: Optional[dict] = None) -> None:
    if not ADMIN_PASSWORD:
        raise ConfigurationError(
            "System configuration error: ADMIN_PASSWORD missing"
        )
    if is_admin(request):
        return
    password = (payload or {}).get("password") \
        or request.headers.get("x-admin-password") or ""
    if not isinstance(password, str) or not ct_equal(password,
                                                     ADMIN_PASSWORD):
        raise AuthError("Unauthorized")


def _text(payload: dict, *names: str) -> str:
    # first non-empty string among the accepted spellings of a field
    for name in names:
        value = payload.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _event_text(event: dict, name: str) -> Optional[str]:
    value = event.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value.strip() or None


def _money(value) -> Optional[str]:
    if value is None or value == "":
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValidationError("price must be a number")
    if not math.isfinite(price) or price < 0:
        raise ValidationError("price must be a non-negative number")
    return f"{price:.2f}"


# ----------------------------
# Public API
# ----------------------------
@app.get("/api/health")
async def health():
    return {"ok": True}


@app.get("/api/products")
async def list_products(kv: KVStore = Depends(get_kv)):
    return await ProductCatalog(kv).public()


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, kv: KVStore = Depends(get_kv)):
    async with timeit("orders.get"):
        order = await OrderStore(kv).get(order_id)
    if order is None:
        raise HTTPException(404, detail="order not found")
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "product": order.product,
        "amount": order.amount,
        "currency": order.currency,
        "license_key":
            order.license_key if order.status == COMPLETED else None,
    }


@app.post("/api/giftcard-checkout")
async def giftcard_checkout(
    payload: dict = Body(default_factory=dict),
    f: Fulfillment = Depends(get_fulfillment),
):
    order = await f.record_voucher_order(
        email=_text(payload, "email"),
        code=_text(payload, "code", "amazonCode", "amazon_code"),
        voucher_type=_text(payload, "voucher_type", "voucherType") or None,
        items=payload.get("items"),
    )
    return {
        "success": True,
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
    }


# ----------------------------
# Webhook endpoint (payment captured)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    f: Fulfillment = Depends(get_fulfillment),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    kind = adapter.event_kind(event)  # succeeded | failed | canceled
    capture_id, idem = adapter.event_ids(event)
    if not capture_id:
        raise HTTPException(400, detail="missing capture_id")

    if kind != "succeeded":
        logger.info("Capture %s not completed (%s)", capture_id, kind)
        return {"ok": True, "status": "pending", "kind": kind}

    email = _event_text(event, "email") or ""
    if not is_valid_email(email):
        raise HTTPException(400, detail="Missing email")
    # checked before the gate is claimed
    fields = {
        "product_slug": _event_text(event, "product_slug"),
        "product": _event_text(event, "product"),
        "currency": _event_text(event, "currency"),
        "customer_name": _event_text(event, "customer_name") or "",
        "payment_method": _event_text(event, "payment_method") or "paypal",
    }

    async with timeit("orders.claim_capture"):
        first = await f.orders.claim_capture(capture_id, idem)
    if not first:
        return {"ok": True, "idempotent": True}

    try:
        async with timeit("fulfillment.record_capture"):
            order = await f.record_capture(
                capture_id=capture_id,
                email=email,
                amount=event.get("amount"),
                **fields,
            )
    except Exception:
        logger.warning("Capture %s failed; reopening its gate", capture_id)
        await f.orders.release_capture(capture_id, idem)
        raise
    return {
        "ok": True,
        "status": order.status,
        "order_id": order.id,
        "message": "Payment completed and key sent"
        if order.status == COMPLETED
        else "Order placed, waiting for stock",
    }


# ----------------------------
# Admin session
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form("admin"),
    password: str = Form(...),
    next: str = Form("/api/admin/timings"),
):
    if not ADMIN_PASSWORD:
        raise ConfigurationError(
            "System configuration error: ADMIN_PASSWORD missing"
        )
    if ct_equal(password, ADMIN_PASSWORD):
        request.session["admin_user"] = username.strip() or "admin"
        # only local redirects
        dest = next if next.startswith("/") and not next.startswith("//") \
            else "/"
        return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
    raise AuthError("Invalid credentials.")


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# Admin API: inventory
# ----------------------------
@app.post("/api/admin/add-keys")
async def admin_add_keys(
    request: Request,
    payload: dict = Body(default_factory=dict),
    f: Fulfillment = Depends(get_fulfillment),
):
    require_admin(request, payload)
    async with timeit("fulfillment.fulfill_backorders"):
        result = await f.fulfill_backorders(
            payload.get("product"), payload.get("keys")
        )
    body = result.as_dict()
    body.update({
        "success": True,
        "added": result.fulfilled_count + result.restocked,
    })
    return body


@app.post("/api/admin/delete-key")
async def admin_delete_key(
    request: Request,
    payload: dict = Body(default_factory=dict),
    kv: KVStore = Depends(get_kv),
):
    require_admin(request, payload)
    product = _text(payload, "product")
    key = _text(payload, "key", "keyString")
    if not product or not key:
        raise ValidationError("Missing product or keyString")
    remaining = await LicenseInventory(kv).remove(product, key)
    if remaining is None:
        raise NotFoundError("Key not found")
    return {"success": True, "product": product, "remaining": remaining}


@app.post("/api/admin/view-keys")
async def admin_view_keys(
    request: Request,
    payload: dict = Body(default_factory=dict),
    kv: KVStore = Depends(get_kv),
):
    require_admin(request, payload)
    catalog = ProductCatalog(kv)
    names = {p["slug"]: p.get("name") or p["slug"]
             for p in await catalog.all()}
    stock = await LicenseInventory(kv).snapshot(await catalog.slugs())
    return {
        slug: {
            "name": names.get(slug, slug),
            "available": len(keys),
            "keys": keys,
        }
        for slug, keys in stock.items()
    }


@app.post("/api/admin/download-link")
async def admin_download_link(
    request: Request,
    payload: dict = Body(default_factory=dict),
    kv: KVStore = Depends(get_kv),
):
    require_admin(request, payload)
    product = _text(payload, "product")
    url = _text(payload, "url")
    if not product or not url:
        raise ValidationError("Missing product or url")
    await LicenseInventory(kv).set_download_link(product, url)
    return {"success": True, "product": product, "url": url}


# ----------------------------
# Admin API: orders
# ----------------------------
@app.post("/api/admin/view-orders")
async def admin_view_orders(
    request: Request,
    payload: dict = Body(default_factory=dict),
    kv: KVStore = Depends(get_kv),
):
    require_admin(request, payload)
    status = _text(payload, "status") or None
    if status is not None and status not in STATUSES:
        raise ValidationError(f"Unknown status: {status}")
    try:
        limit = int(payload.get("limit") or MAX_ORDER_LIST)
    except (TypeError, ValueError):
        raise ValidationError("limit must be an integer")
    limit = max(1, min(limit, MAX_ORDER_LIST))

    async with timeit("orders.list"):
        orders = await OrderStore(kv).list(
            product_slug=_text(payload, "product") or None, status=status
        )
    # newest first
    orders.sort(key=lambda o: o.created, reverse=True)
    return {
        "orders": [o.to_dict() for o in orders[:limit]],
        "total": len(orders),
        "limit": limit,
    }


@app.post("/api/admin/update-order-status")
async def admin_update_order_status(
    request: Request,
    payload: dict = Body(default_factory=dict),
    f: Fulfillment = Depends(get_fulfillment),
):
    require_admin(request, payload)
    order, email_sent = await f.update_order_status(
        _text(payload, "order_id", "orderId"),
        _text(payload, "new_status", "newStatus"),
    )
    return {"success": True, "order": order.to_dict(),
            "emailSent": email_sent}


@app.post("/api/admin/manual-fulfill")
async def admin_manual_fulfill(
    request: Request,
    payload: dict = Body(default_factory=dict),
    f: Fulfillment = Depends(get_fulfillment),
):
    require_admin(request, payload)
    order = await f.manual_fulfill(
        _text(payload, "order_id", "orderId"),
        _text(payload, "product"),
    )
    return {"success": True, "order": order.to_dict()}


# ----------------------------
# Admin API: catalog
# ----------------------------
@app.post("/api/admin/create-product")
async def admin_create_product(
    request: Request,
    payload: dict = Body(default_factory=dict),
    kv: KVStore = Depends(get_kv),
):
    require_admin(request, payload)
    product = await ProductCatalog(kv).create(
        name=_text(payload, "name"),
        slug=_text(payload, "slug"),
        image_url=_text(payload, "image_url", "imageUrl"),
        price=_money(payload.get("price")),
        currency=_text(payload, "currency") or None,
        category=_text(payload, "category") or None,
        description=_text(payload, "description") or None,
    )
    return {"success": True, "product": product}


@app.post("/api/admin/delete-product")
async def admin_delete_product(
    request: Request,
    payload: dict = Body(default_factory=dict),
    kv: KVStore = Depends(get_kv),
):
    require_admin(request, payload)
    slug = _text(payload, "slug")
    if not slug:
        raise ValidationError("Missing slug")
    await ProductCatalog(kv).delete(slug)
    return {"success": True, "message": "Product deleted"}


@app.get("/api/admin/timings")
async def admin_timings(request: Request):
    require_admin(request)
    return timings.summary()
