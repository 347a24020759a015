"""
Order fulfillment and backorder reconciliation.

Paid orders take a key from inventory at capture time or queue up as
`waiting_for_stock`. Adding keys drains that queue oldest-first before the
surplus is stocked. Every inventory read-modify-write for a product runs
under the product's store lock, so a restock cannot interleave with a
purchase or another restock of the same product.
"""
from __future__ import annotations
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import math

from .errors import (
    InvalidTransitionError, OutOfStockError, ValidationError,
)
from .helpers import (
    format_amount, is_valid_email, new_order_id, new_order_number,
    now_iso, now_ts, to_iso,
)
from .infra.timings import timeit
from .model.catalog import ProductCatalog
from .model.inventory import LicenseInventory
from .model.orders import (
    AWAITING_KEY, CANCELLED, COMPLETED, PENDING_AMAZON, REFUNDED, STATUSES,
    WAITING_FOR_STOCK, Order, OrderStore, can_transition,
)
from .notify import Notifier

logger = logging.getLogger(__name__)

VOUCHER_LABELS = {
    "amazon": "Amazon gift card",
    "psc": "Paysafecard PIN",
    "apple": "Apple gift card",
    "google": "Google Play code",
}

# status -> email template sent by the admin status update
STATUS_EMAILS = {
    COMPLETED: "delivery",
    CANCELLED: "cancellation",
    REFUNDED: "refund",
    WAITING_FOR_STOCK: "backorder",
}


@dataclass
class ReconcileResult:
    product_slug: str
    fulfilled_count: int = 0
    restocked: int = 0
    total_stock: int = 0
    fulfilled: List[Order] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "product": self.product_slug,
            "fulfilled_count": self.fulfilled_count,
            "restocked": self.restocked,
            "total": self.total_stock,
            "fulfilled_orders": [o.id for o in self.fulfilled],
        }


def validate_batch(product_slug: Any, keys: Any) -> Tuple[str, List[str]]:
    if not isinstance(product_slug, str) or not product_slug.strip():
        raise ValidationError("Invalid request. Need product and keys array")
    if not isinstance(keys, (list, tuple)):
        raise ValidationError("Invalid request. Need product and keys array")
    batch: List[str] = []
    for i, k in enumerate(keys):
        if not isinstance(k, str) or not k.strip():
            raise ValidationError(f"keys[{i}] must be a non-empty string")
        # stored and delivered exactly as supplied
        batch.append(k)
    return product_slug.strip(), batch


class Fulfillment:
    def __init__(self, *, orders: OrderStore, inventory: LicenseInventory,
                 catalog: ProductCatalog, notifier: Notifier,
                 admin_email: str = "", support_email: str = "",
                 default_product_slug: str = "windows-11-pro") -> None:
        self.orders = orders
        self.inventory = inventory
        self.catalog = catalog
        self.notifier = notifier
        self.admin_email = admin_email
        self.support_email = support_email
        self.default_product_slug = default_product_slug

    # ----------------------------
    # Reconciler
    # ----------------------------
    async def fulfill_backorders(self, product_slug: Any,
                                 new_keys: Any) -> ReconcileResult:
        """
        Serve waiting orders for `product_slug` from `new_keys`, oldest
        first, and stock whatever is left over.

        Orders with equal timestamps keep the store's listing order, which
        is not deterministic on Redis. Submitting the same batch twice is
        not detected.
        """
        slug, batch = validate_batch(product_slug, new_keys)
        result = ReconcileResult(product_slug=slug)
        if not batch:
            result.total_stock = len(await self.inventory.get(slug))
            return result

        remaining = list(batch)
        async with self.inventory.locked(slug):
            async with timeit("orders.waiting_queue"):
                queue = await self.orders.waiting_queue(slug)
            for order in queue:
                if not remaining:
                    break
                if order.license_key:
                    logger.warning(
                        "Skipping order %s: waiting but already holds a key",
                        order.id,
                    )
                    continue
                now = now_iso()
                order.license_key = remaining.pop(0)
                order.status = COMPLETED
                order.fulfillment_date = now
                order.status_updated_at = now
                await self.orders.put(order)
                result.fulfilled.append(order)
            async with timeit("inventory.extend"):
                result.total_stock = await self.inventory.extend(
                    slug, remaining
                )

        result.fulfilled_count = len(result.fulfilled)
        result.restocked = max(0, len(batch) - result.fulfilled_count)
        logger.info(
            "Restock %s: %d keys, %d backorders fulfilled, %d stocked",
            slug, len(batch), result.fulfilled_count, result.restocked,
        )

        if result.fulfilled:
            link = await self._download_link(slug)
            for order in result.fulfilled:
                await self._notify(order.email, "restock_delivery", order,
                                   download_link=link)
        return result

    async def try_immediate_assign(self, product_slug: str, *,
                                   locked: bool = False) -> Optional[str]:
        """
        Take the oldest stocked key for `product_slug`, or None.

        With `locked=True` the caller already holds the product lock.
        """
        if locked:
            return await self.inventory.pop_front(product_slug)
        return await self.inventory.take_first(product_slug)

    # ----------------------------
    # Capture (customer paid)
    # ----------------------------
    async def record_capture(self, *, capture_id: str, email: str,
                             product_slug: Optional[str] = None,
                             product: Optional[str] = None,
                             amount: Any = None,
                             currency: Optional[str] = None,
                             customer_name: str = "",
                             payment_method: str = "paypal") -> Order:
        if not capture_id:
            raise ValidationError("Missing capture_id")
        if not is_valid_email(email):
            raise ValidationError("Missing email")
        for name, value in (("product_slug", product_slug),
                            ("product", product), ("currency", currency),
                            ("customer_name", customer_name),
                            ("payment_method", payment_method)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{name} must be a string")
        slug = (product_slug or self.default_product_slug).strip()
        meta = await self.catalog.get(slug) or {}

        ts = now_ts()
        order = Order(
            id=new_order_id(ts),
            order_number=new_order_number("PP", ts),
            email=email.strip(),
            customer_name=customer_name,
            product=product or meta.get("name") or slug,
            product_slug=slug,
            amount=_amount(amount, meta.get("price")),
            currency=(currency or meta.get("currency") or "EUR").upper(),
            timestamp=to_iso(ts),
            status=WAITING_FOR_STOCK,
            payment_method=payment_method,
            transaction_id=capture_id,
        )
        # lock spans the order write: a waiting order is visible to the
        # next restock of this product
        async with self.inventory.locked(slug):
            async with timeit("inventory.pop_front"):
                key = await self.try_immediate_assign(slug, locked=True)
            if key is not None:
                order.license_key = key
                order.status = COMPLETED
                order.fulfillment_date = order.timestamp
            await self.orders.put(order)

        if order.status == COMPLETED:
            logger.info("Order %s completed with stock key", order.id)
            await self._notify(order.email, "delivery", order,
                               download_link=await self._download_link(slug))
        else:
            logger.info("Order %s waiting for stock of %s", order.id, slug)
            await self._notify(order.email, "backorder", order)
        return order

    # ----------------------------
    # Voucher / gift-card checkout (manual review)
    # ----------------------------
    async def record_voucher_order(self, *, email: str, code: str,
                                   items: Any,
                                   voucher_type: Optional[str] = None
                                   ) -> Order:
        if not is_valid_email(email) or not code or not items:
            raise ValidationError("Missing required fields")
        lines = _cart_lines(items)
        vtype = (voucher_type or "amazon").lower()
        label = VOUCHER_LABELS.get(vtype, "Voucher")

        total = sum(line["price"] * line["quantity"] for line in lines)
        name = lines[0]["name"]
        if len(lines) > 1:
            name = f"{name} (+{len(lines) - 1} more)"

        ts = now_ts()
        order = Order(
            id=new_order_id(ts),
            order_number=new_order_number(vtype[:3], ts),
            email=email.strip(),
            customer_name=f"{label} customer",
            product=name,
            product_slug=lines[0]["slug"] or self.default_product_slug,
            amount=format_amount(total),
            currency="EUR",
            timestamp=to_iso(ts),
            status=PENDING_AMAZON,
            payment_method=vtype,
            items=lines,
            voucher_code=code.strip(),
            voucher_type=vtype,
        )
        await self.orders.put(order)
        logger.info("Voucher order %s (%s) awaiting review",
                    order.order_number, vtype)

        if self.admin_email:
            await self._notify(self.admin_email, "admin_voucher", order,
                               voucher_label=label)
        else:
            logger.warning("ADMIN_EMAIL not set; no review email for %s",
                           order.order_number)
        return order

    # ----------------------------
    # Admin actions
    # ----------------------------
    async def manual_fulfill(self, order_id: str,
                             product_slug: str) -> Order:
        """
        Assign a key from `product_slug` to an order that has none yet.

        The product may differ from the order's own; that is recorded in
        `manual_fulfillment_product`.
        """
        if not order_id or not product_slug:
            raise ValidationError("Missing orderId or product")
        order = await self.orders.require(order_id)

        async with AsyncExitStack() as stack:
            for slug in sorted({order.product_slug, product_slug}):
                await stack.enter_async_context(self.inventory.locked(slug))
            order = await self.orders.require(order_id)
            if order.status not in AWAITING_KEY or order.license_key:
                raise InvalidTransitionError(
                    f"order {order_id} is {order.status}; cannot fulfill"
                )
            key = await self.inventory.pop_front(product_slug)
            if key is None:
                raise OutOfStockError(
                    f"No keys in stock for {product_slug}"
                )
            now = now_iso()
            order.license_key = key
            order.status = COMPLETED
            order.fulfillment_date = now
            order.status_updated_at = now
            if product_slug != order.product_slug:
                order.manual_fulfillment_product = product_slug
            await self.orders.put(order)

        logger.info("Order %s fulfilled manually from %s", order_id,
                    product_slug)
        await self._notify(
            order.email, "delivery", order,
            download_link=await self._download_link(product_slug),
        )
        return order

    async def update_order_status(self, order_id: str,
                                  new_status: str) -> Tuple[Order, bool]:
        """Admin status change; returns the order and whether mail went out."""
        if not order_id or not new_status:
            raise ValidationError("Missing orderId or newStatus")
        if new_status not in STATUSES:
            raise ValidationError(f"Unknown status: {new_status}")
        order = await self.orders.require(order_id)

        async with self.inventory.locked(order.product_slug):
            order = await self.orders.require(order_id)
            old = order.status
            if not can_transition(old, new_status):
                raise InvalidTransitionError(
                    f"cannot change order {order_id} from {old} "
                    f"to {new_status}"
                )
            now = now_iso()
            if new_status == COMPLETED and not order.license_key:
                key = await self.inventory.pop_front(order.product_slug)
                if key is None:
                    raise OutOfStockError(
                        f"No keys in stock for {order.product_slug}"
                    )
                order.license_key = key
                order.fulfillment_date = now
            order.status = new_status
            order.status_updated_at = now
            await self.orders.put(order)

        logger.info("Order %s: %s -> %s", order_id, old, new_status)
        extra: Dict[str, Any] = {}
        if new_status == COMPLETED:
            extra["download_link"] = await self._download_link(
                order.product_slug
            )
        sent = await self._notify(order.email, STATUS_EMAILS[new_status],
                                  order, **extra)
        return order, sent

    # ----------------------------
    # internals
    # ----------------------------
    async def _download_link(self, slug: str) -> Optional[str]:
        try:
            return await self.inventory.download_link(slug)
        except Exception:
            logger.exception("Could not load download link for %s", slug)
            return None

    async def _notify(self, to: str, kind: str, order: Order,
                      **extra: Any) -> bool:
        # best effort: a failed email never undoes the order change
        data = order.to_dict()
        data.update(extra)
        data["support_email"] = self.support_email
        data["idempotency_key"] = f"{kind}-{order.id}"
        try:
            return await self.notifier.send(to, kind, data)
        except Exception:
            logger.exception("Failed to send %s email for order %s",
                             kind, order.id)
            return False


def _amount(value: Any, fallback: Any) -> str:
    for v in (value, fallback):
        if v is None or v == "":
            continue
        try:
            f = float(v)
        except (TypeError, ValueError):
            continue
        if math.isfinite(f) and f >= 0:
            return format_amount(f)
    return "0.00"


def _cart_lines(items: Any) -> List[Dict[str, Any]]:
    if not isinstance(items, Sequence) or isinstance(items, (str, bytes)):
        raise ValidationError("items must be a list")
    lines: List[Dict[str, Any]] = []
    for i, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("name"):
            raise ValidationError(f"items[{i}] needs a name")
        try:
            price = float(item.get("price", 0))
            quantity = int(item.get("quantity", 1))
        except (TypeError, ValueError):
            raise ValidationError(f"items[{i}] has a bad price or quantity")
        if not math.isfinite(price) or price < 0 or quantity < 1:
            raise ValidationError(f"items[{i}] has a bad price or quantity")
        lines.append({
            "name": str(item["name"]),
            "slug": str(item.get("slug") or ""),
            "price": price,
            "quantity": quantity,
        })
    if not lines:
        raise ValidationError("Missing required fields")
    return lines
