# model/orders.py
from __future__ import annotations
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional
import logging

from ..errors import MalformedRecordError, OrderNotFoundError
from ..helpers import parse_iso
from .kv import KVStore
from .kv._redis import decode

logger = logging.getLogger(__name__)


# ---- statuses
PENDING = "pending"
PENDING_AMAZON = "pending_amazon"
WAITING_FOR_STOCK = "waiting_for_stock"
COMPLETED = "completed"
CANCELLED = "cancelled"
REFUNDED = "refunded"

STATUSES: FrozenSet[str] = frozenset({
    PENDING, PENDING_AMAZON, WAITING_FOR_STOCK, COMPLETED, CANCELLED,
    REFUNDED,
})

# Anything not listed here is rejected.
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({WAITING_FOR_STOCK, COMPLETED, CANCELLED, REFUNDED}),
    PENDING_AMAZON: frozenset({
        WAITING_FOR_STOCK, COMPLETED, CANCELLED, REFUNDED,
    }),
    WAITING_FOR_STOCK: frozenset({COMPLETED, CANCELLED, REFUNDED}),
    COMPLETED: frozenset({CANCELLED, REFUNDED}),
    CANCELLED: frozenset(),
    REFUNDED: frozenset(),
}

# statuses that may still receive a key
AWAITING_KEY: FrozenSet[str] = frozenset({
    PENDING, PENDING_AMAZON, WAITING_FOR_STOCK,
})


def can_transition(old: str, new: str) -> bool:
    return new in TRANSITIONS.get(old, frozenset())


_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


# ---- keys
PREFIX = "order:"
def k_order(oid: str) -> str: return f"{PREFIX}{oid}"
def k_capture(cid: str) -> str: return f"gate:capture:{cid}"
def k_idemp(evt: str) -> str: return f"idemp:{evt}"


@dataclass
class Order:
    id: str
    order_number: str
    email: str
    product: str
    product_slug: str
    amount: str
    currency: str
    timestamp: str
    status: str
    customer_name: str = ""
    license_key: Optional[str] = None
    fulfillment_date: Optional[str] = None
    status_updated_at: Optional[str] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    items: List[Dict[str, Any]] = field(default_factory=list)
    voucher_code: Optional[str] = None
    voucher_type: Optional[str] = None
    manual_fulfillment_product: Optional[str] = None

    @property
    def created(self) -> datetime:
        # FIFO sort key; unparseable timestamps sort first
        return parse_iso(self.timestamp) or _EPOCH

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, oid: str, data: Any) -> "Order":
        if not isinstance(data, dict):
            raise MalformedRecordError(f"{oid}: not an object")
        known = {f.name for f in fields(cls)}
        row = {k: v for k, v in data.items() if k in known}
        row["id"] = oid
        status = row.get("status")
        if status not in STATUSES:
            raise MalformedRecordError(f"{oid}: bad status {status!r}")
        if not isinstance(row.get("timestamp"), str):
            raise MalformedRecordError(f"{oid}: missing timestamp")
        row.setdefault("order_number", "")
        row.setdefault("email", "")
        row.setdefault("product", "")
        row.setdefault("product_slug", "")
        row["amount"] = str(row.get("amount", "0.00"))
        row.setdefault("currency", "EUR")
        if row.get("items") is None:
            row["items"] = []
        return cls(**row)


class OrderStore:
    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    async def get(self, order_id: str) -> Optional[Order]:
        data = await self.kv.get(k_order(order_id))
        if data is None:
            return None
        return Order.from_dict(order_id, data)

    async def require(self, order_id: str) -> Order:
        order = await self.get(order_id)
        if order is None:
            raise OrderNotFoundError(f"order {order_id} not found")
        return order

    async def put(self, order: Order) -> None:
        await self.kv.put(k_order(order.id), order.to_dict())

    async def claim_capture(self, capture_id: str,
                            evt_id: Optional[str] = None) -> bool:
        """
        Fulfillment gate for a payment capture.

        False if the capture (or the event carrying it) was seen before.
        """
        # NX gate for fulfillment, 24h TTL
        if not await self.kv.add(k_capture(capture_id), 1, ttl=24*3600):
            return False
        if evt_id:
            return await self.kv.add(k_idemp(evt_id), 1, ttl=3600)
        return True

    async def release_capture(self, capture_id: str,
                              evt_id: Optional[str] = None) -> None:
        # reopen the gate after a failed fulfillment so a retry can run
        await self.kv.delete(k_capture(capture_id))
        if evt_id:
            await self.kv.delete(k_idemp(evt_id))

    async def list(self, product_slug: Optional[str] = None,
                   status: Optional[str] = None,
                   limit: Optional[int] = None) -> List[Order]:
        """
        Scan every stored order and filter.

        Malformed records are logged and skipped. The order of the result
        is the store's listing order, which Redis does not guarantee.
        """
        out: List[Order] = []
        for key, raw in await self.kv.items_raw(PREFIX):
            if raw is None:
                # expired or deleted between SCAN and MGET
                continue
            oid = key[len(PREFIX):]
            try:
                order = Order.from_dict(oid, decode(key, raw))
            except MalformedRecordError as e:
                logger.warning("Skipping malformed order record: %s", e)
                continue
            if product_slug is not None and order.product_slug != product_slug:
                continue
            if status is not None and order.status != status:
                continue
            out.append(order)
            if limit is not None and len(out) >= limit:
                break
        return out

    async def waiting_queue(self, product_slug: str) -> List[Order]:
        orders = await self.list(product_slug=product_slug,
                                 status=WAITING_FOR_STOCK)
        # stable: equal timestamps keep listing order
        orders.sort(key=lambda o: o.created)
        return orders
