"""Shared fixtures: in-memory and fakeredis stores, a recording notifier."""

from typing import Any, Dict, List, Tuple

import fakeredis.aioredis
import pytest

from softcrate.fulfillment import Fulfillment
from softcrate.model.catalog import ProductCatalog
from softcrate.model.inventory import LicenseInventory
from softcrate.model.kv import MemoryKVStore, RedisKVStore
from softcrate.model.orders import Order, OrderStore, WAITING_FOR_STOCK
from softcrate.notify import Notifier


class RecordingNotifier(Notifier):
    def __init__(self, fail_for: Tuple[str, ...] = ()) -> None:
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail_for = fail_for

    async def send(self, to: str, kind: str, data: Dict[str, Any]) -> bool:
        if to in self.fail_for:
            raise RuntimeError(f"mail provider down for {to}")
        self.sent.append((to, kind, data))
        return True

    def kinds(self) -> List[str]:
        return [kind for _, kind, _ in self.sent]


@pytest.fixture
def kv():
    return MemoryKVStore(lock_wait=0.5)


@pytest.fixture
def redis_kv():
    return RedisKVStore(
        r=fakeredis.aioredis.FakeRedis(decode_responses=True),
        lock_timeout=2.0,
        lock_wait=0.2,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(kv, notifier):
    return Fulfillment(
        orders=OrderStore(kv),
        inventory=LicenseInventory(kv),
        catalog=ProductCatalog(kv),
        notifier=notifier,
        admin_email="admin@softcrate.test",
        support_email="support@softcrate.test",
    )


def make_order(oid: str, timestamp: str, *,
               slug: str = "windows-11-pro",
               status: str = WAITING_FOR_STOCK,
               email: str = "",
               license_key=None) -> Order:
    return Order(
        id=oid,
        order_number=f"ORD-PP-20260101-{abs(hash(oid)) % 9000 + 1000}",
        email=email or f"{oid}@example.com",
        product="Windows 11 Pro",
        product_slug=slug,
        amount="19.99",
        currency="EUR",
        timestamp=timestamp,
        status=status,
        license_key=license_key,
    )
