# model/kv/_memory.py
from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
import asyncio
from time import monotonic

import orjson

from ...errors import StoreError
from ._redis import decode


class MemoryKVStore:
    """
    Single-process store with the same contract as RedisKVStore.

    Values are kept JSON-encoded so that reads hand out fresh copies.
    Insertion order is the listing order.
    """

    def __init__(self, lock_timeout: float = 10.0,
                 lock_wait: float = 5.0) -> None:
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.lock_timeout = lock_timeout
        self.lock_wait = lock_wait

    def _live(self, key: str) -> Optional[str]:
        row = self._data.get(key)
        if row is None:
            return None
        raw, expires_at = row
        if expires_at is not None and expires_at <= monotonic():
            del self._data[key]
            return None
        return raw

    @staticmethod
    def _expiry(ttl: Optional[int]) -> Optional[float]:
        return None if ttl is None else monotonic() + ttl

    async def get(self, key: str) -> Any:
        return decode(key, self._live(key))

    async def get_raw(self, key: str) -> Optional[str]:
        return self._live(key)

    async def put(self, key: str, value: Any,
                  ttl: Optional[int] = None) -> None:
        self._data[key] = (orjson.dumps(value).decode(), self._expiry(ttl))

    async def put_raw(self, key: str, raw: str) -> None:
        self._data[key] = (raw, None)

    async def add(self, key: str, value: Any, ttl: Optional[int] = None
                  ) -> bool:
        if self._live(key) is not None:
            return False
        await self.put(key, value, ttl)
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "",
                   limit: Optional[int] = None) -> List[str]:
        out = [k for k in list(self._data)
               if k.startswith(prefix) and self._live(k) is not None]
        return out if limit is None else out[:limit]

    async def items_raw(self, prefix: str = "", limit: Optional[int] = None
                        ) -> List[Tuple[str, Optional[str]]]:
        return [(k, self._live(k)) for k in await self.keys(prefix, limit)]

    @asynccontextmanager
    async def lock(self, name: str) -> AsyncIterator[None]:
        lk = self._locks.setdefault(name, asyncio.Lock())
        try:
            await asyncio.wait_for(lk.acquire(), timeout=self.lock_wait)
        except asyncio.TimeoutError as e:
            raise StoreError(f"lock busy: {name}") from e
        try:
            yield
        finally:
            lk.release()
