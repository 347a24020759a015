# model/kv/_redis.py
from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Tuple
import asyncio
import logging
import time
import uuid

import orjson
import redis.asyncio as redis
from redis.exceptions import RedisError

from ...errors import MalformedRecordError, StoreError

logger = logging.getLogger(__name__)

# compare-and-delete, compare-and-pexpire
_RELEASE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""
_RENEW = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
end
return 0
"""


# ---- keys
def k_lock(name: str) -> str: return f"lock:{name}"


def decode(key: str, raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise MalformedRecordError(f"{key}: {e}") from e


@asynccontextmanager
async def _guard(op: str) -> AsyncIterator[None]:
    try:
        yield
    except RedisError as e:
        raise StoreError(f"redis {op} failed: {e}") from e


class RedisKVStore:
    """
    JSON documents in plain Redis strings.

    Values are serialized with orjson; the client must be created with
    decode_responses=True.
    """

    SCAN_COUNT = 500
    MGET_CHUNK = 200

    def __init__(self, r: redis.Redis, lock_timeout: float = 10.0,
                 lock_wait: float = 5.0) -> None:
        self.r = r
        self.lock_timeout = lock_timeout
        self.lock_wait = lock_wait

    async def get(self, key: str) -> Any:
        return decode(key, await self.get_raw(key))

    async def get_raw(self, key: str) -> Optional[str]:
        async with _guard("get"):
            return await self.r.get(key)

    async def put(self, key: str, value: Any,
                  ttl: Optional[int] = None) -> None:
        async with _guard("set"):
            await self.r.set(key, orjson.dumps(value), ex=ttl)

    async def add(self, key: str, value: Any, ttl: Optional[int] = None
                  ) -> bool:
        # NX gate: True if we just created the key
        async with _guard("set nx"):
            ok = await self.r.set(key, orjson.dumps(value), nx=True, ex=ttl)
        return bool(ok)

    async def delete(self, key: str) -> None:
        async with _guard("delete"):
            await self.r.delete(key)

    async def keys(self, prefix: str = "",
                   limit: Optional[int] = None) -> List[str]:
        out: List[str] = []
        async with _guard("scan"):
            async for k in self.r.scan_iter(match=f"{prefix}*",
                                            count=self.SCAN_COUNT):
                out.append(k)
                if limit is not None and len(out) >= limit:
                    break
        return out

    async def items_raw(self, prefix: str = "", limit: Optional[int] = None
                        ) -> List[Tuple[str, Optional[str]]]:
        keys = await self.keys(prefix, limit)
        rows: List[Tuple[str, Optional[str]]] = []
        async with _guard("mget"):
            for i in range(0, len(keys), self.MGET_CHUNK):
                chunk = keys[i:i + self.MGET_CHUNK]
                values = await self.r.mget(chunk)
                rows.extend(zip(chunk, values))
        return rows


    @asynccontextmanager
    async def lock(self, name: str) -> AsyncIterator[None]:
        # SET NX PX token lock; the lease is renewed while held and only
        # the token holder can renew or release it
        k = k_lock(name)
        token = uuid.uuid4().hex
        lease_ms = int(self.lock_timeout * 1000)
        deadline = time.monotonic() + self.lock_wait
        while True:
            async with _guard("lock"):
                ok = await self.r.set(k, token, nx=True, px=lease_ms)
            if ok:
                break
            if time.monotonic() >= deadline:
                raise StoreError(f"lock busy: {name}")
            await asyncio.sleep(0.02)

        renew = asyncio.create_task(self._keep_alive(k, token, lease_ms))
        try:
            yield
        finally:
            renew.cancel()
            try:
                await renew
            except asyncio.CancelledError:
                pass
            except RedisError as e:
                logger.error("Lease renewal for %s failed: %s", name, e)
            async with _guard("unlock"):
                released = await self.r.eval(_RELEASE, 1, k, token)
            if not released:
                logger.error("Lock %s expired before release", name)

    async def _keep_alive(self, k: str, token: str, lease_ms: int) -> None:
        while True:
            await asyncio.sleep(lease_ms / 3000)
            if not await self.r.eval(_RENEW, 1, k, token, lease_ms):
                logger.error("Lost lock %s while holding it", k)
                return
