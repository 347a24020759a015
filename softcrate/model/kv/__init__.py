# model/kv/__init__.py
import os
from typing import Optional
import redis.asyncio as redis

from ._memory import MemoryKVStore
from ._redis import RedisKVStore

BACKEND = os.getenv("KV_BACKEND", "redis").lower()  # 'redis' | 'memory'
LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "10"))
LOCK_WAIT_SECONDS = float(os.getenv("LOCK_WAIT_SECONDS", "5"))

KVStore = RedisKVStore | MemoryKVStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, r: Optional[redis.Redis] = None,
              backend: Optional[str] = None,
              lock_timeout: float = LOCK_TIMEOUT_SECONDS,
              lock_wait: float = LOCK_WAIT_SECONDS) -> KVStore:
    backend = (backend or BACKEND).lower()
    if backend == "memory":
        return MemoryKVStore(lock_timeout=lock_timeout, lock_wait=lock_wait)
    if r is None:
        raise RuntimeError("KVStore(redis) requires r=redis.Redis")
    return RedisKVStore(r=r, lock_timeout=lock_timeout, lock_wait=lock_wait)


__all__ = [
    "KVStore", "RedisKVStore", "MemoryKVStore", "new_store", "BACKEND",
]
