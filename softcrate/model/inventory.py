# model/inventory.py
from __future__ import annotations
from typing import Dict, List, Optional

from ..errors import MalformedRecordError
from .kv import KVStore


# ---- keys
def k_keys(slug: str) -> str: return f"keys:{slug}"
def k_lock(slug: str) -> str: return f"inventory:{slug}"


K_DOWNLOAD_LINKS = "catalog:download_links"


class LicenseInventory:
    """
    Unused license keys per product slug.

    Keys are taken from the front and appended at the back. Callers that
    read-modify-write an entry hold `locked(slug)` for the whole sequence.
    """

    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    def locked(self, slug: str):
        return self.kv.lock(k_lock(slug))

    async def get(self, slug: str) -> List[str]:
        data = await self.kv.get(k_keys(slug))
        if data is None:
            return []
        if not isinstance(data, list):
            raise MalformedRecordError(f"{k_keys(slug)}: not a list")
        return [str(k) for k in data]

    async def put(self, slug: str, keys: List[str]) -> None:
        await self.kv.put(k_keys(slug), list(keys))

    async def take_first(self, slug: str) -> Optional[str]:
        async with self.locked(slug):
            return await self.pop_front(slug)

    async def pop_front(self, slug: str) -> Optional[str]:
        # caller holds locked(slug)
        keys = await self.get(slug)
        if not keys:
            return None
        key = keys.pop(0)
        await self.put(slug, keys)
        return key

    async def extend(self, slug: str, new_keys: List[str]) -> int:
        # caller holds locked(slug)
        keys = await self.get(slug)
        if new_keys:
            keys.extend(new_keys)
            await self.put(slug, keys)
        return len(keys)

    async def remove(self, slug: str, key: str) -> Optional[int]:
        """Drop every copy of `key`; None if it was not stocked."""
        async with self.locked(slug):
            keys = await self.get(slug)
            remaining = [k for k in keys if k != key]
            if len(remaining) == len(keys):
                return None
            await self.put(slug, remaining)
        return len(remaining)

    async def snapshot(self, slugs: List[str]) -> Dict[str, List[str]]:
        return {slug: await self.get(slug) for slug in slugs}

    # ---- download links
    async def download_links(self) -> Dict[str, str]:
        data = await self.kv.get(K_DOWNLOAD_LINKS)
        return data if isinstance(data, dict) else {}

    async def download_link(self, slug: str) -> Optional[str]:
        return (await self.download_links()).get(slug)

    async def set_download_link(self, slug: str, url: str) -> None:
        async with self.kv.lock(K_DOWNLOAD_LINKS):
            links = await self.download_links()
            links[slug] = url
            await self.kv.put(K_DOWNLOAD_LINKS, links)

