# model/catalog.py
from __future__ import annotations
from typing import Any, Dict, List, Optional

from ..errors import ConflictError, NotFoundError, ValidationError
from ..helpers import now_iso, now_ts
from .kv import KVStore

K_PRODUCTS = "catalog:products"

# always shown in the admin inventory view, even without a catalog entry
DEFAULT_PRODUCTS = ["windows-11-pro", "office-2024-ltsc", "capcut-pro"]

PUBLIC_FIELDS = (
    "id", "name", "slug", "price", "currency", "image_url", "category",
    "description",
)


class ProductCatalog:
    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    async def all(self) -> List[Dict[str, Any]]:
        data = await self.kv.get(K_PRODUCTS)
        if not isinstance(data, list):
            return []
        return [p for p in data if isinstance(p, dict) and p.get("slug")]

    async def public(self) -> List[Dict[str, Any]]:
        return [
            {f: p.get(f, "") for f in PUBLIC_FIELDS}
            for p in await self.all()
        ]

    async def get(self, slug: str) -> Optional[Dict[str, Any]]:
        for p in await self.all():
            if p["slug"] == slug:
                return p
        return None

    async def slugs(self) -> List[str]:
        seen: Dict[str, None] = dict.fromkeys(DEFAULT_PRODUCTS)
        for p in await self.all():
            seen.setdefault(p["slug"], None)
        return list(seen)

    async def create(self, *, name: str, slug: str, image_url: str,
                     price: Optional[str] = None,
                     currency: Optional[str] = None,
                     category: Optional[str] = None,
                     description: Optional[str] = None) -> Dict[str, Any]:
        if not name or not slug or not image_url:
            raise ValidationError(
                "Missing required fields: name, slug, or image_url"
            )
        async with self.kv.lock(K_PRODUCTS):
            products = await self.all()
            if any(p["slug"] == slug for p in products):
                raise ConflictError("Product with this slug already exists")
            product = {
                "id": str(int(now_ts() * 1000)),
                "name": name,
                "slug": slug,
                "price": price or "0.00",
                "currency": currency or "EUR",
                "image_url": image_url,
                "category": category or "other",
                "description": description or "",
                "created_at": now_iso(),
            }
            products.append(product)
            await self.kv.put(K_PRODUCTS, products)
        return product

    async def delete(self, slug: str) -> None:
        # the product's license keys stay in inventory
        async with self.kv.lock(K_PRODUCTS):
            products = await self.all()
            remaining = [p for p in products if p["slug"] != slug]
            if len(remaining) == len(products):
                raise NotFoundError("Product not found")
            await self.kv.put(K_PRODUCTS, remaining)
