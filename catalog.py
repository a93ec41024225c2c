"""
Catalog Module
==============
Read-only catalog data (categories and items) with TTL caching.

The repository validates every row coming out of the backing store.
Rows that cannot be priced are dropped, never guessed at. On backend
failure a stale cached value is preferred over an error.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from prometheus_client import Counter

from errors import PersistenceError
from pricing import to_money


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

CACHE_TTL = 300  # 5 minutes
CACHE_MAX_SIZE = 100

MAX_ITEM_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 500


# ============================================================================
# METRICS
# ============================================================================

catalog_cache_hits = Counter('catalog_cache_hits_total', 'Catalog cache hits')
catalog_cache_misses = Counter('catalog_cache_misses_total', 'Catalog cache misses')
catalog_stale_served = Counter(
    'catalog_stale_served_total',
    'Stale catalog entries served after a backend failure'
)
catalog_validation_errors = Counter(
    'catalog_validation_errors_total',
    'Catalog rows rejected during validation',
    ['error_type']
)


# ============================================================================
# CATALOG TYPES
# ============================================================================

@dataclass(frozen=True)
class Category:
    """Catalog category."""
    id: str
    name: str
    description: str = ""
    sort_order: int = 0
    is_active: bool = True


@dataclass(frozen=True)
class CatalogItem:
    """
    Catalog item with a fixed price.

    Frozen: line items hold a reference, and a later catalog refresh
    must not change what is already in a cart.
    """
    id: str
    name: str
    unit_price: Decimal
    unit: str = "piece"
    available: bool = True
    category_id: Optional[str] = None
    description: str = ""

    def __post_init__(self):
        object.__setattr__(self, "unit_price", to_money(self.unit_price))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "unit": self.unit,
            "available": self.available,
            "category_id": self.category_id,
            "description": self.description,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional['CatalogItem']:
        """
        Build from an ``items`` table row.

        Returns None (and counts the reason) for rows that fail
        validation.
        """
        if not isinstance(row, dict):
            catalog_validation_errors.labels(error_type='not_a_row').inc()
            return None

        item_id = row.get("id")
        name = str(row.get("name") or "").strip()

        if not item_id or not name:
            catalog_validation_errors.labels(error_type='missing_fields').inc()
            return None

        if len(name) > MAX_ITEM_NAME_LENGTH:
            catalog_validation_errors.labels(error_type='invalid_name').inc()
            return None

        try:
            price = to_money(row.get("base_price"))
        except ValueError:
            catalog_validation_errors.labels(error_type='invalid_price').inc()
            return None

        if price < 0:
            catalog_validation_errors.labels(error_type='invalid_price').inc()
            return None

        description = str(row.get("description") or "").strip()
        if len(description) > MAX_DESCRIPTION_LENGTH:
            description = description[:MAX_DESCRIPTION_LENGTH] + "..."

        return cls(
            id=str(item_id),
            name=name,
            unit_price=price,
            unit=str(row.get("unit") or "piece"),
            available=bool(row.get("is_available", True)),
            category_id=row.get("category_id"),
            description=description,
        )


def category_from_row(row: Dict[str, Any]) -> Optional[Category]:
    """Build a Category from a ``categories`` table row."""
    if not isinstance(row, dict) or not row.get("id") or not row.get("name"):
        catalog_validation_errors.labels(error_type='invalid_category').inc()
        return None

    return Category(
        id=str(row["id"]),
        name=str(row["name"]).strip(),
        description=str(row.get("description") or ""),
        sort_order=int(row.get("sort_order") or 0),
        is_active=bool(row.get("is_active", True)),
    )


# ============================================================================
# CATALOG REPOSITORY
# ============================================================================

class CatalogRepository:
    """
    Cached catalog lookup.

    Responsibilities:
    - Fetch categories and items from the backend
    - Validate rows into Category / CatalogItem
    - Cache results for ``ttl`` seconds
    - Serve stale entries when the backend fails

    Does NOT:
    - Price anything
    - Touch carts
    """

    def __init__(self, backend, ttl: int = CACHE_TTL, max_size: int = CACHE_MAX_SIZE):
        self.backend = backend
        self.ttl = ttl
        self.max_size = max_size
        self.cache: Dict[str, Tuple[Any, datetime]] = {}

    async def get_categories(self) -> List[Category]:
        """Active categories in display order."""
        async def load():
            rows = await self.backend.fetch_categories()
            categories = [c for c in (category_from_row(r) for r in rows or []) if c]
            return sorted(
                (c for c in categories if c.is_active),
                key=lambda c: (c.sort_order, c.name)
            )

        return await self._cached("categories", load)

    async def get_items_by_category(self, category_id: str) -> List[CatalogItem]:
        """Items in a category (available or not; callers filter)."""
        async def load():
            rows = await self.backend.fetch_items_by_category(category_id)
            items = [CatalogItem.from_row(r) for r in rows or []]
            return [item for item in items if item]

        return await self._cached(f"category:{category_id}", load)

    async def get_item_by_id(self, item_id: str) -> Optional[CatalogItem]:
        """Single item, or None if unknown."""
        async def load():
            row = await self.backend.fetch_item_by_id(item_id)
            return CatalogItem.from_row(row) if row else None

        return await self._cached(f"item:{item_id}", load)

    def invalidate_cache(self, key: Optional[str] = None):
        """Invalidate one cache key, or everything."""
        if key is None:
            self.cache.clear()
            logger.info("Catalog cache cleared")
        elif key in self.cache:
            del self.cache[key]
            logger.info(f"Catalog cache invalidated: {key}")

    async def _cached(self, key: str, load):
        fresh = self._get_from_cache(key)
        if fresh is not None:
            return fresh[0]

        try:
            value = await load()
        except PersistenceError as e:
            stale = self.cache.get(key)
            if stale is not None:
                catalog_stale_served.inc()
                logger.warning(
                    "Catalog backend failed, serving stale entry",
                    extra={"cache_key": key, "error": str(e)}
                )
                return stale[0]
            raise

        self._set_in_cache(key, value)
        return value

    def _get_from_cache(self, key: str) -> Optional[Tuple[Any, datetime]]:
        """Cache entry if still within TTL. Expired entries stay as stale fallback."""
        entry = self.cache.get(key)
        if entry is None:
            catalog_cache_misses.inc()
            return None

        _, timestamp = entry
        if datetime.utcnow() - timestamp > timedelta(seconds=self.ttl):
            catalog_cache_misses.inc()
            return None

        catalog_cache_hits.inc()
        return entry

    def _set_in_cache(self, key: str, value: Any):
        # Evict oldest if full
        if key not in self.cache and len(self.cache) >= self.max_size:
            oldest = min(self.cache.keys(), key=lambda k: self.cache[k][1])
            del self.cache[oldest]

        self.cache[key] = (value, datetime.utcnow())
