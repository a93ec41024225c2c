"""
Catalog Tests
=============
Row validation and the TTL cache with stale fallback.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from catalog import CatalogItem, CatalogRepository, category_from_row
from errors import PersistenceError


def item_row(**fields):
    row = {
        "id": "item-rice",
        "name": "Jollof Rice",
        "base_price": "10.00",
        "unit": "plate",
        "is_available": True,
        "category_id": "cat-food",
    }
    row.update(fields)
    return row


def expire(repo, key):
    value, _ = repo.cache[key]
    repo.cache[key] = (value, datetime.utcnow() - timedelta(seconds=repo.ttl + 1))


class TestRowValidation:

    def test_valid_row(self):
        item = CatalogItem.from_row(item_row(base_price=12.5))

        assert item.unit_price == Decimal("12.50")
        assert item.unit == "plate"
        assert item.available

    @pytest.mark.parametrize("row", [
        None,
        item_row(id=None),
        item_row(name="  "),
        item_row(name="x" * 201),
        item_row(base_price="abc"),
        item_row(base_price="-1"),
    ])
    def test_invalid_rows_dropped(self, row):
        assert CatalogItem.from_row(row) is None

    def test_long_description_truncated(self):
        item = CatalogItem.from_row(item_row(description="d" * 600))

        assert len(item.description) == 503

    def test_category_row(self):
        category = category_from_row({"id": "cat-food", "name": " Food ", "sort_order": "2"})

        assert category.name == "Food"
        assert category.sort_order == 2
        assert category_from_row({"name": "No id"}) is None


class TestCatalogRepository:

    @pytest.mark.asyncio
    async def test_categories_active_and_sorted(self, backend):
        backend.categories = [
            {"id": "c2", "name": "Drinks", "sort_order": 2},
            {"id": "c1", "name": "Food", "sort_order": 1},
            {"id": "c3", "name": "Hidden", "sort_order": 0, "is_active": False},
        ]
        repo = CatalogRepository(backend)

        categories = await repo.get_categories()

        assert [c.id for c in categories] == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_items_cached(self, backend):
        backend.items = {"item-rice": item_row(), "item-bad": item_row(id="item-bad", base_price="x")}
        repo = CatalogRepository(backend)

        first = await repo.get_items_by_category("cat-food")
        second = await repo.get_items_by_category("cat-food")

        assert [item.id for item in first] == ["item-rice"]
        assert second == first
        assert backend.count("fetch_items_by_category") == 1

    @pytest.mark.asyncio
    async def test_unknown_item_cached_as_none(self, backend):
        repo = CatalogRepository(backend)

        assert await repo.get_item_by_id("item-missing") is None
        assert await repo.get_item_by_id("item-missing") is None
        assert backend.count("fetch_item_by_id") == 1

    @pytest.mark.asyncio
    async def test_expired_entry_refetched(self, backend):
        backend.items = {"item-rice": item_row()}
        repo = CatalogRepository(backend)
        await repo.get_item_by_id("item-rice")

        backend.items["item-rice"] = item_row(base_price="11.00")
        expire(repo, "item:item-rice")

        item = await repo.get_item_by_id("item-rice")
        assert item.unit_price == Decimal("11.00")

    @pytest.mark.asyncio
    async def test_stale_served_on_backend_failure(self, backend):
        backend.items = {"item-rice": item_row()}
        repo = CatalogRepository(backend)
        await repo.get_item_by_id("item-rice")
        expire(repo, "item:item-rice")

        backend.fail_next("fetch_item_by_id")
        item = await repo.get_item_by_id("item-rice")

        assert item.id == "item-rice"

    @pytest.mark.asyncio
    async def test_failure_without_cache_raises(self, backend):
        repo = CatalogRepository(backend)
        backend.fail_next("fetch_categories")

        with pytest.raises(PersistenceError):
            await repo.get_categories()

    @pytest.mark.asyncio
    async def test_invalidate(self, backend):
        repo = CatalogRepository(backend)
        await repo.get_categories()
        await repo.get_item_by_id("item-rice")

        repo.invalidate_cache("categories")
        assert "categories" not in repo.cache
        assert "item:item-rice" in repo.cache

        repo.invalidate_cache()
        assert repo.cache == {}

    @pytest.mark.asyncio
    async def test_max_size_evicts_oldest(self, backend):
        repo = CatalogRepository(backend, max_size=2)

        for item_id in ("a", "b", "c"):
            await repo.get_item_by_id(item_id)

        assert set(repo.cache) == {"item:b", "item:c"}
