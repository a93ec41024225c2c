"""Shared fixtures: configuration and an in-memory persistence backend."""

import itertools
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List

import pytest

from catalog import CatalogItem
from config import Config
from errors import PersistenceError
from pricing import FeePolicy


class FakeBackend:
    """
    In-memory stand-in for DatabaseClient.

    Same async surface, backed by dict rows. ``fail_next(op, times)``
    makes the next ``times`` calls of ``op`` raise PersistenceError.
    """

    def __init__(self):
        self.categories: List[Dict[str, Any]] = []
        self.items: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.saved_carts: List[Any] = []
        self.calls: List[str] = []
        self.queue_full = False
        self.cart_callbacks: List[Any] = []
        self.running = False

        self._failures: Dict[str, int] = defaultdict(int)
        self._ids = itertools.count(1)

    def fail_next(self, operation: str, times: int = 1):
        self._failures[operation] += times

    def _enter(self, operation: str):
        self.calls.append(operation)
        if self._failures[operation] > 0:
            self._failures[operation] -= 1
            raise PersistenceError(operation, "injected failure")

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    # Catalog

    async def fetch_categories(self):
        self._enter("fetch_categories")
        return list(self.categories)

    async def fetch_items_by_category(self, category_id):
        self._enter("fetch_items_by_category")
        return [row for row in self.items.values() if row.get("category_id") == category_id]

    async def fetch_item_by_id(self, item_id):
        self._enter("fetch_item_by_id")
        return self.items.get(item_id)

    # Orders

    async def create_order(self, header):
        self._enter("create_order")
        order_id = f"order-{next(self._ids)}"
        self.orders[order_id] = {
            **header,
            "id": order_id,
            "runner_id": None,
            "order_items": [],
            "created_at": "2026-10-18T09:00:00",
        }
        return {"id": order_id, "order_number": header["order_number"]}

    async def add_order_items(self, order_id, items):
        self._enter("add_order_items")
        rows = [{**item, "id": f"oi-{next(self._ids)}", "order_id": order_id} for item in items]
        self.orders[order_id]["order_items"].extend(rows)
        return rows

    async def get_order_by_id(self, order_id):
        self._enter("get_order_by_id")
        return self.orders.get(order_id)

    async def get_orders_for_actor(self, actor_id, role, statuses=None):
        self._enter("get_orders_for_actor")
        column = "student_id" if getattr(role, "value", role) == "requester" else "runner_id"
        return [
            row for row in self.orders.values()
            if row.get(column) == actor_id and (not statuses or row["status"] in statuses)
        ]

    async def get_available_orders(self):
        self._enter("get_available_orders")
        return [
            row for row in self.orders.values()
            if row["status"] == "pending" and row.get("runner_id") is None
        ]

    async def update_order_status(self, order_id, status, extra=None):
        self._enter("update_order_status")
        row = self.orders.get(order_id)
        if row is None:
            return {"success": False, "message": "Order not found", "data": None}
        row.update({"status": status, **(extra or {})})
        return {"success": True, "message": "Order status updated successfully", "data": row}

    async def accept_order(self, order_id, fulfiller_id):
        self._enter("accept_order")
        row = self.orders.get(order_id)
        if row is None or row["status"] != "pending" or row.get("runner_id") is not None:
            return {"success": False, "message": "Order is no longer available", "data": None}
        row.update({"status": "accepted", "runner_id": fulfiller_id})
        return {"success": True, "message": "Order accepted successfully", "data": row}

    async def update_item_actual_price(self, item_id, price):
        self._enter("update_item_actual_price")
        for row in self.orders.values():
            for item in row["order_items"]:
                if item["id"] == item_id:
                    item["actual_price"] = str(price)
                    return {"success": True, "message": "Actual price recorded", "data": item}
        return {"success": False, "message": "Order item not found", "data": None}

    # Cart

    def save_cart(self, requester_id, snapshot, on_result=None):
        self.calls.append("save_cart")
        if self.queue_full:
            return False
        self.saved_carts.append((requester_id, snapshot))
        if on_result is not None:
            self.cart_callbacks.append(on_result)
        return True

    async def start(self):
        self.running = True

    async def stop(self):
        self.running = False

    # Helpers

    def add_order_row(self, **fields) -> Dict[str, Any]:
        order_id = fields.pop("id", None) or f"order-{next(self._ids)}"
        row = {
            "id": order_id,
            "order_number": f"DK{order_id[-6:]}",
            "student_id": "student-1",
            "runner_id": None,
            "status": "pending",
            "total_amount": "12.50",
            "delivery_fee": "2.00",
            "service_fee": "0.50",
            "delivery_address": "Main Gate, Volta Hall, Room 12",
            "payment_method": "cash",
            "payment_status": "pending",
            "created_at": "2026-10-18T09:00:00",
            "order_items": [
                {
                    "id": f"oi-{next(self._ids)}",
                    "item_id": "item-rice",
                    "quantity": 1,
                    "unit_price": "10.00",
                    "item": {"name": "Jollof Rice"},
                }
            ],
        }
        row.update(fields)
        self.orders[order_id] = row
        return row


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def config(monkeypatch, tmp_path):
    for key in (
        "DELIVERY_FEE", "SERVICE_FEE_RATE", "PROCESSING_FEE_RATE", "MIN_ORDER_AMOUNT",
        "MAX_ITEM_QUANTITY", "MAX_CART_ITEMS", "ORDER_POLL_INTERVAL", "ITEM_ATTACH_RETRIES",
        "PHONE_PATTERN", "LOG_LEVEL",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CHECKOUT_CACHE_PATH", str(tmp_path / "checkout_form.json"))
    return Config()


@pytest.fixture
def policy():
    return FeePolicy(delivery_fee=Decimal("5.00"), service_fee_rate=Decimal("0.05"))


@pytest.fixture
def rice():
    return CatalogItem(id="item-rice", name="Jollof Rice", unit_price=Decimal("10.00"), category_id="cat-food")


@pytest.fixture
def water():
    return CatalogItem(id="item-water", name="Voltic Water", unit_price=Decimal("15.00"), category_id="cat-drinks")


@pytest.fixture
def sold_out():
    return CatalogItem(id="item-kenkey", name="Kenkey", unit_price=Decimal("6.00"), available=False)

