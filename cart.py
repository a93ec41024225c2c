"""
Cart Module
===========
Per-requester cart with derived pricing and optimistic persistence.

Guarantees:
- Line items are a tagged union: catalog XOR custom, checked at construction
- Totals are recomputed from scratch after every mutation
- Mutations apply synchronously, in call order
- Persistence is fire-and-forget; failures surface on ``error`` and are
  never rolled back
- Results of persistence calls still in flight at ``close()`` are discarded
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from prometheus_client import Counter

from cancel_token import CancelToken
from catalog import CatalogItem
from errors import CartValidationError, LineItemNotFoundError
from pricing import FeePolicy, PriceBreakdown, calculate_totals, default_policy, line_total, to_money


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

cart_mutations = Counter(
    'cart_mutations_total',
    'Cart mutations applied',
    ['operation']
)
cart_rejections = Counter(
    'cart_rejections_total',
    'Cart mutations rejected or ignored',
    ['reason']
)
cart_persist_failures = Counter(
    'cart_persist_failures_total',
    'Cart persistence calls that failed'
)


# ============================================================================
# LINE ITEMS
# ============================================================================

@dataclass(frozen=True)
class CustomItem:
    """Freeform requester-described item. The budget is a ceiling, not a price."""
    name: str
    budget: Decimal
    notes: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "budget", to_money(self.budget))


def new_line_item_id() -> str:
    return f"li_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class LineItem:
    """
    One row of a cart.

    Exactly one of ``catalog_item`` / ``custom_item`` is set. Rows are
    immutable; the store replaces them (``with_quantity`` etc.) instead
    of editing in place.
    """
    quantity: int
    catalog_item: Optional[CatalogItem] = None
    custom_item: Optional[CustomItem] = None
    notes: Optional[str] = None
    id: str = field(default_factory=new_line_item_id)
    added_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def __post_init__(self):
        if (self.catalog_item is None) == (self.custom_item is None):
            raise ValueError(
                "LineItem requires exactly one of catalog_item or custom_item"
            )

        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"Quantity must be an integer: {self.quantity!r}")

        if self.quantity < 1:
            raise ValueError(f"Quantity must be at least 1: {self.quantity}")

    @property
    def is_custom(self) -> bool:
        return self.custom_item is not None

    @property
    def unit_price_equivalent(self) -> Decimal:
        """Catalog price, or the custom budget."""
        if self.catalog_item is not None:
            return self.catalog_item.unit_price
        return self.custom_item.budget

    @property
    def line_total(self) -> Decimal:
        return line_total(self.unit_price_equivalent, self.quantity)

    @property
    def name(self) -> str:
        if self.catalog_item is not None:
            return self.catalog_item.name
        return self.custom_item.name

    @property
    def catalog_item_id(self) -> Optional[str]:
        return self.catalog_item.id if self.catalog_item is not None else None

    def with_quantity(self, quantity: int) -> 'LineItem':
        return replace(self, quantity=quantity)

    def with_notes(self, notes: Optional[str]) -> 'LineItem':
        return replace(self, notes=notes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = {
            "id": self.id,
            "quantity": self.quantity,
            "notes": self.notes,
            "is_custom": self.is_custom,
            "name": self.name,
            "unit_price_equivalent": str(self.unit_price_equivalent),
            "line_total": str(self.line_total),
            "added_at": self.added_at,
        }

        if self.catalog_item is not None:
            data["catalog_item"] = self.catalog_item.to_dict()
        else:
            data["custom_item"] = {
                "name": self.custom_item.name,
                "budget": str(self.custom_item.budget),
                "notes": self.custom_item.notes,
            }

        return data


# ============================================================================
# SNAPSHOT
# ============================================================================

@dataclass(frozen=True)
class CartSnapshot:
    """Immutable point-in-time copy of a cart."""
    cart_id: str
    items: Tuple[LineItem, ...]
    breakdown: PriceBreakdown
    delivery_address: str
    special_instructions: str
    taken_at: datetime

    @property
    def is_empty(self) -> bool:
        return len(self.items) == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cart_id": self.cart_id,
            "items": [item.to_dict() for item in self.items],
            **self.breakdown.to_dict(),
            "delivery_address": self.delivery_address,
            "special_instructions": self.special_instructions,
            "taken_at": self.taken_at.isoformat(),
        }


# ============================================================================
# CART STORE
# ============================================================================

Persister = Callable[[CartSnapshot], Awaitable[Any]]


class CartStore:
    """
    Authoritative in-memory cart for one requester session.

    Never shared between flows, so no locking: every operation runs to
    completion before yielding. The only async work is the persistence
    call scheduled after a mutation.
    """

    def __init__(
        self,
        cart_id: Optional[str] = None,
        policy: Optional[FeePolicy] = None,
        cart_config=None,
        persister: Optional[Persister] = None
    ):
        if cart_config is None:
            from config import get_config
            cart_config = get_config().cart

        self.cart_id = cart_id or f"cart_{uuid.uuid4().hex[:12]}"
        self.policy = policy or default_policy()

        self.max_item_quantity = cart_config.max_item_quantity
        self.max_cart_items = cart_config.max_cart_items
        self.custom_item_min_name_length = cart_config.custom_item_min_name_length
        self.custom_item_max_budget = cart_config.custom_item_max_budget

        self._items: List[LineItem] = []
        self.delivery_address = ""
        self.special_instructions = ""
        self.breakdown: PriceBreakdown = calculate_totals([], self.policy)

        # Error surface (non-fatal)
        self.error: Optional[str] = None
        self.persist_error: Optional[str] = None

        # Persistence
        self._persister = persister
        self._token = CancelToken(self.cart_id)
        self._pending: set = set()

        self.mutation_count = 0

    # ========================================================================
    # DERIVED FIELDS
    # ========================================================================

    @property
    def items(self) -> List[LineItem]:
        """Line items in insertion order (copy)."""
        return list(self._items)

    @property
    def subtotal(self) -> Decimal:
        return self.breakdown.subtotal

    @property
    def delivery_fee(self) -> Decimal:
        return self.breakdown.delivery_fee

    @property
    def service_fee(self) -> Decimal:
        return self.breakdown.service_fee

    @property
    def total(self) -> Decimal:
        return self.breakdown.total

    @property
    def is_empty(self) -> bool:
        return len(self._items) == 0

    @property
    def is_closed(self) -> bool:
        return self._token.is_cancelled

    # ========================================================================
    # CATALOG ITEMS
    # ========================================================================

    def add_item(
        self,
        catalog_item: CatalogItem,
        quantity: int = 1,
        notes: Optional[str] = None
    ) -> Optional[LineItem]:
        """
        Add a catalog item, merging into its existing row.

        Unavailable items and non-positive quantities are ignored.

        Returns:
            The new or updated LineItem, or None if nothing changed
        """
        if not catalog_item.available:
            cart_rejections.labels(reason='unavailable').inc()
            logger.debug(
                "Ignoring unavailable item",
                extra={"cart_id": self.cart_id, "item_id": catalog_item.id}
            )
            return None

        quantity = self._normalize_quantity(quantity)
        if quantity <= 0:
            cart_rejections.labels(reason='invalid_quantity').inc()
            return None

        index = self._index_of_catalog_item(catalog_item.id)

        if index is not None:
            existing = self._items[index]
            merged = min(existing.quantity + quantity, self.max_item_quantity)
            updated = existing.with_quantity(merged)
            if notes is not None:
                updated = updated.with_notes(notes)
            self._items[index] = updated

            self._mutated("add_item")
            return updated

        if len(self._items) >= self.max_cart_items:
            self.error = f"Cart is full (maximum {self.max_cart_items} items)"
            cart_rejections.labels(reason='cart_full').inc()
            logger.warning(
                "Cart full, item not added",
                extra={"cart_id": self.cart_id, "item_id": catalog_item.id}
            )
            return None

        line_item = LineItem(
            quantity=min(quantity, self.max_item_quantity),
            catalog_item=catalog_item,
            notes=notes,
        )
        self._items.append(line_item)

        self._mutated("add_item")
        return line_item

    # ========================================================================
    # CUSTOM ITEMS
    # ========================================================================

    def add_custom_item(
        self,
        name: str,
        budget: Any,
        notes: Optional[str] = None
    ) -> LineItem:
        """
        Add a custom item. Custom items are never merged.

        Raises:
            CartValidationError: Invalid name/budget or cart full
        """
        custom_item = self._validate_custom_item(name, budget, notes)

        if len(self._items) >= self.max_cart_items:
            cart_rejections.labels(reason='cart_full').inc()
            raise CartValidationError(
                {"cart": f"Cart is full (maximum {self.max_cart_items} items)"}
            )

        line_item = LineItem(quantity=1, custom_item=custom_item)
        self._items.append(line_item)

        self._mutated("add_custom_item")
        return line_item

    def update_custom_item(
        self,
        line_item_id: str,
        name: str,
        budget: Any,
        notes: Optional[str] = None
    ) -> LineItem:
        """
        Replace a custom item's descriptor, keeping quantity and position.

        Raises:
            LineItemNotFoundError: No such line item
            CartValidationError: Row is a catalog item, or invalid input
        """
        index = self._index_of(line_item_id)
        if index is None:
            raise LineItemNotFoundError(line_item_id)

        existing = self._items[index]
        if not existing.is_custom:
            raise CartValidationError(
                {"line_item": "Only custom items can be edited this way"}
            )

        custom_item = self._validate_custom_item(name, budget, notes)
        updated = replace(existing, custom_item=custom_item)
        self._items[index] = updated

        self._mutated("update_custom_item")
        return updated

    def _validate_custom_item(
        self,
        name: Any,
        budget: Any,
        notes: Optional[str]
    ) -> CustomItem:
        errors: Dict[str, str] = {}

        clean_name = str(name or "").strip()
        if len(clean_name) < self.custom_item_min_name_length:
            errors["name"] = (
                f"Item name must be at least "
                f"{self.custom_item_min_name_length} characters"
            )

        amount = None
        try:
            amount = to_money(budget)
        except ValueError:
            errors["budget"] = "Budget must be a number"

        if amount is not None:
            if amount <= 0:
                errors["budget"] = "Budget must be greater than zero"
            elif amount > self.custom_item_max_budget:
                errors["budget"] = (
                    f"Budget cannot exceed {self.custom_item_max_budget}"
                )

        if errors:
            cart_rejections.labels(reason='validation').inc()
            raise CartValidationError(errors)

        clean_notes = notes.strip() if notes else None
        return CustomItem(name=clean_name, budget=amount, notes=clean_notes or None)

    # ========================================================================
    # ROW EDITS
    # ========================================================================

    def update_quantity(self, line_item_id: str, quantity: int) -> Optional[LineItem]:
        """
        Set a row's quantity. Below 1 removes the row; above the cap clamps.
        Unknown ids are ignored.
        """
        index = self._index_of(line_item_id)
        if index is None:
            return None

        quantity = self._normalize_quantity(quantity)
        if quantity < 1:
            self.remove_item(line_item_id)
            return None

        updated = self._items[index].with_quantity(min(quantity, self.max_item_quantity))
        self._items[index] = updated

        self._mutated("update_quantity")
        return updated

    def update_notes(self, line_item_id: str, notes: Optional[str]) -> Optional[LineItem]:
        """Edit a row's notes. Unknown ids are ignored."""
        index = self._index_of(line_item_id)
        if index is None:
            return None

        clean_notes = notes.strip() if notes else None
        updated = self._items[index].with_notes(clean_notes or None)
        self._items[index] = updated

        self._mutated("update_notes")
        return updated

    def remove_item(self, line_item_id: str) -> bool:
        """
        Remove a row. Idempotent.

        Returns:
            True if a row was removed
        """
        index = self._index_of(line_item_id)
        if index is None:
            return False

        del self._items[index]

        self._mutated("remove_item")
        return True

    def clear_cart(self):
        """Empty all rows and reset delivery metadata."""
        self._items.clear()
        self.delivery_address = ""
        self.special_instructions = ""

        self._mutated("clear_cart")

    def remove_submitted(
        self,
        submitted_items: Iterable[Any],
        delivery_address: Optional[str] = None,
        special_instructions: Optional[str] = None
    ):
        """
        Take what an order consumed out of the cart.

        Each submitted row (matched by line id) loses the submitted
        quantity; rows added or topped up since the order was frozen
        stay. Address and instructions are reset only if they still hold
        the submitted values.
        """
        for submitted in submitted_items:
            index = self._index_of(submitted.id)
            if index is None:
                continue

            remaining = self._items[index].quantity - submitted.quantity
            if remaining >= 1:
                self._items[index] = self._items[index].with_quantity(remaining)
            else:
                del self._items[index]

        if delivery_address is not None and self.delivery_address == delivery_address:
            self.delivery_address = ""
        if special_instructions is not None and self.special_instructions == special_instructions:
            self.special_instructions = ""

        self._mutated("remove_submitted")

    # ========================================================================
    # DELIVERY METADATA
    # ========================================================================

    def update_delivery_address(self, address: str):
        if address is None:
            raise ValueError("Delivery address cannot be None")

        self.delivery_address = address
        self._mutated("update_delivery_address")

    def update_special_instructions(self, instructions: str):
        if instructions is None:
            raise ValueError("Special instructions cannot be None")

        self.special_instructions = instructions
        self._mutated("update_special_instructions")

    def set_fee_policy(self, policy: FeePolicy):
        """Switch fee policy (payment method changed) and recompute."""
        self.policy = policy
        self._recompute()

    # ========================================================================
    # QUERIES
    # ========================================================================

    def can_checkout(self) -> bool:
        """Non-empty cart with a non-blank delivery address."""
        return bool(self._items) and bool(self.delivery_address.strip())

    def is_item_in_cart(self, catalog_item_id: str) -> bool:
        return self._index_of_catalog_item(catalog_item_id) is not None

    def get_quantity(self, catalog_item_id: str) -> int:
        index = self._index_of_catalog_item(catalog_item_id)
        return self._items[index].quantity if index is not None else 0

    def get_total_item_count(self) -> int:
        """Sum of quantities (badge count)."""
        return sum(item.quantity for item in self._items)

    def get_line_item(self, line_item_id: str) -> Optional[LineItem]:
        index = self._index_of(line_item_id)
        return self._items[index] if index is not None else None

    def snapshot(self) -> CartSnapshot:
        """Immutable copy of the current cart."""
        return CartSnapshot(
            cart_id=self.cart_id,
            items=tuple(self._items),
            breakdown=self.breakdown,
            delivery_address=self.delivery_address,
            special_instructions=self.special_instructions,
            taken_at=datetime.utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Export to dictionary."""
        return {
            **self.snapshot().to_dict(),
            "item_count": self.get_total_item_count(),
            "can_checkout": self.can_checkout(),
            "error": self.error,
            "persist_error": self.persist_error,
        }

    # ========================================================================
    # ERRORS & TEARDOWN
    # ========================================================================

    def clear_error(self):
        self.error = None
        self.persist_error = None

    def record_sync_result(self, error: Optional[Exception] = None):
        """
        Apply the outcome of a remote cart write that settled after the
        persister returned (e.g. a queued upsert flushed later).

        Ignored once the cart is closed.
        """
        if self._token.is_cancelled:
            return

        if error is None:
            self.persist_error = None
        else:
            self._persist_failed(error)

    async def wait_for_persistence(self):
        """Wait for every scheduled persistence call to settle."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def close(self):
        """
        Tear down the cart.

        Persistence calls still in flight complete on the wire, but
        their outcome is no longer applied to this cart.
        """
        self._token.cancel("cart closed")
        logger.info(
            "Cart closed",
            extra={"cart_id": self.cart_id, "in_flight": len(self._pending)}
        )

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _mutated(self, operation: str):
        self.mutation_count += 1
        self._recompute()
        cart_mutations.labels(operation=operation).inc()

        logger.debug(
            f"Cart mutation: {operation}",
            extra={
                "cart_id": self.cart_id,
                "operation": operation,
                "line_items": len(self._items),
                "total": str(self.breakdown.total)
            }
        )

        self._schedule_persist()

    def _recompute(self):
        self.breakdown = calculate_totals(self._items, self.policy)

    def _schedule_persist(self):
        if self._persister is None or self._token.is_cancelled:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): local state only
            return

        task = loop.create_task(self._persist(self.snapshot()))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, snapshot: CartSnapshot):
        try:
            applied, _ = await self._token.guard(self._persister(snapshot))
        except Exception as e:
            self._persist_failed(e)
            return

        if applied:
            self.persist_error = None

    def _persist_failed(self, error: Exception):
        cart_persist_failures.inc()
        self.persist_error = str(error)
        self.error = f"Failed to save cart: {error}"
        logger.error(
            "Cart persistence failed",
            extra={"cart_id": self.cart_id, "error": str(error)}
        )

    def _index_of(self, line_item_id: str) -> Optional[int]:
        for index, item in enumerate(self._items):
            if item.id == line_item_id:
                return index
        return None

    def _index_of_catalog_item(self, catalog_item_id: str) -> Optional[int]:
        for index, item in enumerate(self._items):
            if item.catalog_item_id == catalog_item_id:
                return index
        return None

    def _normalize_quantity(self, quantity: Any) -> int:
        """Normalize quantity to int (invalid input counts as 0)."""
        if isinstance(quantity, bool):
            return 0
        try:
            return int(quantity)
        except (ValueError, TypeError):
            return 0

    def __repr__(self):
        return (
            f"<CartStore cart_id={self.cart_id} items={len(self._items)} "
            f"total={self.breakdown.total}>"
        )
