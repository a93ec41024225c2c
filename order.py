"""
Order Module
============
Immutable order model: submissions built at checkout and order
snapshots read back from the backing store.

Guarantees:
✅ Submissions are frozen copies of the cart (later cart edits never leak in)
✅ Deterministic SHA-256 checksum over lines and totals
✅ Order line items are frozen; annotating returns a new item
✅ Orders change only through status transitions and actual-price entries
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from prometheus_client import Counter

from order_state import OrderStateMachine, OrderStatus
from pricing import PriceBreakdown, line_total, to_money, verify_breakdown


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

order_row_errors = Counter(
    'order_row_errors_total',
    'Order rows that could not be parsed',
    ['reason']
)


# ============================================================================
# ENUMS
# ============================================================================

class PaymentMethod(Enum):
    """Payment methods accepted at checkout."""
    MOMO = "momo"
    CARD = "card"
    CASH = "cash"

    @property
    def is_electronic(self) -> bool:
        return self != PaymentMethod.CASH


class PaymentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


def generate_order_number() -> str:
    """Human-readable order number (DK + last 6 digits of epoch millis)."""
    return f"DK{str(int(time.time() * 1000))[-6:]}"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a store timestamp into naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _optional_money(value: Any) -> Optional[Decimal]:
    return None if value is None else to_money(value)


# ============================================================================
# ORDER LINE ITEM
# ============================================================================

@dataclass(frozen=True)
class OrderLineItem:
    """
    Immutable order line.

    Either ``catalog_item_id`` + ``unit_price`` or ``custom_item_name`` +
    ``custom_budget``. ``actual_price`` is what the fulfiller paid.
    """
    id: Optional[str]
    quantity: int
    catalog_item_id: Optional[str] = None
    unit_price: Optional[Decimal] = None
    custom_item_name: Optional[str] = None
    custom_budget: Optional[Decimal] = None
    name: Optional[str] = None
    notes: Optional[str] = None
    actual_price: Optional[Decimal] = None

    def __post_init__(self):
        if (self.catalog_item_id is None) == (self.custom_item_name is None):
            raise ValueError(
                "OrderLineItem requires exactly one of catalog_item_id or custom_item_name"
            )
        if self.quantity < 1:
            raise ValueError(f"Quantity must be at least 1: {self.quantity}")

    @property
    def is_custom(self) -> bool:
        return self.custom_item_name is not None

    @property
    def unit_price_equivalent(self) -> Decimal:
        if self.is_custom:
            return self.custom_budget or Decimal("0.00")
        return self.unit_price or Decimal("0.00")

    @property
    def line_total(self) -> Decimal:
        return line_total(self.unit_price_equivalent, self.quantity)

    @property
    def display_name(self) -> str:
        return self.custom_item_name or self.name or self.catalog_item_id

    @property
    def has_actual_price(self) -> bool:
        return self.actual_price is not None

    def with_actual_price(self, price: Any) -> 'OrderLineItem':
        """
        Annotate with the price actually paid (immutable).

        Raises:
            ValueError: Invalid or negative price
        """
        amount = to_money(price)
        if amount < 0:
            raise ValueError(f"Actual price cannot be negative: {amount}")
        return replace(self, actual_price=amount)

    @classmethod
    def from_cart_line(cls, line_item) -> 'OrderLineItem':
        """Copy a cart LineItem into an order line."""
        if line_item.is_custom:
            custom = line_item.custom_item
            notes = " / ".join(n for n in (custom.notes, line_item.notes) if n) or None
            return cls(
                id=line_item.id,
                quantity=line_item.quantity,
                custom_item_name=custom.name,
                custom_budget=custom.budget,
                notes=notes,
            )

        return cls(
            id=line_item.id,
            quantity=line_item.quantity,
            catalog_item_id=line_item.catalog_item.id,
            unit_price=line_item.catalog_item.unit_price,
            name=line_item.catalog_item.name,
            notes=line_item.notes,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'OrderLineItem':
        """Build from an ``order_items`` row (optionally joined with ``item``)."""
        joined = row.get("item") or {}
        return cls(
            id=row.get("id"),
            quantity=int(row.get("quantity") or 0),
            catalog_item_id=row.get("item_id"),
            unit_price=_optional_money(row.get("unit_price")),
            custom_item_name=row.get("custom_item_name"),
            custom_budget=_optional_money(row.get("custom_budget")),
            name=joined.get("name"),
            notes=row.get("notes"),
            actual_price=_optional_money(row.get("actual_price")),
        )

    def to_row(self, order_id: str) -> Dict[str, Any]:
        """``order_items`` insert row."""
        return {
            "order_id": order_id,
            "item_id": self.catalog_item_id,
            "custom_item_name": self.custom_item_name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price) if self.unit_price is not None else None,
            "custom_budget": str(self.custom_budget) if self.custom_budget is not None else None,
            "notes": self.notes,
        }

    def checksum_fields(self) -> List[Any]:
        return [
            self.catalog_item_id or "",
            self.custom_item_name or "",
            self.quantity,
            str(self.unit_price_equivalent),
            self.notes or "",
        ]


# ============================================================================
# ORDER SUBMISSION
# ============================================================================

@dataclass(frozen=True)
class OrderSubmission:
    """
    Frozen order request built from a cart at checkout.

    Totals are recomputed with the payment method's fee policy, so they
    may differ from what the cart showed under the base policy.
    """
    requester_id: str
    order_number: str
    line_items: Tuple[OrderLineItem, ...]
    breakdown: PriceBreakdown
    delivery_address: str
    special_instructions: str
    payment_method: PaymentMethod
    phone: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    checksum: str = ""

    def __post_init__(self):
        if not self.line_items:
            raise ValueError("OrderSubmission requires at least one line item")

        mismatch = verify_breakdown(self.line_items, self.breakdown)
        if mismatch:
            raise ValueError(f"OrderSubmission totals invalid: {mismatch}")

        expected = self.compute_checksum()
        if not self.checksum:
            object.__setattr__(self, "checksum", expected)
        elif self.checksum != expected:
            raise ValueError("OrderSubmission checksum mismatch")

    def compute_checksum(self) -> str:
        """
        Checksum over lines and totals.

        Deterministic: the same lines and totals always hash the same.
        """
        data = {
            "lines": sorted(item.checksum_fields() for item in self.line_items),
            "totals": self.breakdown.to_dict(),
        }
        content = json.dumps(data, sort_keys=True, default=str).encode()
        return hashlib.sha256(content).hexdigest()

    def verify_integrity(self) -> bool:
        return self.compute_checksum() == self.checksum

    def to_header_row(self) -> Dict[str, Any]:
        """``orders`` insert row."""
        return {
            "order_number": self.order_number,
            "student_id": self.requester_id,
            "status": OrderStatus.PENDING.value,
            "total_amount": str(self.breakdown.total),
            "service_fee": str(self.breakdown.service_fee),
            "delivery_fee": str(self.breakdown.delivery_fee),
            "delivery_address": self.delivery_address,
            "special_instructions": self.special_instructions or None,
            "payment_method": self.payment_method.value,
            "payment_status": PaymentStatus.PENDING.value,
        }

    def to_item_rows(self, order_id: str) -> List[Dict[str, Any]]:
        return [item.to_row(order_id) for item in self.line_items]


# ============================================================================
# ORDER
# ============================================================================

@dataclass(frozen=True)
class Order:
    """
    Order snapshot as last seen (locally or from the store).

    Replaced, never edited: transitions and price annotations produce a
    new Order.
    """
    id: str
    order_number: str
    requester_id: str
    status: OrderStatus
    line_items: Tuple[OrderLineItem, ...]
    breakdown: PriceBreakdown
    delivery_address: str
    payment_method: Optional[PaymentMethod] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    special_instructions: Optional[str] = None
    fulfiller_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    timestamps: Dict[str, datetime] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)

    @property
    def total(self) -> Decimal:
        return self.breakdown.total

    def get_line_item(self, line_item_id: str) -> Optional[OrderLineItem]:
        for item in self.line_items:
            if item.id == line_item_id:
                return item
        return None

    def items_missing_actual_price(self) -> List[OrderLineItem]:
        return [item for item in self.line_items if not item.has_actual_price]

    def state_machine(self) -> OrderStateMachine:
        """Status machine seeded with this order's recorded state."""
        machine = OrderStateMachine(
            self.id,
            initial_status=self.status,
            fulfiller_id=self.fulfiller_id,
            timestamps=self.timestamps,
        )
        machine.cancellation_reason = self.cancellation_reason
        return machine

    def with_machine(self, machine: OrderStateMachine) -> 'Order':
        """New Order carrying the machine's status, fulfiller, and timestamps."""
        return replace(
            self,
            status=machine.status,
            fulfiller_id=machine.fulfiller_id,
            cancellation_reason=machine.cancellation_reason,
            timestamps=machine.timestamps,
            updated_at=datetime.utcnow(),
        )

    def with_line_item(self, line_item: OrderLineItem) -> 'Order':
        """New Order with one line replaced (matched by id)."""
        items = tuple(
            line_item if item.id == line_item.id else item
            for item in self.line_items
        )
        return replace(self, line_items=items, updated_at=datetime.utcnow())

    @classmethod
    def from_submission(
        cls,
        submission: OrderSubmission,
        order_id: str,
        order_number: Optional[str] = None,
        line_items: Optional[Tuple[OrderLineItem, ...]] = None
    ) -> 'Order':
        """Order as just created at checkout (status pending)."""
        return cls(
            id=order_id,
            order_number=order_number or submission.order_number,
            requester_id=submission.requester_id,
            status=OrderStatus.PENDING,
            line_items=line_items or submission.line_items,
            breakdown=submission.breakdown,
            delivery_address=submission.delivery_address,
            payment_method=submission.payment_method,
            special_instructions=submission.special_instructions or None,
            created_at=submission.created_at,
            updated_at=submission.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Order':
        """
        Build from an ``orders`` row with nested ``order_items``.

        Raises:
            ValueError: Row is missing required fields or has bad values
        """
        if not row.get("id"):
            order_row_errors.labels(reason='missing_id').inc()
            raise ValueError("Order row has no id")

        try:
            line_items = tuple(
                OrderLineItem.from_row(item) for item in row.get("order_items") or []
            )
            delivery_fee = to_money(row.get("delivery_fee") or 0)
            service_fee = to_money(row.get("service_fee") or 0)
            total = to_money(row.get("total_amount") or 0)
            status = OrderStatus.parse(row.get("status") or "pending")
        except (ValueError, TypeError) as e:
            order_row_errors.labels(reason='invalid_value').inc()
            logger.warning(
                "Unparseable order row",
                extra={"order_id": row.get("id"), "error": str(e)}
            )
            raise ValueError(f"Invalid order row {row.get('id')}: {e}")

        breakdown = PriceBreakdown(
            subtotal=total - delivery_fee - service_fee,
            delivery_fee=delivery_fee,
            service_fee=service_fee,
            total=total,
        )

        timestamps = {}
        for key in ("accepted_at", "completed_at", "cancelled_at"):
            parsed = _parse_timestamp(row.get(key))
            if parsed is not None:
                timestamps[key] = parsed

        payment_method = row.get("payment_method")

        return cls(
            id=str(row["id"]),
            order_number=str(row.get("order_number") or ""),
            requester_id=row.get("student_id"),
            status=status,
            line_items=line_items,
            breakdown=breakdown,
            delivery_address=row.get("delivery_address") or "",
            payment_method=PaymentMethod(payment_method) if payment_method else None,
            payment_status=PaymentStatus(row.get("payment_status") or "pending"),
            special_instructions=row.get("special_instructions"),
            fulfiller_id=row.get("runner_id"),
            cancellation_reason=row.get("cancellation_reason"),
            created_at=_parse_timestamp(row.get("created_at")),
            updated_at=_parse_timestamp(row.get("updated_at")),
            timestamps=timestamps,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Export to dictionary."""
        return {
            "id": self.id,
            "order_number": self.order_number,
            "requester_id": self.requester_id,
            "fulfiller_id": self.fulfiller_id,
            "status": self.status.value,
            "line_items": [
                {
                    "id": item.id,
                    "name": item.display_name,
                    "quantity": item.quantity,
                    "unit_price_equivalent": str(item.unit_price_equivalent),
                    "is_custom": item.is_custom,
                    "notes": item.notes,
                    "actual_price": str(item.actual_price) if item.has_actual_price else None,
                }
                for item in self.line_items
            ],
            **self.breakdown.to_dict(),
            "delivery_address": self.delivery_address,
            "payment_method": self.payment_method.value if self.payment_method else None,
            "payment_status": self.payment_status.value,
            "special_instructions": self.special_instructions,
            "cancellation_reason": self.cancellation_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "timestamps": {k: v.isoformat() for k, v in self.timestamps.items()},
        }
