"""
Fulfillment Module
==================
Fulfiller-side order actions: accept, advance status, record prices.

Every request is checked against the local status machine first, so an
illegal transition never reaches the network. Local state changes only
after the backend confirms.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Optional, Tuple

from prometheus_client import Counter

from errors import LineItemNotFoundError, ValidationError
from order import Order, OrderLineItem
from order_state import ACTIVE_STATUSES, OrderStatus


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

fulfillment_requests = Counter(
    'fulfillment_requests_total',
    'Fulfiller-side order requests',
    ['action', 'result']
)


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True)
class StatusUpdateResult:
    """Outcome of a fulfiller request."""
    success: bool
    message: str
    order: Optional[Order] = None
    needs_confirmation: bool = False
    incomplete_items: Tuple[OrderLineItem, ...] = ()


@dataclass(frozen=True)
class FulfillerStats:
    """Runner dashboard numbers."""
    total_orders: int
    active_orders: int
    completed_orders: int
    today_orders: int
    total_earnings: Decimal
    completion_rate: float  # percent

    def to_dict(self):
        return {
            "total_orders": self.total_orders,
            "active_orders": self.active_orders,
            "completed_orders": self.completed_orders,
            "today_orders": self.today_orders,
            "total_earnings": str(self.total_earnings),
            "completion_rate": self.completion_rate,
        }


# ============================================================================
# FULFILLMENT DRIVER
# ============================================================================

class FulfillmentDriver:
    """
    Drives explicit status transitions for one fulfiller session.

    Confirmed results are pushed to ``listeners`` (typically the sync
    loops' ``apply_local``) so the view updates before the next poll.
    """

    def __init__(self, backend, listeners: Optional[List[Callable[[Order], Any]]] = None):
        self.backend = backend
        self.listeners: List[Callable[[Order], Any]] = list(listeners or [])

    def add_listener(self, listener: Callable[[Order], Any]):
        self.listeners.append(listener)

    async def accept_order(self, order: Order, fulfiller_id: str) -> StatusUpdateResult:
        """
        Claim a pending order.

        The claim is exclusive on the backend; losing the race returns
        an unsuccessful result with the backend's message.

        Raises:
            StateTransitionError: Order is not pending locally
            PersistenceError: Backend unreachable
        """
        machine = order.state_machine()
        machine.check_transition(OrderStatus.PENDING, OrderStatus.ACCEPTED, fulfiller_id)

        result = await self.backend.accept_order(order.id, fulfiller_id)

        if not result.get("success"):
            fulfillment_requests.labels(action='accept', result='lost').inc()
            logger.info(
                "Order claim rejected",
                extra={"order_id": order.id, "fulfiller_id": fulfiller_id, "backend_message": result.get("message")}
            )
            return StatusUpdateResult(False, result.get("message") or "Order could not be accepted", order)

        machine.transition(OrderStatus.PENDING, OrderStatus.ACCEPTED, fulfiller_id=fulfiller_id)
        updated = order.with_machine(machine)

        fulfillment_requests.labels(action='accept', result='success').inc()
        self._notify(updated)

        return StatusUpdateResult(True, result.get("message") or "Order accepted", updated)

    async def update_status(
        self,
        order: Order,
        new_status: Any,
        reason: Optional[str] = None
    ) -> StatusUpdateResult:
        """
        Move an order to ``new_status``.

        Acceptance goes through ``accept_order`` (it needs the exclusive
        claim).

        Raises:
            StateTransitionError: Illegal transition from the order's status
            PersistenceError: Backend unreachable
        """
        target = OrderStatus.parse(new_status)
        if target == OrderStatus.ACCEPTED:
            raise ValueError("Use accept_order to accept an order")

        machine = order.state_machine()
        machine.check_transition(order.status, target)

        extra = {"cancellation_reason": reason} if target == OrderStatus.CANCELLED and reason else None
        result = await self.backend.update_order_status(order.id, target.value, extra)

        if not result.get("success"):
            fulfillment_requests.labels(action=target.value, result='failed').inc()
            logger.warning(
                "Status update not confirmed",
                extra={"order_id": order.id, "to_status": target.value, "backend_message": result.get("message")}
            )
            return StatusUpdateResult(False, result.get("message") or "Status update failed", order)

        machine.transition(order.status, target, reason=reason)
        updated = order.with_machine(machine)

        fulfillment_requests.labels(action=target.value, result='success').inc()
        self._notify(updated)

        return StatusUpdateResult(True, result.get("message") or "Status updated", updated)

    async def start_delivery(self, order: Order, confirm_incomplete: bool = False) -> StatusUpdateResult:
        """
        Move a shopping order to delivering.

        Soft gate: if some lines have no actual price and the caller has
        not confirmed, nothing happens and the result asks for
        confirmation.

        Raises:
            StateTransitionError: Order is not shopping
        """
        order.state_machine().check_transition(order.status, OrderStatus.DELIVERING)

        incomplete = tuple(order.items_missing_actual_price())

        if incomplete and not confirm_incomplete:
            fulfillment_requests.labels(action='delivering', result='needs_confirmation').inc()
            return StatusUpdateResult(
                success=False,
                message=f"{len(incomplete)} item(s) have no recorded price",
                order=order,
                needs_confirmation=True,
                incomplete_items=incomplete,
            )

        if incomplete:
            logger.info(
                "Starting delivery with incomplete items",
                extra={"order_id": order.id, "incomplete": len(incomplete)}
            )

        return await self.update_status(order, OrderStatus.DELIVERING)

    async def record_actual_price(self, order: Order, line_item_id: str, price: Any) -> StatusUpdateResult:
        """
        Record what the fulfiller actually paid for a line (shopping only).

        Raises:
            ValidationError: Order not shopping, or invalid price
            LineItemNotFoundError: No such line on the order
            PersistenceError: Backend unreachable
        """
        if order.status != OrderStatus.SHOPPING:
            raise ValidationError(
                {"status": f"Prices can only be recorded while shopping (order is {order.status.value})"}
            )

        line_item = order.get_line_item(line_item_id)
        if line_item is None:
            raise LineItemNotFoundError(line_item_id)

        try:
            annotated = line_item.with_actual_price(price)
        except ValueError as e:
            raise ValidationError({"actual_price": str(e)})

        result = await self.backend.update_item_actual_price(line_item_id, annotated.actual_price)

        if not result.get("success"):
            fulfillment_requests.labels(action='record_price', result='failed').inc()
            return StatusUpdateResult(False, result.get("message") or "Price not saved", order)

        updated = order.with_line_item(annotated)

        fulfillment_requests.labels(action='record_price', result='success').inc()
        self._notify(updated)

        return StatusUpdateResult(True, "Actual price recorded", updated)

    def _notify(self, order: Order):
        for listener in self.listeners:
            listener(order)


# ============================================================================
# STATS
# ============================================================================

def compute_fulfiller_stats(
    orders: Iterable[Order],
    fulfiller_id: str,
    today: Optional[date] = None
) -> FulfillerStats:
    """
    Dashboard numbers for one fulfiller.

    Earnings are the delivery and service fees of completed orders.
    Completion rate is completed / total, in percent.
    """
    today = today or datetime.utcnow().date()
    mine = [order for order in orders if order.fulfiller_id == fulfiller_id]

    completed = [order for order in mine if order.status == OrderStatus.COMPLETED]
    active = [order for order in mine if order.status in ACTIVE_STATUSES]
    today_orders = [
        order for order in mine
        if order.created_at is not None and order.created_at.date() == today
    ]

    earnings = sum(
        (order.breakdown.delivery_fee + order.breakdown.service_fee for order in completed),
        Decimal("0.00")
    )

    rate = (len(completed) / len(mine) * 100.0) if mine else 0.0

    return FulfillerStats(
        total_orders=len(mine),
        active_orders=len(active),
        completed_orders=len(completed),
        today_orders=len(today_orders),
        total_earnings=earnings,
        completion_rate=round(rate, 1),
    )
