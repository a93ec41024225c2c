"""
Order Status Machine
====================
Formal status transitions for the order fulfillment lifecycle.

State invariants:
- A transition is applied only if the caller's expected current status
  matches the recorded one
- Entering ACCEPTED requires and binds a fulfiller
- COMPLETED and CANCELLED are terminal
- Remote (server) state always wins over local state
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from prometheus_client import Counter

from errors import StateTransitionError

logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

order_transitions = Counter(
    'order_status_transitions_total',
    'Order status transitions applied',
    ['from_status', 'to_status']
)
order_transition_rejections = Counter(
    'order_status_rejections_total',
    'Order status transitions rejected',
    ['reason']
)
order_remote_overrides = Counter(
    'order_status_remote_overrides_total',
    'Local order status replaced by server state'
)


class OrderStatus(Enum):
    """
    Order fulfillment states.

    State flow:
        PENDING -> ACCEPTED -> SHOPPING -> DELIVERING -> COMPLETED
        PENDING | ACCEPTED | SHOPPING -> CANCELLED
    """
    PENDING = "pending"         # Placed, waiting for a fulfiller
    ACCEPTED = "accepted"       # Claimed by exactly one fulfiller
    SHOPPING = "shopping"       # Fulfiller is buying the items
    DELIVERING = "delivering"   # En route
    COMPLETED = "completed"     # Delivered (terminal)
    CANCELLED = "cancelled"     # Terminal failure

    @classmethod
    def parse(cls, value) -> 'OrderStatus':
        """Accept an OrderStatus or its string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown order status: {value!r}")


# Cancellation from DELIVERING is not allowed: once en route the order
# is treated as unstoppable.
VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.ACCEPTED, OrderStatus.CANCELLED},
    OrderStatus.ACCEPTED: {OrderStatus.SHOPPING, OrderStatus.CANCELLED},
    OrderStatus.SHOPPING: {OrderStatus.DELIVERING, OrderStatus.CANCELLED},
    OrderStatus.DELIVERING: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({
    OrderStatus.ACCEPTED,
    OrderStatus.SHOPPING,
    OrderStatus.DELIVERING,
})

# Timestamp key stamped when a status is entered
STATUS_TIMESTAMPS = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.SHOPPING: "shopping_started_at",
    OrderStatus.DELIVERING: "delivering_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


class OrderStateMachine:
    """
    Tracks one order's status with validated transitions.

    Enforces:
    - Valid transition paths only
    - Expected-current-status check on every request
    - Fulfiller binding on acceptance
    - Transition logging and metrics
    """

    VALID_TRANSITIONS = VALID_TRANSITIONS

    def __init__(
        self,
        order_id: str,
        initial_status: OrderStatus = OrderStatus.PENDING,
        fulfiller_id: Optional[str] = None,
        timestamps: Optional[Dict[str, datetime]] = None
    ):
        self.order_id = order_id
        self._status = OrderStatus.parse(initial_status)
        self.fulfiller_id = fulfiller_id
        self.cancellation_reason: Optional[str] = None
        self._timestamps: Dict[str, datetime] = dict(timestamps or {})
        self._history: List[Tuple[OrderStatus, datetime, str]] = [
            (self._status, datetime.utcnow(), "initial")
        ]
        self._transition_count = 0

    @property
    def status(self) -> OrderStatus:
        """Get current status."""
        return self._status

    @property
    def timestamps(self) -> Dict[str, datetime]:
        return dict(self._timestamps)

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Claimed by a fulfiller and not yet finished."""
        return self._status in ACTIVE_STATUSES

    @staticmethod
    def can_transition(from_status, to_status) -> bool:
        """Check if ``from_status -> to_status`` is a legal edge."""
        from_status = OrderStatus.parse(from_status)
        to_status = OrderStatus.parse(to_status)
        return to_status in VALID_TRANSITIONS.get(from_status, set())

    def can_transition_to(self, target) -> bool:
        """Check if transition from the current status to target is legal."""
        return self.can_transition(self._status, target)

    def check_transition(
        self,
        expected_current,
        target,
        fulfiller_id: Optional[str] = None
    ):
        """
        Validate a transition request without applying it.

        Raises:
            StateTransitionError: Stale expectation, illegal edge, or
                missing fulfiller for acceptance
        """
        expected_current = OrderStatus.parse(expected_current)
        target = OrderStatus.parse(target)

        if expected_current != self._status:
            self._reject(
                "stale_status",
                expected_current,
                target,
                f"order is {self._status.value}, not {expected_current.value}"
            )

        if not self.can_transition(expected_current, target):
            self._reject("illegal_edge", expected_current, target)

        if target == OrderStatus.ACCEPTED and not (fulfiller_id or self.fulfiller_id):
            self._reject(
                "missing_fulfiller",
                expected_current,
                target,
                "accepting an order requires a fulfiller"
            )

    def transition(
        self,
        expected_current,
        target,
        fulfiller_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> OrderStatus:
        """
        Apply a transition after validating it.

        Args:
            expected_current: Status the caller believes the order is in
            target: Desired next status
            fulfiller_id: Required when entering ACCEPTED
            reason: Cancellation reason (stored) or log context

        Returns:
            New status

        Raises:
            StateTransitionError: If the transition is rejected
        """
        target = OrderStatus.parse(target)
        self.check_transition(expected_current, target, fulfiller_id)

        old_status = self._status
        now = datetime.utcnow()

        if target == OrderStatus.ACCEPTED:
            self.fulfiller_id = fulfiller_id or self.fulfiller_id
        if target == OrderStatus.CANCELLED:
            self.cancellation_reason = reason

        self._status = target
        self._timestamps[STATUS_TIMESTAMPS[target]] = now
        self._transition_count += 1
        self._history.append((target, now, reason or "local"))

        order_transitions.labels(
            from_status=old_status.value,
            to_status=target.value
        ).inc()

        logger.info(
            f"Order transition: {old_status.value} -> {target.value}",
            extra={
                "order_id": self.order_id,
                "from_status": old_status.value,
                "to_status": target.value,
                "fulfiller_id": self.fulfiller_id,
                "reason": reason,
                "transition_count": self._transition_count
            }
        )

        return self._status

    # ========================================================================
    # CONVENIENCE TRANSITIONS
    # ========================================================================

    def accept(self, fulfiller_id: str) -> OrderStatus:
        return self.transition(OrderStatus.PENDING, OrderStatus.ACCEPTED, fulfiller_id=fulfiller_id)

    def start_shopping(self) -> OrderStatus:
        return self.transition(OrderStatus.ACCEPTED, OrderStatus.SHOPPING)

    def start_delivery(self) -> OrderStatus:
        return self.transition(OrderStatus.SHOPPING, OrderStatus.DELIVERING)

    def complete(self) -> OrderStatus:
        return self.transition(OrderStatus.DELIVERING, OrderStatus.COMPLETED)

    def cancel(self, reason: Optional[str] = None) -> OrderStatus:
        """Cancel from whatever the current status is (if legal)."""
        return self.transition(self._status, OrderStatus.CANCELLED, reason=reason)

    # ========================================================================
    # REMOTE RECONCILIATION
    # ========================================================================

    def apply_remote(
        self,
        status,
        fulfiller_id: Optional[str] = None,
        timestamps: Optional[Dict[str, datetime]] = None,
        cancellation_reason: Optional[str] = None
    ):
        """
        Overwrite local state with server state (last write wins).

        No legality check: the server is authoritative, even for moves
        this machine would never make itself.
        """
        status = OrderStatus.parse(status)
        old_status = self._status

        self._status = status
        self.fulfiller_id = fulfiller_id
        if cancellation_reason is not None:
            self.cancellation_reason = cancellation_reason
        if timestamps:
            self._timestamps.update(timestamps)

        if status != old_status:
            self._history.append((status, datetime.utcnow(), "remote"))
            order_remote_overrides.inc()

            log = logger.info if self.can_transition(old_status, status) else logger.warning
            log(
                f"Remote status applied: {old_status.value} -> {status.value}",
                extra={
                    "order_id": self.order_id,
                    "from_status": old_status.value,
                    "to_status": status.value,
                    "fulfiller_id": fulfiller_id
                }
            )

    def history(self) -> List[Dict[str, str]]:
        """Status history (oldest first)."""
        return [
            {
                "status": status.value,
                "timestamp": ts.isoformat(),
                "source": source,
            }
            for status, ts, source in self._history
        ]

    def _reject(
        self,
        reason_key: str,
        expected_current: OrderStatus,
        target: OrderStatus,
        reason: Optional[str] = None
    ):
        order_transition_rejections.labels(reason=reason_key).inc()
        logger.warning(
            f"Rejected transition: {expected_current.value} -> {target.value}",
            extra={
                "order_id": self.order_id,
                "current_status": self._status.value,
                "from_status": expected_current.value,
                "to_status": target.value,
                "reason": reason_key
            }
        )
        raise StateTransitionError(
            order_id=self.order_id,
            current_status=self._status.value,
            requested_from=expected_current.value,
            requested_to=target.value,
            reason=reason
        )

    def __repr__(self):
        return f"<OrderStateMachine order_id={self.order_id} status={self._status.value}>"
