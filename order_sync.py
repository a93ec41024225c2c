"""
Order Sync Loop
===============
Pull-based polling of the orders relevant to one actor.

Each tick re-fetches the scope and replaces the local view wholesale;
fetched state wins over anything applied locally in between. A failed
tick keeps the previous view (stale but available) and the next tick
is the retry. There is no separate backoff.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from prometheus_client import Counter, Gauge

from cancel_token import CancelToken
from errors import PersistenceError
from order import Order
from order_state import ACTIVE_STATUSES, OrderStatus

logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

sync_fetches = Counter(
    'order_sync_fetches_total',
    'Order sync fetches',
    ['scope', 'result']
)
sync_view_size = Gauge(
    'order_sync_view_size',
    'Orders in the current sync view',
    ['scope']
)
sync_skipped_rows = Counter(
    'order_sync_skipped_rows_total',
    'Fetched order rows skipped as unparseable'
)


class SyncScope(Enum):
    """Which orders a loop watches."""
    REQUESTER = "requester"                 # Requester's own orders
    FULFILLER_ACTIVE = "fulfiller_active"   # Fulfiller's accepted/shopping/delivering
    AVAILABLE = "available"                 # Pending, unclaimed (runner's job board)
    ORDER = "order"                         # One order (tracking screen); actor_id is the order id


class OrderSyncLoop:
    """
    Polls one scope of orders on a fixed interval.

    Two loops watching the same order may briefly disagree; staleness
    is bounded by the interval.
    """

    def __init__(
        self,
        backend,
        actor_id: Optional[str],
        scope: SyncScope = SyncScope.REQUESTER,
        interval: Optional[float] = None,
        sync_config=None
    ):
        if sync_config is None and interval is None:
            from config import get_config
            sync_config = get_config().sync

        self.backend = backend
        self.actor_id = actor_id
        self.scope = SyncScope(scope)
        self.interval = interval if interval is not None else sync_config.poll_interval_seconds
        self.fetch_timeout = (
            sync_config.fetch_timeout_seconds if sync_config is not None else None
        )

        if self.interval <= 0:
            raise ValueError(f"Sync interval must be positive: {self.interval}")

        # View state
        self._orders: Dict[str, Order] = {}
        self.last_error: Optional[str] = None
        self.last_synced_at: Optional[datetime] = None
        self.tick_count = 0

        self._subscribers: List[Callable[[List[Order]], Any]] = []

        # Loop state
        self._task: Optional[asyncio.Task] = None
        self._active = False
        self._token = CancelToken(f"sync:{self.scope.value}:{actor_id}")

    # ========================================================================
    # VIEW
    # ========================================================================

    @property
    def orders(self) -> List[Order]:
        """Current view (fetch order)."""
        return list(self._orders.values())

    @property
    def is_running(self) -> bool:
        return self._active

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def subscribe(self, callback: Callable[[List[Order]], Any]) -> Callable[[], None]:
        """
        Register a view-change callback.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def apply_local(self, order: Order):
        """
        Apply a confirmed explicit transition to the view.

        The next successful tick overwrites it with fetched state.
        """
        if self._token.is_cancelled:
            return

        if self._belongs_in_scope(order):
            self._orders[order.id] = order
        else:
            self._orders.pop(order.id, None)

        sync_view_size.labels(scope=self.scope.value).set(len(self._orders))
        self._notify()

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Start polling (first fetch is immediate)."""
        if self._active:
            return

        if self._token.is_cancelled:
            raise RuntimeError("Sync loop was stopped and cannot be restarted")

        self._active = True
        self._task = asyncio.create_task(self._run())

        logger.info(
            "Order sync started",
            extra={"scope": self.scope.value, "actor_id": self.actor_id, "interval": self.interval}
        )

    async def stop(self):
        """Stop polling. A fetch still in flight is discarded when it lands."""
        self._active = False
        self._token.cancel("sync stopped")

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=2.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

        logger.info(
            "Order sync stopped",
            extra={"scope": self.scope.value, "actor_id": self.actor_id}
        )

    async def _run(self):
        try:
            while self._active:
                try:
                    await self.refresh()
                except Exception as e:
                    # Keep polling; the view stays as it was
                    self.last_error = str(e)
                    logger.error(
                        "Order sync tick crashed",
                        extra={"scope": self.scope.value, "error": str(e)},
                        exc_info=True
                    )

                if await self._token.wait_cancelled(timeout=self.interval):
                    break

        except asyncio.CancelledError:
            logger.debug(
                "Order sync loop cancelled",
                extra={"scope": self.scope.value}
            )

    # ========================================================================
    # FETCH
    # ========================================================================

    async def refresh(self) -> bool:
        """
        Fetch once and replace the view.

        Returns:
            True if the view was replaced
        """
        self.tick_count += 1

        fetch = self._fetch_rows()
        if self.fetch_timeout:
            fetch = asyncio.wait_for(fetch, timeout=self.fetch_timeout)

        try:
            applied, rows = await self._token.guard(fetch)
        except (PersistenceError, asyncio.TimeoutError) as e:
            reason = str(e) or "fetch timed out"
            self.last_error = reason
            sync_fetches.labels(scope=self.scope.value, result='failed').inc()
            logger.warning(
                "Order sync fetch failed, keeping previous view",
                extra={"scope": self.scope.value, "actor_id": self.actor_id, "error": reason}
            )
            return False

        if not applied:
            sync_fetches.labels(scope=self.scope.value, result='discarded').inc()
            return False

        orders: Dict[str, Order] = {}
        for row in rows or []:
            try:
                order = Order.from_row(row)
            except ValueError:
                sync_skipped_rows.inc()
                continue
            orders[order.id] = order

        self._orders = orders
        self.last_error = None
        self.last_synced_at = datetime.utcnow()

        sync_fetches.labels(scope=self.scope.value, result='success').inc()
        sync_view_size.labels(scope=self.scope.value).set(len(orders))

        self._notify()
        return True

    async def _fetch_rows(self) -> List[Dict[str, Any]]:
        if self.scope == SyncScope.REQUESTER:
            return await self.backend.get_orders_for_actor(self.actor_id, "requester")

        if self.scope == SyncScope.FULFILLER_ACTIVE:
            return await self.backend.get_orders_for_actor(
                self.actor_id,
                "fulfiller",
                statuses=[status.value for status in ACTIVE_STATUSES]
            )

        if self.scope == SyncScope.ORDER:
            row = await self.backend.get_order_by_id(self.actor_id)
            return [row] if row else []

        return await self.backend.get_available_orders()

    def _belongs_in_scope(self, order: Order) -> bool:
        if self.scope == SyncScope.REQUESTER:
            return order.requester_id == self.actor_id
        if self.scope == SyncScope.FULFILLER_ACTIVE:
            return order.fulfiller_id == self.actor_id and order.status in ACTIVE_STATUSES
        if self.scope == SyncScope.ORDER:
            return order.id == self.actor_id
        return order.status == OrderStatus.PENDING and order.fulfiller_id is None

    def _notify(self):
        orders = self.orders
        for callback in list(self._subscribers):
            try:
                callback(orders)
            except Exception as e:
                logger.error(
                    "Order sync subscriber failed",
                    extra={"scope": self.scope.value, "error": str(e)},
                    exc_info=True
                )

    def get_stats(self) -> dict:
        return {
            "scope": self.scope.value,
            "actor_id": self.actor_id,
            "orders": len(self._orders),
            "ticks": self.tick_count,
            "last_error": self.last_error,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "is_running": self._active,
        }

    def __repr__(self):
        return f"<OrderSyncLoop scope={self.scope.value} orders={len(self._orders)}>"
