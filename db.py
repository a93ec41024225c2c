"""
Database Module
===============
Async persistence layer over Supabase.

The blocking supabase client runs in the default executor with a
per-call timeout and a circuit breaker. Reads and order writes are
awaited and raise PersistenceError on failure. Cart saves are
fire-and-forget through a coalescing, batched cart queue.
"""

import asyncio
import json
import logging
from collections import OrderedDict
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from postgrest.exceptions import APIError
from prometheus_client import Counter, Gauge, Histogram
from supabase import Client, create_client

from errors import PersistenceError


logger = logging.getLogger(__name__)


# Configuration
MAX_RETRIES = 3
RETRY_DELAY = 1.0  # seconds
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds
MAX_QUEUED_CARTS = 1000
CART_FLUSH_BATCH_SIZE = 10
CART_FLUSH_INTERVAL = 2.0  # seconds

# Orders are always read with their line items (and catalog names)
ORDER_SELECT = "*, order_items(*, item:items(name))"

ACTIVE_STATUS_VALUES = ["accepted", "shopping", "delivering"]


# ============================================================================
# METRICS
# ============================================================================

db_operations = Counter(
    'db_operations_total',
    'Database operations',
    ['operation', 'result']
)
db_latency = Histogram(
    'db_operation_seconds',
    'Database operation latency',
    ['operation']
)
db_cart_queue_size = Gauge(
    'db_cart_queue_size',
    'Requesters with a cart save pending'
)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"            # backend presumed down, calls rejected
    HALF_OPEN = "half_open"  # probing


class CircuitBreaker:
    """
    Trips after ``threshold`` consecutive backend failures.

    While open every call fails fast with PersistenceError. Once
    ``timeout`` seconds have passed since the last failure, calls are let
    through again; ``recovery_successes`` of them in a row close the
    circuit, a single failure reopens it.
    """

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT,
        recovery_successes: int = 2
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.recovery_successes = recovery_successes
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[datetime] = None

    def record_success(self):
        self.failure_count = 0
        if self.state != CircuitState.HALF_OPEN:
            return

        self.success_count += 1
        if self.success_count >= self.recovery_successes:
            self._transition(CircuitState.CLOSED)

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = datetime.utcnow()

        tripped = self.failure_count >= self.threshold
        if self.state == CircuitState.HALF_OPEN or (self.state == CircuitState.CLOSED and tripped):
            self._transition(CircuitState.OPEN)

    def can_execute(self) -> bool:
        if self.state != CircuitState.OPEN:
            return True

        if self.last_failure_time is None:
            return False

        cooled = datetime.utcnow() - self.last_failure_time
        if cooled.total_seconds() < self.timeout:
            return False

        self._transition(CircuitState.HALF_OPEN)
        return True

    def _transition(self, state: CircuitState):
        self.state = state
        self.success_count = 0
        log = logger.error if state == CircuitState.OPEN else logger.info
        log(
            "Backend circuit %s", state.value,
            extra={"failures": self.failure_count}
        )

    def get_state(self) -> str:
        return self.state.value


# Called once a queued cart save settles: None on success, else the error
CartSaveCallback = Callable[[Optional[PersistenceError]], Any]


class CartSaveQueue:
    """
    Pending cart upserts, one slot per requester.

    A newer snapshot replaces the queued one for the same requester, so
    a burst of cart edits costs one write. Capacity counts requesters,
    not edits. Each slot keeps the callback of its latest save.
    """

    def __init__(self, max_size: int = MAX_QUEUED_CARTS):
        self.pending: "OrderedDict[str, Tuple[Dict[str, Any], Optional[CartSaveCallback]]]" = OrderedDict()
        self.max_size = max_size
        self.dropped_count = 0
        self.coalesced_count = 0

    def put(
        self,
        requester_id: str,
        row: Dict[str, Any],
        on_result: Optional[CartSaveCallback] = None
    ) -> bool:
        """
        Queue ``row`` as the requester's latest cart.

        Returns:
            False if the queue is full and the requester has no slot
        """
        if requester_id in self.pending:
            self.pending[requester_id] = (row, on_result)
            self.coalesced_count += 1
            return True

        if len(self.pending) >= self.max_size:
            self.dropped_count += 1
            logger.warning(
                "Cart save queue full, dropping save",
                extra={"requester_id": requester_id, "dropped": self.dropped_count}
            )
            return False

        self.pending[requester_id] = (row, on_result)
        db_cart_queue_size.set(len(self.pending))
        return True

    def take(self, size: int) -> List[Tuple[Dict[str, Any], Optional[CartSaveCallback]]]:
        """Remove and return up to ``size`` (row, callback) pairs, oldest first."""
        entries = []
        while self.pending and len(entries) < size:
            _, entry = self.pending.popitem(last=False)
            entries.append(entry)
        db_cart_queue_size.set(len(self.pending))
        return entries

    def __len__(self) -> int:
        return len(self.pending)


class DatabaseClient:
    """
    Supabase-backed persistence collaborator.

    Read and order operations are awaited and raise PersistenceError.
    Cart saves go through the coalescing cart queue.
    """

    def __init__(
        self,
        client: Optional[Client] = None,
        supabase_config=None,
        timeout: Optional[float] = None
    ):
        self.client: Optional[Client] = client
        self.cart_queue = CartSaveQueue()
        self.circuit_breaker = CircuitBreaker()

        if supabase_config is None and (client is None or timeout is None):
            from config import get_config
            supabase_config = get_config().supabase

        self.timeout = timeout or supabase_config.request_timeout

        # Background tasks
        self.cart_flush_task: Optional[asyncio.Task] = None
        self.is_running = False

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0
        self.retry_count = 0

        if self.client is None:
            self._initialize_client(supabase_config)

        logger.info("DatabaseClient initialized")

    def _initialize_client(self, supabase_config):
        """Initialize Supabase client."""
        if not supabase_config.is_configured:
            logger.error("SUPABASE_URL and SUPABASE_KEY required")
            return

        try:
            self.client = create_client(supabase_config.url, supabase_config.key)
            logger.info("Supabase client initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {str(e)}")

    async def start(self):
        """Start the background cart flush loop."""
        if self.is_running:
            return

        self.is_running = True
        self.cart_flush_task = asyncio.create_task(
            self._cart_flush_loop()
        )
        logger.info("Cart flush loop started")

    async def stop(self):
        """Stop the flush loop and write every queued cart."""
        if not self.is_running:
            return

        self.is_running = False

        if self.cart_flush_task and not self.cart_flush_task.done():
            self.cart_flush_task.cancel()
            try:
                await self.cart_flush_task
            except asyncio.CancelledError:
                pass

        await self.flush_carts()

        logger.info("Cart flush loop stopped")

    # ========================================================================
    # EXECUTION (executor + timeout + circuit breaker)
    # ========================================================================

    async def _execute(
        self,
        operation: str,
        query: Callable[[], Any],
        is_write: bool = False
    ) -> Any:
        """
        Run a blocking supabase query in the executor.

        Raises:
            PersistenceError: Client missing, circuit open, timeout, or
                API failure
        """
        if not self.client:
            db_operations.labels(operation=operation, result='no_client').inc()
            raise PersistenceError(operation, "database client not initialized")

        if not self.circuit_breaker.can_execute():
            db_operations.labels(operation=operation, result='circuit_open').inc()
            raise PersistenceError(operation, "circuit breaker open")

        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, query),
                timeout=self.timeout
            )

        except asyncio.TimeoutError:
            self._record_error(operation, "timeout")
            raise PersistenceError(operation, f"timed out after {self.timeout}s")

        except APIError as e:
            self._record_error(operation, "api_error")
            raise PersistenceError(operation, e.message or str(e))

        except Exception as e:
            self._record_error(operation, "error")
            raise PersistenceError(operation, str(e))

        if is_write:
            self.write_count += 1
        else:
            self.read_count += 1

        self.circuit_breaker.record_success()
        db_operations.labels(operation=operation, result='success').inc()
        db_latency.labels(operation=operation).observe(loop.time() - started)

        return result

    def _record_error(self, operation: str, kind: str):
        self.error_count += 1
        self.circuit_breaker.record_failure()
        db_operations.labels(operation=operation, result=kind).inc()
        logger.error(
            f"Database {kind} during {operation}",
            extra={"operation": operation, "circuit": self.circuit_breaker.get_state()}
        )

    # ========================================================================
    # CATALOG
    # ========================================================================

    async def fetch_categories(self) -> List[Dict[str, Any]]:
        result = await self._execute(
            "fetch_categories",
            lambda: self.client
                .table("categories")
                .select("*")
                .eq("is_active", True)
                .order("sort_order")
                .execute()
        )
        return result.data or []

    async def fetch_items_by_category(self, category_id: str) -> List[Dict[str, Any]]:
        result = await self._execute(
            "fetch_items_by_category",
            lambda: self.client
                .table("items")
                .select("*")
                .eq("category_id", category_id)
                .order("name")
                .execute()
        )
        return result.data or []

    async def fetch_item_by_id(self, item_id: str) -> Optional[Dict[str, Any]]:
        result = await self._execute(
            "fetch_item_by_id",
            lambda: self.client
                .table("items")
                .select("*")
                .eq("id", item_id)
                .limit(1)
                .execute()
        )
        return result.data[0] if result.data else None

    # ========================================================================
    # ORDERS
    # ========================================================================

    async def create_order(self, header: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert an order header.

        Returns:
            {"id": ..., "order_number": ...}
        """
        row = {**header, "created_at": datetime.utcnow().isoformat()}

        result = await self._execute(
            "create_order",
            lambda: self.client.table("orders").insert(row).execute(),
            is_write=True
        )

        if not result.data:
            raise PersistenceError("create_order", "insert returned no row")

        created = result.data[0]
        logger.info(
            "Order created",
            extra={"order_id": created.get("id"), "order_number": created.get("order_number")}
        )
        return {"id": created["id"], "order_number": created.get("order_number")}

    async def add_order_items(
        self,
        order_id: str,
        items: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Attach line item rows to an existing order."""
        rows = [{**item, "order_id": order_id} for item in items]

        result = await self._execute(
            "add_order_items",
            lambda: self.client.table("order_items").insert(rows).execute(),
            is_write=True
        )

        if len(result.data or []) != len(rows):
            raise PersistenceError(
                "add_order_items",
                f"inserted {len(result.data or [])} of {len(rows)} items"
            )

        return result.data

    async def get_order_by_id(self, order_id: str) -> Optional[Dict[str, Any]]:
        result = await self._execute(
            "get_order_by_id",
            lambda: self.client
                .table("orders")
                .select(ORDER_SELECT)
                .eq("id", order_id)
                .limit(1)
                .execute()
        )
        return result.data[0] if result.data else None

    async def get_orders_for_actor(
        self,
        actor_id: str,
        role: Any,
        statuses: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        """
        Orders for a requester (``student_id``) or fulfiller (``runner_id``).

        Args:
            actor_id: User id
            role: "requester" or "fulfiller" (or a UserRole)
            statuses: Optional status filter
        """
        role_value = getattr(role, "value", role)
        if role_value == "requester":
            column = "student_id"
        elif role_value == "fulfiller":
            column = "runner_id"
        else:
            raise ValueError(f"Unsupported role for order lookup: {role_value}")

        def query():
            q = self.client.table("orders").select(ORDER_SELECT).eq(column, actor_id)
            if statuses:
                q = q.in_("status", statuses)
            return q.order("created_at", desc=True).execute()

        result = await self._execute("get_orders_for_actor", query)
        return result.data or []

    async def get_available_orders(self) -> List[Dict[str, Any]]:
        """Pending orders no fulfiller has claimed."""
        result = await self._execute(
            "get_available_orders",
            lambda: self.client
                .table("orders")
                .select(ORDER_SELECT)
                .eq("status", "pending")
                .is_("runner_id", "null")
                .order("created_at", desc=True)
                .execute()
        )
        return result.data or []

    async def update_order_status(
        self,
        order_id: str,
        status: str,
        extra: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Set an order's status, stamping the matching timestamp column.

        Returns:
            {"success": bool, "message": str, "data": row or None}
        """
        now = datetime.utcnow().isoformat()
        update = {"status": status, "updated_at": now, **(extra or {})}

        if status == "accepted":
            update["accepted_at"] = now
        elif status == "completed":
            update["completed_at"] = now
        elif status == "cancelled":
            update["cancelled_at"] = now

        result = await self._execute(
            "update_order_status",
            lambda: self.client
                .table("orders")
                .update(update)
                .eq("id", order_id)
                .execute(),
            is_write=True
        )

        if not result.data:
            return {"success": False, "message": "Order not found", "data": None}

        return {
            "success": True,
            "message": "Order status updated successfully",
            "data": result.data[0],
        }

    async def accept_order(self, order_id: str, fulfiller_id: str) -> Dict[str, Any]:
        """
        Claim a pending, unassigned order.

        Exclusive: the update only matches while the order is still
        pending with no runner, so at most one fulfiller wins.
        """
        now = datetime.utcnow().isoformat()
        update = {
            "runner_id": fulfiller_id,
            "status": "accepted",
            "accepted_at": now,
            "updated_at": now,
        }

        result = await self._execute(
            "accept_order",
            lambda: self.client
                .table("orders")
                .update(update)
                .eq("id", order_id)
                .eq("status", "pending")
                .is_("runner_id", "null")
                .execute(),
            is_write=True
        )

        if not result.data:
            return {
                "success": False,
                "message": "Order is no longer available",
                "data": None,
            }

        return {
            "success": True,
            "message": "Order accepted successfully",
            "data": result.data[0],
        }

    async def update_item_actual_price(self, item_id: str, price: Any) -> Dict[str, Any]:
        result = await self._execute(
            "update_item_actual_price",
            lambda: self.client
                .table("order_items")
                .update({"actual_price": str(price)})
                .eq("id", item_id)
                .execute(),
            is_write=True
        )

        if not result.data:
            return {"success": False, "message": "Order item not found", "data": None}

        return {"success": True, "message": "Actual price recorded", "data": result.data[0]}

    # ========================================================================
    # CART (fire-and-forget)
    # ========================================================================

    def save_cart(
        self,
        requester_id: str,
        snapshot,
        on_result: Optional[CartSaveCallback] = None
    ) -> bool:
        """
        Queue a cart upsert into ``carts`` (one row per requester).

        Args:
            requester_id: Cart owner
            snapshot: CartSnapshot
            on_result: Called with None once the upsert lands, or with
                the PersistenceError once retries are exhausted

        Returns:
            True if queued (or merged into a queued save)
        """
        row = {
            "student_id": requester_id,
            "cart_data": json.dumps(snapshot.to_dict()),
            "updated_at": datetime.utcnow().isoformat(),
        }
        return self.cart_queue.put(requester_id, row, on_result)

    async def _cart_flush_loop(self):
        try:
            while self.is_running:
                await asyncio.sleep(CART_FLUSH_INTERVAL)

                if self.cart_queue:
                    await self._flush_cart_batch()

        except asyncio.CancelledError:
            pass

    async def _flush_cart_batch(self):
        for row, on_result in self.cart_queue.take(CART_FLUSH_BATCH_SIZE):
            error: Optional[PersistenceError] = None
            try:
                await self._upsert_cart(row)
            except PersistenceError as e:
                # Dropped: the requester's next edit queues a newer snapshot
                error = e
                logger.error(
                    "Cart save failed after retries",
                    extra={"requester_id": row["student_id"], "error": e.reason}
                )

            if on_result is not None:
                self._notify_cart_saved(on_result, row["student_id"], error)

    def _notify_cart_saved(self, on_result: CartSaveCallback, requester_id: str, error):
        try:
            on_result(error)
        except Exception:
            logger.exception(
                "Cart save callback raised",
                extra={"requester_id": requester_id}
            )

    async def _upsert_cart(self, row: Dict[str, Any]):
        """Upsert one cart row, retrying while the circuit allows."""
        def query():
            return self.client.table("carts").upsert(
                row,
                on_conflict="student_id"
            ).execute()

        for attempt in range(MAX_RETRIES + 1):
            try:
                await self._execute("save_cart", query, is_write=True)
                return
            except PersistenceError:
                if attempt >= MAX_RETRIES or not self.circuit_breaker.can_execute():
                    raise
                self.retry_count += 1
                await asyncio.sleep(RETRY_DELAY * (attempt + 1))

    async def flush_carts(self):
        """Write every queued cart now."""
        if self.cart_queue:
            logger.info(
                "Flushing queued cart saves",
                extra={"pending": len(self.cart_queue)}
            )

        while self.cart_queue:
            await self._flush_cart_batch()

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        return {
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "retries": self.retry_count,
            "cart_queue_size": len(self.cart_queue),
            "cart_saves_coalesced": self.cart_queue.coalesced_count,
            "cart_saves_dropped": self.cart_queue.dropped_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count
        }

    def is_healthy(self) -> bool:
        """Check if database is healthy."""
        return (
            self.client is not None and
            self.circuit_breaker.state != CircuitState.OPEN
        )


# ============================================================================
# GLOBAL DATABASE INSTANCE (lazy)
# ============================================================================

_db: Optional[DatabaseClient] = None


def get_db() -> DatabaseClient:
    """Get global database client. Created on first call."""
    global _db

    if _db is None:
        _db = DatabaseClient()

    return _db


async def shutdown_db():
    """Graceful database shutdown."""
    global _db

    if _db is not None:
        await _db.stop()
        _db = None
        logger.info("Database shutdown complete")
