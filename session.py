"""
Client Session
==============
Per-user wiring of the marketplace core.

Responsibilities:
- Build the components a role needs
- Hook cart persistence to the backend cart save queue
- Route confirmed fulfiller actions into the sync views
- Tear everything down on close
- NO authentication (the current user is supplied by the caller)
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from cart import CartSnapshot, CartStore
from catalog import CatalogRepository
from checkout import CheckoutCoordinator, CheckoutResult, DeliveryInfo, PaymentHandler
from checkout_cache import CheckoutFormCache
from errors import PersistenceError
from fulfillment import FulfillmentDriver
from order_sync import OrderSyncLoop, SyncScope
from pricing import policy_for_payment_method

# Structured logging
logger = structlog.get_logger(__name__)


class UserRole(str, Enum):
    REQUESTER = "requester"
    FULFILLER = "fulfiller"
    ADMINISTRATOR = "administrator"


# users.user_type values
USER_TYPE_ROLES = {
    "student": UserRole.REQUESTER,
    "runner": UserRole.FULFILLER,
    "admin": UserRole.ADMINISTRATOR,
}


@dataclass(frozen=True)
class CurrentUser:
    """Signed-in user, as supplied by the identity collaborator."""
    id: str
    role: UserRole
    full_name: str = ""
    phone: str = ""
    hall_hostel: str = ""
    room_number: str = ""

    @classmethod
    def from_profile(cls, profile: Dict[str, Any]) -> 'CurrentUser':
        """Build from a ``users`` row (``user_type`` student/runner/admin)."""
        user_type = profile.get("user_type") or profile.get("role") or "student"

        return cls(
            id=profile["id"],
            role=USER_TYPE_ROLES.get(user_type) or UserRole(user_type),
            full_name=profile.get("full_name") or "",
            phone=profile.get("phone") or "",
            hall_hostel=profile.get("hall_hostel") or "",
            room_number=profile.get("room_number") or "",
        )


class ClientSession:
    """
    Session controller - owns the components for one signed-in user.

    Requesters get a cart, a checkout coordinator, the checkout form
    cache and a sync loop over their own orders. Fulfillers get the
    active and available sync loops and a fulfillment driver whose
    confirmed results feed both loops. Everyone gets catalog lookup.
    """

    def __init__(
        self,
        user: CurrentUser,
        backend,
        form_cache: Optional[CheckoutFormCache] = None,
        payment_handler: Optional[PaymentHandler] = None,
        config=None
    ):
        if config is None:
            from config import get_config
            config = get_config()

        self.user = user
        self.backend = backend
        self.config = config
        self.session_id = str(uuid.uuid4())

        self.catalog = CatalogRepository(backend)

        self.cart: Optional[CartStore] = None
        self.checkout: Optional[CheckoutCoordinator] = None
        self.form_cache: Optional[CheckoutFormCache] = None
        self.order_sync: Optional[OrderSyncLoop] = None

        self.active_sync: Optional[OrderSyncLoop] = None
        self.available_sync: Optional[OrderSyncLoop] = None
        self.fulfillment: Optional[FulfillmentDriver] = None

        # Single-order loops opened by track_order, keyed by order id
        self._tracked: Dict[str, OrderSyncLoop] = {}

        if user.role == UserRole.REQUESTER:
            self._build_requester(form_cache, payment_handler)
        elif user.role == UserRole.FULFILLER:
            self._build_fulfiller()

        self._started = False
        self._closed = False

        logger.info(
            "session_created",
            session_id=self.session_id,
            user_id=user.id,
            role=user.role.value
        )

    # ========================================================================
    # BUILD
    # ========================================================================

    def _build_requester(self, form_cache, payment_handler):
        self.form_cache = form_cache or CheckoutFormCache(self.config.checkout.cache_path)

        form = self.form_cache.load()
        payment_method = (form or {}).get("payment_method") or "cash"

        self.cart = CartStore(
            cart_id=f"cart_{self.user.id}",
            policy=policy_for_payment_method(payment_method, self.config.pricing),
            cart_config=self.config.cart,
            persister=self._persist_cart,
        )

        self.checkout = CheckoutCoordinator(
            self.backend,
            form_cache=self.form_cache,
            pricing_config=self.config.pricing,
            checkout_config=self.config.checkout,
            payment_handler=payment_handler,
        )

        self.order_sync = OrderSyncLoop(
            self.backend,
            self.user.id,
            SyncScope.REQUESTER,
            sync_config=self.config.sync,
        )

        if form is None:
            self._prefill_form()

    def _build_fulfiller(self):
        self.active_sync = OrderSyncLoop(
            self.backend,
            self.user.id,
            SyncScope.FULFILLER_ACTIVE,
            sync_config=self.config.sync,
        )
        self.available_sync = OrderSyncLoop(
            self.backend,
            self.user.id,
            SyncScope.AVAILABLE,
            sync_config=self.config.sync,
        )
        self.fulfillment = FulfillmentDriver(
            self.backend,
            listeners=[self.active_sync.apply_local, self.available_sync.apply_local],
        )

    def _prefill_form(self):
        """Seed an empty form cache from the user's profile."""
        profile_fields = {
            "hall_hostel": self.user.hall_hostel,
            "room_number": self.user.room_number,
            "phone": self.user.phone,
        }
        if not any(profile_fields.values()):
            return

        self.form_cache.update(**profile_fields)
        logger.debug("checkout_form_prefilled", user_id=self.user.id)

    async def _persist_cart(self, snapshot: CartSnapshot):
        # Queued only; the flush outcome comes back through _cart_saved
        if not self.backend.save_cart(self.user.id, snapshot, on_result=self._cart_saved):
            raise PersistenceError("save_cart", "cart queue full")

    def _cart_saved(self, error: Optional[PersistenceError]):
        if error is not None:
            logger.warning(
                "cart_sync_failed",
                session_id=self.session_id,
                user_id=self.user.id,
                error=str(error)
            )
        self.cart.record_sync_result(error)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Start the sync loops (and, for requesters, the cart flush loop)."""
        if self._started:
            logger.warning("session_already_started", session_id=self.session_id)
            return

        self._started = True

        if self.cart is not None:
            await self.backend.start()

        for loop in self._sync_loops():
            await loop.start()

        logger.info(
            "session_started",
            session_id=self.session_id,
            sync_loops=len(self._sync_loops())
        )

    async def close(self):
        """
        Stop polling and detach the cart.

        Results of calls still in flight are discarded when they land.
        """
        if self._closed:
            return

        self._closed = True

        for loop in self._sync_loops():
            await loop.stop()

        if self.cart is not None:
            # Queue the last edits and write them before detaching
            await self.cart.wait_for_persistence()
            if self._started:
                await self.backend.stop()
            self.cart.close()

        logger.info("session_closed", session_id=self.session_id, user_id=self.user.id)

    def _sync_loops(self):
        loops = [
            loop for loop in (self.order_sync, self.active_sync, self.available_sync)
            if loop is not None
        ]
        return loops + list(self._tracked.values())

    async def track_order(self, order_id: str) -> OrderSyncLoop:
        """
        Poll a single order (order tracking view).

        The loop is shared per order id and stops with the session.
        """
        if self._closed:
            raise RuntimeError("Session is closed")

        loop = self._tracked.get(order_id)
        if loop is not None:
            return loop

        loop = OrderSyncLoop(
            self.backend,
            order_id,
            SyncScope.ORDER,
            sync_config=self.config.sync,
        )
        self._tracked[order_id] = loop

        if self.fulfillment is not None:
            self.fulfillment.add_listener(loop.apply_local)

        if self._started:
            await loop.start()

        logger.debug("order_tracking_started", session_id=self.session_id, order_id=order_id)
        return loop

    # ========================================================================
    # REQUESTER ACTIONS
    # ========================================================================

    def select_payment_method(self, payment_method: Any):
        """Reprice the cart for a payment method and remember the choice."""
        self._require_requester()

        policy = policy_for_payment_method(payment_method, self.config.pricing)
        self.cart.set_fee_policy(policy)
        self.form_cache.update(payment_method=getattr(payment_method, "value", payment_method))

        logger.debug(
            "payment_method_selected",
            session_id=self.session_id,
            policy=policy.name,
            total=str(self.cart.total)
        )

    def saved_delivery_info(self) -> Optional[DeliveryInfo]:
        """Delivery info from the checkout form cache, if any."""
        self._require_requester()

        form = self.form_cache.load()
        return DeliveryInfo.from_form(form) if form else None

    async def submit_checkout(self, delivery_info: DeliveryInfo, payment_method: Any) -> CheckoutResult:
        """Submit the session cart. See CheckoutCoordinator.submit."""
        self._require_requester()

        self.form_cache.save({
            **delivery_info.to_form(),
            "payment_method": getattr(payment_method, "value", payment_method),
        })

        result = await self.checkout.submit(
            self.cart,
            delivery_info,
            payment_method,
            requester_id=self.user.id,
            customer_name=self.user.full_name,
        )

        if self.order_sync is not None:
            self.order_sync.apply_local(result.order)

        return result

    def _require_requester(self):
        if self.cart is None:
            raise PermissionError(f"{self.user.role.value} sessions have no cart")

    def get_status(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user.id,
            "role": self.user.role.value,
            "started": self._started,
            "closed": self._closed,
            "cart": self.cart.to_dict() if self.cart is not None else None,
            "sync": [loop.get_stats() for loop in self._sync_loops()],
        }
