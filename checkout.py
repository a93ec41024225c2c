"""
Checkout Coordinator
====================
Turns a cart into a persisted order.

Responsibilities:
- Guard against double submission of the same cart
- Revalidate cart and delivery info (no side effects on failure)
- Freeze the cart into an OrderSubmission
- Two-step persistence: order header, then line items
- Report a header-without-items order distinctly from a clean failure
- After full success, take the submitted rows out of the cart and clear
  the form cache
- Route to payment (electronic) or confirmation (cash)
"""

import asyncio
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog
from prometheus_client import Counter, Histogram

from cart import CartSnapshot, CartStore
from checkout_cache import CheckoutFormCache
from errors import (
    CheckoutError,
    CheckoutInProgressError,
    CheckoutValidationError,
    PartialCheckoutError,
    PersistenceError,
)
from order import (
    Order,
    OrderLineItem,
    OrderSubmission,
    PaymentMethod,
    generate_order_number,
)
from pricing import calculate_totals, policy_for_payment_method

# Structured logging
logger = structlog.get_logger(__name__)


# ============================================================================
# METRICS
# ============================================================================

checkout_attempts = Counter(
    'checkout_attempts_total',
    'Checkout submissions',
    ['result']
)
checkout_item_attach_retries = Counter(
    'checkout_item_attach_retries_total',
    'Retries of the order item attachment step'
)
checkout_order_value = Histogram(
    'checkout_order_value',
    'Submitted order totals',
    buckets=(5, 10, 20, 50, 100, 200, 500, 1000)
)

ITEM_ATTACH_RETRY_DELAY = 0.5  # seconds, multiplied by attempt


# ============================================================================
# DELIVERY INFO
# ============================================================================

@dataclass(frozen=True)
class DeliveryInfo:
    """Checkout form fields."""
    address: str
    hall_hostel: str
    room_number: str
    phone: str
    special_instructions: str = ""

    def full_address(self) -> str:
        """Composed as "address, hall, Room n"."""
        return (
            f"{self.address.strip()}, {self.hall_hostel.strip()}, "
            f"Room {self.room_number.strip()}"
        )

    def to_form(self) -> Dict[str, str]:
        return {
            "address": self.address,
            "hall_hostel": self.hall_hostel,
            "room_number": self.room_number,
            "phone": self.phone,
            "special_instructions": self.special_instructions,
        }

    @classmethod
    def from_form(cls, form: Dict[str, Any]) -> 'DeliveryInfo':
        return cls(
            address=str(form.get("address") or ""),
            hall_hostel=str(form.get("hall_hostel") or ""),
            room_number=str(form.get("room_number") or ""),
            phone=str(form.get("phone") or ""),
            special_instructions=str(form.get("special_instructions") or ""),
        )


def validate_delivery_info(info: DeliveryInfo, phone_pattern: Optional[str] = None) -> Dict[str, str]:
    """
    Field-level validation of delivery info.

    Returns:
        Field name -> message (empty if valid)
    """
    if phone_pattern is None:
        from config import get_config
        phone_pattern = get_config().checkout.phone_pattern

    errors: Dict[str, str] = {}

    if not info.address.strip():
        errors["address"] = "Delivery address is required"

    if not info.hall_hostel.strip():
        errors["hall_hostel"] = "Hall/Hostel is required"

    if not info.room_number.strip():
        errors["room_number"] = "Room number is required"

    if not info.phone.strip():
        errors["phone"] = "Phone number is required"
    elif not re.match(phone_pattern, info.phone.strip()):
        errors["phone"] = "Please enter a valid phone number"

    return errors


# ============================================================================
# RESULTS
# ============================================================================

class NextStep(Enum):
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"


@dataclass(frozen=True)
class PaymentRequest:
    """Hand-off to the payment collaborator."""
    order_id: str
    order_number: str
    amount: Any
    payment_method: PaymentMethod
    customer_name: str
    phone: str


@dataclass(frozen=True)
class CheckoutResult:
    order: Order
    next_step: NextStep
    payment_request: Optional[PaymentRequest] = None
    payment_result: Any = None
    payment_error: Optional[str] = None


PaymentHandler = Callable[[PaymentRequest], Awaitable[Any]]


# ============================================================================
# CHECKOUT COORDINATOR
# ============================================================================

class CheckoutCoordinator:
    """
    Checkout orchestration for one requester session.

    This class does NOT:
    - Render anything
    - Talk to a payment gateway directly (``payment_handler`` does)
    """

    def __init__(
        self,
        backend,
        form_cache: Optional[CheckoutFormCache] = None,
        pricing_config=None,
        checkout_config=None,
        payment_handler: Optional[PaymentHandler] = None
    ):
        if pricing_config is None or checkout_config is None:
            from config import get_config
            config = get_config()
            pricing_config = pricing_config or config.pricing
            checkout_config = checkout_config or config.checkout

        self.backend = backend
        self.form_cache = form_cache
        self.pricing_config = pricing_config
        self.phone_pattern = checkout_config.phone_pattern
        self.item_attach_retries = checkout_config.item_attach_retries
        self.payment_handler = payment_handler

        self._in_flight: Set[str] = set()

    def is_submitting(self, cart: CartStore) -> bool:
        return cart.cart_id in self._in_flight

    # ========================================================================
    # SUBMIT
    # ========================================================================

    async def submit(
        self,
        cart: CartStore,
        delivery_info: DeliveryInfo,
        payment_method: Any,
        requester_id: str,
        customer_name: str = ""
    ) -> CheckoutResult:
        """
        Submit the cart as an order.

        Raises:
            CheckoutInProgressError: Same cart already submitting
            CheckoutValidationError: Cart or delivery info not ready
            CheckoutError: Order header could not be created
            PartialCheckoutError: Header created, items not attached
        """
        if cart.cart_id in self._in_flight:
            checkout_attempts.labels(result='duplicate').inc()
            logger.warning("checkout_duplicate_submit", cart_id=cart.cart_id)
            raise CheckoutInProgressError(cart.cart_id)

        self._in_flight.add(cart.cart_id)
        try:
            snapshot = cart.snapshot()
            submission = self._build_submission(cart, snapshot, delivery_info, payment_method, requester_id)

            log = logger.bind(
                cart_id=cart.cart_id,
                requester_id=requester_id,
                order_number=submission.order_number,
                checksum=submission.checksum[:8],
            )
            log.info(
                "checkout_submitting",
                total=str(submission.breakdown.total),
                payment_method=submission.payment_method.value,
                line_items=len(submission.line_items),
            )

            try:
                created = await self.backend.create_order(submission.to_header_row())
            except PersistenceError as e:
                checkout_attempts.labels(result='failed').inc()
                log.error("checkout_order_create_failed", error=str(e))
                raise CheckoutError(f"Could not create order: {e.reason}") from e

            order_id = created["id"]
            order_number = created.get("order_number") or submission.order_number

            order = await self._attach_items(order_id, order_number, submission)

            checkout_attempts.labels(result='success').inc()
            checkout_order_value.observe(float(submission.breakdown.total))
            log.info("checkout_order_created", order_id=order_id)

            self._clear_local_state(cart, submission, snapshot)

            return await self._route(order, submission, delivery_info, customer_name)

        finally:
            self._in_flight.discard(cart.cart_id)

    async def retry_item_attachment(
        self,
        error: PartialCheckoutError,
        cart: Optional[CartStore] = None,
        delivery_info: Optional[DeliveryInfo] = None,
        customer_name: str = ""
    ) -> CheckoutResult:
        """
        Compensating retry for a partial checkout: attach the items to
        the already-created order, then finish as a normal success.

        Raises:
            CheckoutInProgressError: Retry already running for this order
            PartialCheckoutError: Still failing
        """
        guard_key = f"order:{error.order_id}"
        if guard_key in self._in_flight:
            raise CheckoutInProgressError(guard_key)

        self._in_flight.add(guard_key)
        try:
            logger.info(
                "checkout_item_attach_retry",
                order_id=error.order_id,
                order_number=error.order_number,
            )

            order = await self._attach_items(error.order_id, error.order_number, error.submission)

            checkout_attempts.labels(result='recovered').inc()

            if cart is not None:
                self._clear_local_state(cart, error.submission)
            elif self.form_cache is not None:
                self.form_cache.clear()

            info = delivery_info or DeliveryInfo(
                address=error.submission.delivery_address,
                hall_hostel="",
                room_number="",
                phone=error.submission.phone,
            )
            return await self._route(order, error.submission, info, customer_name)

        finally:
            self._in_flight.discard(guard_key)

    # ========================================================================
    # STEPS
    # ========================================================================

    def _build_submission(
        self,
        cart: CartStore,
        snapshot: CartSnapshot,
        delivery_info: DeliveryInfo,
        payment_method: Any,
        requester_id: str
    ) -> OrderSubmission:
        """Validate and freeze. Raises CheckoutValidationError."""
        errors: Dict[str, str] = {}

        if cart.is_empty:
            errors["cart"] = "Your cart is empty"
        elif not cart.can_checkout():
            errors["delivery_address"] = "Delivery address is required"

        errors.update(validate_delivery_info(delivery_info, self.phone_pattern))

        method = None
        try:
            method = PaymentMethod(getattr(payment_method, "value", payment_method))
        except ValueError:
            errors["payment_method"] = f"Unsupported payment method: {payment_method}"

        if not requester_id:
            errors["requester"] = "You must be signed in to place an order"

        line_items = tuple(OrderLineItem.from_cart_line(item) for item in snapshot.items)

        breakdown = None
        if method is not None:
            policy = policy_for_payment_method(method, self.pricing_config)
            breakdown = calculate_totals(line_items, policy)

            if line_items and breakdown.total < self.pricing_config.min_order_amount:
                errors["total"] = (
                    f"Minimum order amount is {self.pricing_config.currency} "
                    f"{self.pricing_config.min_order_amount}"
                )

        if errors:
            checkout_attempts.labels(result='invalid').inc()
            logger.info(
                "checkout_validation_failed",
                cart_id=cart.cart_id,
                fields=sorted(errors.keys()),
            )
            raise CheckoutValidationError(errors)

        return OrderSubmission(
            requester_id=requester_id,
            order_number=generate_order_number(),
            line_items=line_items,
            breakdown=breakdown,
            delivery_address=delivery_info.full_address(),
            special_instructions=(
                delivery_info.special_instructions.strip()
                or snapshot.special_instructions.strip()
            ),
            payment_method=method,
            phone=delivery_info.phone.strip(),
        )

    async def _attach_items(
        self,
        order_id: str,
        order_number: str,
        submission: OrderSubmission
    ) -> Order:
        """
        Attach line items, retrying a bounded number of times.

        Raises:
            PartialCheckoutError: All attempts failed
        """
        rows = submission.to_item_rows(order_id)
        last_error: Optional[PersistenceError] = None

        for attempt in range(self.item_attach_retries + 1):
            if attempt > 0:
                checkout_item_attach_retries.inc()
                await asyncio.sleep(ITEM_ATTACH_RETRY_DELAY * attempt)

            try:
                created_rows = await self.backend.add_order_items(order_id, rows)
            except PersistenceError as e:
                last_error = e
                logger.warning(
                    "checkout_item_attach_failed",
                    order_id=order_id,
                    attempt=attempt + 1,
                    error=str(e),
                )
                continue

            line_items = tuple(
                replace(line, id=row.get("id") or line.id)
                for line, row in zip(submission.line_items, created_rows or [])
            ) or submission.line_items

            return Order.from_submission(submission, order_id, order_number, line_items)

        checkout_attempts.labels(result='partial').inc()
        logger.error(
            "checkout_partial_order",
            order_id=order_id,
            order_number=order_number,
            attempts=self.item_attach_retries + 1,
            error=str(last_error),
        )
        raise PartialCheckoutError(
            order_id=order_id,
            order_number=order_number,
            submission=submission,
            reason=last_error.reason if last_error else "unknown error",
        )

    def _clear_local_state(
        self,
        cart: CartStore,
        submission: OrderSubmission,
        snapshot: Optional[CartSnapshot] = None
    ):
        # Edits made while the order was in flight stay in the cart
        cart.remove_submitted(
            submission.line_items,
            delivery_address=snapshot.delivery_address if snapshot else None,
            special_instructions=snapshot.special_instructions if snapshot else None,
        )
        if self.form_cache is not None:
            self.form_cache.clear()

    async def _route(
        self,
        order: Order,
        submission: OrderSubmission,
        delivery_info: DeliveryInfo,
        customer_name: str
    ) -> CheckoutResult:
        if not submission.payment_method.is_electronic:
            return CheckoutResult(order=order, next_step=NextStep.CONFIRMATION)

        payment_request = PaymentRequest(
            order_id=order.id,
            order_number=order.order_number,
            amount=submission.breakdown.total,
            payment_method=submission.payment_method,
            customer_name=customer_name,
            phone=delivery_info.phone,
        )

        if self.payment_handler is None:
            return CheckoutResult(order=order, next_step=NextStep.PAYMENT, payment_request=payment_request)

        try:
            payment_result = await self.payment_handler(payment_request)
        except Exception as e:
            # The order exists either way; payment can be retried from the order
            logger.error(
                "checkout_payment_handler_failed",
                order_id=order.id,
                error=str(e),
                exc_info=True,
            )
            return CheckoutResult(
                order=order,
                next_step=NextStep.PAYMENT,
                payment_request=payment_request,
                payment_error=str(e),
            )

        return CheckoutResult(
            order=order,
            next_step=NextStep.PAYMENT,
            payment_request=payment_request,
            payment_result=payment_result,
        )
