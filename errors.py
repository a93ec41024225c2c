"""
Errors Module
=============
Exception taxonomy for the cart and order lifecycle core.

Every error here is recoverable at the UI layer (dialogs, retries).
Nothing raised by this core is fatal to the application.
"""

from typing import Dict, Optional


class MarketplaceError(Exception):
    """Base exception for all cart/order core errors."""
    pass


# ============================================================================
# VALIDATION (user-correctable, never retried automatically)
# ============================================================================

class ValidationError(MarketplaceError):
    """Raised when user-supplied input fails validation."""

    def __init__(self, field_errors: Dict[str, str], message: Optional[str] = None):
        self.field_errors = dict(field_errors)
        if message is None:
            message = "; ".join(
                f"{field}: {error}" for field, error in self.field_errors.items()
            ) or "Validation failed"
        super().__init__(message)


class CartValidationError(ValidationError):
    """Raised when a cart mutation receives invalid input."""
    pass


class CheckoutValidationError(ValidationError):
    """Raised when the cart or delivery info is not ready for checkout."""
    pass


class LineItemNotFoundError(MarketplaceError):
    """Raised when a line item id does not exist in the cart."""

    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__(f"Line item not found: {line_item_id}")


# ============================================================================
# PERSISTENCE (transient, surfaced as a non-fatal flag)
# ============================================================================

class PersistenceError(MarketplaceError):
    """Raised when the order-persistence collaborator fails."""

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation} failed: {reason}")


# ============================================================================
# STATE MACHINE
# ============================================================================

class StateTransitionError(MarketplaceError):
    """Raised when an order status transition is rejected."""

    def __init__(
        self,
        order_id: str,
        current_status: str,
        requested_from: str,
        requested_to: str,
        reason: Optional[str] = None
    ):
        self.order_id = order_id
        self.current_status = current_status
        self.requested_from = requested_from
        self.requested_to = requested_to
        msg = (
            f"Invalid transition for order {order_id}: "
            f"{requested_from} -> {requested_to} (current: {current_status})"
        )
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


# ============================================================================
# CHECKOUT
# ============================================================================

class CheckoutError(MarketplaceError):
    """Raised when checkout fails cleanly (no order was created)."""
    pass


class CheckoutInProgressError(CheckoutError):
    """Raised when a submission is already in flight for the same cart."""

    def __init__(self, cart_id: str):
        self.cart_id = cart_id
        super().__init__(f"Checkout already in progress for cart {cart_id}")


class PartialCheckoutError(CheckoutError):
    """
    Raised when the order header was created but its line items were not.

    Distinct from a clean failure: an order without items now exists in the
    backing store and must be reported to the user (and repaired by
    retrying the item attachment or by an operator).
    """

    def __init__(self, order_id: str, order_number: str, submission, reason: str):
        self.order_id = order_id
        self.order_number = order_number
        self.submission = submission
        self.reason = reason
        super().__init__(
            f"Order {order_number} ({order_id}) was created without items: {reason}"
        )
