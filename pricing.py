"""
Pricing Module
==============
Pure price derivation for carts and order submissions.

Rules:
- subtotal = sum(quantity * unit price equivalent)
- service fee = subtotal * rate, rounded half-up to cents
- delivery fee = flat per-order constant
- total = subtotal + delivery fee + service fee

Always recomputed from scratch. No incremental updates.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from prometheus_client import Counter


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

pricing_calculations = Counter(
    'pricing_calculations_total',
    'Price breakdown computations',
    ['policy']
)


# ============================================================================
# MONEY
# ============================================================================

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Payment methods that carry the electronic processing surcharge
ELECTRONIC_METHODS = frozenset({"momo", "card"})


def to_money(value: Any) -> Decimal:
    """
    Normalize a money value to a cent-quantized Decimal.

    Floats go through str() so 0.1 stays 0.10 instead of its binary
    expansion.

    Raises:
        ValueError: If value is not numeric
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Invalid money value: {value!r}")

    if isinstance(value, float):
        value = str(value)

    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Invalid money value: {value!r}")

    if not amount.is_finite():
        raise ValueError(f"Invalid money value: {value!r}")

    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


# ============================================================================
# FEE POLICY
# ============================================================================

@dataclass(frozen=True)
class FeePolicy:
    """Per-order fee policy: flat delivery fee plus a service fee rate."""
    delivery_fee: Decimal
    service_fee_rate: Decimal
    name: str = "default"

    def __post_init__(self):
        object.__setattr__(self, "delivery_fee", to_money(self.delivery_fee))
        object.__setattr__(self, "service_fee_rate", Decimal(str(self.service_fee_rate)))

        if self.delivery_fee < 0:
            raise ValueError(f"Delivery fee cannot be negative: {self.delivery_fee}")
        if self.service_fee_rate < 0:
            raise ValueError(f"Service fee rate cannot be negative: {self.service_fee_rate}")


def default_policy(pricing_config=None) -> FeePolicy:
    """Base (cash) fee policy from configuration."""
    if pricing_config is None:
        from config import get_config
        pricing_config = get_config().pricing

    return FeePolicy(
        delivery_fee=pricing_config.delivery_fee,
        service_fee_rate=pricing_config.service_fee_rate,
        name="cash",
    )


def policy_for_payment_method(method: Any, pricing_config=None) -> FeePolicy:
    """
    Fee policy for a payment method.

    Cash pays the base service fee; electronic methods (momo, card) pay
    the processing fee on top of it.

    Args:
        method: PaymentMethod or its string value
        pricing_config: PricingConfig (defaults to global config)

    Returns:
        FeePolicy for the method
    """
    if pricing_config is None:
        from config import get_config
        pricing_config = get_config().pricing

    method_value = getattr(method, "value", method)
    method_value = str(method_value).lower()

    rate = pricing_config.service_fee_rate
    if method_value in ELECTRONIC_METHODS:
        rate = rate + pricing_config.processing_fee_rate

    return FeePolicy(
        delivery_fee=pricing_config.delivery_fee,
        service_fee_rate=rate,
        name=method_value,
    )


# ============================================================================
# PRICE BREAKDOWN
# ============================================================================

@dataclass(frozen=True)
class PriceBreakdown:
    """Derived monetary fields of a cart or order."""
    subtotal: Decimal
    delivery_fee: Decimal
    service_fee: Decimal
    total: Decimal

    def to_dict(self) -> Dict[str, str]:
        """Serialize amounts as strings (no float drift)."""
        return {
            "subtotal": str(self.subtotal),
            "delivery_fee": str(self.delivery_fee),
            "service_fee": str(self.service_fee),
            "total": str(self.total),
        }


def line_total(unit_price: Decimal, quantity: int) -> Decimal:
    """Line total, exact in cents."""
    return (to_money(unit_price) * quantity).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_totals(items: Iterable[Any], policy: FeePolicy) -> PriceBreakdown:
    """
    Derive subtotal, delivery fee, service fee, and total.

    Items only need ``quantity`` and ``unit_price_equivalent``. Custom
    items contribute their budget as if it were the price.

    Args:
        items: Line items (cart or order)
        policy: Fee policy to apply

    Returns:
        PriceBreakdown
    """
    subtotal = ZERO
    for item in items:
        subtotal += line_total(item.unit_price_equivalent, item.quantity)

    service_fee = (subtotal * policy.service_fee_rate).quantize(
        CENT,
        rounding=ROUND_HALF_UP
    )
    delivery_fee = policy.delivery_fee
    total = subtotal + delivery_fee + service_fee

    pricing_calculations.labels(policy=policy.name).inc()

    return PriceBreakdown(
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        service_fee=service_fee,
        total=total,
    )


def verify_breakdown(items: Iterable[Any], breakdown: PriceBreakdown) -> Optional[str]:
    """
    Check a breakdown against its items.

    Returns:
        Mismatch description, or None if consistent
    """
    expected_subtotal = sum(
        (line_total(item.unit_price_equivalent, item.quantity) for item in items),
        ZERO
    )

    if breakdown.subtotal != expected_subtotal:
        return f"Subtotal mismatch: {breakdown.subtotal} != {expected_subtotal}"

    expected_total = breakdown.subtotal + breakdown.delivery_fee + breakdown.service_fee
    if breakdown.total != expected_total:
        return f"Total mismatch: {breakdown.total} != {expected_total}"

    return None
