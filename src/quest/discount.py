"""Discount aggregation.

Pure functions over a purchase's incentive results. No I/O; always recompute
from the full result set rather than patching a running total.
"""

from typing import Iterable

from src.models import MAX_DISCOUNT_BPS, IncentiveResult, Money, Purchase

TERMINAL_STATUSES = frozenset({"verified", "rejected"})


def total_discount_bps(results: Iterable[IncentiveResult]) -> int:
    """Sum of basis points for all verified incentives, capped at 100%."""
    total = sum(result.discount_bps for result in results if result.status == "verified")
    return min(total, MAX_DISCOUNT_BPS)


def apply_discount(base_price: Money, discount_bps: int) -> Money:
    """Net price after a discount, rounding the discount half-up to a minor unit."""
    bps = max(0, min(discount_bps, MAX_DISCOUNT_BPS))
    discount = (base_price.amount * bps + MAX_DISCOUNT_BPS // 2) // MAX_DISCOUNT_BPS
    return Money(amount=max(base_price.amount - discount, 0), currency=base_price.currency)


def net_price(purchase: Purchase) -> Money:
    """Net price after applying all verified discounts."""
    return apply_discount(purchase.base_price, total_discount_bps(purchase.incentives))


def all_incentives_resolved(purchase: Purchase) -> bool:
    """True when every claimed incentive has reached a terminal state."""
    return all(result.status in TERMINAL_STATUSES for result in purchase.incentives)
