"""
Tiered quantity allocation shared by the usage-based strategies.
"""

from decimal import Decimal
from typing import Sequence

from .base import Number, PriceTier, round_minor, to_decimal


def allocate_tiers(quantity: Number, tiers: Sequence[PriceTier]) -> int:
    """
    Charge a quantity across ordered tiers.

    Each tier absorbs up to `tier.up_to` units at its own rate. Units left
    over after the last tier are billed at the last tier's rate.

    Returns:
        Amount in minor units
    """
    remaining = max(Decimal("0"), to_decimal(quantity))
    if not tiers or remaining == 0:
        return 0

    total = Decimal("0")
    for tier in tiers:
        in_tier = min(remaining, max(Decimal("0"), to_decimal(tier.up_to)))
        total += in_tier * tier.unit_amount
        remaining -= in_tier
        if remaining <= 0:
            break

    if remaining > 0:
        total += remaining * tiers[-1].unit_amount

    return round_minor(total)
