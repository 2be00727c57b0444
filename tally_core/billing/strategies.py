"""
Pricing Strategies

Charge evaluators for each plan strategy, the registry that selects them, and
hybrid pricing with per-component currency conversion.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from .base import (
    ChargeResult,
    ConfigurationError,
    CurrencyMismatchError,
    InvoiceItem,
    MissingPriceError,
    Money,
    Number,
    Plan,
    PlanStrategy,
    Price,
    PriceType,
    UnsupportedStrategyError,
    UsageRecord,
    round_minor,
    to_decimal,
)
from .currency import CurrencyConversionService
from .tiers import allocate_tiers


logger = logging.getLogger(__name__)


def usage_quantity(usage: Optional[Iterable[UsageRecord]], metric: Optional[str] = None) -> Decimal:
    """Sum usage for a metric, counting negative records as zero."""
    total = Decimal("0")
    for record in usage or []:
        if metric is not None and record.metric != metric:
            continue
        total += max(Decimal("0"), to_decimal(record.quantity))
    return total


def usage_amount(price: Price, quantity: Number) -> int:
    """Charge for a quantity under a usage price."""
    if price.tiers:
        return allocate_tiers(quantity, price.tiers)
    return round_minor(to_decimal(quantity) * price.unit_amount)


def _quantity_value(quantity: Decimal) -> Number:
    if quantity == quantity.to_integral_value():
        return int(quantity)
    return quantity


def _require_price(plan: Plan, price_type: PriceType, owner: str) -> Price:
    price = plan.find_price(price_type)
    if price is None:
        raise MissingPriceError(
            f"{owner}: plan '{plan.id}' has no {price_type.value} price",
            plan_id=plan.id,
        )
    return price


def _require_single_price(plan: Plan, price_type: PriceType, owner: str) -> Price:
    prices = plan.prices_of(price_type)
    if not prices:
        raise MissingPriceError(
            f"{owner}: plan '{plan.id}' must include flat and usage prices",
            plan_id=plan.id,
        )
    if len(prices) > 1:
        raise ConfigurationError(
            f"{owner}: plan '{plan.id}' has {len(prices)} {price_type.value} prices, expected one",
            "ambiguous_price",
        )
    return prices[0]


def _usage_description(plan: Plan, price: Price) -> str:
    suffix = f" ({price.metric})" if price.metric else ""
    return f"{plan.name} usage{suffix}"


class PricingStrategy(ABC):
    """Computes the charge for a plan over a billing period."""

    strategy: PlanStrategy

    @abstractmethod
    async def compute_charge(
        self,
        plan: Plan,
        usage: Optional[List[UsageRecord]] = None,
        seats: Optional[int] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> ChargeResult:
        """Compute total and line items."""
        pass


class FlatRateStrategy(PricingStrategy):
    """Charges the flat price once."""

    strategy = PlanStrategy.FLAT

    async def compute_charge(self, plan, usage=None, seats=None, period_start=None, period_end=None):
        price = _require_price(plan, PriceType.FLAT, "FlatRateStrategy")
        item = InvoiceItem(
            description=f"{plan.name} ({price.interval_label})",
            amount=price.unit_amount,
            currency=price.currency,
            quantity=1,
        )
        return ChargeResult(total=Money(item.amount, item.currency), items=[item])


class UsageBasedStrategy(PricingStrategy):
    """Charges metered usage, tiered when the price defines tiers."""

    strategy = PlanStrategy.USAGE

    def _resolve_price(self, plan: Plan) -> Price:
        return _require_price(plan, PriceType.USAGE, type(self).__name__)

    async def compute_charge(self, plan, usage=None, seats=None, period_start=None, period_end=None):
        price = self._resolve_price(plan)
        quantity = usage_quantity(usage, price.metric)
        amount = usage_amount(price, quantity)

        item = InvoiceItem(
            description=_usage_description(plan, price),
            amount=amount,
            currency=price.currency,
            quantity=_quantity_value(quantity),
        )
        return ChargeResult(total=Money(amount, price.currency), items=[item])


class TieredStrategy(UsageBasedStrategy):
    """Usage pricing that requires a tier schedule."""

    strategy = PlanStrategy.TIERED

    def _resolve_price(self, plan: Plan) -> Price:
        price = super()._resolve_price(plan)
        if not price.tiers:
            raise MissingPriceError(
                f"TieredStrategy: usage price '{price.id}' on plan '{plan.id}' has no tiers",
                plan_id=plan.id,
            )
        return price


class HybridStrategy(PricingStrategy):
    """
    Base fee plus metered usage in a single currency.

    Components in different currencies are rejected; use
    HybridPricingService to convert them instead.
    """

    strategy = PlanStrategy.HYBRID

    async def compute_charge(self, plan, usage=None, seats=None, period_start=None, period_end=None):
        base = _require_single_price(plan, PriceType.FLAT, "HybridStrategy")
        variable = _require_single_price(plan, PriceType.USAGE, "HybridStrategy")
        if base.currency != variable.currency:
            raise CurrencyMismatchError(
                base.currency,
                variable.currency,
                "HybridStrategy: base and usage prices must share the same currency",
            )

        quantity = usage_quantity(usage, variable.metric)
        amount = usage_amount(variable, quantity)

        items = [
            InvoiceItem(
                description=f"{plan.name} base ({base.interval_label})",
                amount=base.unit_amount,
                currency=base.currency,
                quantity=1,
            ),
            InvoiceItem(
                description=_usage_description(plan, variable),
                amount=amount,
                currency=variable.currency,
                quantity=_quantity_value(quantity),
            ),
        ]
        return ChargeResult(
            total=Money(base.unit_amount + amount, base.currency),
            items=items,
        )


class SeatStrategy(PricingStrategy):
    """Per-seat pricing; at least one seat is always billed."""

    strategy = PlanStrategy.SEAT

    async def compute_charge(self, plan, usage=None, seats=None, period_start=None, period_end=None):
        price = _require_price(plan, PriceType.FLAT, "SeatStrategy")
        quantity = max(1, int(seats or 0))
        amount = price.unit_amount * quantity

        item = InvoiceItem(
            description=f"{plan.name} seats ({price.interval_label})",
            amount=amount,
            currency=price.currency,
            quantity=quantity,
        )
        return ChargeResult(total=Money(amount, price.currency), items=[item])


class PrepaidStrategy(PricingStrategy):
    """One-time top-up from the plan's flat price."""

    strategy = PlanStrategy.PREPAID

    async def compute_charge(self, plan, usage=None, seats=None, period_start=None, period_end=None):
        price = _require_price(plan, PriceType.FLAT, "PrepaidStrategy")
        item = InvoiceItem(
            description=f"{plan.name} prepaid top-up ({price.interval_label})",
            amount=price.unit_amount,
            currency=price.currency,
            quantity=1,
        )
        return ChargeResult(total=Money(item.amount, item.currency), items=[item])


def default_strategies() -> Dict[PlanStrategy, PricingStrategy]:
    """Get the built-in evaluators keyed by strategy."""
    return {
        s.strategy: s
        for s in (
            FlatRateStrategy(),
            UsageBasedStrategy(),
            TieredStrategy(),
            HybridStrategy(),
            SeatStrategy(),
            PrepaidStrategy(),
        )
    }


class StrategyRegistry:
    """Selects the evaluator for a plan by its strategy."""

    def __init__(self, strategies: Optional[Dict[Union[PlanStrategy, str], PricingStrategy]] = None):
        self._strategies: Dict[str, PricingStrategy] = {}
        for key, strategy in default_strategies().items():
            self.register(key, strategy)
        for key, strategy in (strategies or {}).items():
            self.register(key, strategy)

    @staticmethod
    def _key(strategy: Union[PlanStrategy, str]) -> str:
        return strategy.value if isinstance(strategy, PlanStrategy) else str(strategy)

    def register(self, strategy: Union[PlanStrategy, str], evaluator: PricingStrategy) -> None:
        """Add or replace the evaluator for a strategy."""
        self._strategies[self._key(strategy)] = evaluator

    def get(self, strategy: Union[PlanStrategy, str]) -> PricingStrategy:
        """Get the evaluator for a strategy."""
        evaluator = self._strategies.get(self._key(strategy))
        if evaluator is None:
            raise UnsupportedStrategyError(self._key(strategy))
        return evaluator

    async def compute_charge(
        self,
        plan: Plan,
        usage: Optional[List[UsageRecord]] = None,
        seats: Optional[int] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> ChargeResult:
        """Compute the charge with the evaluator selected by `plan.strategy`."""
        evaluator = self.get(plan.strategy)
        result = await evaluator.compute_charge(
            plan,
            usage=usage,
            seats=seats,
            period_start=period_start,
            period_end=period_end,
        )
        logger.debug(
            f"Computed {self._key(plan.strategy)} charge for plan {plan.id}: "
            f"{result.total.amount} {result.total.currency}"
        )
        return result


class HybridPricingService:
    """Hybrid pricing whose base and usage may be priced in different currencies."""

    def __init__(self, converter: CurrencyConversionService):
        self._converter = converter

    async def compute_charge_with_conversion(
        self,
        plan: Plan,
        usage: Optional[List[UsageRecord]] = None,
        target_currency: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> ChargeResult:
        """
        Compute base and usage independently and convert each into one currency.

        Args:
            plan: Plan with one flat and one usage price
            usage: Usage records for the period
            target_currency: Invoice currency (defaults to the base price currency)

        Returns:
            ChargeResult with both items and the total in the target currency
        """
        base = _require_price(plan, PriceType.FLAT, "HybridPricingService")
        variable = _require_price(plan, PriceType.USAGE, "HybridPricingService")
        target = target_currency or base.currency

        quantity = usage_quantity(usage, variable.metric)
        usage_source = usage_amount(variable, quantity)

        if variable.currency == target:
            usage_target = usage_source
        else:
            usage_target = await self._converter.convert(usage_source, variable.currency, target)

        if base.currency == target:
            base_target = base.unit_amount
        else:
            base_target = await self._converter.convert(base.unit_amount, base.currency, target)

        items = [
            InvoiceItem(
                description=f"{plan.name} base ({base.interval_label})",
                amount=base_target,
                currency=target,
                quantity=1,
            ),
            InvoiceItem(
                description=_usage_description(plan, variable),
                amount=usage_target,
                currency=target,
                quantity=_quantity_value(quantity),
            ),
        ]
        return ChargeResult(total=Money(base_target + usage_target, target), items=items)
