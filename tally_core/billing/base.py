"""
Billing Base Types

Core types, collaborator interfaces and errors for the billing engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union


Number = Union[int, float, Decimal]


class PriceType(str, Enum):
    """Price component types."""
    FLAT = "flat"
    USAGE = "usage"


class PlanStrategy(str, Enum):
    """Pricing strategies a plan can be evaluated with."""
    FLAT = "flat"
    USAGE = "usage"
    HYBRID = "hybrid"
    TIERED = "tiered"
    SEAT = "seat"
    PREPAID = "prepaid"


class BillingInterval(str, Enum):
    """Recurring billing intervals."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class UsageWindow(str, Enum):
    """Calendar buckets for usage limits and aggregation."""
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"


class AggregationType(str, Enum):
    """Usage aggregation functions."""
    SUM = "sum"
    COUNT = "count"
    MAX = "max"


class InvoiceStatus(str, Enum):
    """Invoice status states."""
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


def to_decimal(value: Optional[Number]) -> Decimal:
    """Convert a number to Decimal (floats via str to avoid binary artifacts)."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_minor(value: Decimal) -> int:
    """Round to an integer minor unit, halves toward positive infinity."""
    return int((value + Decimal("0.5")).to_integral_value(rounding=ROUND_FLOOR))


def utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Money:
    """Amount in integer minor units of a currency."""

    amount: int
    currency: str


@dataclass(frozen=True)
class PriceTier:
    """One band of a tiered price.

    `up_to` is the capacity of this band, not a cumulative threshold.
    """

    up_to: Number
    unit_amount: int


@dataclass
class Price:
    """Price component of a plan."""

    id: str
    type: PriceType
    currency: str
    unit_amount: int
    billing_interval: Optional[BillingInterval] = None
    metric: Optional[str] = None
    tiers: Optional[List[PriceTier]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def interval_label(self) -> str:
        if self.billing_interval is None:
            return "one-time"
        return BillingInterval(self.billing_interval).value


@dataclass
class Plan:
    """Pricing plan definition."""

    id: str
    name: str
    currency: str
    pricing: List[Price]
    strategy: PlanStrategy
    seats_included: Optional[int] = None
    base_price_id: Optional[str] = None
    product_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def find_price(self, price_type: PriceType) -> Optional[Price]:
        """Get the first price of a given type."""
        for price in self.pricing:
            if price.type == price_type:
                return price
        return None

    def prices_of(self, price_type: PriceType) -> List[Price]:
        """Get all prices of a given type."""
        return [p for p in self.pricing if p.type == price_type]


@dataclass
class UsageRecord:
    """Billable usage reported against a subscription."""

    id: str
    customer_id: str
    subscription_id: str
    metric: str
    quantity: Number
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UsageEvent:
    """Metering-layer usage event. Immutable once stored."""

    id: str
    customer_id: str
    metric_key: str
    quantity: Number
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UsagePolicy:
    """Usage limit for a customer and metric over a calendar window."""

    id: str
    customer_id: str
    metric_key: str
    limit: Number
    window: UsageWindow
    reset_anchor: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UsageLimitPolicy:
    """Cumulative usage ceilings enforced at ingestion time."""

    metric: str
    max_per_period: Optional[Number] = None
    max_total: Optional[Number] = None

    @classmethod
    def from_plan(cls, plan: Plan, metric: str) -> Optional["UsageLimitPolicy"]:
        """Derive a per-period policy from `plan.metadata["usageLimits"]`."""
        limits = (plan.metadata or {}).get("usageLimits") or {}
        limit = limits.get(metric)
        if limit is None:
            return None
        return cls(metric=metric, max_per_period=limit)


@dataclass(frozen=True)
class InvoiceItem:
    """Invoice line produced by a charge computation."""

    description: str
    amount: int
    currency: str
    quantity: Optional[Number] = None


@dataclass(frozen=True)
class ChargeResult:
    """Output of a pricing strategy."""

    total: Money
    items: List[InvoiceItem]


@dataclass(frozen=True)
class ProrationResult:
    """Credit/debit for a mid-cycle change."""

    credit: int
    debit: int
    net: int
    fraction: float


@dataclass
class Invoice:
    """Invoice assembled from computed line items."""

    id: str
    customer_id: str
    currency: str
    items: List[InvoiceItem]
    total: int
    status: InvoiceStatus
    issued_at: datetime
    subscription_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UsageRecordResult:
    """Outcome of recording a usage event."""

    id: str
    success: bool = True
    duplicate: bool = False


@dataclass(frozen=True)
class UsagePeriodTotal:
    """Aggregate for one window bucket."""

    period_start: datetime
    period_end: datetime
    total: Number


@dataclass(frozen=True)
class UsageAggregate:
    """Aggregated usage for a query."""

    total: Number
    aggregation: AggregationType = AggregationType.SUM
    periods: Optional[List[UsagePeriodTotal]] = None


@dataclass(frozen=True)
class UsageLimitResult:
    """Current usage against a policy."""

    allowed: bool
    remaining: Number
    usage: Number
    policy: Optional[UsagePolicy] = None


@dataclass(frozen=True)
class UsagePolicyCheck:
    """Outcome of validating an attempted quantity against a limit policy."""

    allowed: bool
    current_quantity: Number
    attempted_quantity: Number
    reason: Optional[str] = None
    limit: Optional[Number] = None


@dataclass
class Entitlement:
    """Feature entitlement granted to a customer."""

    feature_key: str
    limit: Optional[Number] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EntitlementCheckResult:
    """Entitlement lookup result."""

    granted: bool
    limit: Optional[Number] = None
    entitlement: Optional[Entitlement] = None


@dataclass(frozen=True)
class FeatureContext:
    """Context passed to feature flag evaluation."""

    customer_id: str
    plan_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


# Abstract interfaces

class BillingStorage(ABC):
    """Abstract storage for usage records and entitlements."""

    @abstractmethod
    async def save_usage_record(self, record: UsageRecord) -> None:
        """Persist a usage record."""
        pass

    @abstractmethod
    async def list_usage(
        self,
        customer_id: str,
        metric: Optional[str] = None,
    ) -> List[UsageRecord]:
        """List usage records for a customer, optionally for one metric."""
        pass

    @abstractmethod
    async def save_entitlements(
        self,
        customer_id: str,
        entitlements: List[Entitlement],
    ) -> None:
        """Replace a customer's entitlements."""
        pass

    @abstractmethod
    async def get_entitlements(self, customer_id: str) -> List[Entitlement]:
        """Get a customer's entitlements."""
        pass


class UsageStorageAdapter(ABC):
    """Abstract persistence for metering events and policies."""

    @abstractmethod
    async def get_events(self, key: str) -> List[UsageEvent]:
        """Get all events stored under a customer+metric key."""
        pass

    @abstractmethod
    async def add_event(
        self,
        key: str,
        event: UsageEvent,
        idempotency_key: Optional[str] = None,
    ) -> "AddEventResult":
        """Store an event unless the idempotency key was seen within the TTL."""
        pass

    @abstractmethod
    async def get_policy(self, key: str) -> Optional[UsagePolicy]:
        """Get the policy for a customer+metric key."""
        pass

    @abstractmethod
    async def set_policy(self, key: str, policy: UsagePolicy) -> None:
        """Set the policy for a customer+metric key."""
        pass


@dataclass(frozen=True)
class AddEventResult:
    """Result of a storage write; `event_id` names the stored or original event."""

    inserted: bool
    event_id: str


class CurrencyRateProvider(ABC):
    """Source of exchange rates (target major units per source major unit)."""

    @abstractmethod
    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Get the rate for a currency pair."""
        pass


class FeatureFlagProvider(ABC):
    """Feature flag lookup."""

    @abstractmethod
    async def is_enabled(self, flag_key: str, context: FeatureContext) -> bool:
        """Check whether a flag is enabled for a context."""
        pass


# Billing errors

class BillingError(Exception):
    """Base billing error."""

    def __init__(self, message: str, code: str = "billing_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class ConfigurationError(BillingError):
    """Plan or service configuration cannot be evaluated."""

    def __init__(self, message: str, code: str = "configuration_error"):
        super().__init__(message, code)


class MissingPriceError(ConfigurationError):
    """A required price component is missing from a plan."""

    def __init__(self, message: str, plan_id: Optional[str] = None):
        self.plan_id = plan_id
        super().__init__(message, "missing_price")


class CurrencyMismatchError(ConfigurationError):
    """Components that must share a currency do not."""

    def __init__(self, expected: str, actual: str, message: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        super().__init__(
            message or f"Currency mismatch: {expected} != {actual}",
            "currency_mismatch",
        )


class UnsupportedStrategyError(ConfigurationError):
    """No evaluator is registered for a plan strategy."""

    def __init__(self, strategy: str):
        self.strategy = strategy
        super().__init__(f"Unsupported pricing strategy: {strategy}", "unsupported_strategy")


class UnsupportedCurrencyError(ConfigurationError):
    """Currency has no known minor-unit scale."""

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Unsupported currency: {currency}", "unsupported_currency")


class ConversionError(BillingError):
    """Currency conversion failure."""

    def __init__(self, message: str, code: str = "conversion_error"):
        super().__init__(message, code)


class NoRateAvailableError(ConversionError):
    """Neither the cache nor a provider can supply a rate."""

    def __init__(self, from_currency: str, to_currency: str, message: Optional[str] = None):
        self.from_currency = from_currency
        self.to_currency = to_currency
        super().__init__(
            message or f"No rate for {from_currency}_{to_currency} and no provider configured",
            "no_rate_available",
        )


class RateFetchError(ConversionError):
    """A rate provider failed after exhausting retries."""

    def __init__(self, message: str):
        super().__init__(message, "rate_fetch_failed")


class UsageRejectedError(BillingError):
    """Usage was rejected by a policy gate. Expected and recoverable."""

    def __init__(self, message: str, reason: str):
        self.reason = reason
        super().__init__(message, "usage_rejected")


class FeatureFlagDisabledError(UsageRejectedError):
    """Feature flag gating the usage is disabled."""

    def __init__(self, flag_key: str, customer_id: str):
        self.flag_key = flag_key
        self.customer_id = customer_id
        super().__init__(
            f"Usage rejected: feature flag '{flag_key}' disabled",
            "feature_flag_disabled",
        )


class EntitlementMissingError(UsageRejectedError):
    """Customer lacks the entitlement required to record usage."""

    def __init__(self, entitlement_key: str, customer_id: str):
        self.entitlement_key = entitlement_key
        self.customer_id = customer_id
        super().__init__(
            f"Usage rejected: entitlement '{entitlement_key}' not granted",
            "entitlement_missing",
        )


class UsageLimitExceededError(UsageRejectedError):
    """Usage limit exceeded."""

    def __init__(self, check: UsagePolicyCheck, metric: str):
        self.metric = metric
        self.limit = check.limit
        self.current = check.current_quantity
        self.attempted = check.attempted_quantity
        super().__init__(
            f"Usage rejected: {check.reason} for {metric}: "
            f"{check.current_quantity} + {check.attempted_quantity} > {check.limit}",
            check.reason or "limit_exceeded",
        )
