"""
Billing Engine

Facade that wires pricing, conversion, proration and usage metering from a
single configuration object.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from .base import (
    BillingStorage,
    ChargeResult,
    CurrencyRateProvider,
    FeatureFlagProvider,
    Invoice,
    Number,
    Plan,
    ProrationResult,
    UsageLimitPolicy,
    UsageRecord,
    UsageStorageAdapter,
    to_decimal,
)
from .collaborators import (
    EntitlementChecker,
    EntitlementService,
    InMemoryBillingStorage,
    InMemoryFeatureFlagProvider,
)
from .currency import CoinbaseRateProvider, CurrencyConversionService
from .proration import ProrationCalculator
from .strategies import HybridPricingService, PricingStrategy, StrategyRegistry
from .usage import (
    BillingUsageManager,
    InMemoryUsageStorage,
    UsageMeter,
    UsagePolicyService,
    UsageService,
)


logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


def _parse_pairs(value: str) -> Dict[str, str]:
    """Parse "a=1,b=2" into a dict."""
    pairs: Dict[str, str] = {}
    for part in value.split(","):
        if not part.strip():
            continue
        key, sep, raw = part.partition("=")
        if not sep:
            raise ValueError(f"Expected key=value, got {part!r}")
        pairs[key.strip()] = raw.strip()
    return pairs


@dataclass
class BillingEngineConfig:
    """Configuration for the billing engine."""

    default_currency: str = "USD"

    # Usage metering; None keeps idempotency keys forever
    idempotency_ttl_seconds: Optional[float] = 24 * 3600.0

    # Currency rates
    rate_cache_ttl_seconds: float = 300.0
    rate_fetch_max_retries: int = 3
    rate_fetch_backoff_seconds: float = 0.2
    initial_rates: Dict[str, Number] = field(default_factory=dict)
    use_http_rate_provider: bool = False
    rate_api_url: Optional[str] = None

    # Feature flags for the default flag provider
    feature_flags: Dict[str, bool] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BillingEngineConfig":
        """
        Build a config from BILLING_* environment variables.

        BILLING_INITIAL_RATES takes "BTC_USD=50000,USDT_USD=1" and
        BILLING_FEATURE_FLAGS takes "metered_api=true,beta=false". An empty
        BILLING_IDEMPOTENCY_TTL_SECONDS disables expiry.
        """
        env = os.environ if environ is None else environ
        config = cls()

        if "BILLING_DEFAULT_CURRENCY" in env:
            config.default_currency = env["BILLING_DEFAULT_CURRENCY"].upper()
        if "BILLING_IDEMPOTENCY_TTL_SECONDS" in env:
            raw = env["BILLING_IDEMPOTENCY_TTL_SECONDS"].strip()
            config.idempotency_ttl_seconds = float(raw) if raw else None
        if "BILLING_RATE_CACHE_TTL_SECONDS" in env:
            config.rate_cache_ttl_seconds = float(env["BILLING_RATE_CACHE_TTL_SECONDS"])
        if "BILLING_RATE_FETCH_MAX_RETRIES" in env:
            config.rate_fetch_max_retries = int(env["BILLING_RATE_FETCH_MAX_RETRIES"])
        if "BILLING_RATE_FETCH_BACKOFF_SECONDS" in env:
            config.rate_fetch_backoff_seconds = float(env["BILLING_RATE_FETCH_BACKOFF_SECONDS"])
        if "BILLING_INITIAL_RATES" in env:
            config.initial_rates = {
                key.upper(): Decimal(value)
                for key, value in _parse_pairs(env["BILLING_INITIAL_RATES"]).items()
            }
        if "BILLING_USE_HTTP_RATE_PROVIDER" in env:
            config.use_http_rate_provider = _parse_bool(env["BILLING_USE_HTTP_RATE_PROVIDER"])
        if env.get("BILLING_RATE_API_URL"):
            config.rate_api_url = env["BILLING_RATE_API_URL"]
        if "BILLING_FEATURE_FLAGS" in env:
            config.feature_flags = {
                key: _parse_bool(value)
                for key, value in _parse_pairs(env["BILLING_FEATURE_FLAGS"]).items()
            }

        return config


class BillingEngine:
    """
    Main entry point for billing computations.

    Orchestrates:
    - Charge computation by plan strategy
    - Hybrid charges with currency conversion
    - Proration of mid-cycle changes
    - Usage metering and gated usage ingestion
    """

    def __init__(
        self,
        config: Optional[BillingEngineConfig] = None,
        storage: Optional[BillingStorage] = None,
        usage_storage: Optional[UsageStorageAdapter] = None,
        rate_provider: Optional[CurrencyRateProvider] = None,
        feature_flags: Optional[FeatureFlagProvider] = None,
        strategies: Optional[Dict[str, PricingStrategy]] = None,
    ):
        """Initialize billing engine."""
        self._config = config or BillingEngineConfig()

        self._storage = storage or InMemoryBillingStorage()
        self._usage_storage = usage_storage or InMemoryUsageStorage(
            idempotency_ttl_seconds=self._config.idempotency_ttl_seconds,
        )

        if rate_provider is None and self._config.use_http_rate_provider:
            rate_provider = CoinbaseRateProvider(
                ttl_seconds=self._config.rate_cache_ttl_seconds,
                max_retries=self._config.rate_fetch_max_retries,
                backoff_seconds=self._config.rate_fetch_backoff_seconds,
                api_url=self._config.rate_api_url,
            )
        self._rate_provider = rate_provider

        self._converter = CurrencyConversionService(
            initial_rates=self._config.initial_rates,
            provider=rate_provider,
        )
        self._registry = StrategyRegistry(strategies)
        self._hybrid = HybridPricingService(self._converter)
        self._proration = ProrationCalculator()

        self._flags = feature_flags or InMemoryFeatureFlagProvider(self._config.feature_flags)
        self._entitlement_checker = EntitlementChecker(self._storage)
        self._entitlements = EntitlementService(self._storage)
        self._usage_meter = UsageMeter(self._usage_storage)
        self._usage_service = UsageService(self._storage)
        self._policies = UsagePolicyService(self._storage)
        self._usage_manager = BillingUsageManager(
            self._storage,
            self._flags,
            self._entitlement_checker,
            self._policies,
        )

        logger.info(
            f"Billing engine initialized (default currency {self._config.default_currency}, "
            f"rate provider {type(rate_provider).__name__ if rate_provider else 'none'})"
        )

    @property
    def config(self) -> BillingEngineConfig:
        return self._config

    @property
    def converter(self) -> CurrencyConversionService:
        return self._converter

    @property
    def strategies(self) -> StrategyRegistry:
        return self._registry

    @property
    def proration(self) -> ProrationCalculator:
        return self._proration

    @property
    def meter(self) -> UsageMeter:
        return self._usage_meter

    @property
    def usage(self) -> UsageService:
        return self._usage_service

    @property
    def entitlements(self) -> EntitlementService:
        return self._entitlements

    @property
    def usage_manager(self) -> BillingUsageManager:
        return self._usage_manager

    async def close(self) -> None:
        """Release the HTTP client of the rate provider, if any."""
        close = getattr(self._rate_provider, "close", None)
        if callable(close):
            await close()

    async def __aenter__(self) -> "BillingEngine":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Pricing
    # =========================================================================

    async def compute_charge(
        self,
        plan: Plan,
        usage: Optional[List[UsageRecord]] = None,
        seats: Optional[int] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> ChargeResult:
        """Compute the charge for a plan using its strategy."""
        return await self._registry.compute_charge(
            plan,
            usage=usage,
            seats=seats,
            period_start=period_start,
            period_end=period_end,
        )

    async def compute_charge_with_conversion(
        self,
        plan: Plan,
        usage: Optional[List[UsageRecord]] = None,
        target_currency: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> ChargeResult:
        """
        Compute a hybrid charge converted into one currency.

        Without a target the base price currency is used, so plans priced in a
        single currency need no rate.
        """
        return await self._hybrid.compute_charge_with_conversion(
            plan,
            usage=usage,
            target_currency=target_currency,
            period_start=period_start,
            period_end=period_end,
        )

    async def convert(self, amount_minor: Number, from_currency: str, to_currency: str) -> int:
        """Convert a minor-unit amount between currencies."""
        return await self._converter.convert(amount_minor, from_currency, to_currency)

    # =========================================================================
    # Proration
    # =========================================================================

    def prorate(
        self,
        old_amount: Number,
        new_amount: Number,
        period_start: datetime,
        period_end: datetime,
        change_date: datetime,
    ) -> ProrationResult:
        """Prorate a mid-cycle amount change."""
        return self._proration.calculate(old_amount, new_amount, period_start, period_end, change_date)

    def proration_invoice(
        self,
        old_plan: Plan,
        new_plan: Plan,
        period_start: datetime,
        period_end: datetime,
        change_date: datetime,
        customer_id: str,
        seats: Optional[int] = None,
        subscription_id: Optional[str] = None,
    ) -> Invoice:
        """Build the proration invoice for a plan change."""
        return self._proration.generate_invoice_from_plans(
            old_plan,
            new_plan,
            period_start,
            period_end,
            change_date,
            customer_id,
            seats=seats,
            subscription_id=subscription_id,
        )

    # =========================================================================
    # Usage
    # =========================================================================

    async def record_usage(
        self,
        record: UsageRecord,
        provider: Optional[Any] = None,
        feature_flag_key: Optional[str] = None,
        entitlement_key: Optional[str] = None,
        policy: Optional[UsageLimitPolicy] = None,
        plan: Optional[Plan] = None,
        period_start: Optional[datetime] = None,
    ) -> None:
        """
        Record gated usage.

        The limit policy is taken from `plan.metadata["usageLimits"]` when a
        plan is given and no explicit policy is. `period_start` bounds the
        records counted toward `max_per_period`.
        """
        if policy is None and plan is not None:
            policy = UsageLimitPolicy.from_plan(plan, record.metric)

        await self._usage_manager.record_usage(
            record,
            provider=provider,
            feature_flag_key=feature_flag_key,
            entitlement_key=entitlement_key,
            policy=policy,
            period_start=period_start,
        )

    async def usage_total(self, customer_id: str, metric: Optional[str] = None) -> Decimal:
        """Sum of recorded (clamped) usage for a customer."""
        records = await self._usage_service.list_usage(customer_id, metric)
        return sum((max(Decimal("0"), to_decimal(r.quantity)) for r in records), Decimal("0"))
