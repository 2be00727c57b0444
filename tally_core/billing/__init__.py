# Billing computation
# Pricing, proration, currency conversion and usage metering

from tally_core.billing.base import (
    AggregationType,
    BillingError,
    BillingInterval,
    BillingStorage,
    ChargeResult,
    ConfigurationError,
    ConversionError,
    CurrencyMismatchError,
    CurrencyRateProvider,
    Entitlement,
    EntitlementMissingError,
    FeatureContext,
    FeatureFlagDisabledError,
    FeatureFlagProvider,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    MissingPriceError,
    Money,
    NoRateAvailableError,
    Plan,
    PlanStrategy,
    Price,
    PriceTier,
    PriceType,
    ProrationResult,
    RateFetchError,
    UnsupportedCurrencyError,
    UnsupportedStrategyError,
    UsageAggregate,
    UsageEvent,
    UsageLimitExceededError,
    UsageLimitPolicy,
    UsageLimitResult,
    UsagePolicy,
    UsageRecord,
    UsageRejectedError,
    UsageStorageAdapter,
    UsageWindow,
)
from tally_core.billing.collaborators import (
    EntitlementChecker,
    EntitlementService,
    InMemoryBillingStorage,
    InMemoryFeatureFlagProvider,
    provider_supports,
)
from tally_core.billing.currency import (
    CoinbaseRateProvider,
    CurrencyConversionService,
)
from tally_core.billing.engine import (
    BillingEngine,
    BillingEngineConfig,
)
from tally_core.billing.proration import ProrationCalculator
from tally_core.billing.strategies import (
    FlatRateStrategy,
    HybridPricingService,
    HybridStrategy,
    PrepaidStrategy,
    PricingStrategy,
    SeatStrategy,
    StrategyRegistry,
    TieredStrategy,
    UsageBasedStrategy,
)
from tally_core.billing.tiers import allocate_tiers
from tally_core.billing.usage import (
    BillingUsageManager,
    InMemoryUsageStorage,
    UsageMeter,
    UsagePolicyService,
    UsageService,
)

__all__ = [
    "AggregationType",
    "BillingEngine",
    "BillingEngineConfig",
    "BillingError",
    "BillingInterval",
    "BillingStorage",
    "BillingUsageManager",
    "ChargeResult",
    "CoinbaseRateProvider",
    "ConfigurationError",
    "ConversionError",
    "CurrencyConversionService",
    "CurrencyMismatchError",
    "CurrencyRateProvider",
    "Entitlement",
    "EntitlementChecker",
    "EntitlementMissingError",
    "EntitlementService",
    "FeatureContext",
    "FeatureFlagDisabledError",
    "FeatureFlagProvider",
    "FlatRateStrategy",
    "HybridPricingService",
    "HybridStrategy",
    "InMemoryBillingStorage",
    "InMemoryFeatureFlagProvider",
    "InMemoryUsageStorage",
    "Invoice",
    "InvoiceItem",
    "InvoiceStatus",
    "MissingPriceError",
    "Money",
    "NoRateAvailableError",
    "Plan",
    "PlanStrategy",
    "PrepaidStrategy",
    "Price",
    "PriceTier",
    "PriceType",
    "PricingStrategy",
    "ProrationCalculator",
    "ProrationResult",
    "RateFetchError",
    "SeatStrategy",
    "StrategyRegistry",
    "TieredStrategy",
    "UnsupportedCurrencyError",
    "UnsupportedStrategyError",
    "UsageAggregate",
    "UsageBasedStrategy",
    "UsageEvent",
    "UsageLimitExceededError",
    "UsageLimitPolicy",
    "UsageLimitResult",
    "UsageMeter",
    "UsagePolicy",
    "UsagePolicyService",
    "UsageRecord",
    "UsageRejectedError",
    "UsageService",
    "UsageStorageAdapter",
    "UsageWindow",
    "allocate_tiers",
    "provider_supports",
]
