"""Shared pytest fixtures for testing."""

import os
from datetime import datetime, timezone
from uuid import uuid4

import pytest

# Set test environment
os.environ["ENVIRONMENT"] = "development"


# =============================================================================
# Test Data Fixtures
# =============================================================================


@pytest.fixture
def customer_id() -> str:
    """Generate a test customer ID."""
    return f"cus_{uuid4().hex}"


@pytest.fixture
def subscription_id() -> str:
    """Generate a test subscription ID."""
    return f"sub_{uuid4().hex}"


@pytest.fixture
def billing_period():
    """A 30-day billing period."""
    return (
        datetime(2024, 1, 1, tzinfo=timezone.utc),
        datetime(2024, 1, 31, tzinfo=timezone.utc),
    )


@pytest.fixture
def make_usage(customer_id: str, subscription_id: str):
    """Factory for usage records."""
    from tally_core.billing.base import UsageRecord

    def _make(quantity, metric="api_calls", timestamp=None, customer=None):
        return UsageRecord(
            id=f"ur_{uuid4().hex[:12]}",
            customer_id=customer or customer_id,
            subscription_id=subscription_id,
            metric=metric,
            quantity=quantity,
            timestamp=timestamp or datetime(2024, 1, 15, tzinfo=timezone.utc),
        )

    return _make


@pytest.fixture
def flat_price():
    """Monthly flat price of $100."""
    from tally_core.billing.base import BillingInterval, Price, PriceType

    return Price(
        id="price_base",
        type=PriceType.FLAT,
        currency="USD",
        unit_amount=10000,
        billing_interval=BillingInterval.MONTH,
    )


@pytest.fixture
def usage_price():
    """Usage price of $2 per API call."""
    from tally_core.billing.base import Price, PriceType

    return Price(
        id="price_api",
        type=PriceType.USAGE,
        currency="USD",
        unit_amount=200,
        metric="api_calls",
    )


@pytest.fixture
def hybrid_plan(flat_price, usage_price):
    """Base fee plus metered API calls."""
    from tally_core.billing.base import Plan, PlanStrategy

    return Plan(
        id="plan_hybrid",
        name="Growth",
        currency="USD",
        pricing=[flat_price, usage_price],
        strategy=PlanStrategy.HYBRID,
    )


@pytest.fixture
def tiered_plan():
    """Tiered usage plan: first 100 at $1, next 900 at $0.75."""
    from tally_core.billing.base import Plan, PlanStrategy, Price, PriceTier, PriceType

    return Plan(
        id="plan_tiered",
        name="Scale",
        currency="USD",
        pricing=[
            Price(
                id="price_tiered",
                type=PriceType.USAGE,
                currency="USD",
                unit_amount=100,
                metric="api_calls",
                tiers=[PriceTier(up_to=100, unit_amount=100), PriceTier(up_to=900, unit_amount=75)],
            )
        ],
        strategy=PlanStrategy.TIERED,
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Controllable clock for TTL tests."""
    return FakeClock()
