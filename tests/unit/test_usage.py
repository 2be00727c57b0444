"""Unit tests for usage metering."""

import pytest
from datetime import datetime, timezone
from decimal import Decimal


def at(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestInMemoryUsageStorage:
    """Tests for the idempotency index."""

    @pytest.mark.asyncio
    async def test_duplicate_key_not_stored(self, clock):
        """Test that a repeated idempotency key stores one event."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        meter = UsageMeter(InMemoryUsageStorage(clock=clock))

        first = await meter.record_usage("cus_1", "api_calls", 5, idempotency_key="req-1")
        second = await meter.record_usage("cus_1", "api_calls", 5, idempotency_key="req-1")

        assert first.duplicate is False
        assert second.duplicate is True
        assert second.id == first.id
        assert len(await meter.get_usage("cus_1", "api_calls")) == 1

    @pytest.mark.asyncio
    async def test_without_key_both_stored(self, clock):
        """Test that records without a key are never deduplicated."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        meter = UsageMeter(InMemoryUsageStorage(clock=clock))

        await meter.record_usage("cus_1", "api_calls", 5)
        await meter.record_usage("cus_1", "api_calls", 5)

        assert len(await meter.get_usage("cus_1", "api_calls")) == 2

    @pytest.mark.asyncio
    async def test_key_scoped_to_customer_and_metric(self, clock):
        """Test that the same key under another metric is a new event."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        meter = UsageMeter(InMemoryUsageStorage(clock=clock))

        await meter.record_usage("cus_1", "api_calls", 1, idempotency_key="req-1")
        result = await meter.record_usage("cus_1", "storage_gb", 1, idempotency_key="req-1")
        other = await meter.record_usage("cus_2", "api_calls", 1, idempotency_key="req-1")

        assert result.duplicate is False
        assert other.duplicate is False

    @pytest.mark.asyncio
    async def test_key_expires_after_ttl(self, clock):
        """Test that an expired key can be reused."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        storage = InMemoryUsageStorage(idempotency_ttl_seconds=60, clock=clock)
        meter = UsageMeter(storage)

        await meter.record_usage("cus_1", "api_calls", 1, idempotency_key="req-1")
        clock.advance(30)
        assert (await meter.record_usage("cus_1", "api_calls", 1, idempotency_key="req-1")).duplicate is True

        clock.advance(31)
        assert (await meter.record_usage("cus_1", "api_calls", 1, idempotency_key="req-1")).duplicate is False
        assert len(await meter.get_usage("cus_1", "api_calls")) == 2

    @pytest.mark.asyncio
    async def test_zero_ttl_expires_immediately(self, clock):
        """Test that a zero TTL only deduplicates within the same instant."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        storage = InMemoryUsageStorage(idempotency_ttl_seconds=0, clock=clock)
        meter = UsageMeter(storage)

        await meter.record_usage("cus_1", "api_calls", 1, idempotency_key="req-1")
        assert (await meter.record_usage("cus_1", "api_calls", 1, idempotency_key="req-1")).duplicate is True

        clock.advance(1)
        assert (await meter.record_usage("cus_1", "api_calls", 1, idempotency_key="req-1")).duplicate is False
        assert storage.idempotency_entries == 1

    def test_negative_ttl_rejected(self):
        """Test that a negative TTL is rejected."""
        from tally_core.billing.usage import InMemoryUsageStorage

        with pytest.raises(ValueError):
            InMemoryUsageStorage(idempotency_ttl_seconds=-1)

    @pytest.mark.asyncio
    async def test_expired_entries_evicted_on_write(self, clock):
        """Test that writes drop expired idempotency entries."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        storage = InMemoryUsageStorage(idempotency_ttl_seconds=10, clock=clock)
        meter = UsageMeter(storage)

        for i in range(5):
            await meter.record_usage("cus_1", "api_calls", 1, idempotency_key=f"req-{i}")
        assert storage.idempotency_entries == 5

        clock.advance(11)
        await meter.record_usage("cus_1", "api_calls", 1, idempotency_key="req-new")

        assert storage.idempotency_entries == 1


class TestUsageMeter:
    """Tests for recording and querying usage."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [None, "5", True])
    async def test_rejects_non_numeric_quantity(self, quantity):
        """Test quantity validation."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        with pytest.raises(ValueError):
            await UsageMeter(InMemoryUsageStorage()).record_usage("cus_1", "api_calls", quantity)

    @pytest.mark.asyncio
    async def test_requires_customer_and_metric(self):
        """Test identifier validation."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        meter = UsageMeter(InMemoryUsageStorage())

        with pytest.raises(ValueError):
            await meter.record_usage("", "api_calls", 1)
        with pytest.raises(ValueError):
            await meter.record_usage("cus_1", "", 1)

    @pytest.mark.asyncio
    async def test_range_bounds_inclusive(self):
        """Test that range queries include both endpoints."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        meter = UsageMeter(InMemoryUsageStorage())
        for day in (1, 5, 10):
            await meter.record_usage("cus_1", "api_calls", day, timestamp=at(2024, 5, day))

        events = await meter.get_usage("cus_1", "api_calls", at(2024, 5, 1), at(2024, 5, 5))

        assert [e.quantity for e in events] == [1, 5]

    @pytest.mark.asyncio
    async def test_aggregations(self):
        """Test sum, count and max aggregations."""
        from tally_core.billing.base import AggregationType
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        meter = UsageMeter(InMemoryUsageStorage())
        for quantity in (3, 9, 4):
            await meter.record_usage("cus_1", "api_calls", quantity, timestamp=at(2024, 5, 2))

        total = await meter.get_usage_aggregate("cus_1", "api_calls")
        count = await meter.get_usage_aggregate("cus_1", "api_calls", aggregation=AggregationType.COUNT)
        peak = await meter.get_usage_aggregate("cus_1", "api_calls", aggregation="max")

        assert total.total == 16
        assert count.total == 3
        assert peak.total == 9

    @pytest.mark.asyncio
    async def test_empty_aggregate_is_zero(self):
        """Test that aggregates over no events are zero."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        meter = UsageMeter(InMemoryUsageStorage())

        assert (await meter.get_usage_aggregate("cus_1", "api_calls")).total == 0
        assert (await meter.get_usage_aggregate("cus_1", "api_calls", aggregation="max")).total == 0

    @pytest.mark.asyncio
    async def test_aggregate_by_window(self):
        """Test per-day buckets."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        meter = UsageMeter(InMemoryUsageStorage())
        await meter.record_usage("cus_1", "api_calls", 2, timestamp=at(2024, 5, 1, 8))
        await meter.record_usage("cus_1", "api_calls", 3, timestamp=at(2024, 5, 1, 20))
        await meter.record_usage("cus_1", "api_calls", 7, timestamp=at(2024, 5, 3, 1))

        aggregate = await meter.get_usage_aggregate("cus_1", "api_calls", window="day")

        assert aggregate.total == 12
        assert [(p.period_start, p.total) for p in aggregate.periods] == [
            (at(2024, 5, 1), 5),
            (at(2024, 5, 3), 7),
        ]
        assert aggregate.periods[0].period_end == at(2024, 5, 2)


class TestUsageLimits:
    """Tests for window usage limits."""

    @pytest.mark.asyncio
    async def test_no_policy_is_unbounded(self):
        """Test that metrics without a policy are always allowed."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        result = await UsageMeter(InMemoryUsageStorage()).check_usage_limit("cus_1", "api_calls")

        assert result.allowed is True
        assert result.usage == 0
        assert result.policy is None

    @pytest.mark.asyncio
    async def test_daily_window(self):
        """Test that only usage in the current day counts."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        meter = UsageMeter(InMemoryUsageStorage())
        policy = await meter.set_usage_policy("cus_1", "api_calls", 100, "day")
        await meter.record_usage("cus_1", "api_calls", 50, timestamp=at(2024, 5, 9, 23))
        await meter.record_usage("cus_1", "api_calls", 30, timestamp=at(2024, 5, 10, 9))

        result = await meter.check_usage_limit("cus_1", "api_calls", now=at(2024, 5, 10, 12))

        assert policy.id == "cus_1:api_calls"
        assert result.usage == 30
        assert result.remaining == 70
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_limit_reached(self):
        """Test that reaching the limit disallows further usage."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        meter = UsageMeter(InMemoryUsageStorage())
        await meter.set_usage_policy("cus_1", "api_calls", 10, "hour")
        await meter.record_usage("cus_1", "api_calls", 12, timestamp=at(2024, 5, 10, 12, 15))

        result = await meter.check_usage_limit("cus_1", "api_calls", now=at(2024, 5, 10, 12, 45))

        assert result.allowed is False
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_monthly_reset_anchor(self):
        """Test a monthly window anchored mid-month."""
        from tally_core.billing.usage import InMemoryUsageStorage, UsageMeter

        meter = UsageMeter(InMemoryUsageStorage())
        await meter.set_usage_policy("cus_1", "api_calls", 100, "month", reset_anchor=at(2024, 1, 15))
        await meter.record_usage("cus_1", "api_calls", 99, timestamp=at(2024, 4, 10))
        await meter.record_usage("cus_1", "api_calls", 10, timestamp=at(2024, 4, 20))

        result = await meter.check_usage_limit("cus_1", "api_calls", now=at(2024, 5, 10))

        assert result.usage == 10
        assert result.remaining == 90


class TestWindowStart:
    """Tests for window boundaries."""

    def test_calendar_windows(self):
        """Test hour, day and month starts."""
        from tally_core.billing.usage import window_start

        now = at(2024, 5, 10, 12, 34, 56)

        assert window_start(now, "hour") == at(2024, 5, 10, 12)
        assert window_start(now, "day") == at(2024, 5, 10)
        assert window_start(now, "month") == at(2024, 5, 1)

    def test_anchor_clamped_to_short_month(self):
        """Test that day-31 anchors fall back to the end of shorter months."""
        from tally_core.billing.usage import window_start

        assert window_start(at(2024, 3, 5), "month", reset_anchor=at(2024, 1, 31)) == at(2024, 2, 29)
        assert window_start(at(2024, 3, 31, 6), "month", reset_anchor=at(2024, 1, 31)) == at(2024, 3, 31)

    def test_anchor_across_year_boundary(self):
        """Test anchoring into the previous December."""
        from tally_core.billing.usage import window_start

        assert window_start(at(2025, 1, 3), "month", reset_anchor=at(2024, 6, 20)) == at(2024, 12, 20)
