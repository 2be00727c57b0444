"""
Usage Metering

Idempotent usage event recording, aggregation, window limits and the
ingestion gate that checks flags, entitlements and limits before persisting.
"""

import calendar
import inspect
import logging
import time
import uuid
from collections import OrderedDict, defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .base import (
    AddEventResult,
    AggregationType,
    BillingStorage,
    EntitlementMissingError,
    FeatureContext,
    FeatureFlagDisabledError,
    FeatureFlagProvider,
    Number,
    Plan,
    UsageAggregate,
    UsageEvent,
    UsageLimitExceededError,
    UsageLimitPolicy,
    UsageLimitResult,
    UsagePeriodTotal,
    UsagePolicy,
    UsagePolicyCheck,
    UsageRecord,
    UsageRecordResult,
    UsageStorageAdapter,
    UsageWindow,
    to_decimal,
    utc,
    utcnow,
)
from .collaborators import EntitlementChecker, provider_supports


logger = logging.getLogger(__name__)


def usage_key(customer_id: str, metric_key: str) -> str:
    """Storage key for a customer+metric."""
    return f"{customer_id}:{metric_key}"


def window_start(
    now: datetime,
    window: Union[UsageWindow, str],
    reset_anchor: Optional[datetime] = None,
) -> datetime:
    """
    Start of the calendar window containing `now` (UTC).

    Monthly windows with a reset anchor start on the anchor's day of month,
    clamped to the length of shorter months.
    """
    now = utc(now)
    window = UsageWindow(window)

    if window == UsageWindow.HOUR:
        return now.replace(minute=0, second=0, microsecond=0)
    if window == UsageWindow.DAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)

    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if reset_anchor is None:
        return midnight.replace(day=1)

    anchor_day = utc(reset_anchor).day
    year, month = now.year, now.month
    start = midnight.replace(day=min(anchor_day, calendar.monthrange(year, month)[1]))
    if start > now:
        year, month = (year - 1, 12) if month == 1 else (year, month - 1)
        start = midnight.replace(
            year=year,
            month=month,
            day=min(anchor_day, calendar.monthrange(year, month)[1]),
        )
    return start


def _next_window(start: datetime, window: UsageWindow) -> datetime:
    if window == UsageWindow.HOUR:
        return start + timedelta(hours=1)
    if window == UsageWindow.DAY:
        return start + timedelta(days=1)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1, day=1)
    return start.replace(month=start.month + 1, day=1)


def _aggregate(events: List[UsageEvent], aggregation: AggregationType) -> Number:
    if aggregation == AggregationType.COUNT:
        return len(events)
    if aggregation == AggregationType.MAX:
        return max([0] + [e.quantity for e in events])
    return sum((to_decimal(e.quantity) for e in events), Decimal("0"))


class InMemoryUsageStorage(UsageStorageAdapter):
    """
    In-memory usage storage with an idempotency index.

    Idempotency entries expire after `idempotency_ttl_seconds` (never when
    None; 0 keeps a key only within the same clock instant). Expired
    entries are evicted lazily on each write; the index is kept in insertion
    order so eviction only pops expired entries from the front.
    """

    def __init__(
        self,
        idempotency_ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize in-memory store."""
        if idempotency_ttl_seconds is not None and idempotency_ttl_seconds < 0:
            raise ValueError("idempotency_ttl_seconds must be >= 0")

        self._events: Dict[str, List[UsageEvent]] = defaultdict(list)
        self._policies: Dict[str, UsagePolicy] = {}
        self._idempotency_index: "OrderedDict[str, Tuple[str, float]]" = OrderedDict()
        self._ttl = idempotency_ttl_seconds
        self._clock = clock

    def _evict_expired(self, now: float) -> None:
        if self._ttl is None:
            return
        while self._idempotency_index:
            _, (_, recorded_at) = next(iter(self._idempotency_index.items()))
            if now - recorded_at <= self._ttl:
                break
            self._idempotency_index.popitem(last=False)

    async def get_events(self, key: str) -> List[UsageEvent]:
        return list(self._events.get(key, []))

    async def add_event(
        self,
        key: str,
        event: UsageEvent,
        idempotency_key: Optional[str] = None,
    ) -> AddEventResult:
        """Store an event unless the idempotency key is still live."""
        now = self._clock()
        self._evict_expired(now)

        if idempotency_key:
            composite = f"{key}:{idempotency_key}"
            existing = self._idempotency_index.get(composite)
            if existing is not None:
                logger.debug(f"Duplicate usage event: {composite}")
                return AddEventResult(inserted=False, event_id=existing[0])
            self._idempotency_index[composite] = (event.id, now)

        self._events[key].append(event)
        return AddEventResult(inserted=True, event_id=event.id)

    async def get_policy(self, key: str) -> Optional[UsagePolicy]:
        return self._policies.get(key)

    async def set_policy(self, key: str, policy: UsagePolicy) -> None:
        self._policies[key] = policy

    @property
    def idempotency_entries(self) -> int:
        """Number of live idempotency entries."""
        return len(self._idempotency_index)


class UsageMeter:
    """
    Records and queries metered usage events.

    Records usage with optional idempotency keys, aggregates events over
    time ranges and checks usage against per-window policies.
    """

    def __init__(self, storage: UsageStorageAdapter):
        """Initialize usage meter."""
        self._storage = storage

    async def record_usage(
        self,
        customer_id: str,
        metric_key: str,
        quantity: Number,
        idempotency_key: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageRecordResult:
        """Record a usage event; repeated idempotency keys are not stored twice."""
        if not customer_id:
            raise ValueError("customer_id is required")
        if not metric_key:
            raise ValueError("metric_key is required")
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float, Decimal)):
            raise ValueError("quantity is required and must be a number")

        event = UsageEvent(
            id=f"usage_{uuid.uuid4().hex[:16]}",
            customer_id=customer_id,
            metric_key=metric_key,
            quantity=quantity,
            timestamp=utc(timestamp) if timestamp else utcnow(),
            metadata=dict(metadata or {}),
        )

        result = await self._storage.add_event(
            usage_key(customer_id, metric_key),
            event,
            idempotency_key,
        )
        if result.inserted:
            logger.debug(f"Recorded usage {event.id}: {customer_id}/{metric_key} +{quantity}")

        return UsageRecordResult(
            id=result.event_id,
            success=True,
            duplicate=not result.inserted,
        )

    async def get_usage(
        self,
        customer_id: str,
        metric_key: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[UsageEvent]:
        """Get events within inclusive [start, end] bounds."""
        events = await self._storage.get_events(usage_key(customer_id, metric_key))
        start = utc(start) if start else None
        end = utc(end) if end else None

        return [
            e for e in events
            if (start is None or utc(e.timestamp) >= start)
            and (end is None or utc(e.timestamp) <= end)
        ]

    async def get_usage_aggregate(
        self,
        customer_id: str,
        metric_key: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        aggregation: Union[AggregationType, str] = AggregationType.SUM,
        window: Optional[Union[UsageWindow, str]] = None,
    ) -> UsageAggregate:
        """
        Aggregate usage with sum, count or max.

        When a window is given, per-window totals are returned alongside the
        overall total.
        """
        aggregation = AggregationType(aggregation)
        events = await self.get_usage(customer_id, metric_key, start, end)
        total = _aggregate(events, aggregation)

        periods = None
        if window is not None:
            window = UsageWindow(window)
            buckets: Dict[datetime, List[UsageEvent]] = defaultdict(list)
            for event in events:
                buckets[window_start(event.timestamp, window)].append(event)
            periods = [
                UsagePeriodTotal(
                    period_start=bucket,
                    period_end=_next_window(bucket, window),
                    total=_aggregate(buckets[bucket], aggregation),
                )
                for bucket in sorted(buckets)
            ]

        return UsageAggregate(total=total, aggregation=aggregation, periods=periods)

    async def set_usage_policy(
        self,
        customer_id: str,
        metric_key: str,
        limit: Number,
        window: Union[UsageWindow, str],
        reset_anchor: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsagePolicy:
        """Set the limit for a customer+metric."""
        key = usage_key(customer_id, metric_key)
        policy = UsagePolicy(
            id=key,
            customer_id=customer_id,
            metric_key=metric_key,
            limit=limit,
            window=UsageWindow(window),
            reset_anchor=reset_anchor,
            metadata=dict(metadata or {}),
        )
        await self._storage.set_policy(key, policy)
        return policy

    async def check_usage_limit(
        self,
        customer_id: str,
        metric_key: str,
        now: Optional[datetime] = None,
    ) -> UsageLimitResult:
        """Check usage in the current window against the policy."""
        policy = await self._storage.get_policy(usage_key(customer_id, metric_key))
        if policy is None:
            return UsageLimitResult(allowed=True, remaining=float("inf"), usage=0, policy=None)

        start = window_start(now or utcnow(), policy.window, policy.reset_anchor)
        aggregate = await self.get_usage_aggregate(customer_id, metric_key, start=start)
        usage = aggregate.total
        remaining = max(Decimal("0"), to_decimal(policy.limit) - to_decimal(usage))

        return UsageLimitResult(
            allowed=remaining > 0,
            remaining=remaining,
            usage=usage,
            policy=policy,
        )


class UsageService:
    """Thin record/list access to usage records in billing storage."""

    def __init__(self, storage: BillingStorage):
        self._storage = storage

    async def record_usage(self, record: UsageRecord) -> None:
        await self._storage.save_usage_record(record)

    async def list_usage(self, customer_id: str, metric: Optional[str] = None) -> List[UsageRecord]:
        return await self._storage.list_usage(customer_id, metric)


class UsagePolicyService:
    """Validates attempted usage against cumulative limit policies."""

    def __init__(self, storage: BillingStorage):
        self._storage = storage

    async def get_current_usage(self, customer_id: str, metric: Optional[str] = None) -> List[UsageRecord]:
        return await self._storage.list_usage(customer_id, metric)

    async def validate_within_limits(
        self,
        customer_id: str,
        metric: str,
        attempted_quantity: Number,
        policy: UsageLimitPolicy,
        period_start: Optional[datetime] = None,
    ) -> UsagePolicyCheck:
        """
        Check that current usage plus the attempted quantity stays within limits.

        `max_per_period` counts records since `period_start` (all records when
        not given); `max_total` always counts every record.
        """
        records = await self.get_current_usage(customer_id, metric)
        attempted = to_decimal(attempted_quantity)

        def _total(items: List[UsageRecord]) -> Decimal:
            return sum((max(Decimal("0"), to_decimal(r.quantity)) for r in items), Decimal("0"))

        total_qty = _total(records)
        period_qty = total_qty
        if period_start is not None:
            since = utc(period_start)
            period_qty = _total([r for r in records if utc(r.timestamp) >= since])

        if policy.max_per_period is not None and period_qty + attempted > to_decimal(policy.max_per_period):
            return UsagePolicyCheck(
                allowed=False,
                reason="maxPerPeriod_exceeded",
                current_quantity=period_qty,
                attempted_quantity=attempted_quantity,
                limit=policy.max_per_period,
            )

        if policy.max_total is not None and total_qty + attempted > to_decimal(policy.max_total):
            return UsagePolicyCheck(
                allowed=False,
                reason="maxTotal_exceeded",
                current_quantity=total_qty,
                attempted_quantity=attempted_quantity,
                limit=policy.max_total,
            )

        return UsagePolicyCheck(
            allowed=True,
            current_quantity=period_qty,
            attempted_quantity=attempted_quantity,
        )


class BillingUsageManager:
    """
    Gates usage ingestion.

    Checks run in order: feature flag, entitlement, limit policy. Only then is
    the record persisted locally. Forwarding to a payment provider afterwards
    is best-effort and never undoes the local write.
    """

    def __init__(
        self,
        storage: BillingStorage,
        flags: FeatureFlagProvider,
        entitlements: EntitlementChecker,
        policies: UsagePolicyService,
    ):
        self._storage = storage
        self._flags = flags
        self._entitlements = entitlements
        self._policies = policies

    async def record_usage(
        self,
        record: UsageRecord,
        provider: Optional[Any] = None,
        feature_flag_key: Optional[str] = None,
        entitlement_key: Optional[str] = None,
        policy: Optional[UsageLimitPolicy] = None,
        period_start: Optional[datetime] = None,
    ) -> None:
        """Validate and persist a usage record, then forward it to the provider."""
        if feature_flag_key:
            enabled = await self._flags.is_enabled(
                feature_flag_key,
                FeatureContext(customer_id=record.customer_id),
            )
            if not enabled:
                logger.warning(
                    "Feature flag disabled; usage rejected",
                    extra={"flag": feature_flag_key, "customer_id": record.customer_id},
                )
                raise FeatureFlagDisabledError(feature_flag_key, record.customer_id)

        if entitlement_key:
            result = await self._entitlements.has_entitlement(record.customer_id, entitlement_key)
            if not result.granted:
                logger.warning(
                    "Entitlement missing; usage rejected",
                    extra={"entitlement": entitlement_key, "customer_id": record.customer_id},
                )
                raise EntitlementMissingError(entitlement_key, record.customer_id)

        if policy is not None:
            check = await self._policies.validate_within_limits(
                record.customer_id,
                record.metric,
                max(Decimal("0"), to_decimal(record.quantity)),
                policy,
                period_start=period_start,
            )
            if not check.allowed:
                logger.warning(
                    "Usage limit exceeded",
                    extra={
                        "reason": check.reason,
                        "current": str(check.current_quantity),
                        "attempted": str(check.attempted_quantity),
                        "limit": str(check.limit),
                        "metric": record.metric,
                        "customer_id": record.customer_id,
                    },
                )
                raise UsageLimitExceededError(check, record.metric)

        await self._storage.save_usage_record(record)

        if provider_supports(provider, "record_usage"):
            try:
                result = provider.record_usage(record)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Provider record_usage failed: {e}",
                    extra={"customer_id": record.customer_id, "metric": record.metric},
                )

    async def record_usage_with_plan_policy(
        self,
        record: UsageRecord,
        plan: Plan,
        provider: Optional[Any] = None,
        feature_flag_key: Optional[str] = None,
        entitlement_key: Optional[str] = None,
        period_start: Optional[datetime] = None,
    ) -> None:
        """Record usage enforcing the limit from `plan.metadata["usageLimits"]`."""
        await self.record_usage(
            record,
            provider=provider,
            feature_flag_key=feature_flag_key,
            entitlement_key=entitlement_key,
            policy=UsageLimitPolicy.from_plan(plan, record.metric),
            period_start=period_start,
        )
