"""
Default collaborators: in-memory storage, entitlements, feature flags and the
payment-provider capability check.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from .base import (
    BillingStorage,
    Entitlement,
    EntitlementCheckResult,
    FeatureContext,
    FeatureFlagProvider,
    UsageRecord,
    utc,
    utcnow,
)


logger = logging.getLogger(__name__)


def provider_supports(provider: Any, capability: str) -> bool:
    """Check whether a payment provider implements an optional capability."""
    return provider is not None and callable(getattr(provider, capability, None))


class InMemoryBillingStorage(BillingStorage):
    """In-memory billing storage implementation."""

    def __init__(self):
        """Initialize in-memory store."""
        self._usage: Dict[str, List[UsageRecord]] = defaultdict(list)
        self._entitlements: Dict[str, List[Entitlement]] = {}

    async def save_usage_record(self, record: UsageRecord) -> None:
        """Persist a usage record."""
        self._usage[record.customer_id].append(record)

    async def list_usage(
        self,
        customer_id: str,
        metric: Optional[str] = None,
    ) -> List[UsageRecord]:
        """List usage records for a customer."""
        records = self._usage.get(customer_id, [])
        if metric is None:
            return list(records)
        return [r for r in records if r.metric == metric]

    async def save_entitlements(
        self,
        customer_id: str,
        entitlements: List[Entitlement],
    ) -> None:
        """Replace a customer's entitlements."""
        self._entitlements[customer_id] = list(entitlements)

    async def get_entitlements(self, customer_id: str) -> List[Entitlement]:
        """Get a customer's entitlements."""
        return list(self._entitlements.get(customer_id, []))


class EntitlementChecker:
    """Resolves whether a customer holds a feature entitlement."""

    def __init__(self, storage: BillingStorage):
        self._storage = storage

    async def has_entitlement(
        self,
        customer_id: str,
        feature_key: str,
        now: Optional[datetime] = None,
    ) -> EntitlementCheckResult:
        """Check an entitlement; expired entitlements are not granted."""
        now = utc(now) if now else utcnow()
        for entitlement in await self._storage.get_entitlements(customer_id):
            if entitlement.feature_key != feature_key:
                continue
            if entitlement.expires_at is not None and utc(entitlement.expires_at) <= now:
                logger.debug(f"Entitlement {feature_key} for {customer_id} expired")
                continue
            return EntitlementCheckResult(
                granted=True,
                limit=entitlement.limit,
                entitlement=entitlement,
            )
        return EntitlementCheckResult(granted=False)


class EntitlementService:
    """Manages customer entitlements."""

    def __init__(self, storage: BillingStorage):
        self._storage = storage

    async def set_entitlements(self, customer_id: str, entitlements: List[Entitlement]) -> None:
        await self._storage.save_entitlements(customer_id, entitlements)

    async def get_entitlements(self, customer_id: str) -> List[Entitlement]:
        return await self._storage.get_entitlements(customer_id)

    async def grant(self, customer_id: str, entitlement: Entitlement) -> None:
        """Add or replace a single entitlement by feature key."""
        current = [
            e for e in await self._storage.get_entitlements(customer_id)
            if e.feature_key != entitlement.feature_key
        ]
        current.append(entitlement)
        await self._storage.save_entitlements(customer_id, current)

    async def revoke(self, customer_id: str, feature_key: str) -> bool:
        """Remove an entitlement. Returns True if one was removed."""
        current = await self._storage.get_entitlements(customer_id)
        remaining = [e for e in current if e.feature_key != feature_key]
        if len(remaining) == len(current):
            return False
        await self._storage.save_entitlements(customer_id, remaining)
        return True


class InMemoryFeatureFlagProvider(FeatureFlagProvider):
    """Static flag table; unknown flags are enabled."""

    def __init__(self, flags: Optional[Dict[str, bool]] = None):
        self._flags: Dict[str, bool] = dict(flags or {})

    def set_flag(self, flag_key: str, enabled: bool) -> None:
        self._flags[flag_key] = enabled

    async def is_enabled(self, flag_key: str, context: FeatureContext) -> bool:
        return self._flags.get(flag_key, True)
