"""
Limit Enforcer - quantity checks against tier or chain-pooled limits.

Rules for a prospective change of `delta` units:
- delta <= 0 is always admitted (reductions never block)
- lifecycle maintenance/frozen denies any growth, regardless of headroom
- otherwise admit iff limit is None or current + delta <= limit

Chain members are checked against the organization's pooled limits and
chain-wide usage. Limits are soft: this is a pre-check, nothing is reserved.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from retailvis.entitlements.catalog import TierCatalog, TierDefinition, get_tier_catalog
from retailvis.entitlements.datasource import EntitlementDataSource
from retailvis.entitlements.lifecycle import classify_tenant
from retailvis.entitlements.models import (
    LifecycleState,
    LimitDecision,
    Organization,
    ReasonCode,
    Resource,
    TenantSnapshot,
    TenantSubscription,
    TierChangeDecision,
    UsageSnapshot,
)

logger = logging.getLogger(__name__)

EXCEEDED_REASON = {
    Resource.SKU: ReasonCode.SKU_LIMIT_EXCEEDED,
    Resource.LOCATION: ReasonCode.LOCATION_LIMIT_EXCEEDED,
}


def pooled_limits(
    organization: Organization, catalog: TierCatalog
) -> Tuple[Optional[int], Optional[int]]:
    """(sku_limit, location_limit) for a chain; explicit org values win over the tier."""
    tier = catalog.get_tier_definition(organization.tier)
    sku_limit = (
        organization.max_total_skus
        if organization.max_total_skus is not None
        else tier.sku_limit
    )
    location_limit = (
        organization.max_locations
        if organization.max_locations is not None
        else tier.location_limit
    )
    return sku_limit, location_limit


def effective_limits(
    tenant: TenantSubscription,
    organization: Optional[Organization],
    catalog: TierCatalog,
) -> Tuple[Optional[int], Optional[int]]:
    """(sku_limit, location_limit) governing a tenant."""
    if organization is not None:
        return pooled_limits(organization, catalog)
    tier = catalog.get_tier_definition(tenant.tier)
    return tier.sku_limit, tier.location_limit


def decide_limit(
    resource: Resource,
    delta: int,
    limit: Optional[int],
    current: Optional[int],
    lifecycle_state: LifecycleState,
    pooled: bool = False,
) -> LimitDecision:
    """
    Admit or deny one quantity change. Pure.

    current may be None only when no numeric comparison is needed
    (delta <= 0, or growth blocked by lifecycle).
    """
    resource = Resource(resource)

    if delta <= 0:
        return LimitDecision.admit(resource, delta, limit, current, pooled)

    if lifecycle_state == LifecycleState.MAINTENANCE:
        return LimitDecision.deny(
            resource, ReasonCode.MAINTENANCE_NO_GROWTH, delta, limit, current, pooled=pooled
        )

    if lifecycle_state == LifecycleState.FROZEN:
        return LimitDecision.deny(
            resource, ReasonCode.FROZEN_NO_GROWTH, delta, limit, current, pooled=pooled
        )

    if limit is None or current + delta <= limit:
        return LimitDecision.admit(resource, delta, limit, current, pooled)

    return LimitDecision.deny(
        resource,
        EXCEEDED_REASON[resource],
        delta,
        limit,
        current,
        excess=current + delta - limit,
        pooled=pooled,
    )


def _tier_violations(
    tier: TierDefinition, usage: UsageSnapshot, pooled: bool
) -> Tuple[LimitDecision, ...]:
    violations: List[LimitDecision] = []
    for resource in (Resource.SKU, Resource.LOCATION):
        limit = tier.limit_for(resource.value)
        current = usage.count_for(resource)
        if limit is not None and current > limit:
            violations.append(
                LimitDecision.deny(
                    resource,
                    ReasonCode.TIER_LIMIT_EXCEEDED,
                    delta=0,
                    limit=limit,
                    current=current,
                    excess=current - limit,
                    pooled=pooled,
                )
            )
    return tuple(violations)


class LimitEnforcer:
    """Validates quantity intents and tier changes against current usage."""

    def __init__(
        self,
        data_source: EntitlementDataSource,
        catalog: Optional[TierCatalog] = None,
    ):
        self._data = data_source
        self._catalog = catalog or get_tier_catalog()

    def check_limit(
        self,
        tenant_id: str,
        resource: Resource,
        delta: int,
        lifecycle_state: Optional[LifecycleState] = None,
        now: Optional[datetime] = None,
    ) -> LimitDecision:
        """
        Check a prospective change of `delta` units of `resource`.

        Args:
            tenant_id: Tenant making the change
            resource: sku or location
            delta: Signed change in usage
            lifecycle_state: Pre-computed state; classified here when omitted
            now: Evaluation time used when classifying

        Raises:
            TenantNotFoundError, OrganizationNotFoundError, InvalidTierError,
            DataSourceError
        """
        snapshot = self._data.load_snapshot(tenant_id)
        if lifecycle_state is None:
            now = now or datetime.now(timezone.utc)
            tier = self._catalog.get_tier_definition(snapshot.tenant.tier)
            lifecycle_state = classify_tenant(snapshot.tenant, now, tier.trial_expiry_state)
        return self.check_snapshot(snapshot, resource, delta, lifecycle_state)

    def check_snapshot(
        self,
        snapshot: TenantSnapshot,
        resource: Resource,
        delta: int,
        lifecycle_state: LifecycleState,
    ) -> LimitDecision:
        """
        Check against an already-loaded snapshot.

        Usage is read from the data source when the snapshot carries none.
        """
        resource = Resource(resource)
        sku_limit, location_limit = effective_limits(
            snapshot.tenant, snapshot.organization, self._catalog
        )
        limit = sku_limit if resource == Resource.SKU else location_limit

        # Reductions and growth blocks need no usage read
        if delta <= 0 or lifecycle_state.blocks_growth:
            return decide_limit(
                resource, delta, limit, None, lifecycle_state,
                pooled=snapshot.organization is not None,
            )

        usage = self._usage_for(snapshot)
        decision = decide_limit(
            resource,
            delta,
            limit,
            usage.count_for(resource),
            lifecycle_state,
            pooled=snapshot.organization is not None,
        )
        if not decision.admitted:
            logger.info(
                "Limit check denied",
                extra={
                    "tenant_id": snapshot.tenant.tenant_id,
                    "organization_id": snapshot.tenant.organization_id,
                    "resource": resource.value,
                    "delta": delta,
                    "limit": decision.limit,
                    "current": decision.current,
                    "reason_code": decision.reason_code.value,
                },
            )
        return decision

    def validate_tier_change(self, tenant_id: str, proposed_tier: str) -> TierChangeDecision:
        """
        Check the tenant's current usage fits the proposed tier's limits.

        Raises:
            TenantNotFoundError: no tenant record
            InvalidTierError: proposed tier is not in the catalog
        """
        tier = self._catalog.get_tier_definition(proposed_tier)
        self._data.require_tenant(tenant_id)
        violations = _tier_violations(tier, self._data.get_usage(tenant_id), pooled=False)
        return TierChangeDecision(
            allowed=not violations,
            proposed_tier=proposed_tier,
            violations=violations,
        )

    def validate_organization_tier_change(
        self, organization_id: str, proposed_tier: str
    ) -> TierChangeDecision:
        """
        Check a chain's member locations and pooled SKUs fit the proposed tier.

        Raises:
            OrganizationNotFoundError: no organization record
            InvalidTierError: proposed tier is not in the catalog
        """
        tier = self._catalog.get_tier_definition(proposed_tier)
        self._data.require_organization(organization_id)
        usage = self._data.get_organization_usage(organization_id)
        violations = _tier_violations(tier, usage, pooled=True)
        if violations:
            logger.info(
                "Organization tier change rejected",
                extra={
                    "organization_id": organization_id,
                    "proposed_tier": proposed_tier,
                    "violations": [v.resource.value for v in violations],
                },
            )
        return TierChangeDecision(
            allowed=not violations,
            proposed_tier=proposed_tier,
            violations=violations,
        )

    def _usage_for(self, snapshot: TenantSnapshot) -> UsageSnapshot:
        if snapshot.organization is not None:
            if snapshot.organization_usage is not None:
                return snapshot.organization_usage
            return self._data.get_organization_usage(snapshot.organization.organization_id)
        if snapshot.usage is not None:
            return snapshot.usage
        return self._data.get_usage(snapshot.tenant.tenant_id)
