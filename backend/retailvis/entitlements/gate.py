"""
Entitlement Gate - the single entry point request handlers call.

Flow for every intent:
    1. Load the tenant snapshot and classify its lifecycle
    2. canceled, or expired outside the grace window -> subscription_inactive
    3. FeatureIntent     -> Override Resolver
       QuantityIntent    -> Limit Enforcer
       TierChangeIntent  -> tier-change validation
    4. Attach message and upgrade metadata to denials

Failure policy when the data source is unavailable:
- FeatureIntent(advisory=True): fail open
- QuantityIntent: fail open only when ENTITLEMENT_LIMIT_FAIL_OPEN is set
- everything else: fail closed (entitlement_check_failed)

Platform-admin bypass is the caller's concern and is never decided here.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from retailvis.config.settings import EntitlementSettings, get_entitlement_settings
from retailvis.entitlements.cache import ResolutionCache
from retailvis.entitlements.catalog import TierCatalog, TierDefinition, get_tier_catalog
from retailvis.entitlements.datasource import EntitlementDataSource
from retailvis.entitlements.errors import DataSourceError
from retailvis.entitlements.lifecycle import classify_tenant, lapsed_at
from retailvis.entitlements.limits import LimitEnforcer
from retailvis.entitlements.models import (
    ChangeScope,
    EffectiveEntitlement,
    FeatureIntent,
    FeatureResolution,
    Intent,
    LifecycleState,
    LimitDecision,
    Organization,
    QuantityIntent,
    ReasonCode,
    Resource,
    TenantSnapshot,
    TenantSubscription,
    TierChangeIntent,
    UpgradeHint,
    Verdict,
    ensure_utc,
)
from retailvis.entitlements.overrides import OverrideResolver, effective_tier_key

logger = logging.getLogger(__name__)

INACTIVE_MESSAGE = "Your subscription is inactive. Please renew to access features."
UNAVAILABLE_MESSAGE = "Failed to check subscription status"

RESOURCE_NOUNS = {
    Resource.SKU: ("SKU", "SKUs"),
    Resource.LOCATION: ("location", "locations"),
}


def _count(n: Optional[int], resource: Resource) -> str:
    singular, plural = RESOURCE_NOUNS[resource]
    return f"{n} {singular if n == 1 else plural}"


@dataclass(frozen=True)
class _Standing:
    """Tenant record, its chain and its classified lifecycle for one evaluation."""
    tenant: TenantSubscription
    lifecycle_state: LifecycleState
    organization: Optional[Organization] = None
    snapshot: Optional[TenantSnapshot] = None


class EntitlementGate:
    """
    Single consolidated gate.

    Usage:
        gate = EntitlementGate(data_source)
        verdict = gate.evaluate(tenant_id, FeatureIntent("gbp_integration"))
        if not verdict.allowed:
            ...  # verdict.reason_code, verdict.message, verdict.upgrade_hint
    """

    def __init__(
        self,
        data_source: EntitlementDataSource,
        catalog: Optional[TierCatalog] = None,
        settings: Optional[EntitlementSettings] = None,
        cache: Optional[ResolutionCache] = None,
    ):
        self._data = data_source
        self._catalog = catalog or get_tier_catalog()
        self._settings = settings or get_entitlement_settings()
        self._cache = cache if cache is not None and cache.enabled else None
        self._resolver = OverrideResolver(data_source, self._catalog, self._settings)
        self._limits = LimitEnforcer(data_source, self._catalog)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate(
        self,
        tenant_id: str,
        intent: Intent,
        now: Optional[datetime] = None,
    ) -> Verdict:
        """
        Decide one intent for one tenant.

        Raises:
            TenantNotFoundError: no tenant record
            OrganizationNotFoundError: tenant references a missing chain
            InvalidTierError: tenant, organization or proposed tier unknown
        """
        now = ensure_utc(now) or datetime.now(timezone.utc)
        try:
            if isinstance(intent, FeatureIntent):
                return self._evaluate_features(tenant_id, [intent.feature], now)
            if isinstance(intent, QuantityIntent):
                return self._evaluate_quantity(tenant_id, intent, now)
            if isinstance(intent, TierChangeIntent):
                return self._evaluate_tier_change(tenant_id, intent, now)
        except DataSourceError as e:
            return self._on_data_source_error(tenant_id, intent, e)
        raise TypeError(f"Unsupported intent type: {type(intent).__name__}")

    def evaluate_any(
        self,
        tenant_id: str,
        features: Iterable[str],
        now: Optional[datetime] = None,
    ) -> Verdict:
        """
        Allow if ANY of the features is available.

        The denial names the cheapest tier that would grant one of them.
        """
        features = list(features)
        if not features:
            raise ValueError("evaluate_any requires at least one feature")
        now = ensure_utc(now) or datetime.now(timezone.utc)
        try:
            return self._evaluate_features(tenant_id, features, now)
        except DataSourceError as e:
            return self._on_data_source_error(tenant_id, FeatureIntent(features[0]), e)

    def effective_entitlement(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> EffectiveEntitlement:
        """Lifecycle, granted features and limits for a tenant. Never cached."""
        now = ensure_utc(now) or datetime.now(timezone.utc)
        return self._resolver.build_entitlement(self._data.load_snapshot(tenant_id), now)

    # ------------------------------------------------------------------
    # Intent handlers
    # ------------------------------------------------------------------

    def _evaluate_features(self, tenant_id: str, features: List[str], now: datetime) -> Verdict:
        cached: Dict[str, FeatureResolution] = {}
        if self._cache is not None:
            for feature in features:
                hit = self._cache.get(tenant_id, feature)
                if hit is not None:
                    cached[feature] = hit

        # All answers cached: only the tenant and chain rows are needed
        if len(cached) == len(features):
            standing = self._standing_without_overrides(tenant_id, now)
        else:
            standing = self._standing(tenant_id, now)

        inactive = self._inactive_verdict(standing, now)
        if inactive is not None:
            return inactive

        denials: List[FeatureResolution] = []
        for feature in features:
            resolution = cached.get(feature)
            if resolution is None:
                resolution = self._resolver.resolve_from_snapshot(standing.snapshot, feature, now)
                if self._cache is not None:
                    self._cache.set(tenant_id, resolution)
            if resolution.allowed:
                return Verdict(
                    allowed=True,
                    reason_code=ReasonCode.ALLOWED,
                    message="Access granted",
                    tenant_id=tenant_id,
                    lifecycle_state=standing.lifecycle_state,
                    feature=feature,
                    source=resolution.source,
                    override_reason=resolution.override_reason,
                )
            denials.append(resolution)

        return self._feature_denial(standing, self._best_denial(denials))

    def _evaluate_quantity(self, tenant_id: str, intent: QuantityIntent, now: datetime) -> Verdict:
        standing = self._standing(tenant_id, now)
        inactive = self._inactive_verdict(standing, now)
        if inactive is not None:
            return inactive

        decision = self._limits.check_snapshot(
            standing.snapshot, intent.resource, intent.delta, standing.lifecycle_state
        )
        if decision.admitted:
            return Verdict(
                allowed=True,
                reason_code=ReasonCode.ALLOWED,
                message="Within limits",
                tenant_id=tenant_id,
                lifecycle_state=standing.lifecycle_state,
                resource=decision.resource,
                limit=decision.limit,
                current=decision.current,
            )
        return self._limit_denial(standing, decision)

    def _evaluate_tier_change(
        self, tenant_id: str, intent: TierChangeIntent, now: datetime
    ) -> Verdict:
        standing = self._standing(tenant_id, now)
        inactive = self._inactive_verdict(standing, now)
        if inactive is not None:
            return inactive

        if intent.scope == ChangeScope.ORGANIZATION:
            organization = standing.organization
            if organization is None:
                raise ValueError(
                    f"Tenant '{tenant_id}' does not belong to an organization"
                )
            decision = self._limits.validate_organization_tier_change(
                organization.organization_id, intent.proposed_tier
            )
        else:
            decision = self._limits.validate_tier_change(tenant_id, intent.proposed_tier)

        if decision.allowed:
            return Verdict(
                allowed=True,
                reason_code=ReasonCode.ALLOWED,
                message="Tier change allowed",
                tenant_id=tenant_id,
                lifecycle_state=standing.lifecycle_state,
                required_tier=intent.proposed_tier,
            )

        violation = decision.first_violation
        display = self._catalog.get_display_name(intent.proposed_tier)
        return Verdict(
            allowed=False,
            reason_code=ReasonCode.TIER_LIMIT_EXCEEDED,
            message=(
                f"Current usage of {_count(violation.current, violation.resource)} exceeds "
                f"the {display} limit of {violation.limit} by {violation.excess}"
            ),
            tenant_id=tenant_id,
            lifecycle_state=standing.lifecycle_state,
            resource=violation.resource,
            limit=violation.limit,
            current=violation.current,
            excess=violation.excess,
            required_tier=intent.proposed_tier,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _standing(self, tenant_id: str, now: datetime) -> _Standing:
        snapshot = self._data.load_snapshot(tenant_id)
        return self._standing_from_tenant(
            snapshot.tenant, now, snapshot.organization, snapshot
        )

    def _standing_without_overrides(self, tenant_id: str, now: datetime) -> _Standing:
        tenant = self._data.require_tenant(tenant_id)
        organization = None
        if tenant.organization_id:
            organization = self._data.require_organization(tenant.organization_id, tenant_id)
        return self._standing_from_tenant(tenant, now, organization)

    def _standing_from_tenant(
        self,
        tenant: TenantSubscription,
        now: datetime,
        organization: Optional[Organization] = None,
        snapshot: Optional[TenantSnapshot] = None,
    ) -> _Standing:
        tier = self._catalog.get_tier_definition(tenant.tier)
        return _Standing(
            tenant=tenant,
            lifecycle_state=classify_tenant(tenant, now, tier.trial_expiry_state),
            organization=organization,
            snapshot=snapshot,
        )

    def _inactive_verdict(self, standing: _Standing, now: datetime) -> Optional[Verdict]:
        state = standing.lifecycle_state
        if state == LifecycleState.CANCELED:
            blocked = True
        elif state == LifecycleState.EXPIRED:
            blocked = not self._within_grace(standing.tenant, now)
        else:
            blocked = False

        if not blocked:
            return None

        logger.info(
            "Entitlement denied: subscription inactive",
            extra={"tenant_id": standing.tenant.tenant_id, "lifecycle_state": state.value},
        )
        return Verdict(
            allowed=False,
            reason_code=ReasonCode.SUBSCRIPTION_INACTIVE,
            message=INACTIVE_MESSAGE,
            tenant_id=standing.tenant.tenant_id,
            lifecycle_state=state,
            upgrade_hint=self._upgrade_hint(standing.tenant.tier, standing.tenant.tier),
        )

    def _within_grace(self, tenant: TenantSubscription, now: datetime) -> bool:
        if self._settings.expired_grace_days <= 0:
            return False
        ended = lapsed_at(tenant)
        if ended is None:
            return False
        return now - ended <= timedelta(days=self._settings.expired_grace_days)

    def _best_denial(self, denials: List[FeatureResolution]) -> FeatureResolution:
        """Prefer a denial the tenant can fix by upgrading, cheapest tier first."""
        upgradeable = [
            (self._catalog.get_price(tier_key), d)
            for d in denials
            if d.reason_code == ReasonCode.FEATURE_NOT_AVAILABLE
            for tier_key in [self._catalog.required_tier_for(d.feature)]
            if tier_key is not None
        ]
        if upgradeable:
            return min(upgradeable, key=lambda pair: pair[0])[1]
        return denials[0]

    def _feature_denial(self, standing: _Standing, resolution: FeatureResolution) -> Verdict:
        tenant = standing.tenant
        required_tier = None
        upgrade_hint = None

        if resolution.reason_code == ReasonCode.FEATURE_NOT_AVAILABLE:
            required_tier = self._catalog.required_tier_for(resolution.feature)
            if required_tier is not None:
                display = self._catalog.get_display_name(required_tier)
                message = f"This feature requires {display} tier or higher"
                current = self._current_feature_tier(standing)
                upgrade_hint = self._upgrade_hint(required_tier, current)
            else:
                message = "This feature is not available on any tier"
        elif resolution.reason_code == ReasonCode.FEATURE_DISABLED_BY_PLATFORM:
            message = "This feature is currently disabled"
        else:
            message = "This feature has been disabled for your account"

        logger.info(
            "Feature access denied",
            extra={
                "tenant_id": tenant.tenant_id,
                "feature": resolution.feature,
                "reason_code": resolution.reason_code.value,
                "tier": tenant.tier,
                "required_tier": required_tier,
            },
        )
        return Verdict(
            allowed=False,
            reason_code=resolution.reason_code,
            message=message,
            tenant_id=tenant.tenant_id,
            lifecycle_state=standing.lifecycle_state,
            feature=resolution.feature,
            source=resolution.source,
            required_tier=required_tier,
            upgrade_hint=upgrade_hint,
            override_reason=resolution.override_reason,
        )

    def _limit_denial(self, standing: _Standing, decision: LimitDecision) -> Verdict:
        tenant = standing.tenant
        organization = standing.organization
        current_tier = organization.tier if organization is not None else tenant.tier
        required_tier = None
        upgrade_hint = None

        if decision.reason_code == ReasonCode.MAINTENANCE_NO_GROWTH:
            message = (
                "Your account is in read-only visibility mode. "
                "Upgrade to add or update products or sync new changes."
            )
            upgrade_hint = self._upgrade_hint(tenant.tier, tenant.tier)
        elif decision.reason_code == ReasonCode.FROZEN_NO_GROWTH:
            message = (
                "Your account is frozen. Existing listings stay visible "
                "but nothing new can be added."
            )
        else:
            scope = "organization" if decision.pooled else "plan"
            message = (
                f"Adding {_count(decision.delta, decision.resource)} would exceed your "
                f"{scope} limit of {decision.limit} "
                f"({decision.current} in use, {decision.excess} over)"
            )
            required_tier = self._tier_with_capacity(
                current_tier, decision.resource, decision.current + decision.delta
            )
            if required_tier is not None:
                upgrade_hint = self._upgrade_hint(required_tier, current_tier)

        return Verdict(
            allowed=False,
            reason_code=decision.reason_code,
            message=message,
            tenant_id=tenant.tenant_id,
            lifecycle_state=standing.lifecycle_state,
            resource=decision.resource,
            limit=decision.limit,
            current=decision.current,
            excess=decision.excess,
            required_tier=required_tier,
            upgrade_hint=upgrade_hint,
        )

    def _current_feature_tier(self, standing: _Standing) -> str:
        return effective_tier_key(standing.tenant, standing.organization)

    def _tier_with_capacity(
        self, current_tier: str, resource: Resource, needed: int
    ) -> Optional[str]:
        """Cheapest pricier tier of the same family whose limit fits `needed`."""
        current = self._catalog.get_tier_definition(current_tier)
        family = _family(current)
        for tier in self._catalog.all_tiers():
            if _family(tier) != family or tier.monthly_price <= current.monthly_price:
                continue
            limit = tier.limit_for(resource.value)
            if limit is None or limit >= needed:
                return tier.key
        return None

    def _upgrade_hint(self, required_tier: str, current_tier: str) -> UpgradeHint:
        return UpgradeHint(
            required_tier=required_tier,
            required_tier_display=self._catalog.get_display_name(required_tier),
            required_tier_price=self._catalog.get_price(required_tier),
            current_tier=current_tier,
            current_tier_display=self._catalog.get_display_name(current_tier),
            current_tier_price=self._catalog.get_price(current_tier),
            upgrade_url=self._settings.upgrade_url,
        )

    def _on_data_source_error(
        self, tenant_id: str, intent: Intent, error: DataSourceError
    ) -> Verdict:
        context = {
            "tenant_id": tenant_id,
            "intent": type(intent).__name__,
            "error": str(error),
        }

        if isinstance(intent, FeatureIntent) and intent.advisory:
            logger.warning("Advisory feature check failing open", extra=context)
            return Verdict(
                allowed=True,
                reason_code=ReasonCode.ENTITLEMENT_CHECK_FAILED,
                message="Entitlement data unavailable; advisory check allowed",
                tenant_id=tenant_id,
                feature=intent.feature,
            )

        if isinstance(intent, QuantityIntent):
            if self._settings.limit_fail_open:
                logger.warning("Limit check failing open", extra=context)
                return Verdict(
                    allowed=True,
                    reason_code=ReasonCode.LIMIT_CHECK_UNAVAILABLE,
                    message="Limit check unavailable; request allowed",
                    tenant_id=tenant_id,
                    resource=intent.resource,
                )
            logger.critical("Limit check failed closed", extra=context)
            return Verdict(
                allowed=False,
                reason_code=ReasonCode.LIMIT_CHECK_UNAVAILABLE,
                message=UNAVAILABLE_MESSAGE,
                tenant_id=tenant_id,
                resource=intent.resource,
            )

        logger.critical("Entitlement check failed closed", extra=context)
        return Verdict(
            allowed=False,
            reason_code=ReasonCode.ENTITLEMENT_CHECK_FAILED,
            message=UNAVAILABLE_MESSAGE,
            tenant_id=tenant_id,
            feature=intent.feature if isinstance(intent, FeatureIntent) else None,
        )


def _family(tier: TierDefinition) -> str:
    # Individual tiers upgrade among themselves; organization and chain tiers pool
    return "individual" if tier.kind == "individual" else "multi"
