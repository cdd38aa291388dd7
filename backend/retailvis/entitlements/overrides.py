"""
Override Resolver - feature availability with override precedence.

Precedence (highest first):
    1. Tenant-scope override, once eligible (see platform gate below)
    2. Platform override enabled=False, allow_tenant_override=False
       -> hard kill-switch, blocks regardless of tier or tenant override
    3. Platform override enabled=False, allow_tenant_override=True
       -> a tenant override may re-enable; otherwise disabled
    4. No overrides -> tier catalog membership

A platform override with enabled=True grants the feature platform-wide;
with allow_tenant_override=True a tenant override may still revoke it.

A tenant override with no platform record is ignored unless the deployment
enables `tenant_override_without_platform`.

Expired overrides behave as if absent. Evaluation is fresh per call and
has no write side effects.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from retailvis.config.settings import EntitlementSettings, get_entitlement_settings
from retailvis.entitlements.catalog import TierCatalog, TierDefinition, get_tier_catalog
from retailvis.entitlements.datasource import EntitlementDataSource
from retailvis.entitlements.lifecycle import classify_tenant
from retailvis.entitlements.limits import effective_limits
from retailvis.entitlements.models import (
    EffectiveEntitlement,
    FeatureOverride,
    FeatureResolution,
    FeatureSource,
    Organization,
    ReasonCode,
    TenantSnapshot,
    TenantSubscription,
)

logger = logging.getLogger(__name__)


def effective_tier_key(
    tenant: TenantSubscription,
    organization: Optional[Organization] = None,
) -> str:
    """Chain members take their feature set from the organization tier."""
    if organization is not None and organization.tier:
        return organization.tier
    return tenant.tier


def _active(override: Optional[FeatureOverride], now: datetime) -> Optional[FeatureOverride]:
    if override is None or override.is_expired(now):
        return None
    return override


def _from_tenant_override(feature: str, override: FeatureOverride) -> FeatureResolution:
    return FeatureResolution(
        feature=feature,
        allowed=override.enabled,
        source=FeatureSource.OVERRIDE,
        reason_code=ReasonCode.ALLOWED if override.enabled else ReasonCode.FEATURE_REVOKED,
        override_reason=override.reason or None,
    )


def decide_feature(
    feature: str,
    tier: TierDefinition,
    platform_override: Optional[FeatureOverride],
    tenant_override: Optional[FeatureOverride],
    now: datetime,
    tenant_override_without_platform: bool = False,
) -> FeatureResolution:
    """
    Apply override precedence for one feature. Pure.

    Args:
        feature: Feature key
        tier: Effective tier definition for the tenant
        platform_override: Platform-scope row for this feature, if any
        tenant_override: Tenant-scope row for this feature, if any
        now: Evaluation time (for override expiry)
        tenant_override_without_platform: Honor tenant rows when no
            platform row exists
    """
    platform = _active(platform_override, now)
    tenant = _active(tenant_override, now)

    if platform is not None:
        if platform.is_kill_switch:
            if tenant is not None and tenant.enabled:
                logger.info(
                    "Tenant override ignored: platform kill-switch active",
                    extra={"feature": feature, "tenant_id": tenant.tenant_id},
                )
            return FeatureResolution(
                feature=feature,
                allowed=False,
                source=FeatureSource.OVERRIDE,
                reason_code=ReasonCode.FEATURE_DISABLED_BY_PLATFORM,
                override_reason=platform.reason or None,
            )

        if platform.allow_tenant_override and tenant is not None:
            return _from_tenant_override(feature, tenant)

        if platform.enabled:
            return FeatureResolution(
                feature=feature,
                allowed=True,
                source=FeatureSource.OVERRIDE,
                override_reason=platform.reason or None,
            )

        return FeatureResolution(
            feature=feature,
            allowed=False,
            source=FeatureSource.OVERRIDE,
            reason_code=ReasonCode.FEATURE_DISABLED_BY_PLATFORM,
            override_reason=platform.reason or None,
        )

    if tenant is not None:
        if tenant_override_without_platform:
            return _from_tenant_override(feature, tenant)
        logger.debug(
            "Tenant override ignored: no platform record for feature",
            extra={"feature": feature, "tenant_id": tenant.tenant_id},
        )

    if tier.has_feature(feature):
        return FeatureResolution(feature=feature, allowed=True, source=FeatureSource.TIER)

    return FeatureResolution(
        feature=feature,
        allowed=False,
        source=FeatureSource.TIER,
        reason_code=ReasonCode.FEATURE_NOT_AVAILABLE,
    )


class OverrideResolver:
    """
    Resolves feature availability for a tenant.

    One instance per data source; stateless between calls.
    """

    def __init__(
        self,
        data_source: EntitlementDataSource,
        catalog: Optional[TierCatalog] = None,
        settings: Optional[EntitlementSettings] = None,
    ):
        self._data = data_source
        self._catalog = catalog or get_tier_catalog()
        self._settings = settings or get_entitlement_settings()

    def resolve_feature(
        self,
        tenant_id: str,
        feature: str,
        now: Optional[datetime] = None,
    ) -> FeatureResolution:
        """
        Resolve one feature for a tenant with fresh reads.

        Raises:
            TenantNotFoundError: no tenant record
            OrganizationNotFoundError: tenant references a missing chain
            InvalidTierError: effective tier is not in the catalog
        """
        now = now or datetime.now(timezone.utc)
        tenant = self._data.require_tenant(tenant_id)
        organization = None
        if tenant.organization_id:
            organization = self._data.require_organization(tenant.organization_id, tenant_id)

        tier = self._catalog.get_tier_definition(effective_tier_key(tenant, organization))
        resolution = decide_feature(
            feature,
            tier,
            self._data.get_platform_override(feature),
            self._data.get_tenant_override(tenant_id, feature),
            now,
            self._settings.tenant_override_without_platform,
        )
        self._log_override_use(tenant_id, resolution)
        return resolution

    def resolve_from_snapshot(
        self,
        snapshot: TenantSnapshot,
        feature: str,
        now: datetime,
    ) -> FeatureResolution:
        """Resolve one feature from an already-loaded snapshot."""
        tier = self._catalog.get_tier_definition(
            effective_tier_key(snapshot.tenant, snapshot.organization)
        )
        resolution = decide_feature(
            feature,
            tier,
            snapshot.platform_overrides.get(feature),
            snapshot.tenant_overrides.get(feature),
            now,
            self._settings.tenant_override_without_platform,
        )
        self._log_override_use(snapshot.tenant.tenant_id, resolution)
        return resolution

    def resolve_snapshot(
        self,
        snapshot: TenantSnapshot,
        now: datetime,
    ) -> Dict[str, FeatureResolution]:
        """
        Resolve every feature the tenant could possibly have.

        Candidates are the tier's features plus every feature named by an
        override row.
        """
        tier = self._catalog.get_tier_definition(
            effective_tier_key(snapshot.tenant, snapshot.organization)
        )
        candidates = (
            set(tier.features)
            | set(snapshot.platform_overrides)
            | set(snapshot.tenant_overrides)
        )
        return {
            feature: decide_feature(
                feature,
                tier,
                snapshot.platform_overrides.get(feature),
                snapshot.tenant_overrides.get(feature),
                now,
                self._settings.tenant_override_without_platform,
            )
            for feature in sorted(candidates)
        }

    def resolve_all(self, tenant_id: str, now: Optional[datetime] = None) -> EffectiveEntitlement:
        """
        Build the tenant's effective entitlement: lifecycle, granted features
        and governing limits.
        """
        now = now or datetime.now(timezone.utc)
        return self.build_entitlement(self._data.load_snapshot(tenant_id), now)

    def build_entitlement(self, snapshot: TenantSnapshot, now: datetime) -> EffectiveEntitlement:
        tenant = snapshot.tenant
        own_tier = self._catalog.get_tier_definition(tenant.tier)
        resolutions = self.resolve_snapshot(snapshot, now)
        overridden = tuple(
            feature
            for feature, resolution in resolutions.items()
            if resolution.source == FeatureSource.OVERRIDE
        )
        sku_limit, location_limit = effective_limits(tenant, snapshot.organization, self._catalog)

        return EffectiveEntitlement(
            tenant_id=tenant.tenant_id,
            tier=effective_tier_key(tenant, snapshot.organization),
            lifecycle_state=classify_tenant(tenant, now, own_tier.trial_expiry_state),
            features=frozenset(f for f, r in resolutions.items() if r.allowed),
            sku_limit=sku_limit,
            location_limit=location_limit,
            source=FeatureSource.OVERRIDE if overridden else FeatureSource.TIER,
            organization_id=tenant.organization_id,
            overrides_applied=overridden,
        )

    @staticmethod
    def _log_override_use(tenant_id: str, resolution: FeatureResolution) -> None:
        if resolution.source == FeatureSource.OVERRIDE:
            logger.info(
                "Feature decided by override",
                extra={
                    "tenant_id": tenant_id,
                    "feature": resolution.feature,
                    "allowed": resolution.allowed,
                    "override_reason": resolution.override_reason,
                },
            )
