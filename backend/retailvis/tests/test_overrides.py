"""
Tests for override precedence and feature resolution.

Tests cover:
- decide_feature precedence (kill switch, tenant-if-allowed, platform grant)
- Expired overrides
- Tenant overrides without a platform record
- OverrideResolver against an in-memory data source
- Effective entitlement summaries
"""

from datetime import timedelta

import pytest

from retailvis.config.settings import EntitlementSettings
from retailvis.entitlements.datasource import index_overrides
from retailvis.entitlements.errors import OrganizationNotFoundError, TenantNotFoundError
from retailvis.entitlements.models import (
    FeatureOverride,
    FeatureSource,
    LifecycleState,
    Organization,
    OverrideScope,
    ReasonCode,
)
from retailvis.entitlements.overrides import (
    OverrideResolver,
    decide_feature,
    effective_tier_key,
)


def platform(feature, enabled=False, allow_tenant_override=False, **kwargs):
    return FeatureOverride(
        scope=OverrideScope.PLATFORM,
        feature=feature,
        enabled=enabled,
        allow_tenant_override=allow_tenant_override,
        **kwargs,
    )


def tenant_override(feature, enabled=True, tenant_id="tenant-1", **kwargs):
    return FeatureOverride(
        scope=OverrideScope.TENANT,
        feature=feature,
        enabled=enabled,
        tenant_id=tenant_id,
        **kwargs,
    )


class TestDecideFeature:

    def test_tier_grants(self, catalog, now):
        resolution = decide_feature(
            "gbp_integration", catalog.get_tier_definition("professional"), None, None, now
        )

        assert resolution.allowed
        assert resolution.source == FeatureSource.TIER
        assert resolution.reason_code == ReasonCode.ALLOWED

    def test_tier_lacks_feature(self, catalog, now):
        resolution = decide_feature(
            "gbp_integration", catalog.get_tier_definition("starter"), None, None, now
        )

        assert not resolution.allowed
        assert resolution.reason_code == ReasonCode.FEATURE_NOT_AVAILABLE

    def test_unknown_feature_not_allowed(self, catalog, now):
        resolution = decide_feature(
            "teleportation", catalog.get_tier_definition("enterprise"), None, None, now
        )
        assert not resolution.allowed

    def test_kill_switch_beats_tenant_override(self, catalog, now):
        resolution = decide_feature(
            "api_access",
            catalog.get_tier_definition("starter"),
            platform("api_access", reason="incident"),
            tenant_override("api_access", enabled=True),
            now,
        )

        assert not resolution.allowed
        assert resolution.source == FeatureSource.OVERRIDE
        assert resolution.reason_code == ReasonCode.FEATURE_DISABLED_BY_PLATFORM
        assert resolution.override_reason == "incident"

    def test_kill_switch_beats_tier(self, catalog, now):
        resolution = decide_feature(
            "gbp_integration",
            catalog.get_tier_definition("enterprise"),
            platform("gbp_integration"),
            None,
            now,
        )
        assert not resolution.allowed

    def test_tenant_may_re_enable_when_allowed(self, catalog, now):
        resolution = decide_feature(
            "barcode_scan",
            catalog.get_tier_definition("starter"),
            platform("barcode_scan", allow_tenant_override=True),
            tenant_override("barcode_scan", enabled=True, reason="beta"),
            now,
        )

        assert resolution.allowed
        assert resolution.source == FeatureSource.OVERRIDE
        assert resolution.override_reason == "beta"

    def test_platform_disabled_without_tenant_row(self, catalog, now):
        resolution = decide_feature(
            "barcode_scan",
            catalog.get_tier_definition("professional"),
            platform("barcode_scan", allow_tenant_override=True),
            None,
            now,
        )

        assert not resolution.allowed
        assert resolution.reason_code == ReasonCode.FEATURE_DISABLED_BY_PLATFORM

    def test_platform_grant(self, catalog, now):
        resolution = decide_feature(
            "white_label",
            catalog.get_tier_definition("starter"),
            platform("white_label", enabled=True),
            None,
            now,
        )

        assert resolution.allowed
        assert resolution.source == FeatureSource.OVERRIDE

    def test_platform_grant_ignores_tenant_row_unless_allowed(self, catalog, now):
        resolution = decide_feature(
            "white_label",
            catalog.get_tier_definition("starter"),
            platform("white_label", enabled=True),
            tenant_override("white_label", enabled=False),
            now,
        )
        assert resolution.allowed

    def test_tenant_may_revoke_platform_grant_when_allowed(self, catalog, now):
        resolution = decide_feature(
            "white_label",
            catalog.get_tier_definition("enterprise"),
            platform("white_label", enabled=True, allow_tenant_override=True),
            tenant_override("white_label", enabled=False),
            now,
        )

        assert not resolution.allowed
        assert resolution.reason_code == ReasonCode.FEATURE_REVOKED

    def test_tenant_override_without_platform_ignored_by_default(self, catalog, now):
        resolution = decide_feature(
            "gbp_integration",
            catalog.get_tier_definition("starter"),
            None,
            tenant_override("gbp_integration", enabled=True),
            now,
        )

        assert not resolution.allowed
        assert resolution.source == FeatureSource.TIER

    def test_tenant_override_without_platform_when_configured(self, catalog, now):
        resolution = decide_feature(
            "gbp_integration",
            catalog.get_tier_definition("starter"),
            None,
            tenant_override("gbp_integration", enabled=True),
            now,
            tenant_override_without_platform=True,
        )

        assert resolution.allowed
        assert resolution.source == FeatureSource.OVERRIDE

    def test_expired_overrides_are_absent(self, catalog, now):
        expired_at = now - timedelta(minutes=1)
        resolution = decide_feature(
            "gbp_integration",
            catalog.get_tier_definition("professional"),
            platform("gbp_integration", expires_at=expired_at),
            tenant_override("gbp_integration", enabled=False, expires_at=expired_at),
            now,
        )

        assert resolution.allowed
        assert resolution.source == FeatureSource.TIER

    def test_unexpired_override_applies(self, catalog, now):
        resolution = decide_feature(
            "gbp_integration",
            catalog.get_tier_definition("professional"),
            platform("gbp_integration", expires_at=now + timedelta(hours=1)),
            None,
            now,
        )
        assert not resolution.allowed


class TestFeatureOverrideModel:

    def test_tenant_scope_requires_tenant_id(self):
        with pytest.raises(ValueError):
            FeatureOverride(scope="tenant", feature="barcode_scan", enabled=True)

    def test_kill_switch_property(self):
        assert platform("x").is_kill_switch
        assert not platform("x", allow_tenant_override=True).is_kill_switch
        assert not platform("x", enabled=True).is_kill_switch
        assert not tenant_override("x", enabled=False).is_kill_switch


class TestIndexOverrides:

    def test_live_override_beats_expired_duplicate(self, now):
        live = platform("gbp_integration", reason="outage")
        expired = platform("gbp_integration", enabled=True, expires_at=now - timedelta(days=1))

        assert index_overrides([live, expired])["gbp_integration"] is live
        assert index_overrides([expired, live])["gbp_integration"] is live

    def test_longer_expiry_wins(self, now):
        short = platform("gbp_integration", expires_at=now + timedelta(hours=1))
        long = platform("gbp_integration", expires_at=now + timedelta(days=7))

        assert index_overrides([long, short])["gbp_integration"] is long

    def test_later_row_wins_tie(self):
        first = tenant_override("barcode_scan", enabled=True)
        second = tenant_override("barcode_scan", enabled=False)

        assert index_overrides([first, second])["barcode_scan"] is second


class TestEffectiveTierKey:

    def test_standalone_uses_tenant_tier(self, make_tenant):
        assert effective_tier_key(make_tenant(tier="starter")) == "starter"

    def test_chain_member_uses_organization_tier(self, make_tenant):
        tenant = make_tenant(tier="starter", organization_id="org-1")
        organization = Organization(organization_id="org-1", tier="chain_professional")

        assert effective_tier_key(tenant, organization) == "chain_professional"


class TestOverrideResolver:

    @pytest.fixture
    def resolver(self, data_source, catalog, settings):
        return OverrideResolver(data_source, catalog, settings)

    def test_professional_gbp_from_tier(self, resolver, data_source, make_tenant, now):
        data_source.add_tenant(make_tenant("t1", tier="professional"))

        resolution = resolver.resolve_feature("t1", "gbp_integration", now)

        assert resolution.allowed
        assert resolution.source == FeatureSource.TIER

    def test_starter_api_kill_switch_with_tenant_override(
        self, resolver, data_source, make_tenant, now
    ):
        data_source.add_tenant(make_tenant("t1", tier="starter"))
        data_source.add_override(platform("api_access"))
        data_source.add_override(tenant_override("api_access", tenant_id="t1"))

        resolution = resolver.resolve_feature("t1", "api_access", now)

        assert not resolution.allowed
        assert resolution.reason_code == ReasonCode.FEATURE_DISABLED_BY_PLATFORM

    def test_idempotent(self, resolver, data_source, make_tenant, now):
        data_source.add_tenant(make_tenant("t1", tier="starter"))
        data_source.add_override(platform("barcode_scan", allow_tenant_override=True))
        data_source.add_override(tenant_override("barcode_scan", tenant_id="t1"))

        first = resolver.resolve_feature("t1", "barcode_scan", now)
        second = resolver.resolve_feature("t1", "barcode_scan", now)

        assert first == second

    def test_tenant_override_scoped_to_its_tenant(self, resolver, data_source, make_tenant, now):
        data_source.add_tenant(make_tenant("t1", tier="starter"))
        data_source.add_tenant(make_tenant("t2", tier="starter"))
        data_source.add_override(platform("barcode_scan", allow_tenant_override=True))
        data_source.add_override(tenant_override("barcode_scan", tenant_id="t1"))

        assert resolver.resolve_feature("t1", "barcode_scan", now).allowed
        assert not resolver.resolve_feature("t2", "barcode_scan", now).allowed

    def test_setting_enables_tenant_override_without_platform(
        self, data_source, catalog, make_tenant, now
    ):
        resolver = OverrideResolver(
            data_source,
            catalog,
            EntitlementSettings(cache_ttl_seconds=0, tenant_override_without_platform=True),
        )
        data_source.add_tenant(make_tenant("t1", tier="starter"))
        data_source.add_override(tenant_override("gbp_integration", tenant_id="t1"))

        assert resolver.resolve_feature("t1", "gbp_integration", now).allowed

    def test_chain_member_gets_organization_features(
        self, resolver, data_source, make_tenant, now
    ):
        data_source.add_organization(Organization("org-1", tier="chain_professional"))
        data_source.add_tenant(make_tenant("t1", tier="starter", organization_id="org-1"))

        resolution = resolver.resolve_feature("t1", "gbp_integration", now)

        assert resolution.allowed

    def test_missing_tenant(self, resolver):
        with pytest.raises(TenantNotFoundError):
            resolver.resolve_feature("ghost", "storefront")

    def test_missing_organization(self, resolver, data_source, make_tenant):
        data_source.add_tenant(make_tenant("t1", organization_id="org-gone"))

        with pytest.raises(OrganizationNotFoundError) as exc_info:
            resolver.resolve_feature("t1", "storefront")

        assert exc_info.value.tenant_id == "t1"


class TestResolveAll:

    @pytest.fixture
    def resolver(self, data_source, catalog, settings):
        return OverrideResolver(data_source, catalog, settings)

    def test_effective_entitlement(self, resolver, data_source, make_tenant, now):
        data_source.add_tenant(make_tenant("t1", tier="starter"))
        data_source.add_override(platform("storefront", reason="maintenance window"))
        data_source.add_override(platform("white_label", enabled=True))

        entitlement = resolver.resolve_all("t1", now)

        assert entitlement.tier == "starter"
        assert entitlement.lifecycle_state == LifecycleState.ACTIVE
        assert entitlement.has_feature("google_merchant_center")
        assert entitlement.has_feature("white_label")
        assert not entitlement.has_feature("storefront")
        assert entitlement.sku_limit == 500
        assert entitlement.location_limit == 1
        assert entitlement.source == FeatureSource.OVERRIDE
        assert set(entitlement.overrides_applied) == {"storefront", "white_label"}

    def test_chain_member_pooled_limits(self, resolver, data_source, make_tenant, now):
        data_source.add_organization(
            Organization("org-1", tier="chain_starter", max_total_skus=3000)
        )
        data_source.add_tenant(make_tenant("t1", tier="starter", organization_id="org-1"))

        entitlement = resolver.resolve_all("t1", now)

        assert entitlement.tier == "chain_starter"
        assert entitlement.organization_id == "org-1"
        assert entitlement.sku_limit == 3000
        assert entitlement.location_limit == 5
        assert entitlement.has_feature("multi_location_5")
        assert entitlement.source == FeatureSource.TIER

    def test_to_dict_is_sorted(self, resolver, data_source, make_tenant, now):
        data_source.add_tenant(make_tenant("t1", tier="google_only"))

        data = resolver.resolve_all("t1", now).to_dict()

        assert data["features"] == sorted(data["features"])
        assert data["lifecycle_state"] == "active"
        assert data["source"] == "tier"
