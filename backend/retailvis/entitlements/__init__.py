"""
Subscription entitlement engine.

This module provides:
- TierCatalog: Tier definitions with cumulative feature inheritance
- classify_lifecycle: Raw subscription fields -> lifecycle state
- OverrideResolver: Platform/tenant override precedence over tier features
- LimitEnforcer: SKU and location limits, chain-pooled where applicable
- EntitlementGate: Single entry point returning a Verdict per intent
- ResolutionCache: Short-TTL cache for feature resolutions
- Data sources: in-memory, SQLAlchemy and internal HTTP API

Evaluation order: lifecycle -> overrides/tier or limits -> verdict
"""

from retailvis.entitlements.models import (
    ChangeScope,
    EffectiveEntitlement,
    FeatureIntent,
    FeatureOverride,
    FeatureResolution,
    FeatureSource,
    LifecycleState,
    LimitDecision,
    Organization,
    OverrideScope,
    QuantityIntent,
    ReasonCode,
    Resource,
    SubscriptionStatus,
    TenantSnapshot,
    TenantSubscription,
    TierChangeDecision,
    TierChangeIntent,
    UpgradeHint,
    UsageSnapshot,
    Verdict,
)
from retailvis.entitlements.errors import (
    CatalogConfigError,
    DataSourceError,
    EntitlementError,
    InvalidSubscriptionStatusError,
    InvalidTierError,
    OrganizationNotFoundError,
    TenantNotFoundError,
)
from retailvis.entitlements.catalog import (
    TierCatalog,
    TierDefinition,
    get_tier_catalog,
    get_tier_definition,
)
from retailvis.entitlements.lifecycle import classify_lifecycle, classify_tenant
from retailvis.entitlements.overrides import OverrideResolver, decide_feature
from retailvis.entitlements.limits import LimitEnforcer, decide_limit
from retailvis.entitlements.datasource import EntitlementDataSource, InMemoryDataSource
from retailvis.entitlements.cache import ResolutionCache, get_resolution_cache
from retailvis.entitlements.gate import EntitlementGate

__all__ = [
    # Models
    "ChangeScope",
    "EffectiveEntitlement",
    "FeatureIntent",
    "FeatureOverride",
    "FeatureResolution",
    "FeatureSource",
    "LifecycleState",
    "LimitDecision",
    "Organization",
    "OverrideScope",
    "QuantityIntent",
    "ReasonCode",
    "Resource",
    "SubscriptionStatus",
    "TenantSnapshot",
    "TenantSubscription",
    "TierChangeDecision",
    "TierChangeIntent",
    "UpgradeHint",
    "UsageSnapshot",
    "Verdict",
    # Errors
    "CatalogConfigError",
    "DataSourceError",
    "EntitlementError",
    "InvalidSubscriptionStatusError",
    "InvalidTierError",
    "OrganizationNotFoundError",
    "TenantNotFoundError",
    # Components
    "TierCatalog",
    "TierDefinition",
    "get_tier_catalog",
    "get_tier_definition",
    "classify_lifecycle",
    "classify_tenant",
    "OverrideResolver",
    "decide_feature",
    "LimitEnforcer",
    "decide_limit",
    "EntitlementDataSource",
    "InMemoryDataSource",
    "ResolutionCache",
    "get_resolution_cache",
    "EntitlementGate",
]
