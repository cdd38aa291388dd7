"""
Entitlement models - canonical types for the subscription policy engine.

Provides:
- SubscriptionStatus / LifecycleState: raw persisted status vs. derived state
- TenantSubscription, Organization, FeatureOverride, UsageSnapshot:
  read-only views of collaborator data
- TenantSnapshot: one batched read of everything an evaluation needs
- FeatureIntent / QuantityIntent / TierChangeIntent: what a caller asks for
- FeatureResolution, LimitDecision, Verdict: what the engine answers

All value objects are frozen dataclasses, safe to cache and share across
threads. The engine never mutates any of them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union


# ---------------------------------------------------------------------------
# Canonical enums - single source of truth, import from here
# ---------------------------------------------------------------------------

class SubscriptionStatus(str, Enum):
    """Raw subscription status as persisted on the tenant record."""
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @classmethod
    def parse(cls, value: Union[str, "SubscriptionStatus", None]) -> "SubscriptionStatus":
        """Parse a persisted status string. Unknown values raise ValueError."""
        if isinstance(value, cls):
            return value
        normalized = (value or "").strip().lower()
        aliases = {
            "cancelled": cls.CANCELED,
            "trialing": cls.TRIAL,
            "past-due": cls.PAST_DUE,
        }
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class LifecycleState(str, Enum):
    """Engine-internal classification of a tenant's billing standing."""
    ACTIVE = "active"
    TRIALING = "trialing"
    MAINTENANCE = "maintenance"
    FROZEN = "frozen"
    CANCELED = "canceled"
    EXPIRED = "expired"
    PAST_DUE = "past_due"

    @property
    def blocks_growth(self) -> bool:
        """Maintenance and frozen allow reads and updates but no new usage."""
        return self in (LifecycleState.MAINTENANCE, LifecycleState.FROZEN)


class OverrideScope(str, Enum):
    PLATFORM = "platform"
    TENANT = "tenant"


class ChangeScope(str, Enum):
    """Whether a tier change applies to one tenant or its whole chain."""
    TENANT = "tenant"
    ORGANIZATION = "organization"


class FeatureSource(str, Enum):
    """Where a feature decision originated."""
    TIER = "tier"
    OVERRIDE = "override"


class Resource(str, Enum):
    """Quantity-gated resources."""
    SKU = "sku"
    LOCATION = "location"


class ReasonCode(str, Enum):
    """Stable machine-readable verdict reasons."""
    ALLOWED = "allowed"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    FEATURE_NOT_AVAILABLE = "feature_not_available"
    FEATURE_DISABLED_BY_PLATFORM = "feature_disabled_by_platform"
    FEATURE_REVOKED = "feature_revoked"
    MAINTENANCE_NO_GROWTH = "maintenance_no_growth"
    FROZEN_NO_GROWTH = "frozen_no_growth"
    SKU_LIMIT_EXCEEDED = "sku_limit_exceeded"
    LOCATION_LIMIT_EXCEEDED = "location_limit_exceeded"
    TIER_LIMIT_EXCEEDED = "tier_limit_exceeded"
    LIMIT_CHECK_UNAVAILABLE = "limit_check_unavailable"
    ENTITLEMENT_CHECK_FAILED = "entitlement_check_failed"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so comparisons never raise."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Collaborator data (read-only)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TenantSubscription:
    """Subscription record for one tenant (location)."""
    tenant_id: str
    tier: str
    status: SubscriptionStatus
    trial_ends_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    organization_id: Optional[str] = None
    frozen: bool = False

    def __post_init__(self):
        # Accept raw strings from collaborators
        object.__setattr__(self, "status", SubscriptionStatus.parse(self.status))
        object.__setattr__(self, "trial_ends_at", ensure_utc(self.trial_ends_at))
        object.__setattr__(
            self, "subscription_ends_at", ensure_utc(self.subscription_ends_at)
        )


@dataclass(frozen=True)
class Organization:
    """
    A chain grouping several tenants.

    max_locations / max_total_skus of None fall back to the organization
    tier's catalog limits.
    """
    organization_id: str
    tier: str
    max_locations: Optional[int] = None
    max_total_skus: Optional[int] = None


@dataclass(frozen=True)
class FeatureOverride:
    """
    Platform- or tenant-scoped exception to tier feature availability.

    expires_at is optional; an expired override behaves as if absent.
    """
    scope: OverrideScope
    feature: str
    enabled: bool
    allow_tenant_override: bool = False
    reason: str = ""
    tenant_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "scope", OverrideScope(self.scope))
        object.__setattr__(self, "expires_at", ensure_utc(self.expires_at))
        if self.scope == OverrideScope.TENANT and not self.tenant_id:
            raise ValueError("tenant-scoped override requires tenant_id")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = ensure_utc(now) or datetime.now(timezone.utc)
        return now > self.expires_at

    @property
    def is_kill_switch(self) -> bool:
        return (
            self.scope == OverrideScope.PLATFORM
            and not self.enabled
            and not self.allow_tenant_override
        )


@dataclass(frozen=True)
class UsageSnapshot:
    """Current usage counts (per tenant, or pooled across a chain)."""
    sku_count: int = 0
    location_count: int = 0

    def count_for(self, resource: Resource) -> int:
        if resource == Resource.SKU:
            return self.sku_count
        return self.location_count


@dataclass(frozen=True)
class TenantSnapshot:
    """
    Everything one evaluation needs, read in a single batch.

    usage / organization_usage are None when the caller did not ask for them.
    """
    tenant: TenantSubscription
    organization: Optional[Organization] = None
    platform_overrides: Mapping[str, FeatureOverride] = field(default_factory=dict)
    tenant_overrides: Mapping[str, FeatureOverride] = field(default_factory=dict)
    usage: Optional[UsageSnapshot] = None
    organization_usage: Optional[UsageSnapshot] = None


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureIntent:
    """
    Ask whether a feature may be used.

    advisory=True marks a non-critical check (e.g. UI hints) that may fail
    open when collaborator data is unavailable.
    """
    feature: str
    advisory: bool = False


@dataclass(frozen=True)
class QuantityIntent:
    """Ask whether usage of a resource may change by delta."""
    resource: Resource
    delta: int

    def __post_init__(self):
        object.__setattr__(self, "resource", Resource(self.resource))

    @classmethod
    def create_items(cls, count: int = 1) -> "QuantityIntent":
        return cls(Resource.SKU, count)

    @classmethod
    def create_locations(cls, count: int = 1) -> "QuantityIntent":
        return cls(Resource.LOCATION, count)


@dataclass(frozen=True)
class TierChangeIntent:
    """Ask whether a tenant (or its whole chain) may move to another tier."""
    proposed_tier: str
    scope: ChangeScope = ChangeScope.TENANT

    def __post_init__(self):
        object.__setattr__(self, "scope", ChangeScope(self.scope))


Intent = Union[FeatureIntent, QuantityIntent, TierChangeIntent]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureResolution:
    """Outcome of override/tier precedence for one feature."""
    feature: str
    allowed: bool
    source: FeatureSource
    reason_code: ReasonCode = ReasonCode.ALLOWED
    override_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "allowed": self.allowed,
            "source": self.source.value,
            "reason_code": self.reason_code.value,
            "override_reason": self.override_reason,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FeatureResolution":
        return cls(
            feature=data["feature"],
            allowed=bool(data["allowed"]),
            source=FeatureSource(data["source"]),
            reason_code=ReasonCode(data.get("reason_code", ReasonCode.ALLOWED.value)),
            override_reason=data.get("override_reason"),
        )


@dataclass(frozen=True)
class LimitDecision:
    """Admit, or Deny with the numbers needed for an actionable message."""
    admitted: bool
    resource: Resource
    reason_code: ReasonCode
    delta: int = 0
    limit: Optional[int] = None
    current: Optional[int] = None
    excess: Optional[int] = None
    pooled: bool = False

    @classmethod
    def admit(
        cls,
        resource: Resource,
        delta: int,
        limit: Optional[int] = None,
        current: Optional[int] = None,
        pooled: bool = False,
    ) -> "LimitDecision":
        return cls(
            admitted=True,
            resource=resource,
            reason_code=ReasonCode.ALLOWED,
            delta=delta,
            limit=limit,
            current=current,
            pooled=pooled,
        )

    @classmethod
    def deny(
        cls,
        resource: Resource,
        reason_code: ReasonCode,
        delta: int,
        limit: Optional[int],
        current: Optional[int],
        excess: Optional[int] = None,
        pooled: bool = False,
    ) -> "LimitDecision":
        return cls(
            admitted=False,
            resource=resource,
            reason_code=reason_code,
            delta=delta,
            limit=limit,
            current=current,
            excess=excess,
            pooled=pooled,
        )


@dataclass(frozen=True)
class TierChangeDecision:
    """Result of validating a prospective tier against current usage."""
    allowed: bool
    proposed_tier: str
    violations: Tuple[LimitDecision, ...] = ()

    @property
    def first_violation(self) -> Optional[LimitDecision]:
        return self.violations[0] if self.violations else None


@dataclass(frozen=True)
class EffectiveEntitlement:
    """Derived per request, never persisted."""
    tenant_id: str
    tier: str
    lifecycle_state: LifecycleState
    features: FrozenSet[str]
    sku_limit: Optional[int]
    location_limit: Optional[int]
    source: FeatureSource
    organization_id: Optional[str] = None
    overrides_applied: Tuple[str, ...] = ()

    def has_feature(self, feature: str) -> bool:
        return feature in self.features

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "tier": self.tier,
            "lifecycle_state": self.lifecycle_state.value,
            "features": sorted(self.features),
            "sku_limit": self.sku_limit,
            "location_limit": self.location_limit,
            "source": self.source.value,
            "organization_id": self.organization_id,
            "overrides_applied": list(self.overrides_applied),
        }


@dataclass(frozen=True)
class UpgradeHint:
    """Tier and cost metadata for user-facing upgrade prompts."""
    required_tier: str
    required_tier_display: str
    required_tier_price: int
    current_tier: str
    current_tier_display: str
    current_tier_price: int
    upgrade_url: str

    @property
    def upgrade_cost(self) -> int:
        return self.required_tier_price - self.current_tier_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "required_tier": self.required_tier,
            "required_tier_display": self.required_tier_display,
            "required_tier_price": self.required_tier_price,
            "current_tier": self.current_tier,
            "current_tier_display": self.current_tier_display,
            "current_tier_price": self.current_tier_price,
            "upgrade_cost": self.upgrade_cost,
            "upgrade_url": self.upgrade_url,
        }


@dataclass(frozen=True)
class Verdict:
    """
    The single answer the gate gives a request handler.

    Denials always carry a reason_code and a human-readable message; where
    relevant they also carry limit/current/excess and an upgrade hint.
    """
    allowed: bool
    reason_code: ReasonCode
    message: str
    tenant_id: str
    lifecycle_state: Optional[LifecycleState] = None
    feature: Optional[str] = None
    resource: Optional[Resource] = None
    source: Optional[FeatureSource] = None
    limit: Optional[int] = None
    current: Optional[int] = None
    excess: Optional[int] = None
    required_tier: Optional[str] = None
    upgrade_hint: Optional[UpgradeHint] = None
    override_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason_code": self.reason_code.value,
            "message": self.message,
            "tenant_id": self.tenant_id,
            "lifecycle_state": self.lifecycle_state.value if self.lifecycle_state else None,
            "feature": self.feature,
            "resource": self.resource.value if self.resource else None,
            "source": self.source.value if self.source else None,
            "limit": self.limit,
            "current": self.current,
            "excess": self.excess,
            "required_tier": self.required_tier,
            "upgrade_hint": self.upgrade_hint.to_dict() if self.upgrade_hint else None,
            "override_reason": self.override_reason,
        }
