"""
Entitlement response schemas.

Wire format for denials and entitlement summaries. Field names are
camelCase on the wire (upgradeUrl, requiredTier, ...) and snake_case in
Python; this module is the only place the two casings meet.
"""

from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from retailvis.entitlements.models import EffectiveEntitlement, UpgradeHint, Verdict


class _CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class UpgradeHintResponse(_CamelModel):
    """Pricing metadata for an upgrade prompt."""

    required_tier: str
    required_tier_display: str
    required_tier_price: int
    current_tier: str
    current_tier_display: str
    current_tier_price: int
    upgrade_cost: int
    upgrade_url: str

    @classmethod
    def from_hint(cls, hint: UpgradeHint) -> "UpgradeHintResponse":
        return cls(**hint.to_dict())


class EntitlementDenialResponse(_CamelModel):
    """Body of a 402/403/503 entitlement denial."""

    error: str = Field(..., description="Stable reason code")
    message: str = Field(..., description="Human-readable explanation")
    tenant_id: str
    lifecycle_state: Optional[str] = None
    feature: Optional[str] = None
    resource: Optional[str] = None
    limit: Optional[int] = None
    current: Optional[int] = None
    excess: Optional[int] = None
    required_tier: Optional[str] = None
    required_tier_display: Optional[str] = None
    upgrade_url: Optional[str] = None
    upgrade_hint: Optional[UpgradeHintResponse] = None

    @classmethod
    def from_verdict(cls, verdict: Verdict, upgrade_url: Optional[str] = None) -> "EntitlementDenialResponse":
        hint = verdict.upgrade_hint
        return cls(
            error=verdict.reason_code.value,
            message=verdict.message,
            tenant_id=verdict.tenant_id,
            lifecycle_state=verdict.lifecycle_state.value if verdict.lifecycle_state else None,
            feature=verdict.feature,
            resource=verdict.resource.value if verdict.resource else None,
            limit=verdict.limit,
            current=verdict.current,
            excess=verdict.excess,
            required_tier=verdict.required_tier,
            required_tier_display=hint.required_tier_display if hint else None,
            upgrade_url=hint.upgrade_url if hint else upgrade_url,
            upgrade_hint=UpgradeHintResponse.from_hint(hint) if hint else None,
        )


class EffectiveEntitlementResponse(_CamelModel):
    """What a tenant can currently do."""

    tenant_id: str
    tier: str
    lifecycle_state: str
    features: List[str]
    sku_limit: Optional[int] = Field(None, description="None means unbounded")
    location_limit: Optional[int] = Field(None, description="None means unbounded")
    source: str
    organization_id: Optional[str] = None
    overrides_applied: List[str] = Field(default_factory=list)

    @classmethod
    def from_entitlement(cls, entitlement: EffectiveEntitlement) -> "EffectiveEntitlementResponse":
        return cls(**entitlement.to_dict())
