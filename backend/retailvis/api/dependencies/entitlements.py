"""
Entitlement check dependencies.

Reusable FastAPI dependencies that route code uses instead of talking to
the engine directly:

    @router.post("/gbp/sync", dependencies=[Depends(require_feature("gbp_integration"))])
    @router.post("/items", dependencies=[Depends(require_capacity(Resource.SKU))])

Denials become structured JSON errors:
- 402 Payment Required: an upgrade would unlock the request
- 403 Forbidden: inactive subscription, read-only mode, disabled feature
- 503 Service Unavailable: entitlement data could not be read

Platform admins bypass the gate here, before it is consulted.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from retailvis.api.schemas.entitlements import (
    EffectiveEntitlementResponse,
    EntitlementDenialResponse,
)
from retailvis.auth.context import RequestContext, get_request_context
from retailvis.config.settings import get_entitlement_settings
from retailvis.database.session import get_db_session
from retailvis.entitlements.cache import get_resolution_cache
from retailvis.entitlements.errors import EntitlementError
from retailvis.entitlements.gate import EntitlementGate
from retailvis.entitlements.models import (
    FeatureIntent,
    QuantityIntent,
    ReasonCode,
    Resource,
    Verdict,
)
from retailvis.entitlements.repository import SqlEntitlementDataSource

logger = logging.getLogger(__name__)

DENIAL_STATUS = {
    ReasonCode.FEATURE_NOT_AVAILABLE: status.HTTP_402_PAYMENT_REQUIRED,
    ReasonCode.SKU_LIMIT_EXCEEDED: status.HTTP_402_PAYMENT_REQUIRED,
    ReasonCode.LOCATION_LIMIT_EXCEEDED: status.HTTP_402_PAYMENT_REQUIRED,
    ReasonCode.TIER_LIMIT_EXCEEDED: status.HTTP_402_PAYMENT_REQUIRED,
    ReasonCode.SUBSCRIPTION_INACTIVE: status.HTTP_403_FORBIDDEN,
    ReasonCode.MAINTENANCE_NO_GROWTH: status.HTTP_403_FORBIDDEN,
    ReasonCode.FROZEN_NO_GROWTH: status.HTTP_403_FORBIDDEN,
    ReasonCode.FEATURE_DISABLED_BY_PLATFORM: status.HTTP_403_FORBIDDEN,
    ReasonCode.FEATURE_REVOKED: status.HTTP_403_FORBIDDEN,
    ReasonCode.LIMIT_CHECK_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ReasonCode.ENTITLEMENT_CHECK_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class EntitlementDeniedError(HTTPException):
    """HTTP error carrying a serialized denial verdict."""

    def __init__(self, verdict: Verdict):
        body = EntitlementDenialResponse.from_verdict(
            verdict, upgrade_url=get_entitlement_settings().upgrade_url
        )
        super().__init__(
            status_code=DENIAL_STATUS.get(verdict.reason_code, status.HTTP_403_FORBIDDEN),
            detail=body.model_dump(by_alias=True),
        )
        self.verdict = verdict


def get_entitlement_gate(db_session: Session = Depends(get_db_session)) -> EntitlementGate:
    """Request-scoped gate over the request's database session."""
    return EntitlementGate(
        SqlEntitlementDataSource(db_session),
        cache=get_resolution_cache(),
    )


def _admin_bypass(context: RequestContext, **fields) -> Verdict:
    logger.info(
        "Entitlement check bypassed for platform admin",
        extra={"tenant_id": context.tenant_id, "user_id": context.user_id, **fields},
    )
    return Verdict(
        allowed=True,
        reason_code=ReasonCode.ALLOWED,
        message="Platform admin bypass",
        tenant_id=context.tenant_id,
        **fields,
    )


def _run(evaluate: Callable[[], Verdict]) -> Verdict:
    """Run a gate call, translating errors and denials into HTTP errors."""
    try:
        verdict = evaluate()
    except EntitlementError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())

    if not verdict.allowed:
        raise EntitlementDeniedError(verdict)
    return verdict


def require_feature(feature: str, advisory: bool = False) -> Callable:
    """
    Factory for a dependency that requires one feature.

    Args:
        feature: Feature key from the tier catalog
        advisory: Fail open if entitlement data is unavailable

    Returns:
        A FastAPI dependency returning the allowing Verdict
    """

    def check_feature(
        context: RequestContext = Depends(get_request_context),
        gate: EntitlementGate = Depends(get_entitlement_gate),
    ) -> Verdict:
        if context.is_platform_admin:
            return _admin_bypass(context, feature=feature)
        return _run(lambda: gate.evaluate(context.tenant_id, FeatureIntent(feature, advisory)))

    return check_feature


def require_any_feature(*features: str) -> Callable:
    """Factory for a dependency that requires at least one of the features."""
    if not features:
        raise ValueError("require_any_feature needs at least one feature")

    def check_any_feature(
        context: RequestContext = Depends(get_request_context),
        gate: EntitlementGate = Depends(get_entitlement_gate),
    ) -> Verdict:
        if context.is_platform_admin:
            return _admin_bypass(context, feature=features[0])
        return _run(lambda: gate.evaluate_any(context.tenant_id, features))

    return check_any_feature


def require_capacity(
    resource: Resource,
    count: int = 1,
    count_from: Optional[Callable[..., int]] = None,
) -> Callable:
    """
    Factory for a dependency that pre-checks a quantity change.

    Args:
        resource: sku or location
        count: Fixed number of units the route creates
        count_from: Optional dependency returning the count from the request
            (e.g. the length of a bulk-import payload); overrides count
    """
    resource = Resource(resource)
    counter = count_from or (lambda: count)

    def check_capacity(
        context: RequestContext = Depends(get_request_context),
        gate: EntitlementGate = Depends(get_entitlement_gate),
        delta: int = Depends(counter),
    ) -> Verdict:
        if context.is_platform_admin:
            return _admin_bypass(context, resource=resource)
        return _run(lambda: gate.evaluate(context.tenant_id, QuantityIntent(resource, delta)))

    return check_capacity


def get_effective_entitlement(
    context: RequestContext = Depends(get_request_context),
    gate: EntitlementGate = Depends(get_entitlement_gate),
) -> EffectiveEntitlementResponse:
    """Dependency returning the caller's effective entitlement summary."""
    try:
        entitlement = gate.effective_entitlement(context.tenant_id)
    except EntitlementError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
    return EffectiveEntitlementResponse.from_entitlement(entitlement)
