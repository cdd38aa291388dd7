"""
Lifecycle Classifier.

Maps a tenant's raw subscription fields to exactly one LifecycleState.
Pure: no I/O, no clock reads (callers pass `now`).

Rules, first match wins:
    0. explicit freeze signal                      -> frozen
    1. status canceled                             -> canceled
    2. status trial, trial ended                   -> tier's trial-expiry state
                                                      (maintenance or expired)
    3. status active, subscription ended           -> expired
    4. status past_due                             -> past_due
    5. status trial, trial not ended               -> trialing
    6. status expired                              -> expired
    7. otherwise                                   -> active
"""

from datetime import datetime
from typing import Optional, Union

from retailvis.entitlements.models import (
    LifecycleState,
    SubscriptionStatus,
    TenantSubscription,
    ensure_utc,
)

# Used when the caller does not supply the tier's trial-expiry policy.
MAINTENANCE_ON_TRIAL_EXPIRY = frozenset({"google_only"})


def _has_passed(moment: Optional[datetime], now: datetime) -> bool:
    return moment is not None and moment <= now


def classify_lifecycle(
    tier: str,
    status: Union[SubscriptionStatus, str],
    trial_ends_at: Optional[datetime],
    subscription_ends_at: Optional[datetime],
    now: datetime,
    frozen: bool = False,
    trial_expiry_state: Optional[LifecycleState] = None,
) -> LifecycleState:
    """
    Classify a tenant's lifecycle state.

    Args:
        tier: Tenant tier key
        status: Persisted subscription status
        trial_ends_at: End of trial, if any
        subscription_ends_at: End of paid period, if any
        now: Evaluation time
        frozen: Explicit freeze signal set outside date math
        trial_expiry_state: State for an ended trial on this tier; defaults
            to maintenance for google_only and expired otherwise

    Raises:
        ValueError: status is not a known subscription status
    """
    status = SubscriptionStatus.parse(status)
    now = ensure_utc(now)
    trial_ends_at = ensure_utc(trial_ends_at)
    subscription_ends_at = ensure_utc(subscription_ends_at)

    if frozen:
        return LifecycleState.FROZEN

    if status == SubscriptionStatus.CANCELED:
        return LifecycleState.CANCELED

    if status == SubscriptionStatus.TRIAL and _has_passed(trial_ends_at, now):
        if trial_expiry_state is None:
            if tier in MAINTENANCE_ON_TRIAL_EXPIRY:
                return LifecycleState.MAINTENANCE
            return LifecycleState.EXPIRED
        return trial_expiry_state

    if status == SubscriptionStatus.ACTIVE and _has_passed(subscription_ends_at, now):
        return LifecycleState.EXPIRED

    if status == SubscriptionStatus.PAST_DUE:
        return LifecycleState.PAST_DUE

    if status == SubscriptionStatus.TRIAL:
        return LifecycleState.TRIALING

    if status == SubscriptionStatus.EXPIRED:
        return LifecycleState.EXPIRED

    return LifecycleState.ACTIVE


def classify_tenant(
    tenant: TenantSubscription,
    now: datetime,
    trial_expiry_state: Optional[LifecycleState] = None,
) -> LifecycleState:
    """Classify a TenantSubscription record."""
    return classify_lifecycle(
        tier=tenant.tier,
        status=tenant.status,
        trial_ends_at=tenant.trial_ends_at,
        subscription_ends_at=tenant.subscription_ends_at,
        now=now,
        frozen=tenant.frozen,
        trial_expiry_state=trial_expiry_state,
    )


def lapsed_at(tenant: TenantSubscription) -> Optional[datetime]:
    """
    When the tenant's paid or trial period ended, if it has.

    Used for grace-window calculations on expired tenants.
    """
    if tenant.status == SubscriptionStatus.TRIAL:
        return tenant.trial_ends_at
    return tenant.subscription_ends_at or tenant.trial_ends_at
