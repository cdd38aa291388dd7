"""
Read contract between the entitlement engine and the persistence layer.

The engine only reads. Implementations:
- InMemoryDataSource: fixed snapshot (tests, batch jobs, precomputed reads)
- SqlEntitlementDataSource (repository.py): SQLAlchemy session
- HttpEntitlementDataSource (http_source.py): internal API with service token

Implementations raise DataSourceError for transient failures. Missing
records are returned as None, never raised, so the engine decides which
absence is an error.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from retailvis.entitlements.errors import (
    InvalidSubscriptionStatusError,
    OrganizationNotFoundError,
    TenantNotFoundError,
)
from retailvis.entitlements.models import (
    FeatureOverride,
    Organization,
    OverrideScope,
    SubscriptionStatus,
    TenantSnapshot,
    TenantSubscription,
    UsageSnapshot,
)


class EntitlementDataSource(ABC):
    """Key-based reads the engine needs from the persistence layer."""

    @abstractmethod
    def get_tenant(self, tenant_id: str) -> Optional[TenantSubscription]:
        ...

    @abstractmethod
    def get_organization(self, organization_id: str) -> Optional[Organization]:
        ...

    @abstractmethod
    def list_platform_overrides(self) -> List[FeatureOverride]:
        ...

    @abstractmethod
    def list_tenant_overrides(self, tenant_id: str) -> List[FeatureOverride]:
        ...

    @abstractmethod
    def get_usage(self, tenant_id: str) -> UsageSnapshot:
        ...

    @abstractmethod
    def get_organization_usage(self, organization_id: str) -> UsageSnapshot:
        """SKUs summed across all member tenants; member location count."""
        ...

    def get_platform_override(self, feature: str) -> Optional[FeatureOverride]:
        return index_overrides(self.list_platform_overrides()).get(feature)

    def get_tenant_override(
        self, tenant_id: str, feature: str
    ) -> Optional[FeatureOverride]:
        return index_overrides(self.list_tenant_overrides(tenant_id)).get(feature)

    def require_tenant(self, tenant_id: str) -> TenantSubscription:
        tenant = self.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    def require_organization(
        self, organization_id: str, tenant_id: Optional[str] = None
    ) -> Organization:
        organization = self.get_organization(organization_id)
        if organization is None:
            raise OrganizationNotFoundError(organization_id, tenant_id)
        return organization

    def load_snapshot(self, tenant_id: str, include_usage: bool = False) -> TenantSnapshot:
        """
        Read everything one evaluation needs.

        The default issues one read per collaborator; implementations that
        can batch (one SQL session, one HTTP call) should override it.

        Raises:
            TenantNotFoundError: no tenant record
            OrganizationNotFoundError: tenant references a missing chain
        """
        tenant = self.require_tenant(tenant_id)
        organization = None
        if tenant.organization_id:
            organization = self.require_organization(tenant.organization_id, tenant_id)

        usage = None
        organization_usage = None
        if include_usage:
            usage = self.get_usage(tenant_id)
            if organization is not None:
                organization_usage = self.get_organization_usage(
                    organization.organization_id
                )

        return TenantSnapshot(
            tenant=tenant,
            organization=organization,
            platform_overrides=index_overrides(self.list_platform_overrides()),
            tenant_overrides=index_overrides(self.list_tenant_overrides(tenant_id)),
            usage=usage,
            organization_usage=organization_usage,
        )


def _lifetime(override: FeatureOverride) -> Tuple[bool, datetime]:
    if override.expires_at is None:
        return (True, datetime.min.replace(tzinfo=timezone.utc))
    return (False, override.expires_at)


def index_overrides(overrides: Iterable[FeatureOverride]) -> Dict[str, FeatureOverride]:
    """
    Index overrides by feature, one per key.

    On duplicate keys the override that stays live longest wins, so an
    expired duplicate never hides a live one. Ties go to the later row;
    adapters read rows oldest-update first.
    """
    indexed: Dict[str, FeatureOverride] = {}
    for override in overrides:
        current = indexed.get(override.feature)
        if current is None or _lifetime(override) >= _lifetime(current):
            indexed[override.feature] = override
    return indexed


def parse_subscription_status(tenant_id: str, value: Optional[str]) -> SubscriptionStatus:
    """Parse a persisted status, raising a structured error for unknown values."""
    try:
        return SubscriptionStatus.parse(value)
    except ValueError as e:
        raise InvalidSubscriptionStatusError(tenant_id, value) from e


class InMemoryDataSource(EntitlementDataSource):
    """
    Dictionary-backed data source.

    Organization usage is derived from member tenants' usage unless set
    explicitly with set_organization_usage().
    """

    def __init__(
        self,
        tenants: Optional[Iterable[TenantSubscription]] = None,
        organizations: Optional[Iterable[Organization]] = None,
        overrides: Optional[Iterable[FeatureOverride]] = None,
        usage: Optional[Dict[str, UsageSnapshot]] = None,
    ):
        self._tenants: Dict[str, TenantSubscription] = {
            t.tenant_id: t for t in (tenants or [])
        }
        self._organizations: Dict[str, Organization] = {
            o.organization_id: o for o in (organizations or [])
        }
        self._platform_overrides: Dict[str, FeatureOverride] = {}
        self._tenant_overrides: Dict[str, Dict[str, FeatureOverride]] = {}
        self._usage: Dict[str, UsageSnapshot] = dict(usage or {})
        self._organization_usage: Dict[str, UsageSnapshot] = {}
        for override in overrides or []:
            self.add_override(override)

    # Mutators for building fixtures; the engine itself never calls these.

    def add_tenant(self, tenant: TenantSubscription) -> None:
        self._tenants[tenant.tenant_id] = tenant

    def add_organization(self, organization: Organization) -> None:
        self._organizations[organization.organization_id] = organization

    def add_override(self, override: FeatureOverride) -> None:
        if override.scope == OverrideScope.PLATFORM:
            self._platform_overrides[override.feature] = override
        else:
            self._tenant_overrides.setdefault(override.tenant_id, {})[
                override.feature
            ] = override

    def set_usage(self, tenant_id: str, usage: UsageSnapshot) -> None:
        self._usage[tenant_id] = usage

    def set_organization_usage(self, organization_id: str, usage: UsageSnapshot) -> None:
        self._organization_usage[organization_id] = usage

    # Reads

    def get_tenant(self, tenant_id: str) -> Optional[TenantSubscription]:
        return self._tenants.get(tenant_id)

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        return self._organizations.get(organization_id)

    def list_platform_overrides(self) -> List[FeatureOverride]:
        return list(self._platform_overrides.values())

    def list_tenant_overrides(self, tenant_id: str) -> List[FeatureOverride]:
        return list(self._tenant_overrides.get(tenant_id, {}).values())

    def get_usage(self, tenant_id: str) -> UsageSnapshot:
        return self._usage.get(tenant_id, UsageSnapshot(sku_count=0, location_count=1))

    def get_organization_usage(self, organization_id: str) -> UsageSnapshot:
        if organization_id in self._organization_usage:
            return self._organization_usage[organization_id]
        members = [
            t.tenant_id
            for t in self._tenants.values()
            if t.organization_id == organization_id
        ]
        return UsageSnapshot(
            sku_count=sum(self.get_usage(tid).sku_count for tid in members),
            location_count=len(members),
        )
