"""
SQLAlchemy-backed entitlement data source.

Read-only: the engine never writes subscription, override or inventory rows.
Any SQLAlchemyError is wrapped in DataSourceError so the gate can apply its
fail-open / fail-closed policy.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from retailvis.entitlements.datasource import (
    EntitlementDataSource,
    index_overrides,
    parse_subscription_status,
)
from retailvis.entitlements.errors import DataSourceError
from retailvis.entitlements.models import (
    FeatureOverride,
    Organization,
    OverrideScope,
    TenantSnapshot,
    TenantSubscription,
    UsageSnapshot,
)
from retailvis.models.feature_override import FeatureOverrideRecord
from retailvis.models.inventory_item import InventoryItem, ItemStatus
from retailvis.models.organization import Organization as OrganizationRecord
from retailvis.models.tenant import Tenant

logger = logging.getLogger(__name__)

# Oldest update first; index_overrides lets later rows win ties
_OVERRIDE_ORDER = (FeatureOverrideRecord.updated_at, FeatureOverrideRecord.id)


def _to_subscription(row: Tenant) -> TenantSubscription:
    return TenantSubscription(
        tenant_id=row.id,
        tier=row.subscription_tier,
        status=parse_subscription_status(row.id, row.subscription_status),
        trial_ends_at=row.trial_ends_at,
        subscription_ends_at=row.subscription_ends_at,
        organization_id=row.organization_id,
        frozen=bool(row.is_frozen),
    )


def _to_organization(row: OrganizationRecord) -> Organization:
    return Organization(
        organization_id=row.id,
        tier=row.subscription_tier,
        max_locations=row.max_locations,
        max_total_skus=row.max_total_skus,
    )


def _to_override(row: FeatureOverrideRecord) -> FeatureOverride:
    return FeatureOverride(
        scope=OverrideScope(row.scope),
        feature=row.feature,
        enabled=bool(row.enabled),
        allow_tenant_override=bool(row.allow_tenant_override),
        reason=row.reason or "",
        tenant_id=row.tenant_id,
        expires_at=row.expires_at,
    )


class SqlEntitlementDataSource(EntitlementDataSource):
    """
    Entitlement reads over a SQLAlchemy session.

    The session is owned by the caller (request scope); this class never
    commits, rolls back or closes it.
    """

    def __init__(self, db_session: Session):
        self.db_session = db_session

    @contextmanager
    def _reading(self, operation: str, **context) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as e:
            logger.error(
                "Entitlement read failed",
                extra={"operation": operation, "error": str(e), **context},
            )
            raise DataSourceError(f"Entitlement read failed during {operation}", e) from e

    def get_tenant(self, tenant_id: str) -> Optional[TenantSubscription]:
        with self._reading("get_tenant", tenant_id=tenant_id):
            row = self.db_session.query(Tenant).filter(Tenant.id == tenant_id).first()
        return _to_subscription(row) if row else None

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._reading("get_organization", organization_id=organization_id):
            row = (
                self.db_session.query(OrganizationRecord)
                .filter(OrganizationRecord.id == organization_id)
                .first()
            )
        return _to_organization(row) if row else None

    def list_platform_overrides(self) -> List[FeatureOverride]:
        with self._reading("list_platform_overrides"):
            rows = (
                self.db_session.query(FeatureOverrideRecord)
                .filter(FeatureOverrideRecord.scope == OverrideScope.PLATFORM.value)
                .order_by(*_OVERRIDE_ORDER)
                .all()
            )
        return [_to_override(row) for row in rows]

    def list_tenant_overrides(self, tenant_id: str) -> List[FeatureOverride]:
        with self._reading("list_tenant_overrides", tenant_id=tenant_id):
            rows = (
                self.db_session.query(FeatureOverrideRecord)
                .filter(
                    FeatureOverrideRecord.scope == OverrideScope.TENANT.value,
                    FeatureOverrideRecord.tenant_id == tenant_id,
                )
                .order_by(*_OVERRIDE_ORDER)
                .all()
            )
        return [_to_override(row) for row in rows]

    def get_usage(self, tenant_id: str) -> UsageSnapshot:
        """A standalone location counts as one location."""
        return UsageSnapshot(
            sku_count=self._sku_counts([tenant_id]).get(tenant_id, 0),
            location_count=1,
        )

    def get_organization_usage(self, organization_id: str) -> UsageSnapshot:
        with self._reading("get_organization_usage", organization_id=organization_id):
            member_ids = [
                tenant_id
                for (tenant_id,) in self.db_session.query(Tenant.id)
                .filter(Tenant.organization_id == organization_id)
                .all()
            ]
        counts = self._sku_counts(member_ids)
        return UsageSnapshot(
            sku_count=sum(counts.values()),
            location_count=len(member_ids),
        )

    def load_snapshot(self, tenant_id: str, include_usage: bool = False) -> TenantSnapshot:
        """
        One session, one pass: tenant, organization and both override scopes.

        Raises:
            TenantNotFoundError: no tenant record
            OrganizationNotFoundError: tenant references a missing chain
            DataSourceError: the session failed
        """
        with self._reading("load_snapshot", tenant_id=tenant_id):
            override_rows = (
                self.db_session.query(FeatureOverrideRecord)
                .filter(
                    (FeatureOverrideRecord.scope == OverrideScope.PLATFORM.value)
                    | (FeatureOverrideRecord.tenant_id == tenant_id)
                )
                .order_by(*_OVERRIDE_ORDER)
                .all()
            )

        tenant = self.require_tenant(tenant_id)
        organization = None
        if tenant.organization_id:
            organization = self.require_organization(tenant.organization_id, tenant_id)

        platform = [_to_override(r) for r in override_rows if r.scope == OverrideScope.PLATFORM.value]
        scoped = [
            _to_override(r)
            for r in override_rows
            if r.scope == OverrideScope.TENANT.value and r.tenant_id == tenant_id
        ]

        usage = None
        organization_usage = None
        if include_usage:
            usage = self.get_usage(tenant_id)
            if organization is not None:
                organization_usage = self.get_organization_usage(organization.organization_id)

        return TenantSnapshot(
            tenant=tenant,
            organization=organization,
            platform_overrides=index_overrides(platform),
            tenant_overrides=index_overrides(scoped),
            usage=usage,
            organization_usage=organization_usage,
        )

    def _sku_counts(self, tenant_ids: List[str]) -> Dict[str, int]:
        if not tenant_ids:
            return {}
        with self._reading("count_skus", tenant_count=len(tenant_ids)):
            rows = (
                self.db_session.query(InventoryItem.tenant_id, func.count(InventoryItem.id))
                .filter(
                    InventoryItem.tenant_id.in_(tenant_ids),
                    InventoryItem.item_status != ItemStatus.TRASHED,
                )
                .group_by(InventoryItem.tenant_id)
                .all()
            )
        return {tenant_id: count for tenant_id, count in rows}
