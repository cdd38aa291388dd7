"""
Database models read by the entitlement engine.

Tenant-scoped models inherit from TenantScopedMixin.
"""

from retailvis.models.base import TimestampMixin, TenantScopedMixin
from retailvis.models.organization import Organization
from retailvis.models.tenant import Tenant
from retailvis.models.feature_override import FeatureOverrideRecord
from retailvis.models.inventory_item import InventoryItem, ItemStatus

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "Organization",
    "Tenant",
    "FeatureOverrideRecord",
    "InventoryItem",
    "ItemStatus",
]
