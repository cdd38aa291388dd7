"""
Inventory item model.

Only the columns the entitlement engine needs to count SKUs. Trashed items
do not count toward SKU limits.
"""

import enum

from sqlalchemy import Column, Enum, Index, String

from retailvis.db_base import Base
from retailvis.models.base import TenantScopedMixin, TimestampMixin, generate_uuid


class ItemStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"
    TRASHED = "trashed"
    DRAFT = "draft"


class InventoryItem(Base, TimestampMixin, TenantScopedMixin):
    """One SKU listed by a retail location."""

    __tablename__ = "inventory_items"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    sku = Column(String(255), nullable=False)

    name = Column(String(500), nullable=False)

    item_status = Column(
        Enum(ItemStatus, native_enum=False, length=20),
        nullable=False,
        default=ItemStatus.ACTIVE,
    )

    __table_args__ = (
        Index("ix_inventory_items_tenant_status", "tenant_id", "item_status"),
    )
