"""
Tenant model - one retail location and its subscription.

The Tenant.id is the tenant_id used across all tenant-scoped models.
Subscription columns are written by billing webhooks and admin tools; the
entitlement engine only reads them.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import relationship

from retailvis.db_base import Base
from retailvis.models.base import TimestampMixin, generate_uuid


class Tenant(Base, TimestampMixin):
    """
    A retail location.

    Key concepts:
    - subscription_tier is a tier catalog key
    - subscription_status is the raw billing status; the lifecycle state is
      derived from it at evaluation time
    - organization_id links the location to a chain (nullable)
    """

    __tablename__ = "tenants"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key - this IS the tenant_id used across all models"
    )

    organization_id = Column(
        String(255),
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Parent chain (nullable for standalone locations)"
    )

    name = Column(
        String(255),
        nullable=False,
        comment="Display name of the location"
    )

    subscription_tier = Column(
        String(50),
        nullable=False,
        default="trial",
        comment="Tier key from the tier catalog"
    )

    subscription_status = Column(
        String(20),
        nullable=False,
        default="trial",
        index=True,
        comment="trial | active | past_due | canceled | expired"
    )

    trial_ends_at = Column(DateTime(timezone=True), nullable=True)

    subscription_ends_at = Column(DateTime(timezone=True), nullable=True)

    is_frozen = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Explicit freeze set by platform staff, independent of billing dates"
    )

    organization = relationship("Organization", back_populates="tenants")

    __table_args__ = (
        Index("ix_tenants_tier_status", "subscription_tier", "subscription_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Tenant(id={self.id}, tier={self.subscription_tier}, "
            f"status={self.subscription_status})>"
        )
