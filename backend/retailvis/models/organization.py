"""
Organization model - a retail chain grouping several tenants.

When a tenant belongs to an organization, its SKU and location limits are
pooled at the organization level. max_locations / max_total_skus of NULL
fall back to the organization tier's catalog limits.
"""

from sqlalchemy import Column, Index, Integer, String
from sqlalchemy.orm import relationship

from retailvis.db_base import Base
from retailvis.models.base import TimestampMixin, generate_uuid


class Organization(Base, TimestampMixin):
    """Chain of retail locations sharing a subscription and pooled limits."""

    __tablename__ = "organizations"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Organization identifier"
    )

    name = Column(
        String(255),
        nullable=False,
        comment="Display name of the chain"
    )

    subscription_tier = Column(
        String(50),
        nullable=False,
        default="chain_starter",
        comment="Tier key from the tier catalog"
    )

    max_locations = Column(
        Integer,
        nullable=True,
        comment="Pooled location limit; NULL uses the tier limit"
    )

    max_total_skus = Column(
        Integer,
        nullable=True,
        comment="Pooled SKU limit across all locations; NULL uses the tier limit"
    )

    tenants = relationship(
        "Tenant",
        back_populates="organization",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_organizations_name", "name"),
    )

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, tier={self.subscription_tier})>"
