"""
Feature override model.

One table holds both scopes:
- platform rows (tenant_id NULL): kill-switches or platform-wide grants
- tenant rows: per-location grants or revocations

The unique constraint does not cover platform rows (NULL tenant_id), so
readers resolve duplicates with index_overrides.
"""

from sqlalchemy import Boolean, Column, DateTime, Index, String, Text, UniqueConstraint

from retailvis.db_base import Base
from retailvis.models.base import TimestampMixin, generate_uuid


class FeatureOverrideRecord(Base, TimestampMixin):
    """Persisted exception to tier feature availability."""

    __tablename__ = "feature_overrides"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    scope = Column(
        String(20),
        nullable=False,
        comment="platform | tenant"
    )

    tenant_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Target tenant for tenant-scope rows; NULL for platform rows"
    )

    feature = Column(String(100), nullable=False)

    enabled = Column(Boolean, nullable=False, default=True)

    allow_tenant_override = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Platform rows only: whether tenant rows may take precedence"
    )

    reason = Column(Text, nullable=True)

    granted_by = Column(
        String(255),
        nullable=True,
        comment="Staff user who created the override"
    )

    expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Override is ignored after this time"
    )

    __table_args__ = (
        UniqueConstraint("scope", "tenant_id", "feature", name="uq_feature_overrides_target"),
        Index("ix_feature_overrides_scope_feature", "scope", "feature"),
    )

    def __repr__(self) -> str:
        return (
            f"<FeatureOverrideRecord(scope={self.scope}, tenant_id={self.tenant_id}, "
            f"feature={self.feature}, enabled={self.enabled})>"
        )
