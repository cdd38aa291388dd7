"""
Structured error classes for entitlement evaluation.

These are raised for conditions the engine cannot decide on (missing or
inconsistent data). A policy denial is NOT an exception; it is a Verdict.
"""

from typing import Optional

from fastapi import status


class EntitlementError(Exception):
    """Base exception for entitlement errors."""

    error_code = "entitlement_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.error_code,
            "message": self.message,
        }


class TenantNotFoundError(EntitlementError):
    """The tenant subscription record does not exist."""

    error_code = "tenant_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant '{tenant_id}' not found")

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["tenant_id"] = self.tenant_id
        return payload


class InvalidTierError(EntitlementError):
    """
    A tier key is not present in the tier catalog.

    Never downgraded to a default tier.
    """

    error_code = "invalid_tier"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, tier_key: Optional[str]):
        self.tier_key = tier_key
        super().__init__(f"Unknown subscription tier '{tier_key}'")

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["tier"] = self.tier_key
        return payload


class OrganizationNotFoundError(EntitlementError):
    """A tenant references an organization (chain) that no longer exists."""

    error_code = "organization_not_found"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, organization_id: str, tenant_id: Optional[str] = None):
        self.organization_id = organization_id
        self.tenant_id = tenant_id
        detail = f"Organization '{organization_id}' not found"
        if tenant_id:
            detail += f" (referenced by tenant '{tenant_id}')"
        super().__init__(detail)

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["organization_id"] = self.organization_id
        payload["tenant_id"] = self.tenant_id
        return payload


class InvalidSubscriptionStatusError(EntitlementError):
    """A persisted tenant record carries a status the engine does not know."""

    error_code = "invalid_subscription_status"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, tenant_id: str, subscription_status: Optional[str]):
        self.tenant_id = tenant_id
        self.subscription_status = subscription_status
        super().__init__(
            f"Tenant '{tenant_id}' has unknown subscription status '{subscription_status}'"
        )

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["tenant_id"] = self.tenant_id
        payload["status"] = self.subscription_status
        return payload


class DataSourceError(EntitlementError):
    """
    The persistence collaborator failed to answer a read.

    Wraps transient failures (connectivity, timeouts, 5xx from the internal
    API) so the gate can apply its fail-open / fail-closed policy.
    """

    error_code = "entitlement_data_unavailable"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, detail: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(detail)


class CatalogConfigError(EntitlementError):
    """The tier catalog file is malformed (bad limits, hierarchy cycles)."""

    error_code = "tier_catalog_invalid"
