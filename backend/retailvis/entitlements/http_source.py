"""
Entitlement data source over the internal HTTP API.

Used by services that do not own a database session (workers, the storefront
renderer). Every request carries a scoped service token minted from an
explicitly supplied ServiceCredential.

Endpoints (all GET, relative to base_url):
    /tenants/{tenant_id}
    /tenants/{tenant_id}/overrides
    /tenants/{tenant_id}/usage
    /tenants/{tenant_id}/snapshot
    /organizations/{organization_id}
    /organizations/{organization_id}/usage
    /overrides/platform

SECURITY: The service token is never logged.
"""

import logging
import os
from datetime import datetime
from typing import Any, List, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from retailvis.auth.service_token import ServiceCredential
from retailvis.entitlements.datasource import (
    EntitlementDataSource,
    index_overrides,
    parse_subscription_status,
)
from retailvis.entitlements.errors import (
    DataSourceError,
    OrganizationNotFoundError,
    TenantNotFoundError,
)
from retailvis.entitlements.models import (
    FeatureOverride,
    Organization,
    TenantSnapshot,
    TenantSubscription,
    UsageSnapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 2.0


def _segment(value: str) -> str:
    """Quote an identifier for use as a single URL path segment."""
    return quote(value, safe="")


class TenantPayload(BaseModel):
    tenant_id: str
    tier: str
    status: str
    trial_ends_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    organization_id: Optional[str] = None
    frozen: bool = False

    def to_domain(self) -> TenantSubscription:
        data = self.model_dump()
        data["status"] = parse_subscription_status(self.tenant_id, self.status)
        return TenantSubscription(**data)


class OrganizationPayload(BaseModel):
    organization_id: str
    tier: str
    max_locations: Optional[int] = None
    max_total_skus: Optional[int] = None

    def to_domain(self) -> Organization:
        return Organization(**self.model_dump())


class OverridePayload(BaseModel):
    scope: str
    feature: str
    enabled: bool
    allow_tenant_override: bool = False
    reason: Optional[str] = None
    tenant_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    def to_domain(self) -> FeatureOverride:
        data = self.model_dump()
        data["reason"] = data["reason"] or ""
        return FeatureOverride(**data)


class UsagePayload(BaseModel):
    sku_count: int = 0
    location_count: int = 0

    def to_domain(self) -> UsageSnapshot:
        return UsageSnapshot(**self.model_dump())


class SnapshotPayload(BaseModel):
    tenant: TenantPayload
    organization: Optional[OrganizationPayload] = None
    platform_overrides: List[OverridePayload] = []
    tenant_overrides: List[OverridePayload] = []


class HttpEntitlementDataSource(EntitlementDataSource):
    """
    Synchronous client for the internal entitlement read API.

    Returns None for 404 on single-record reads; raises DataSourceError for
    timeouts, connection failures, auth failures and 5xx responses.
    """

    def __init__(
        self,
        credential: ServiceCredential,
        base_url: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    ):
        """
        Args:
            credential: Mints the bearer token for each request
            base_url: Internal API base URL (default: ENTITLEMENT_API_URL)
            client: Pre-built httpx.Client (tests inject a MockTransport)
            timeout: Request timeout in seconds
            connect_timeout: Connection timeout in seconds
        """
        self.base_url = (base_url or os.getenv("ENTITLEMENT_API_URL") or "").rstrip("/")
        if not self.base_url:
            raise ValueError(
                "Entitlement API URL is required. Set ENTITLEMENT_API_URL environment "
                "variable or pass base_url parameter."
            )
        self._credential = credential
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpEntitlementDataSource":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _get(self, endpoint: str) -> Optional[Any]:
        """
        GET an endpoint and return the decoded JSON body, or None on 404.

        Raises:
            DataSourceError: on any other failure
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            response = self._client.get(
                url, headers={"Authorization": self._credential.authorization_header()}
            )
        except httpx.TimeoutException as e:
            logger.error("Entitlement API timeout", extra={"endpoint": endpoint, "error": str(e)})
            raise DataSourceError(f"Entitlement API timeout: {endpoint}", e) from e
        except httpx.RequestError as e:
            logger.error(
                "Entitlement API connection error",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            raise DataSourceError(f"Entitlement API unreachable: {endpoint}", e) from e

        if response.status_code == 404:
            return None

        if response.status_code in (401, 403):
            logger.error(
                "Entitlement API rejected service token",
                extra={"status_code": response.status_code, "endpoint": endpoint},
            )
            raise DataSourceError(
                f"Entitlement API authentication failed ({response.status_code})"
            )

        if response.status_code >= 400:
            logger.error(
                "Entitlement API error",
                extra={
                    "status_code": response.status_code,
                    "endpoint": endpoint,
                    "response": response.text[:500],
                },
            )
            raise DataSourceError(f"Entitlement API error: {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise DataSourceError(f"Entitlement API returned invalid JSON: {endpoint}", e) from e

    def _parse(self, model: type, data: Any, endpoint: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.error(
                "Entitlement API payload invalid",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            raise DataSourceError(f"Entitlement API payload invalid: {endpoint}", e) from e

    def _list(self, model: type, endpoint: str) -> List[Any]:
        data = self._get(endpoint)
        if data is None:
            return []
        if isinstance(data, dict):
            data = data.get("items", [])
        return [self._parse(model, item, endpoint) for item in data]

    def get_tenant(self, tenant_id: str) -> Optional[TenantSubscription]:
        endpoint = f"/tenants/{_segment(tenant_id)}"
        data = self._get(endpoint)
        return self._parse(TenantPayload, data, endpoint).to_domain() if data else None

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        endpoint = f"/organizations/{_segment(organization_id)}"
        data = self._get(endpoint)
        return self._parse(OrganizationPayload, data, endpoint).to_domain() if data else None

    def list_platform_overrides(self) -> List[FeatureOverride]:
        return [p.to_domain() for p in self._list(OverridePayload, "/overrides/platform")]

    def list_tenant_overrides(self, tenant_id: str) -> List[FeatureOverride]:
        return [
            p.to_domain()
            for p in self._list(OverridePayload, f"/tenants/{_segment(tenant_id)}/overrides")
        ]

    def get_usage(self, tenant_id: str) -> UsageSnapshot:
        endpoint = f"/tenants/{_segment(tenant_id)}/usage"
        data = self._get(endpoint)
        if data is None:
            raise DataSourceError(f"No usage available for tenant '{tenant_id}'")
        return self._parse(UsagePayload, data, endpoint).to_domain()

    def get_organization_usage(self, organization_id: str) -> UsageSnapshot:
        endpoint = f"/organizations/{_segment(organization_id)}/usage"
        data = self._get(endpoint)
        if data is None:
            raise DataSourceError(f"No usage available for organization '{organization_id}'")
        return self._parse(UsagePayload, data, endpoint).to_domain()

    def load_snapshot(self, tenant_id: str, include_usage: bool = False) -> TenantSnapshot:
        """
        One round trip for tenant, organization and overrides.

        Raises:
            TenantNotFoundError: no tenant record
            OrganizationNotFoundError: tenant references a missing chain
            DataSourceError: request failed
        """
        endpoint = f"/tenants/{_segment(tenant_id)}/snapshot"
        data = self._get(endpoint)
        if data is None:
            raise TenantNotFoundError(tenant_id)
        payload: SnapshotPayload = self._parse(SnapshotPayload, data, endpoint)

        tenant = payload.tenant.to_domain()
        organization = payload.organization.to_domain() if payload.organization else None
        if tenant.organization_id and organization is None:
            raise OrganizationNotFoundError(tenant.organization_id, tenant_id)

        usage = None
        organization_usage = None
        if include_usage:
            usage = self.get_usage(tenant_id)
            if organization is not None:
                organization_usage = self.get_organization_usage(organization.organization_id)

        return TenantSnapshot(
            tenant=tenant,
            organization=organization,
            platform_overrides=index_overrides(o.to_domain() for o in payload.platform_overrides),
            tenant_overrides=index_overrides(o.to_domain() for o in payload.tenant_overrides),
            usage=usage,
            organization_usage=organization_usage,
        )

