"""
Tests for the internal-API entitlement data source.

Requests are served by httpx.MockTransport; no network access.
"""

import httpx
import pytest

from retailvis.auth.service_token import (
    ENTITLEMENTS_READ_SCOPE,
    ServiceCredential,
    ServiceTokenConfig,
)
from retailvis.entitlements.errors import (
    DataSourceError,
    InvalidSubscriptionStatusError,
    OrganizationNotFoundError,
    TenantNotFoundError,
)
from retailvis.entitlements.gate import EntitlementGate
from retailvis.entitlements.http_source import HttpEntitlementDataSource
from retailvis.entitlements.models import (
    FeatureIntent,
    LifecycleState,
    OverrideScope,
    QuantityIntent,
    ReasonCode,
    SubscriptionStatus,
)

BASE_URL = "http://entitlements.internal/api/v1"

TENANT = {
    "tenant_id": "t1",
    "tier": "starter",
    "status": "active",
    "trial_ends_at": None,
    "subscription_ends_at": "2030-01-01T00:00:00Z",
    "organization_id": "org-1",
    "frozen": False,
}

ORGANIZATION = {
    "organization_id": "org-1",
    "tier": "chain_starter",
    "max_locations": None,
    "max_total_skus": 2500,
}

PLATFORM_OVERRIDES = [
    {"scope": "platform", "feature": "api_access", "enabled": False, "reason": "incident"},
]


@pytest.fixture
def credential():
    return ServiceCredential(
        "entitlement-engine", ServiceTokenConfig(secret="test-secret-key-for-service-tokens")
    )


@pytest.fixture
def routes():
    """Path -> (status, body). Tests mutate this before making requests."""
    return {
        "/api/v1/tenants/t1": (200, TENANT),
        "/api/v1/organizations/org-1": (200, ORGANIZATION),
        "/api/v1/overrides/platform": (200, {"items": PLATFORM_OVERRIDES}),
        "/api/v1/tenants/t1/overrides": (200, []),
        "/api/v1/tenants/t1/usage": (200, {"sku_count": 1200, "location_count": 1}),
        "/api/v1/organizations/org-1/usage": (200, {"sku_count": 2450, "location_count": 2}),
        "/api/v1/tenants/t1/snapshot": (200, {
            "tenant": TENANT,
            "organization": ORGANIZATION,
            "platform_overrides": PLATFORM_OVERRIDES,
            "tenant_overrides": [
                {"scope": "tenant", "tenant_id": "t1", "feature": "barcode_scan", "enabled": True},
            ],
        }),
    }


@pytest.fixture
def requests_seen():
    return []


@pytest.fixture
def source(credential, routes, requests_seen):
    def handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request)
        status_code, body = routes.get(request.url.path, (404, {"detail": "not found"}))
        if isinstance(body, type) and issubclass(body, Exception):
            raise body("simulated transport failure", request=request)
        if isinstance(body, str):
            return httpx.Response(status_code, text=body)
        return httpx.Response(status_code, json=body)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with HttpEntitlementDataSource(credential, base_url=BASE_URL, client=client) as data_source:
        yield data_source


class TestConfiguration:

    def test_base_url_required(self, credential, monkeypatch):
        monkeypatch.delenv("ENTITLEMENT_API_URL", raising=False)

        with pytest.raises(ValueError, match="ENTITLEMENT_API_URL"):
            HttpEntitlementDataSource(credential)

    def test_base_url_from_env(self, credential, monkeypatch):
        monkeypatch.setenv("ENTITLEMENT_API_URL", "http://internal/api/")

        data_source = HttpEntitlementDataSource(credential)

        assert data_source.base_url == "http://internal/api"
        data_source.close()


class TestReads:

    def test_get_tenant(self, source):
        tenant = source.get_tenant("t1")

        assert tenant.tier == "starter"
        assert tenant.status == SubscriptionStatus.ACTIVE
        assert tenant.subscription_ends_at.year == 2030
        assert tenant.organization_id == "org-1"

    def test_missing_tenant_is_none(self, source):
        assert source.get_tenant("ghost") is None

    def test_get_organization(self, source):
        assert source.get_organization("org-1").max_total_skus == 2500

    def test_list_accepts_items_envelope_and_bare_list(self, source):
        platform = source.list_platform_overrides()

        assert platform[0].scope == OverrideScope.PLATFORM
        assert platform[0].is_kill_switch
        assert source.list_tenant_overrides("t1") == []

    @pytest.mark.security
    def test_identifiers_quoted_as_one_path_segment(self, source, requests_seen):
        assert source.get_tenant("../overrides/platform") is None

        assert requests_seen[-1].url.raw_path == b"/api/v1/tenants/..%2Foverrides%2Fplatform"

    def test_organization_id_quoted(self, source, requests_seen):
        source.get_organization("org 1?x=y")

        assert requests_seen[-1].url.raw_path == b"/api/v1/organizations/org%201%3Fx%3Dy"

    def test_usage(self, source):
        assert source.get_usage("t1").sku_count == 1200
        assert source.get_organization_usage("org-1").location_count == 2

    def test_missing_usage_is_an_error(self, source):
        with pytest.raises(DataSourceError):
            source.get_usage("ghost")

    @pytest.mark.security
    def test_requests_carry_scoped_service_token(self, source, credential, requests_seen):
        source.get_tenant("t1")

        header = requests_seen[0].headers["Authorization"]
        assert header.startswith("Bearer ")
        claims = credential.verify(header.split(" ", 1)[1], required_scope=ENTITLEMENTS_READ_SCOPE)
        assert claims.sub == "entitlement-engine"


class TestSnapshot:

    def test_single_round_trip(self, source, requests_seen):
        snapshot = source.load_snapshot("t1")

        assert len(requests_seen) == 1
        assert snapshot.organization.tier == "chain_starter"
        assert snapshot.platform_overrides["api_access"].enabled is False
        assert snapshot.tenant_overrides["barcode_scan"].tenant_id == "t1"
        assert snapshot.usage is None

    def test_with_usage(self, source, requests_seen):
        snapshot = source.load_snapshot("t1", include_usage=True)

        assert snapshot.usage.sku_count == 1200
        assert snapshot.organization_usage.sku_count == 2450
        assert len(requests_seen) == 3

    def test_missing_tenant(self, source):
        with pytest.raises(TenantNotFoundError):
            source.load_snapshot("ghost")

    def test_dangling_organization(self, source, routes):
        routes["/api/v1/tenants/t1/snapshot"] = (200, {"tenant": TENANT})

        with pytest.raises(OrganizationNotFoundError):
            source.load_snapshot("t1")


class TestFailures:

    @pytest.mark.parametrize("status_code", [401, 403, 500, 502, 503])
    def test_error_statuses(self, source, routes, status_code):
        routes["/api/v1/tenants/t1"] = (status_code, {"detail": "nope"})

        with pytest.raises(DataSourceError):
            source.get_tenant("t1")

    def test_timeout(self, source, routes):
        routes["/api/v1/tenants/t1"] = (0, httpx.ReadTimeout)

        with pytest.raises(DataSourceError) as exc_info:
            source.get_tenant("t1")

        assert "timeout" in str(exc_info.value)

    def test_connection_error(self, source, routes):
        routes["/api/v1/tenants/t1"] = (0, httpx.ConnectError)

        with pytest.raises(DataSourceError, match="unreachable"):
            source.get_tenant("t1")

    def test_invalid_json(self, source, routes):
        routes["/api/v1/tenants/t1"] = (200, "<html>gateway</html>")

        with pytest.raises(DataSourceError, match="invalid JSON"):
            source.get_tenant("t1")

    def test_unknown_status(self, source, routes):
        routes["/api/v1/tenants/t1"] = (200, {**TENANT, "status": "suspended"})

        with pytest.raises(InvalidSubscriptionStatusError) as exc_info:
            source.get_tenant("t1")

        assert exc_info.value.http_status == 409
        assert exc_info.value.subscription_status == "suspended"

    def test_unknown_status_in_snapshot(self, source, routes, catalog, settings):
        routes["/api/v1/tenants/t1/snapshot"] = (
            200, {"tenant": {**TENANT, "status": "suspended"}, "organization": ORGANIZATION}
        )
        gate = EntitlementGate(source, catalog, settings)

        with pytest.raises(InvalidSubscriptionStatusError):
            gate.evaluate("t1", FeatureIntent("storefront"))

    def test_invalid_payload(self, source, routes):
        routes["/api/v1/tenants/t1"] = (200, {"tenant_id": "t1"})

        with pytest.raises(DataSourceError, match="payload invalid"):
            source.get_tenant("t1")


class TestGateOverHttp:

    def test_pooled_limit_from_api(self, source, catalog, settings):
        gate = EntitlementGate(source, catalog, settings)

        verdict = gate.evaluate("t1", QuantityIntent.create_items(51))

        assert verdict.reason_code == ReasonCode.SKU_LIMIT_EXCEEDED
        assert verdict.current == 2450
        assert verdict.lifecycle_state == LifecycleState.ACTIVE

    def test_kill_switch_from_api(self, source, catalog, settings):
        gate = EntitlementGate(source, catalog, settings)

        verdict = gate.evaluate("t1", FeatureIntent("api_access"))

        assert verdict.reason_code == ReasonCode.FEATURE_DISABLED_BY_PLATFORM

    def test_outage_fails_closed(self, source, routes, catalog, settings):
        routes["/api/v1/tenants/t1/snapshot"] = (503, {"detail": "maintenance"})
        gate = EntitlementGate(source, catalog, settings)

        verdict = gate.evaluate("t1", FeatureIntent("storefront"))
        advisory = gate.evaluate("t1", FeatureIntent("storefront", advisory=True))

        assert verdict.reason_code == ReasonCode.ENTITLEMENT_CHECK_FAILED
        assert not verdict.allowed
        assert advisory.allowed
