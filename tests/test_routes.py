"""Tests for the HTTP API."""

import httpx
import pytest

from marketplace.main import create_app
from marketplace.models.installation import InstallationConfig
from marketplace.models.integration import AuthMethod
from marketplace.services.rate_limiter import RateLimiter


@pytest.fixture
async def client(services):
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth(jwt_service):
    def headers(tenant_id="tenant_a", role="member"):
        token = jwt_service.create_token("user_1", tenant_id, role, f"{role}@{tenant_id}.example.com")
        return {"Authorization": f"Bearer {token}"}
    return headers


INSTALL_BODY = {
    "integration_id": "int_pos",
    "config": {"apiKey": "key-123", "webhookUrl": "https://hooks.example.com/receive"},
}


# ============================================================================
# Installations
# ============================================================================

class TestInstallationRoutes:
    """Tests for /api/installations."""

    async def test_install(self, client, auth, make_integration):
        """Test install returns 201 without echoing credentials."""
        await make_integration()

        response = await client.post("/api/installations/", json=INSTALL_BODY, headers=auth())

        assert response.status_code == 201
        data = response.json()
        assert data["tenant_id"] == "tenant_a"
        assert data["status"] == "active"
        assert data["has_api_key"] is True
        assert "key-123" not in response.text

    async def test_install_twice_conflicts(self, client, auth, make_integration):
        await make_integration()
        await client.post("/api/installations/", json=INSTALL_BODY, headers=auth())

        response = await client.post("/api/installations/", json=INSTALL_BODY, headers=auth())

        assert response.status_code == 409
        assert response.json()["error"] == "AlreadyInstalled"

    async def test_install_unknown_integration(self, client, auth):
        response = await client.post("/api/installations/", json=INSTALL_BODY, headers=auth())

        assert response.status_code == 404

    async def test_requires_token(self, client):
        response = await client.get("/api/installations/")

        assert response.status_code in (401, 403)

    async def test_rejects_bad_token(self, client):
        response = await client.get("/api/installations/", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    async def test_list_is_tenant_scoped(self, client, auth, install):
        await install(tenant_id="tenant_a")
        await install(tenant_id="tenant_b")

        response = await client.get("/api/installations/", headers=auth("tenant_a"))

        assert [i["tenant_id"] for i in response.json()] == ["tenant_a"]

    async def test_other_tenant_gets_404(self, client, auth, install):
        """Test one tenant can't read another tenant's installation."""
        installation = await install(tenant_id="tenant_b")

        response = await client.get(
            f"/api/installations/{installation.installation_id}", headers=auth("tenant_a")
        )

        assert response.status_code == 404

    async def test_pause_resume_uninstall(self, client, auth, install):
        installation = await install()
        base = f"/api/installations/{installation.installation_id}"

        assert (await client.post(f"{base}/pause", headers=auth())).json()["status"] == "paused"
        assert (await client.post(f"{base}/pause", headers=auth())).status_code == 409
        assert (await client.post(f"{base}/resume", headers=auth())).json()["status"] == "active"

        response = await client.delete(base, headers=auth())
        assert response.json()["status"] == "uninstalled"
        assert response.json()["uninstalled_at"] is not None

    async def test_update_config(self, client, auth, install):
        installation = await install()

        response = await client.patch(
            f"/api/installations/{installation.installation_id}/config",
            json={"apiKey": "rotated", "webhookUrl": "https://new.example.com/hook"},
            headers=auth(),
        )

        assert response.status_code == 200
        assert response.json()["webhook_url"] == "https://new.example.com/hook"

    async def test_patch_config_keeps_omitted_credentials(self, client, auth, install):
        installation = await install()

        response = await client.patch(
            f"/api/installations/{installation.installation_id}/config",
            json={"webhookUrl": "https://new.example.com/hook"},
            headers=auth(),
        )

        assert response.json()["has_api_key"] is True
        assert response.json()["webhook_url"] == "https://new.example.com/hook"

    async def test_update_permissions(self, client, auth, install):
        installation = await install()

        response = await client.put(
            f"/api/installations/{installation.installation_id}/permissions",
            json={"granted": ["orders:read", "menu:write"], "denied": ["menu:write"]},
            headers=auth(),
        )

        assert response.json()["permissions"]["granted"] == ["orders:read"]

    async def test_events_log(self, client, auth, install):
        installation = await install()

        response = await client.get(
            f"/api/installations/{installation.installation_id}/events", headers=auth()
        )

        assert [e["type"] for e in response.json()] == ["integration.installed"]


class TestCallRoute:
    """Tests for proxied calls."""

    async def test_call(self, client, auth, http, install):
        installation = await install()
        http.respond({"orders": []})

        response = await client.post(
            f"/api/installations/{installation.installation_id}/call",
            json={"endpoint": "/orders"},
            headers=auth(),
        )

        assert response.status_code == 200
        assert response.json() == {"data": {"orders": []}}

    async def test_upstream_failure_is_502(self, client, auth, http, install):
        installation = await install()
        http.respond(500)

        response = await client.post(
            f"/api/installations/{installation.installation_id}/call",
            json={"endpoint": "/orders"},
            headers=auth(),
        )

        assert response.status_code == 502

    async def test_rate_limited_is_429(self, client, auth, services, install):
        """Test an exhausted window returns 429 with Retry-After."""
        installation = await install()
        services.gateway.rate_limiter = RateLimiter(services.store, limit=1, window=60)
        url = f"/api/installations/{installation.installation_id}/call"

        await client.post(url, json={"endpoint": "/orders"}, headers=auth())
        response = await client.post(url, json={"endpoint": "/orders"}, headers=auth())

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1

    async def test_paused_is_409(self, client, auth, services, install):
        installation = await install()
        await services.registry.pause(installation.installation_id)

        response = await client.post(
            f"/api/installations/{installation.installation_id}/call",
            json={"endpoint": "/orders"},
            headers=auth(),
        )

        assert response.status_code == 409

    async def test_missing_credentials_is_422(self, client, auth, install):
        installation = await install(
            integration_id="int_oauth", auth_method=AuthMethod.OAUTH2, config=InstallationConfig()
        )

        response = await client.post(
            f"/api/installations/{installation.installation_id}/call",
            json={"endpoint": "/orders"},
            headers=auth(),
        )

        assert response.status_code == 422


# ============================================================================
# Webhooks and catalog
# ============================================================================

class TestWebhookRoutes:
    """Tests for /api/webhooks."""

    async def test_get_event(self, client, auth, services, install):
        installation = await install()
        event = (await services.dispatcher.list_events(installation.installation_id))[0]

        response = await client.get(f"/api/webhooks/events/{event.event_id}", headers=auth())

        assert response.json()["event_id"] == event.event_id

    async def test_other_tenant_event_is_404(self, client, auth, services, install):
        installation = await install(tenant_id="tenant_b")
        event = (await services.dispatcher.list_events(installation.installation_id))[0]

        response = await client.get(f"/api/webhooks/events/{event.event_id}", headers=auth("tenant_a"))

        assert response.status_code == 404

    async def test_failed_requires_admin(self, client, auth):
        assert (await client.get("/api/webhooks/failed", headers=auth())).status_code == 403
        assert (await client.get("/api/webhooks/failed", headers=auth(role="admin"))).json() == []

    async def test_publish_fans_out(self, client, auth, install):
        await install(tenant_id="tenant_a")
        await install(tenant_id="tenant_b")

        response = await client.post(
            "/api/webhooks/publish",
            json={"event_type": "order.created", "payload": {"orderId": "o1"}},
            headers=auth(role="admin"),
        )

        assert response.json()["published"] == 2


class TestIntegrationRoutes:
    """Tests for /api/integrations."""

    async def test_put_and_status(self, client, auth):
        body = {
            "integration_id": "int_new",
            "name": "New POS",
            "category": "pos",
            "developer": {"id": "dev_9", "name": "Dev"},
            "auth_method": "api_key",
            "status": "draft",
        }

        put = await client.put("/api/integrations/int_new", json=body, headers=auth(role="admin"))
        assert put.status_code == 200

        moved = await client.post(
            "/api/integrations/int_new/status", json={"status": "pending_review"}, headers=auth(role="admin")
        )
        assert moved.json()["status"] == "pending_review"

        invalid = await client.post(
            "/api/integrations/int_new/status", json={"status": "deprecated"}, headers=auth(role="admin")
        )
        assert invalid.status_code == 409

    async def test_new_entry_starts_as_draft(self, client, auth):
        body = {
            "integration_id": "int_new",
            "name": "New POS",
            "category": "pos",
            "developer": {"id": "dev_9", "name": "Dev"},
            "auth_method": "api_key",
            "status": "active",
            "installs": 50,
        }

        response = await client.put("/api/integrations/int_new", json=body, headers=auth(role="admin"))

        assert response.json()["status"] == "draft"
        assert response.json()["installs"] == 0

    async def test_draft_entry_can_be_edited(self, client, auth):
        body = {
            "integration_id": "int_new",
            "name": "New POS",
            "category": "pos",
            "developer": {"id": "dev_9", "name": "Dev"},
            "auth_method": "api_key",
        }
        await client.put("/api/integrations/int_new", json=body, headers=auth(role="admin"))

        response = await client.put(
            "/api/integrations/int_new", json={**body, "name": "Renamed POS"}, headers=auth(role="admin")
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Renamed POS"

    async def test_active_integration_is_immutable(self, client, auth, services, install):
        """Test an active entry can't be rewritten, re-statused or have its counter reset."""
        installation = await install()
        stored = (await services.catalog.get("int_pos")).model_dump(mode="json")
        body = {**stored, "auth_method": "basic", "status": "draft", "webhooks": [], "installs": 0}

        response = await client.put("/api/integrations/int_pos", json=body, headers=auth(role="admin"))

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransition"
        integration = await services.catalog.get("int_pos")
        assert integration.status.value == "active"
        assert integration.auth_method.value == "api_key"
        assert integration.installs == 1
        assert installation.installation_id in await services.registry.subscribers("order.created")

    async def test_version_bump_keeps_status_and_installs(self, client, auth, services, install):
        await install()
        stored = (await services.catalog.get("int_pos")).model_dump(mode="json")
        body = {**stored, "version": "1.1.0", "status": "draft", "installs": 0}

        response = await client.put("/api/integrations/int_pos", json=body, headers=auth(role="admin"))

        assert response.status_code == 200
        assert response.json()["version"] == "1.1.0"
        assert response.json()["status"] == "active"
        assert response.json()["installs"] == 1

    async def test_put_requires_admin(self, client, auth):
        body = {
            "integration_id": "int_x",
            "name": "X",
            "category": "crm",
            "developer": {"id": "dev_1", "name": "Dev"},
            "auth_method": "oauth2",
        }

        response = await client.put("/api/integrations/int_x", json=body, headers=auth())

        assert response.status_code == 403


class TestServiceRoutes:
    """Tests for /, /health and /metrics."""

    async def test_root(self, client):
        assert (await client.get("/")).json()["status"] == "running"

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.json() == {"status": "healthy", "redis": "connected"}

    async def test_metrics(self, client):
        await client.get("/")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
