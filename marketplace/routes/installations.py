"""
Installation API routes.

Install, configure, pause/resume and uninstall integrations for the caller's
tenant, proxy calls to the integration's API and read the delivery log.
"""
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from marketplace.container import Services
from marketplace.dependencies.auth import TokenPayload, get_current_user, get_tenant_installation
from marketplace.dependencies.services import get_services
from marketplace.models.installation import Installation, InstallationConfig


router = APIRouter(prefix="/api/installations", tags=["installations"])


# Pydantic models for request/response
class InstallRequest(BaseModel):
    """Request model for installing an integration."""
    integration_id: str
    config: InstallationConfig = Field(default_factory=InstallationConfig)
    permissions: list[str] = []


class PermissionsRequest(BaseModel):
    granted: list[str]
    denied: list[str] = []


class CallRequest(BaseModel):
    """Request model for a proxied call to the integration API."""
    endpoint: str
    method: str = "GET"
    body: Any = None


class InstallationResponse(BaseModel):
    """
    Response model for an installation.

    Credentials are never echoed back, only whether they are set.
    """
    id: str
    integration_id: str
    tenant_id: str
    user_id: str | None = None
    status: str
    health: dict
    usage: dict
    billing: dict
    permissions: dict
    webhook_url: str | None = None
    has_api_key: bool = False
    has_access_token: bool = False
    settings: dict = {}
    mappings: dict = {}
    provisioned: bool
    installed_at: str
    updated_at: str
    uninstalled_at: str | None = None


def installation_to_response(installation: Installation) -> InstallationResponse:
    """Convert Installation model to InstallationResponse."""
    config = installation.config
    return InstallationResponse(
        id=installation.installation_id,
        integration_id=installation.integration_id,
        tenant_id=installation.tenant_id,
        user_id=installation.user_id,
        status=installation.status.value,
        health=installation.health.model_dump(mode="json"),
        usage=installation.usage.model_dump(mode="json"),
        billing=installation.billing.model_dump(mode="json"),
        permissions=installation.permissions.model_dump(mode="json"),
        webhook_url=config.webhook_url,
        has_api_key=config.api_key is not None,
        has_access_token=config.access_token is not None,
        settings={k: v for k, v in config.settings.items() if "secret" not in k.lower()},
        mappings=config.mappings,
        provisioned=installation.provisioned,
        installed_at=installation.installed_at.isoformat(),
        updated_at=installation.updated_at.isoformat(),
        uninstalled_at=installation.uninstalled_at.isoformat() if installation.uninstalled_at else None,
    )


@router.post("/", response_model=InstallationResponse, status_code=status.HTTP_201_CREATED)
async def install_integration(
    request: InstallRequest,
    token: TokenPayload = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """
    Install an integration for the caller's tenant.

    Returns 409 if the tenant already has it installed.
    """
    installation = await services.registry.install(
        tenant_id=token.tenant_id,
        integration_id=request.integration_id,
        config=request.config,
        user_id=token.sub,
        permissions=request.permissions,
    )
    return installation_to_response(installation)


@router.get("/", response_model=list[InstallationResponse])
async def list_installations(
    token: TokenPayload = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """List the tenant's installations, uninstalled ones included."""
    installations = await services.registry.list_for_tenant(token.tenant_id)
    return [installation_to_response(i) for i in installations]


@router.get("/{installation_id}", response_model=InstallationResponse)
async def get_installation(installation: Installation = Depends(get_tenant_installation)):
    return installation_to_response(installation)


@router.patch("/{installation_id}/config", response_model=InstallationResponse)
async def update_config(
    config: InstallationConfig,
    installation: Installation = Depends(get_tenant_installation),
    services: Services = Depends(get_services),
):
    """
    Update the installation's configuration.

    Only the fields in the body change; send null to clear a credential.
    """
    updated = await services.registry.update_config(installation.installation_id, config)
    return installation_to_response(updated)


@router.put("/{installation_id}/permissions", response_model=InstallationResponse)
async def update_permissions(
    request: PermissionsRequest,
    installation: Installation = Depends(get_tenant_installation),
    services: Services = Depends(get_services),
):
    updated = await services.registry.update_permissions(
        installation.installation_id, request.granted, request.denied
    )
    return installation_to_response(updated)


@router.post("/{installation_id}/pause", response_model=InstallationResponse)
async def pause_installation(
    installation: Installation = Depends(get_tenant_installation),
    services: Services = Depends(get_services),
):
    updated = await services.registry.pause(installation.installation_id)
    return installation_to_response(updated)


@router.post("/{installation_id}/resume", response_model=InstallationResponse)
async def resume_installation(
    installation: Installation = Depends(get_tenant_installation),
    services: Services = Depends(get_services),
):
    updated = await services.registry.resume(installation.installation_id)
    return installation_to_response(updated)


@router.delete("/{installation_id}", response_model=InstallationResponse)
async def uninstall_integration(
    installation: Installation = Depends(get_tenant_installation),
    services: Services = Depends(get_services),
):
    """
    Uninstall (soft delete).

    The record stays readable for audit; the integration can be installed again.
    """
    updated = await services.registry.uninstall(installation.installation_id)
    return installation_to_response(updated)


@router.post("/{installation_id}/call", response_model=dict)
async def call_integration(
    request: CallRequest,
    installation: Installation = Depends(get_tenant_installation),
    services: Services = Depends(get_services),
):
    """
    Proxy a call to the integration's API on the tenant's behalf.

    429 with Retry-After when the installation is out of permits,
    502 when the integration API fails.
    """
    data = await services.gateway.call(
        installation.installation_id,
        request.endpoint,
        request.method,
        request.body,
    )
    return {"data": data}


@router.get("/{installation_id}/events", response_model=list[dict])
async def list_events(
    limit: int = Query(50, ge=1, le=500),
    installation: Installation = Depends(get_tenant_installation),
    services: Services = Depends(get_services),
):
    """Most recent webhook events for the installation, newest first."""
    events = await services.dispatcher.list_events(installation.installation_id, limit)
    return [event.model_dump(mode="json") for event in events]
