"""
Integration catalog routes (admin only).

The catalog itself is maintained elsewhere; these endpoints are how its
records reach the runtime.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from marketplace.container import Services
from marketplace.dependencies.auth import TokenPayload, get_current_user, require_admin
from marketplace.dependencies.services import get_services
from marketplace.models.integration import Integration, IntegrationStatus


router = APIRouter(prefix="/api/integrations", tags=["integrations"])


class StatusRequest(BaseModel):
    status: IntegrationStatus


@router.put("/{integration_id}", response_model=dict)
async def put_integration(
    integration_id: str,
    integration: Integration,
    admin: TokenPayload = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """
    Create or update a catalog entry.

    New entries start as draft with no installs; status then moves only
    through the status endpoint. Returns 409 when an integration that has
    left review is changed in anything but its version.
    """
    if integration.integration_id != integration_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="integration_id does not match the URL"
        )
    saved = await services.catalog.save(
        integration.model_copy(update={"status": IntegrationStatus.DRAFT, "installs": 0})
    )
    return saved.model_dump(mode="json")


@router.get("/{integration_id}", response_model=dict)
async def get_integration(
    integration_id: str,
    token: TokenPayload = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    integration = await services.catalog.get(integration_id)
    return integration.model_dump(mode="json")


@router.post("/{integration_id}/status", response_model=dict)
async def set_integration_status(
    integration_id: str,
    request: StatusRequest,
    admin: TokenPayload = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Move an integration through its lifecycle. 409 on an invalid transition."""
    integration = await services.catalog.set_status(integration_id, request.status)
    return integration.model_dump(mode="json")
