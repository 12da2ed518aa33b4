"""
Webhook API routes.

Event lookup for tenants, plus the dead-letter view and subscriber fan-out
for platform admins.
"""
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from marketplace.container import Services
from marketplace.dependencies.auth import TokenPayload, get_current_user, require_admin
from marketplace.dependencies.services import get_services
from marketplace.errors import EventNotFound


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class PublishRequest(BaseModel):
    """Request model for publishing an event to every subscriber."""
    event_type: str
    payload: Any = None


@router.get("/events/{event_id}", response_model=dict)
async def get_event(
    event_id: str,
    token: TokenPayload = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """
    Get one webhook event with its delivery attempts.

    Events of another tenant's installation are reported as not found.
    """
    event = await services.dispatcher.get_event(event_id)
    installation = await services.registry.find(event.installation_id)
    if installation is None or installation.tenant_id != token.tenant_id:
        raise EventNotFound(event_id)
    return event.model_dump(mode="json")


@router.get("/failed", response_model=list[dict])
async def list_failed(
    limit: int = Query(50, ge=1, le=500),
    admin: TokenPayload = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Dead-lettered events, newest first."""
    events = await services.dispatcher.list_failed(limit)
    return [event.model_dump(mode="json") for event in events]


@router.post("/publish", response_model=dict)
async def publish_event(
    request: PublishRequest,
    admin: TokenPayload = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Publish an event to every installation subscribed to its type."""
    events = await services.dispatcher.publish_to_subscribers(request.event_type, request.payload)
    return {
        "event_type": request.event_type,
        "published": len(events),
        "event_ids": [event.event_id for event in events],
    }
