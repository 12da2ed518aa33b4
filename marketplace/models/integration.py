"""
Integration model.

A catalog entry published by a third-party developer. The marketplace
runtime only reads it to install, authenticate and route webhooks.
"""
import enum

from pydantic import BaseModel, Field

from marketplace.models.base import Record


class IntegrationCategory(str, enum.Enum):
    """Integration category enum."""
    POS = "pos"
    PAYMENT = "payment"
    MARKETING = "marketing"
    ANALYTICS = "analytics"
    CRM = "crm"
    ACCOUNTING = "accounting"
    DELIVERY = "delivery"
    SOCIAL = "social"


class AuthMethod(str, enum.Enum):
    """How the platform authenticates against the integration's own API."""
    API_KEY = "api_key"
    OAUTH2 = "oauth2"
    SIGNED_TOKEN = "signed_token"
    BASIC = "basic"


class IntegrationStatus(str, enum.Enum):
    """Integration lifecycle status enum."""
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DEPRECATED = "deprecated"


INTEGRATION_TRANSITIONS: dict[IntegrationStatus, set[IntegrationStatus]] = {
    IntegrationStatus.DRAFT: {IntegrationStatus.PENDING_REVIEW},
    IntegrationStatus.PENDING_REVIEW: {IntegrationStatus.APPROVED, IntegrationStatus.DRAFT},
    IntegrationStatus.APPROVED: {IntegrationStatus.ACTIVE, IntegrationStatus.DEPRECATED},
    IntegrationStatus.ACTIVE: {IntegrationStatus.SUSPENDED, IntegrationStatus.DEPRECATED},
    IntegrationStatus.SUSPENDED: {IntegrationStatus.ACTIVE, IntegrationStatus.DEPRECATED},
    IntegrationStatus.DEPRECATED: set(),
}

INSTALLABLE_STATUSES = {IntegrationStatus.APPROVED, IntegrationStatus.ACTIVE}

# Catalog content can still be edited; after this only version and status move
EDITABLE_STATUSES = {IntegrationStatus.DRAFT, IntegrationStatus.PENDING_REVIEW}


class DeveloperInfo(BaseModel):
    id: str
    name: str
    verified: bool = False
    support_email: str | None = None
    website: str | None = None


class WebhookDefinition(BaseModel):
    """An event type the integration wants to receive."""
    event: str
    description: str = ""


class Integration(Record):
    """
    Marketplace integration.

    Immutable once active except for the version and status fields.
    """
    integration_id: str
    name: str
    category: IntegrationCategory
    developer: DeveloperInfo
    auth_method: AuthMethod
    api_base_url: str | None = None
    webhooks: list[WebhookDefinition] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)
    status: IntegrationStatus = IntegrationStatus.PENDING_REVIEW
    version: str = "1.0.0"
    installs: int = 0

    @property
    def webhook_events(self) -> list[str]:
        return [webhook.event for webhook in self.webhooks]

    @property
    def is_installable(self) -> bool:
        return self.status in INSTALLABLE_STATUSES

    def __repr__(self):
        return f"<Integration(id={self.integration_id}, name={self.name}, status={self.status.value})>"
