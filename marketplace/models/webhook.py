"""
Webhook Event Model

Tracks one outbound notification to an installation's callback URL and
every attempt made to deliver it.
"""
import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from marketplace.models.base import Record, generate_id, utcnow


class WebhookEventStatus(str, enum.Enum):
    """Webhook event status enum."""
    PENDING = "pending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"


TERMINAL_STATUSES = {WebhookEventStatus.DELIVERED, WebhookEventStatus.FAILED}


class DeliveryAttempt(BaseModel):
    """A failed delivery attempt. Append-only."""
    timestamp: datetime = Field(default_factory=utcnow)
    # HTTP status code, 0 when no response was received
    status: int = 0
    message: str


class WebhookEvent(Record):
    """Webhook dispatch unit."""
    event_id: str = Field(default_factory=lambda: generate_id("evt"))
    installation_id: str
    type: str
    payload: Any = None
    attempts: int = 0
    status: WebhookEventStatus = WebhookEventStatus.PENDING
    errors: list[DeliveryAttempt] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    delivered_at: datetime | None = None
    next_retry: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<WebhookEvent(id={self.event_id}, type={self.type}, status={self.status.value})>"
