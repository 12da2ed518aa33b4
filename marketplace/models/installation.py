"""
Installation model.

Binds one integration to one tenant (restaurant) together with its
credentials, health and usage counters. Mutating helpers here are pure so
they can be re-run safely inside a compare-and-swap retry loop.
"""
import enum
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from marketplace.models.base import Record, utcnow


class InstallationStatus(str, enum.Enum):
    """Installation status enum."""
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"
    UNINSTALLED = "uninstalled"


class HealthStatus(str, enum.Enum):
    """Health status enum."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class BillingStatus(str, enum.Enum):
    """Billing status enum."""
    ACTIVE = "active"
    TRIAL = "trial"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class InstallationConfig(BaseModel):
    """
    Configuration supplied at install time.

    Persisted with camelCase keys: apiKey, accessToken, refreshToken,
    webhookUrl, settings, mappings.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    api_key: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    webhook_url: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)
    mappings: dict[str, str] = Field(default_factory=dict)


class Permissions(BaseModel):
    granted: list[str] = Field(default_factory=list)
    denied: list[str] = Field(default_factory=list)
    requested_at: datetime = Field(default_factory=utcnow)
    granted_at: datetime | None = None


class HealthRecord(BaseModel):
    status: HealthStatus = HealthStatus.HEALTHY
    last_check: datetime = Field(default_factory=utcnow)
    # consecutive errors since the last success
    error_count: int = 0
    successes: int = 0
    failures: int = 0
    success_rate: float = 100.0
    average_latency_ms: float = 0.0
    last_error: str | None = None

    def observe_latency(self, latency_ms: float):
        if self.average_latency_ms == 0:
            self.average_latency_ms = latency_ms
        else:
            self.average_latency_ms = (self.average_latency_ms + latency_ms) / 2

    def refresh_success_rate(self):
        outcomes = self.successes + self.failures
        self.success_rate = round(self.successes / outcomes * 100, 2) if outcomes else 100.0


class UsageCounters(BaseModel):
    api_calls: int = 0
    bytes_transferred: int = 0
    last_used: datetime | None = None
    # calls per calendar month, keyed "YYYY-MM"
    monthly: dict[str, int] = Field(default_factory=dict)


class BillingInfo(BaseModel):
    plan: str = "trial"
    status: BillingStatus = BillingStatus.TRIAL
    trial_ends_at: datetime | None = None
    next_billing_date: datetime | None = None
    amount: float | None = None


class Installation(Record):
    """
    Installation of an integration for a tenant.

    At most one non-uninstalled installation exists per (tenant, integration).
    Uninstalling is a soft delete; the record stays for audit and billing.
    """
    installation_id: str
    integration_id: str
    tenant_id: str
    user_id: str | None = None
    config: InstallationConfig = Field(default_factory=InstallationConfig)
    permissions: Permissions = Field(default_factory=Permissions)
    status: InstallationStatus = InstallationStatus.ACTIVE
    health: HealthRecord = Field(default_factory=HealthRecord)
    usage: UsageCounters = Field(default_factory=UsageCounters)
    billing: BillingInfo = Field(default_factory=BillingInfo)
    # subscriptions registered and integration.installed published
    provisioned: bool = False
    # event types this installation was subscribed to
    subscriptions: list[str] = Field(default_factory=list)
    installed_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    uninstalled_at: datetime | None = None

    @classmethod
    def new(
        cls,
        installation_id: str,
        integration_id: str,
        tenant_id: str,
        config: InstallationConfig,
        user_id: str | None = None,
        granted: list[str] | None = None,
        trial_days: int = 30,
    ) -> "Installation":
        now = utcnow()
        return cls(
            installation_id=installation_id,
            integration_id=integration_id,
            tenant_id=tenant_id,
            user_id=user_id,
            config=config,
            permissions=Permissions(
                granted=list(granted or []),
                requested_at=now,
                granted_at=now if granted else None,
            ),
            health=HealthRecord(last_check=now),
            billing=BillingInfo(trial_ends_at=now + timedelta(days=trial_days)),
            installed_at=now,
            updated_at=now,
        )

    @property
    def is_uninstalled(self) -> bool:
        return self.status == InstallationStatus.UNINSTALLED

    def apply_usage(self, call_count: int, bytes_transferred: int, latency_ms: float):
        now = utcnow()
        self.usage.api_calls += call_count
        self.usage.bytes_transferred += bytes_transferred
        self.usage.last_used = now
        month = now.strftime("%Y-%m")
        self.usage.monthly[month] = self.usage.monthly.get(month, 0) + call_count

        self.health.successes += call_count
        self.health.error_count = 0
        self.health.status = HealthStatus.HEALTHY
        self.health.observe_latency(latency_ms)
        self.health.refresh_success_rate()

    def apply_error(
        self,
        message: str,
        degraded_threshold: int,
        unhealthy_threshold: int,
        probe: bool = False,
    ):
        if probe:
            self.health.last_check = utcnow()
        self.health.error_count += 1
        self.health.failures += 1
        self.health.last_error = message
        self.health.refresh_success_rate()

        if self.health.error_count >= unhealthy_threshold:
            self.health.status = HealthStatus.UNHEALTHY
            if self.status == InstallationStatus.ACTIVE:
                self.status = InstallationStatus.ERROR
        elif self.health.error_count >= degraded_threshold:
            self.health.status = HealthStatus.DEGRADED

    def apply_probe_success(self, latency_ms: float):
        self.health.status = HealthStatus.HEALTHY
        self.health.error_count = 0
        self.health.last_check = utcnow()
        self.health.successes += 1
        self.health.observe_latency(latency_ms)
        self.health.refresh_success_rate()
        if self.status == InstallationStatus.ERROR:
            self.status = InstallationStatus.ACTIVE

    def __repr__(self):
        return (
            f"<Installation(id={self.installation_id}, tenant={self.tenant_id}, "
            f"integration={self.integration_id}, status={self.status.value})>"
        )
