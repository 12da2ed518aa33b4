"""
Installation registry.

Owns installation records: creation, configuration, usage accounting and
health state transitions.

Every mutation of one installation goes through _mutate(), which holds a
per-installation lock in this process and writes through the store's
compare-and-swap update. Concurrent usage, error and health updates for the
same installation are therefore serialized; different installations never
contend.
"""
from typing import Callable, Iterable

from marketplace.config import settings
from marketplace.errors import (
    AlreadyInstalled,
    InstallationNotFound,
    IntegrationNotFound,
    IntegrationNotInstallable,
    InvalidTransition,
)
from marketplace.locks import KeyedLock
from marketplace.logging_config import get_logger
from marketplace.models.base import generate_id, utcnow
from marketplace.models.installation import (
    HealthStatus,
    Installation,
    InstallationConfig,
    InstallationStatus,
)
from marketplace.models.integration import Integration
from marketplace.routes.metrics import track_installation_created
from marketplace.sentry_config import capture_exception
from marketplace.services.catalog import IntegrationCatalog
from marketplace.store import RedisStore


log = get_logger(component="installation_registry")

INSTALLED_EVENT = "integration.installed"


def installation_key(installation_id: str) -> str:
    return f"installation:{installation_id}"


def lookup_key(tenant_id: str, integration_id: str) -> str:
    return f"installation_lookup:{tenant_id}:{integration_id}"


def tenant_key(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:installations"


def subscribers_key(event_type: str) -> str:
    return f"webhook:subscribers:{event_type}"


class InstallationRegistry:
    """Service for managing installations."""

    def __init__(
        self,
        store: RedisStore,
        catalog: IntegrationCatalog,
        dispatcher=None,
        degraded_threshold: int | None = None,
        unhealthy_threshold: int | None = None,
        trial_days: int | None = None,
    ):
        self.store = store
        self.catalog = catalog
        # WebhookDispatcher; attached after construction since it reads back from us
        self.dispatcher = dispatcher
        self.degraded_threshold = degraded_threshold or settings.DEGRADED_ERROR_THRESHOLD
        self.unhealthy_threshold = unhealthy_threshold or settings.UNHEALTHY_ERROR_THRESHOLD
        self.trial_days = trial_days or settings.TRIAL_PERIOD_DAYS
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def install(
        self,
        tenant_id: str,
        integration_id: str,
        config: InstallationConfig,
        user_id: str | None = None,
        permissions: list[str] | None = None,
    ) -> Installation:
        """
        Install an integration for a tenant.

        The reverse-lookup key is claimed with SET NX before anything else
        is written, so two concurrent installs of the same pair can't both
        succeed. Subscriptions and the integration.installed event are
        written after the record; if that part fails the installation is
        returned unprovisioned and the health monitor's reconciliation pass
        finishes it.

        Raises:
            IntegrationNotFound: unknown integration
            IntegrationNotInstallable: integration is not approved/active
            AlreadyInstalled: tenant already has this integration
        """
        integration = await self.catalog.get(integration_id)
        if not integration.is_installable:
            raise IntegrationNotInstallable(integration_id, integration.status.value)

        installation_id = generate_id("inst")
        claimed = await self.store.put_if_absent(lookup_key(tenant_id, integration_id), installation_id)
        if not claimed:
            raise AlreadyInstalled(tenant_id, integration_id)

        installation = Installation.new(
            installation_id=installation_id,
            integration_id=integration_id,
            tenant_id=tenant_id,
            config=config,
            user_id=user_id,
            granted=permissions,
            trial_days=self.trial_days,
        )

        try:
            await self.store.put(installation_key(installation_id), installation.dumps())
        except Exception:
            await self.store.delete(lookup_key(tenant_id, integration_id))
            raise

        log.info(
            "installation_created",
            installation_id=installation_id,
            tenant_id=tenant_id,
            integration_id=integration_id,
        )

        try:
            track_installation_created(integration_id)
            await self.catalog.increment_installs(integration_id)
            return await self._provision(installation, integration)
        except Exception as e:
            log.error(
                "installation_provisioning_deferred",
                installation_id=installation_id,
                error=str(e),
            )
            capture_exception(e)
            return installation

    async def reconcile(self, installation_id: str) -> Installation:
        """
        Finish provisioning an installation whose install() was interrupted.

        Safe to repeat: subscriptions are set members and receivers already
        have to treat duplicate deliveries as idempotent by event id.
        """
        installation = await self.get(installation_id)
        if installation.provisioned or installation.is_uninstalled:
            return installation

        integration = await self.catalog.get(installation.integration_id)
        installation = await self._provision(installation, integration)
        log.info("installation_reconciled", installation_id=installation_id)
        return installation

    async def _provision(self, installation: Installation, integration: Integration) -> Installation:
        await self.store.set_add(tenant_key(installation.tenant_id), installation.installation_id)
        for event_type in integration.webhook_events:
            await self.store.set_add(subscribers_key(event_type), installation.installation_id)

        await self.dispatcher.publish(
            installation.installation_id,
            INSTALLED_EVENT,
            {
                "tenantId": installation.tenant_id,
                "integrationId": installation.integration_id,
                "userId": installation.user_id,
                "installedAt": installation.installed_at.isoformat(),
            },
        )

        def mark(inst: Installation):
            inst.provisioned = True
            inst.subscriptions = integration.webhook_events

        return await self._mutate(installation.installation_id, mark)

    async def uninstall(self, installation_id: str) -> Installation:
        """
        Soft-delete an installation.

        The record is kept for audit and billing. The tenant/integration pair
        is freed so the integration can be installed again. Deliveries
        already in flight finish, but nothing new is scheduled.
        """
        def apply(inst: Installation):
            if inst.is_uninstalled:
                raise InvalidTransition("installation", inst.status.value, InstallationStatus.UNINSTALLED.value)
            inst.status = InstallationStatus.UNINSTALLED
            inst.uninstalled_at = utcnow()

        installation = await self._mutate(installation_id, apply)

        lookup = lookup_key(installation.tenant_id, installation.integration_id)
        if await self.store.get(lookup) == installation_id:
            await self.store.delete(lookup)

        for event_type in await self._subscribed_events(installation):
            await self.store.set_remove(subscribers_key(event_type), installation_id)

        log.info("installation_uninstalled", installation_id=installation_id)
        return installation

    async def _subscribed_events(self, installation: Installation) -> set[str]:
        events = set(installation.subscriptions)
        if installation.provisioned:
            return events
        # Provisioning may have subscribed part of the list before failing
        try:
            integration = await self.catalog.get(installation.integration_id)
        except IntegrationNotFound:
            log.warning(
                "uninstall_integration_missing",
                installation_id=installation.installation_id,
                integration_id=installation.integration_id,
            )
            return events
        return events | set(integration.webhook_events)

    async def pause(self, installation_id: str) -> Installation:
        return await self._transition(installation_id, {InstallationStatus.ACTIVE}, InstallationStatus.PAUSED)

    async def resume(self, installation_id: str) -> Installation:
        return await self._transition(installation_id, {InstallationStatus.PAUSED}, InstallationStatus.ACTIVE)

    async def _transition(
        self,
        installation_id: str,
        allowed_from: set[InstallationStatus],
        target: InstallationStatus,
    ) -> Installation:
        def apply(inst: Installation):
            if inst.status not in allowed_from:
                raise InvalidTransition("installation", inst.status.value, target.value)
            inst.status = target

        installation = await self._mutate(installation_id, apply)
        log.info("installation_status_changed", installation_id=installation_id, status=target.value)
        return installation

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def update_config(self, installation_id: str, config: InstallationConfig) -> Installation:
        """Merge the fields set on config into the stored configuration."""
        changes = config.model_dump(exclude_unset=True)

        def apply(inst: Installation):
            if inst.is_uninstalled:
                raise InvalidTransition("installation", inst.status.value, "reconfigured")
            inst.config = inst.config.model_copy(update=changes)

        return await self._mutate(installation_id, apply)

    async def update_permissions(
        self,
        installation_id: str,
        granted: Iterable[str],
        denied: Iterable[str] = (),
    ) -> Installation:
        granted, denied = sorted(set(granted)), sorted(set(denied))

        def apply(inst: Installation):
            inst.permissions.granted = [p for p in granted if p not in denied]
            inst.permissions.denied = denied
            inst.permissions.granted_at = utcnow()

        return await self._mutate(installation_id, apply)

    # ------------------------------------------------------------------
    # Usage and health
    # ------------------------------------------------------------------

    async def record_usage(
        self,
        installation_id: str,
        call_count: int = 1,
        bytes_transferred: int = 0,
        latency_ms: float = 0.0,
    ) -> Installation:
        """Count a successful call. Also clears the consecutive error count."""
        return await self._mutate(
            installation_id,
            lambda inst: inst.apply_usage(call_count, bytes_transferred, latency_ms),
        )

    async def record_error(
        self,
        installation_id: str,
        error: Exception | str,
        probe: bool = False,
    ) -> Installation:
        """
        Count a failed call or probe.

        5 consecutive errors -> degraded; 10 -> unhealthy and status error.
        """
        message = str(error) or type(error).__name__

        installation = await self._mutate(
            installation_id,
            lambda inst: inst.apply_error(message, self.degraded_threshold, self.unhealthy_threshold, probe),
        )

        if installation.health.status != HealthStatus.HEALTHY:
            log.warning(
                "installation_health_degraded",
                installation_id=installation_id,
                health=installation.health.status.value,
                error_count=installation.health.error_count,
                status=installation.status.value,
            )
        return installation

    async def set_health(
        self,
        installation_id: str,
        status: HealthStatus,
        latency_ms: float | None = None,
    ) -> Installation:
        """Upsert the health record. Always refreshes last_check."""
        def apply(inst: Installation):
            inst.health.status = status
            inst.health.last_check = utcnow()
            if latency_ms is not None:
                inst.health.observe_latency(latency_ms)

        return await self._mutate(installation_id, apply)

    async def record_probe_success(self, installation_id: str, latency_ms: float) -> Installation:
        """Healthy probe: reset the error count and bring an errored installation back."""
        return await self._mutate(installation_id, lambda inst: inst.apply_probe_success(latency_ms))

    async def _mutate(self, installation_id: str, fn: Callable[[Installation], None]) -> Installation:
        def apply(raw):
            if raw is None:
                raise InstallationNotFound(installation_id)
            installation = Installation.loads(raw)
            fn(installation)
            installation.updated_at = utcnow()
            return installation.dumps()

        async with self._locks.lock(installation_id):
            raw = await self.store.update(installation_key(installation_id), apply)
        return Installation.loads(raw)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def find(self, installation_id: str) -> Installation | None:
        raw = await self.store.get(installation_key(installation_id))
        return Installation.loads(raw) if raw else None

    async def get(self, installation_id: str) -> Installation:
        installation = await self.find(installation_id)
        if installation is None:
            raise InstallationNotFound(installation_id)
        return installation

    async def find_for_tenant(self, tenant_id: str, integration_id: str) -> Installation | None:
        installation_id = await self.store.get(lookup_key(tenant_id, integration_id))
        if installation_id is None:
            return None
        return await self.find(installation_id)

    async def list_for_tenant(self, tenant_id: str) -> list[Installation]:
        installations = []
        for installation_id in sorted(await self.store.set_members(tenant_key(tenant_id))):
            installation = await self.find(installation_id)
            if installation is not None:
                installations.append(installation)
        return installations

    async def list_installations(
        self,
        statuses: Iterable[InstallationStatus] | None = None,
    ) -> list[Installation]:
        """Scan every installation record, optionally filtered by status."""
        wanted = set(statuses) if statuses is not None else None
        installations = []
        async for key in self.store.scan("installation:inst_*"):
            raw = await self.store.get(key)
            if raw is None:
                continue
            installation = Installation.loads(raw)
            if wanted is None or installation.status in wanted:
                installations.append(installation)
        return installations

    async def subscribers(self, event_type: str) -> set[str]:
        return await self.store.set_members(subscribers_key(event_type))
