"""
Health monitor.

Every interval, finishes provisioning for interrupted installs and queues
one health-check job per monitored installation. Each job is delayed by a
random jitter within the interval so probes don't all hit the gateway at
once. The periodic task is owned by the monitor and stopped explicitly.
"""
import asyncio
import random
import time

from marketplace.config import settings
from marketplace.errors import (
    ConfigurationError,
    InstallationInactive,
    InstallationNotFound,
    OutboundCallFailed,
    RateLimited,
)
from marketplace.logging_config import get_logger
from marketplace.models.installation import HealthStatus, InstallationStatus
from marketplace.queue import JobQueue
from marketplace.routes.metrics import track_health_check
from marketplace.sentry_config import capture_exception
from marketplace.services.api_gateway import OutboundAPIGateway
from marketplace.services.installation_registry import InstallationRegistry


log = get_logger(component="health_monitor")

HEALTH_CHECK_JOB = "check_installation_health"

# Errored installations keep being probed so a healthy probe can bring them back
MONITORED_STATUSES = (InstallationStatus.ACTIVE, InstallationStatus.ERROR)


class HealthMonitor:
    """Periodic health-check scheduler for installations."""

    def __init__(
        self,
        registry: InstallationRegistry,
        gateway: OutboundAPIGateway,
        queue: JobQueue,
        interval: float | None = None,
        probe_timeout: float | None = None,
        probe_path: str | None = None,
        rng: random.Random | None = None,
    ):
        self.registry = registry
        self.gateway = gateway
        self.queue = queue
        self.interval = interval or settings.HEALTH_CHECK_INTERVAL_SECONDS
        self.probe_timeout = probe_timeout or settings.HEALTH_CHECK_TIMEOUT_SECONDS
        self.probe_path = probe_path or settings.HEALTH_CHECK_PATH
        self.rng = rng or random.Random()
        self._task: asyncio.Task | None = None
        self._round = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start the periodic scheduler on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="health-monitor")
        log.info("health_monitor_started", interval_seconds=self.interval)

    async def stop(self):
        """Cancel the scheduler and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("health_monitor_stopped")

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception as e:
                # One bad tick must not kill the scheduler; the next tick retries
                log.error("health_monitor_tick_failed", error=str(e))
                capture_exception(e)

    async def tick(self) -> int:
        """Run one scheduling round. Returns the number of checks queued."""
        self._round = int(time.time() // self.interval)
        await self.reconcile_pending()
        return await self.schedule_checks()

    async def reconcile_pending(self) -> int:
        """Finish provisioning for installs interrupted after their record was written."""
        repaired = 0
        for installation in await self.registry.list_installations(MONITORED_STATUSES):
            if installation.provisioned:
                continue
            try:
                await self.registry.reconcile(installation.installation_id)
                repaired += 1
            except Exception as e:
                log.error(
                    "installation_reconcile_failed",
                    installation_id=installation.installation_id,
                    error=str(e),
                )
                capture_exception(e)
        return repaired

    async def schedule_checks(self) -> int:
        installations = await self.registry.list_installations(MONITORED_STATUSES)
        for installation in installations:
            delay = self.rng.uniform(0, self.interval)
            await self.queue.enqueue(
                HEALTH_CHECK_JOB,
                installation.installation_id,
                defer_by=delay,
                job_id=f"health:{installation.installation_id}:{self._round}",
            )
        log.info("health_checks_scheduled", count=len(installations))
        return len(installations)

    async def check(self, installation_id: str) -> HealthStatus | None:
        """
        Probe one installation and record the result.

        Returns the resulting health status, or None when the probe was
        skipped (installation gone, paused, or out of rate-limit permits).
        """
        installation = await self.registry.find(installation_id)
        if installation is None or installation.status not in MONITORED_STATUSES:
            track_health_check("skipped")
            return None

        start = time.perf_counter()
        try:
            await self.gateway.call(
                installation_id,
                self.probe_path,
                "GET",
                timeout=self.probe_timeout,
                track_outcome=False,
            )
        except RateLimited:
            log.info("health_check_rate_limited", installation_id=installation_id)
            track_health_check("skipped")
            return None
        except (InstallationNotFound, InstallationInactive):
            track_health_check("skipped")
            return None
        except (OutboundCallFailed, ConfigurationError) as e:
            updated = await self.registry.record_error(installation_id, e, probe=True)
            track_health_check("failed")
            log.warning(
                "health_check_failed",
                installation_id=installation_id,
                health=updated.health.status.value,
                error_count=updated.health.error_count,
            )
            return updated.health.status

        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        updated = await self.registry.record_probe_success(installation_id, latency_ms)
        track_health_check("healthy")
        log.info("health_check_passed", installation_id=installation_id, latency_ms=latency_ms)
        return updated.health.status
