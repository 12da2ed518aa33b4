"""Tests for the health monitor: scheduling, probes and the periodic loop."""

import asyncio
import random
from unittest.mock import AsyncMock

from marketplace.models.installation import HealthStatus, InstallationConfig, InstallationStatus
from marketplace.services.api_gateway import OutboundAPIGateway
from marketplace.services.health_monitor import HEALTH_CHECK_JOB, HealthMonitor
from marketplace.services.rate_limiter import RateLimiter


API = "https://api.example.com/v1"


def make_monitor(services, queue, **kwargs):
    kwargs.setdefault("interval", 300)
    kwargs.setdefault("rng", random.Random(7))
    return HealthMonitor(services.registry, services.gateway, queue, **kwargs)


# ============================================================================
# Scheduling
# ============================================================================

class TestScheduling:
    """Tests for queueing health-check jobs."""

    async def test_one_jittered_job_per_monitored_installation(self, services, queue, install):
        """Test active and errored installations get a check, paused ones don't."""
        active = await install(tenant_id="tenant_a")
        errored = await install(tenant_id="tenant_b")
        paused = await install(tenant_id="tenant_c")
        for _ in range(10):
            await services.registry.record_error(errored.installation_id, "timeout")
        await services.registry.pause(paused.installation_id)
        monitor = make_monitor(services, queue)

        scheduled = await monitor.schedule_checks()

        jobs = queue.take(HEALTH_CHECK_JOB)
        assert scheduled == 2
        assert sorted(j.args[0] for j in jobs) == sorted([active.installation_id, errored.installation_id])
        assert all(0 <= j.defer_by <= 300 for j in jobs)
        assert all(j.job_id.startswith(f"health:{j.args[0]}:") for j in jobs)

    async def test_same_round_is_not_scheduled_twice(self, services, queue, install):
        await install()
        monitor = make_monitor(services, queue)

        await monitor.tick()
        await monitor.tick()

        assert len(queue.take(HEALTH_CHECK_JOB)) == 1

    async def test_tick_reconciles_unprovisioned_installs(self, services, queue, install, monkeypatch):
        """Test a tick finishes installs whose provisioning was interrupted."""
        monkeypatch.setattr(
            services.dispatcher, "publish", AsyncMock(side_effect=ConnectionError("queue down"))
        )
        installation = await install()
        monkeypatch.undo()
        monitor = make_monitor(services, queue)

        await monitor.tick()

        assert (await services.registry.get(installation.installation_id)).provisioned is True


# ============================================================================
# Probes
# ============================================================================

class TestCheck:
    """Tests for a single health probe."""

    async def test_healthy_probe(self, services, http, queue, install):
        """Test a 2xx probe records a healthy check without counting usage."""
        installation = await install()
        monitor = make_monitor(services, queue)

        status = await monitor.check(installation.installation_id)

        assert status == HealthStatus.HEALTHY
        assert str(http.sent_to(API)[-1].url) == f"{API}/health"
        stored = await services.registry.get(installation.installation_id)
        assert stored.usage.api_calls == 0
        assert stored.health.last_check > installation.health.last_check

    async def test_failed_probe_counts_error(self, services, http, queue, install):
        installation = await install()
        http.respond(500)
        monitor = make_monitor(services, queue)

        status = await monitor.check(installation.installation_id)

        stored = await services.registry.get(installation.installation_id)
        assert status == HealthStatus.HEALTHY
        assert stored.health.error_count == 1
        assert stored.health.last_check > installation.health.last_check

    async def test_ten_failed_probes_mark_error_then_recover(self, services, http, queue, install):
        """Test an installation goes to error and a healthy probe brings it back."""
        installation = await install()
        http.respond(*[503] * 10)
        monitor = make_monitor(services, queue)

        for _ in range(10):
            status = await monitor.check(installation.installation_id)

        assert status == HealthStatus.UNHEALTHY
        assert (await services.registry.get(installation.installation_id)).status == InstallationStatus.ERROR

        status = await monitor.check(installation.installation_id)

        stored = await services.registry.get(installation.installation_id)
        assert status == HealthStatus.HEALTHY
        assert stored.status == InstallationStatus.ACTIVE
        assert stored.health.error_count == 0

    async def test_missing_credentials_count_as_failure(self, services, queue, install):
        installation = await install(config=InstallationConfig(webhook_url="https://hooks.example.com"))
        monitor = make_monitor(services, queue)

        await monitor.check(installation.installation_id)

        stored = await services.registry.get(installation.installation_id)
        assert stored.health.error_count == 1
        assert "apiKey" in stored.health.last_error

    async def test_paused_installation_skipped(self, services, http, queue, install):
        installation = await install()
        await services.registry.pause(installation.installation_id)
        monitor = make_monitor(services, queue)

        assert await monitor.check(installation.installation_id) is None
        assert http.sent_to(API) == []

    async def test_missing_installation_skipped(self, services, queue):
        monitor = make_monitor(services, queue)

        assert await monitor.check("inst_gone") is None

    async def test_rate_limited_probe_skipped(self, services, http, queue, install):
        """Test a probe without permits is skipped, not counted as an error."""
        installation = await install()
        gateway = OutboundAPIGateway(
            services.registry,
            services.catalog,
            RateLimiter(services.store, limit=1, window=60),
            client=services.http_client,
        )
        await gateway.call(installation.installation_id, "/orders")
        monitor = HealthMonitor(services.registry, gateway, queue, interval=300)

        assert await monitor.check(installation.installation_id) is None
        stored = await services.registry.get(installation.installation_id)
        assert stored.health.error_count == 0


# ============================================================================
# Periodic loop
# ============================================================================

class TestLifecycle:
    """Tests for start/stop of the periodic task."""

    async def test_start_and_stop(self, services, queue):
        monitor = make_monitor(services, queue, interval=0.01)
        monitor.tick = AsyncMock(return_value=0)

        monitor.start()
        assert monitor.running
        await asyncio.sleep(0.05)
        await monitor.stop()

        assert not monitor.running
        assert monitor.tick.await_count >= 1

    async def test_start_is_idempotent(self, services, queue):
        monitor = make_monitor(services, queue, interval=60)

        monitor.start()
        task = monitor._task
        monitor.start()

        assert monitor._task is task
        await monitor.stop()

    async def test_failing_tick_does_not_stop_loop(self, services, queue):
        """Test one bad round doesn't kill the scheduler."""
        monitor = make_monitor(services, queue, interval=0.01)
        monitor.tick = AsyncMock(side_effect=[RuntimeError("redis blip"), 0, 0, 0, 0, 0, 0, 0, 0, 0])

        monitor.start()
        await asyncio.sleep(0.08)
        await monitor.stop()

        assert monitor.tick.await_count >= 2

    async def test_stop_without_start(self, services, queue):
        monitor = make_monitor(services, queue)

        await monitor.stop()

        assert not monitor.running
