"""
ARQ Background Worker for the marketplace.

Delivers webhook events and runs installation health checks. The worker
also owns the health monitor, which schedules the health-check jobs.

Run with: arq marketplace.worker.WorkerSettings
"""
import asyncio

import sentry_sdk
from arq.connections import RedisSettings
from arq.worker import func

from marketplace.config import settings
from marketplace.container import build_services
from marketplace.logging_config import get_logger
from marketplace.queue import JobQueue
from marketplace.sentry_config import capture_exception, configure_sentry
from marketplace.services.health_monitor import HEALTH_CHECK_JOB
from marketplace.services.webhook_service import DELIVER_JOB
from marketplace.store import RedisStore


log = get_logger(component="worker")


async def deliver_webhook(ctx: dict, event_id: str) -> dict:
    """Run one delivery attempt for a webhook event."""
    job_log = log.bind(event_id=event_id, job_try=ctx.get("job_try", 1))
    services = ctx["services"]

    try:
        event = await services.dispatcher.deliver(event_id)
    except Exception as e:
        job_log.error("webhook_delivery_job_crashed", error=str(e))
        sentry_sdk.set_tag("event_id", event_id)
        capture_exception(e)
        raise

    if event is None:
        return {"event_id": event_id, "status": "missing"}
    return {"event_id": event_id, "status": event.status.value, "attempts": event.attempts}


async def check_installation_health(ctx: dict, installation_id: str) -> dict:
    """Probe one installation's health endpoint."""
    services = ctx["services"]

    try:
        status = await services.monitor.check(installation_id)
    except Exception as e:
        log.error("health_check_job_crashed", installation_id=installation_id, error=str(e))
        sentry_sdk.set_tag("installation_id", installation_id)
        capture_exception(e)
        raise

    return {
        "installation_id": installation_id,
        "health": status.value if status else "skipped",
    }


async def startup(ctx: dict):
    """Build services on the worker's own Redis pool and start the monitor."""
    configure_sentry()
    pool = ctx["redis"]
    services = build_services(RedisStore(pool), JobQueue(pool))
    services.monitor.start()
    ctx["services"] = services
    log.info("worker_started", max_jobs=settings.WORKER_MAX_JOBS)


async def shutdown(ctx: dict):
    services = ctx.get("services")
    if services is not None:
        await services.aclose()
    log.info("worker_stopped")


# Register functions for ARQ under the names the services enqueue
ARQ_FUNCTIONS = [
    func(deliver_webhook, name=DELIVER_JOB),
    func(check_installation_health, name=HEALTH_CHECK_JOB),
]


async def main():
    """Run the worker using arq cli."""
    log.info("worker_usage", command="arq marketplace.worker.WorkerSettings", redis=settings.REDIS_URL)


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq marketplace.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    functions = ARQ_FUNCTIONS
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = settings.WORKER_MAX_JOBS
    # Longest webhook timeout plus bookkeeping
    job_timeout = 60
    # Retries are scheduled by the dispatcher itself; arq only re-runs jobs
    # interrupted by a worker crash
    max_tries = 3


if __name__ == "__main__":
    asyncio.run(main())
