"""
Service wiring shared by the API process and the worker.
"""
from dataclasses import dataclass

import httpx

from marketplace.queue import JobQueue
from marketplace.services.api_gateway import OutboundAPIGateway
from marketplace.services.catalog import IntegrationCatalog
from marketplace.services.health_monitor import HealthMonitor
from marketplace.services.installation_registry import InstallationRegistry
from marketplace.services.jwt_service import JWTService
from marketplace.services.rate_limiter import RateLimiter
from marketplace.services.webhook_service import WebhookDispatcher
from marketplace.store import RedisStore


@dataclass
class Services:
    store: RedisStore
    queue: JobQueue
    catalog: IntegrationCatalog
    registry: InstallationRegistry
    dispatcher: WebhookDispatcher
    rate_limiter: RateLimiter
    gateway: OutboundAPIGateway
    monitor: HealthMonitor
    jwt_service: JWTService
    http_client: httpx.AsyncClient

    async def aclose(self):
        await self.monitor.stop()
        await self.http_client.aclose()


def build_services(
    store: RedisStore,
    queue: JobQueue,
    http_client: httpx.AsyncClient | None = None,
    jwt_service: JWTService | None = None,
) -> Services:
    """Build the service graph on one store, one queue and one HTTP client."""
    http_client = http_client or httpx.AsyncClient()
    jwt_service = jwt_service or JWTService()

    catalog = IntegrationCatalog(store)
    registry = InstallationRegistry(store, catalog)
    dispatcher = WebhookDispatcher(store, registry, queue, client=http_client)
    registry.dispatcher = dispatcher

    rate_limiter = RateLimiter(store)
    gateway = OutboundAPIGateway(
        registry,
        catalog,
        rate_limiter,
        client=http_client,
        jwt_service=jwt_service,
    )
    monitor = HealthMonitor(registry, gateway, queue)

    return Services(
        store=store,
        queue=queue,
        catalog=catalog,
        registry=registry,
        dispatcher=dispatcher,
        rate_limiter=rate_limiter,
        gateway=gateway,
        monitor=monitor,
        jwt_service=jwt_service,
        http_client=http_client,
    )
