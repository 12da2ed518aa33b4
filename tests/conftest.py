"""Shared fixtures: in-memory Redis, a recording job queue and stubbed HTTP."""

from dataclasses import dataclass
from typing import Any

import httpx
import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from marketplace.container import build_services
from marketplace.models.installation import InstallationConfig
from marketplace.models.integration import (
    AuthMethod,
    DeveloperInfo,
    Integration,
    IntegrationCategory,
    IntegrationStatus,
    WebhookDefinition,
)
from marketplace.services.jwt_service import JWTService
from marketplace.services.webhook_service import DELIVER_JOB
from marketplace.store import RedisStore


WEBHOOK_URL = "https://hooks.example.com/receive"
API_BASE_URL = "https://api.example.com/v1"


@dataclass
class QueuedJob:
    function: str
    args: tuple
    defer_by: float | None
    job_id: str | None


class RecordingQueue:
    """Stands in for JobQueue: keeps jobs in memory, dedupes on job_id like arq."""

    def __init__(self):
        self.jobs: list[QueuedJob] = []
        self._job_ids: set[str] = set()

    async def enqueue(self, function, *args, defer_by=None, job_id=None):
        if job_id is not None:
            if job_id in self._job_ids:
                return False
            self._job_ids.add(job_id)
        self.jobs.append(QueuedJob(function, args, defer_by, job_id))
        return True

    def take(self, function: str, *args) -> list[QueuedJob]:
        """Remove and return queued jobs for function whose args start with args."""
        taken = [j for j in self.jobs if j.function == function and j.args[:len(args)] == args]
        self.jobs = [j for j in self.jobs if j not in taken]
        return taken

    async def close(self):
        pass


class HttpStub:
    """
    Scripted responses for httpx.MockTransport.

    Queue status codes, JSON bodies, httpx.Response factories or exceptions;
    once the script runs out every request gets 200 {"ok": true}.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.script: list[Any] = []

    def respond(self, *items):
        self.script.extend(items)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.script.pop(0) if self.script else {"ok": True}
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return httpx.Response(item, json={"status": item})
        if callable(item):
            return item(request)
        return httpx.Response(200, json=item)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def sent_to(self, url_prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(url_prefix)]


async def drain(dispatcher, queue: RecordingQueue, event_id: str) -> list[float | None]:
    """Run queued delivery jobs for one event until none are left. Returns their delays."""
    delays = []
    while True:
        jobs = queue.take(DELIVER_JOB, event_id)
        if not jobs:
            return delays
        for job in jobs:
            delays.append(job.defer_by)
            await dispatcher.deliver(event_id)


# ============================================================================
# Infrastructure
# ============================================================================

@pytest.fixture
def redis_server():
    return FakeServer()


@pytest.fixture
async def store(redis_server):
    client = FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield RedisStore(client)
    await client.aclose()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def http():
    return HttpStub()


@pytest.fixture
def jwt_service():
    return JWTService(secret_key="test-secret", integration_secret="test-integration-secret")


@pytest.fixture
async def services(store, queue, http, jwt_service):
    services = build_services(store, queue, http_client=http.client(), jwt_service=jwt_service)
    yield services
    await services.aclose()


@pytest.fixture
def deliver_all(services, queue):
    """Drive every queued delivery of one event. Returns the delay of each job."""
    async def run(event_id: str) -> list[float | None]:
        return await drain(services.dispatcher, queue, event_id)
    return run


# ============================================================================
# Catalog and installations
# ============================================================================

def build_integration(
    integration_id: str = "int_pos",
    auth_method: AuthMethod = AuthMethod.API_KEY,
    status: IntegrationStatus = IntegrationStatus.ACTIVE,
    events: tuple = ("order.created", "order.updated"),
    api_base_url: str | None = API_BASE_URL,
) -> Integration:
    return Integration(
        integration_id=integration_id,
        name=f"Integration {integration_id}",
        category=IntegrationCategory.POS,
        developer=DeveloperInfo(id="dev_1", name="Acme Labs", verified=True),
        auth_method=auth_method,
        api_base_url=api_base_url,
        webhooks=[WebhookDefinition(event=e) for e in events],
        permissions=["orders:read"],
        status=status,
    )


@pytest.fixture
def make_integration(services):
    """Save an integration to the catalog. Returns it."""
    async def make(**kwargs) -> Integration:
        return await services.catalog.save(build_integration(**kwargs))
    return make


@pytest.fixture
def install(services, make_integration):
    """Install an integration (created on the fly if needed) for a tenant."""
    async def _install(
        tenant_id: str = "tenant_a",
        integration_id: str = "int_pos",
        auth_method: AuthMethod = AuthMethod.API_KEY,
        config: InstallationConfig | None = None,
        **integration_kwargs,
    ):
        if await services.catalog.store.get(f"integration:{integration_id}") is None:
            await make_integration(
                integration_id=integration_id, auth_method=auth_method, **integration_kwargs
            )
        if config is None:
            config = InstallationConfig(api_key="key-123", webhook_url=WEBHOOK_URL)
        return await services.registry.install(tenant_id, integration_id, config, user_id="user_1")
    return _install
