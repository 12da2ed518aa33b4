"""
Outbound API gateway.

Calls an integration's own API on behalf of an installation. Calls are
rate limited per installation, authenticated with the integration's auth
method and fail fast: there is no retry here, the caller decides.
"""
import time
from typing import Any

import httpx

from marketplace.config import settings
from marketplace.errors import ConfigurationError, InstallationInactive, OutboundCallFailed
from marketplace.logging_config import get_logger
from marketplace.models.installation import InstallationStatus
from marketplace.models.integration import AuthMethod
from marketplace.routes.metrics import track_outbound_call
from marketplace.services.auth_strategies import AuthStrategy, build_strategies
from marketplace.services.catalog import IntegrationCatalog
from marketplace.services.installation_registry import InstallationRegistry
from marketplace.services.jwt_service import JWTService
from marketplace.services.rate_limiter import RateLimiter


log = get_logger(component="api_gateway")

# Installations in error still get calls through so a healthy probe can revive them
CALLABLE_STATUSES = {InstallationStatus.ACTIVE, InstallationStatus.ERROR}


class OutboundAPIGateway:
    """Authenticated, rate-limited calls to integration APIs."""

    def __init__(
        self,
        registry: InstallationRegistry,
        catalog: IntegrationCatalog,
        rate_limiter: RateLimiter,
        client: httpx.AsyncClient | None = None,
        jwt_service: JWTService | None = None,
        timeout: float | None = None,
        strategies: dict[AuthMethod, AuthStrategy] | None = None,
    ):
        self.registry = registry
        self.catalog = catalog
        self.rate_limiter = rate_limiter
        self.client = client
        self.timeout = timeout or settings.OUTBOUND_TIMEOUT_SECONDS
        self.strategies = strategies or build_strategies(jwt_service)

    async def call(
        self,
        installation_id: str,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        timeout: float | None = None,
        track_outcome: bool = True,
    ) -> Any:
        """
        Call the integration API for an installation.

        Args:
            installation_id: Installation making the call
            endpoint: Path relative to the integration's api_base_url, or an
                absolute URL on the same origin
            method: HTTP method
            body: JSON body (optional)
            timeout: Override the default 30s timeout
            track_outcome: Record usage/errors on the installation. The health
                monitor turns this off and does its own bookkeeping.

        Returns:
            Decoded JSON response, or the raw text for non-JSON bodies

        Raises:
            RateLimited: permits exhausted, no request was sent
            InstallationInactive: installation is paused or uninstalled
            MissingCredentials / ConfigurationError: nothing to authenticate with,
                or the endpoint is off the integration's API origin
            OutboundCallFailed: non-2xx, transport error or timeout
        """
        await self.rate_limiter.consume(installation_id)

        installation = await self.registry.get(installation_id)
        if installation.status not in CALLABLE_STATUSES:
            raise InstallationInactive(installation_id, installation.status.value)

        integration = await self.catalog.get(installation.integration_id)
        headers = self.strategies[integration.auth_method].headers(installation)
        url = self._resolve(endpoint, integration.api_base_url, installation_id)

        call_log = log.bind(
            installation_id=installation_id,
            integration_id=integration.integration_id,
            method=method.upper(),
            url=url,
        )

        start = time.perf_counter()
        try:
            response = await self._request(method.upper(), url, body, headers, timeout or self.timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error = OutboundCallFailed(
                installation_id,
                f"{method.upper()} {url} returned HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            )
            await self._failed(installation_id, integration.integration_id, start, error, track_outcome)
            call_log.warning("outbound_call_failed", status_code=e.response.status_code)
            raise error from e
        except httpx.HTTPError as e:
            detail = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            error = OutboundCallFailed(installation_id, f"{method.upper()} {url} failed: {detail}")
            await self._failed(installation_id, integration.integration_id, start, error, track_outcome)
            call_log.warning("outbound_call_failed", error=detail)
            raise error from e

        elapsed = time.perf_counter() - start
        track_outbound_call(integration.integration_id, "success", elapsed)
        if track_outcome:
            await self.registry.record_usage(
                installation_id,
                call_count=1,
                bytes_transferred=len(response.content),
                latency_ms=round(elapsed * 1000, 2),
            )
        call_log.info("outbound_call_completed", status_code=response.status_code, duration_ms=round(elapsed * 1000, 2))

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _failed(
        self,
        installation_id: str,
        integration_id: str,
        start: float,
        error: OutboundCallFailed,
        track_outcome: bool,
    ):
        track_outbound_call(integration_id, "error", time.perf_counter() - start)
        if track_outcome:
            await self.registry.record_error(installation_id, error)

    async def _request(self, method: str, url: str, body: Any, headers: dict, timeout: float) -> httpx.Response:
        if self.client is not None:
            return await self.client.request(method, url, json=body, headers=headers, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.request(method, url, json=body, headers=headers)

    @staticmethod
    def _resolve(endpoint: str, base_url: str | None, installation_id: str) -> str:
        if not base_url:
            raise ConfigurationError(
                f"Integration for installation {installation_id} has no api_base_url for {endpoint}"
            )
        if endpoint.startswith(("http://", "https://")):
            # Credentials only ever go to the integration's own API
            url, base = httpx.URL(endpoint), httpx.URL(base_url)
            if (url.scheme, url.host, url.port) != (base.scheme, base.host, base.port):
                raise ConfigurationError(
                    f"Endpoint {endpoint} is outside the API origin of installation {installation_id}"
                )
            return endpoint
        return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"
