"""
Error taxonomy for the marketplace runtime.

Configuration errors are fatal for the operation and never retried.
Transient delivery errors are handled inside the webhook dispatcher.
Everything else is raised to the immediate caller.
"""


class MarketplaceError(Exception):
    """Base class for all marketplace errors."""


# Configuration errors

class ConfigurationError(MarketplaceError):
    """An installation or integration is missing required configuration."""


class NoWebhookUrl(ConfigurationError):
    def __init__(self, installation_id: str):
        self.installation_id = installation_id
        super().__init__(f"No webhook URL configured for installation {installation_id}")


class MissingCredentials(ConfigurationError):
    def __init__(self, installation_id: str, credential: str):
        self.installation_id = installation_id
        self.credential = credential
        super().__init__(f"Installation {installation_id} is missing credential: {credential}")


# Lookups

class InstallationNotFound(MarketplaceError):
    def __init__(self, installation_id: str):
        self.installation_id = installation_id
        super().__init__(f"Installation not found: {installation_id}")


class IntegrationNotFound(MarketplaceError):
    def __init__(self, integration_id: str):
        self.integration_id = integration_id
        super().__init__(f"Integration not found: {integration_id}")


class EventNotFound(MarketplaceError):
    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Webhook event not found: {event_id}")


# Validation and state

class AlreadyInstalled(MarketplaceError):
    def __init__(self, tenant_id: str, integration_id: str):
        self.tenant_id = tenant_id
        self.integration_id = integration_id
        super().__init__(f"Integration {integration_id} is already installed for tenant {tenant_id}")


class IntegrationNotInstallable(MarketplaceError):
    def __init__(self, integration_id: str, status: str):
        self.integration_id = integration_id
        self.status = status
        super().__init__(f"Integration {integration_id} cannot be installed while {status}")


class InvalidTransition(MarketplaceError):
    def __init__(self, entity: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} from {current} to {target}")


class InstallationInactive(MarketplaceError):
    def __init__(self, installation_id: str, status: str):
        self.installation_id = installation_id
        self.status = status
        super().__init__(f"Installation {installation_id} is {status}")


# Throughput

class RateLimited(MarketplaceError):
    def __init__(self, installation_id: str, retry_after: int):
        self.installation_id = installation_id
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for installation {installation_id}, retry in {retry_after}s"
        )


# Outbound calls

class OutboundCallFailed(MarketplaceError):
    """A call to the integration's own API failed (non-2xx, transport error or timeout)."""

    def __init__(self, installation_id: str, message: str, status_code: int = 0):
        self.installation_id = installation_id
        self.status_code = status_code
        super().__init__(message)
