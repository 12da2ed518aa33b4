"""
Integration catalog.

Read side of the marketplace catalog used by the installation runtime:
fetch integrations, publish them to the category index, move them through
their lifecycle and keep the install counter.
"""
from marketplace.errors import IntegrationNotFound, InvalidTransition
from marketplace.logging_config import get_logger
from marketplace.models.base import epoch_millis
from marketplace.models.integration import (
    EDITABLE_STATUSES,
    INTEGRATION_TRANSITIONS,
    Integration,
    IntegrationStatus,
)
from marketplace.store import RedisStore


log = get_logger(component="catalog")


def integration_key(integration_id: str) -> str:
    return f"integration:{integration_id}"


def _content(integration: Integration) -> dict:
    return integration.model_dump(exclude={"status", "installs", "version"})


class IntegrationCatalog:
    """Service for reading and maintaining integration records."""

    def __init__(self, store: RedisStore):
        self.store = store

    async def get(self, integration_id: str) -> Integration:
        """
        Get an integration by ID.

        Raises:
            IntegrationNotFound: no such integration
        """
        raw = await self.store.get(integration_key(integration_id))
        if raw is None:
            raise IntegrationNotFound(integration_id)
        return Integration.loads(raw)

    async def save(self, integration: Integration) -> Integration:
        """
        Create or update a catalog entry and add it to its category index.

        Status and the install counter are owned by set_status() and
        increment_installs(), so an update keeps the stored values. Once an
        integration leaves review only its version may change.

        Raises:
            InvalidTransition: the stored integration is no longer editable
        """
        def apply(raw):
            if raw is None:
                return integration.dumps()
            current = Integration.loads(raw)
            if current.status not in EDITABLE_STATUSES and _content(current) != _content(integration):
                raise InvalidTransition("integration", current.status.value, "modified")
            return integration.model_copy(
                update={"status": current.status, "installs": current.installs}
            ).dumps()

        saved = Integration.loads(
            await self.store.update(integration_key(integration.integration_id), apply)
        )
        await self.store.sorted_add(
            f"marketplace:{saved.category.value}",
            saved.integration_id,
            epoch_millis(),
        )
        log.info("integration_saved", integration_id=saved.integration_id, version=saved.version)
        return saved

    async def set_status(self, integration_id: str, status: IntegrationStatus) -> Integration:
        """
        Move an integration through its lifecycle.

        draft -> pending_review -> approved/active <-> suspended -> deprecated
        """
        def apply(raw):
            if raw is None:
                raise IntegrationNotFound(integration_id)
            integration = Integration.loads(raw)
            if status not in INTEGRATION_TRANSITIONS[integration.status]:
                raise InvalidTransition("integration", integration.status.value, status.value)
            integration.status = status
            return integration.dumps()

        updated = Integration.loads(await self.store.update(integration_key(integration_id), apply))
        log.info("integration_status_changed", integration_id=integration_id, status=status.value)
        return updated

    async def increment_installs(self, integration_id: str) -> int:
        def apply(raw):
            if raw is None:
                raise IntegrationNotFound(integration_id)
            integration = Integration.loads(raw)
            integration.installs += 1
            return integration.dumps()

        raw = await self.store.update(integration_key(integration_id), apply)
        return Integration.loads(raw).installs
