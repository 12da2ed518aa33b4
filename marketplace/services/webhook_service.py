"""
Webhook Service

Publishes events for installations and delivers them to each installation's
callback URL with signing, retries and exponential backoff.

Delivery is at-least-once: a worker that dies after the POST but before the
terminal state is saved will deliver again on redelivery. Receivers must
deduplicate on X-Webhook-Event-Id.
"""
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Any, Mapping

import httpx

from marketplace.config import settings
from marketplace.errors import EventNotFound, NoWebhookUrl
from marketplace.logging_config import get_logger
from marketplace.models.base import epoch_millis, utcnow
from marketplace.models.installation import InstallationStatus
from marketplace.models.webhook import DeliveryAttempt, WebhookEvent, WebhookEventStatus
from marketplace.queue import JobQueue
from marketplace.routes.metrics import (
    track_webhook_failed,
    track_webhook_retry,
    track_webhook_sent,
)
from marketplace.sentry_config import capture_message
from marketplace.services.installation_registry import InstallationRegistry
from marketplace.store import RedisStore


log = get_logger(component="webhook_dispatcher")

DELIVER_JOB = "deliver_webhook"
DEAD_LETTER_KEY = "webhook:dead_letter"

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
EVENT_ID_HEADER = "X-Webhook-Event-Id"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


def event_key(event_id: str) -> str:
    return f"webhook:event:{event_id}"


def installation_events_key(installation_id: str) -> str:
    return f"webhook:installation:{installation_id}:events"


def canonical_json(value: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def generate_webhook_signature(
    event_id: str,
    event_type: str,
    payload: Any,
    timestamp: int,
    secret: str,
) -> str:
    """HMAC-SHA256 over the canonical JSON of {eventId, type, payload, timestamp}."""
    message = canonical_json({
        "eventId": event_id,
        "type": event_type,
        "payload": payload,
        "timestamp": timestamp,
    })
    return hmac.new(
        secret.encode(),
        message.encode(),
        hashlib.sha256
    ).hexdigest()


def verify_webhook_signature(
    body: bytes | str,
    headers: Mapping[str, str],
    secret: str,
    tolerance_seconds: int | None = None,
) -> bool:
    """
    Receiver-side check of a delivery.

    Rebuilds the signed object from the body and the event id, type and
    timestamp headers. With tolerance_seconds, deliveries older than that
    are rejected as replays.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    try:
        timestamp = int(lowered[TIMESTAMP_HEADER.lower()])
        expected = generate_webhook_signature(
            lowered[EVENT_ID_HEADER.lower()],
            lowered[EVENT_HEADER.lower()],
            json.loads(body),
            timestamp,
            secret,
        )
        received = lowered[SIGNATURE_HEADER.lower()]
    except (KeyError, ValueError):
        return False

    if tolerance_seconds is not None:
        age = abs(time.time() * 1000 - timestamp) / 1000
        if age > tolerance_seconds:
            return False

    return hmac.compare_digest(expected, received)


def compute_backoff(attempts: int, base: int = 2, cap: int | None = None) -> int:
    """Seconds to wait before the next try after `attempts` failed tries."""
    delay = base ** attempts
    if cap is not None:
        delay = min(delay, cap)
    return delay


class WebhookDispatcher:
    """Persists webhook events and runs their delivery attempts."""

    def __init__(
        self,
        store: RedisStore,
        registry: InstallationRegistry,
        queue: JobQueue,
        client: httpx.AsyncClient | None = None,
        secret: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_base: int | None = None,
        max_backoff: int | None = None,
        event_ttl: int | None = None,
    ):
        self.store = store
        self.registry = registry
        self.queue = queue
        self.client = client
        self.secret = secret or settings.WEBHOOK_SECRET
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.WEBHOOK_MAX_ATTEMPTS
        self.backoff_base = backoff_base or settings.WEBHOOK_BACKOFF_BASE
        self.max_backoff = max_backoff if max_backoff is not None else settings.WEBHOOK_MAX_BACKOFF_SECONDS
        self.event_ttl = event_ttl or settings.WEBHOOK_EVENT_TTL_SECONDS

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, installation_id: str, event_type: str, payload: Any) -> WebhookEvent:
        """
        Create a pending event, persist it and queue its first delivery.

        Never fails because the receiver is down; delivery problems only show
        up on the event record and the installation's delivery log.
        """
        event = WebhookEvent(installation_id=installation_id, type=event_type, payload=payload)
        await self._save(event)
        await self._index(
            installation_events_key(installation_id),
            event.event_id,
            epoch_millis(event.created_at),
        )
        await self.queue.enqueue(DELIVER_JOB, event.event_id, job_id=f"{event.event_id}:0")

        log.info(
            "webhook_event_published",
            event_id=event.event_id,
            installation_id=installation_id,
            event_type=event_type,
        )
        return event

    async def publish_to_subscribers(self, event_type: str, payload: Any) -> list[WebhookEvent]:
        """Publish one event to every installation subscribed to event_type."""
        events = []
        for installation_id in sorted(await self.registry.subscribers(event_type)):
            installation = await self.registry.find(installation_id)
            if installation is None or installation.is_uninstalled:
                continue
            events.append(await self.publish(installation_id, event_type, payload))
        return events

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def deliver(self, event_id: str) -> WebhookEvent | None:
        """
        Run one delivery attempt for a queued event.

        2xx marks the event delivered. Anything else records a
        DeliveryAttempt and either schedules a retry after
        backoff_base ** attempts seconds or, once the attempt budget is
        spent, marks the event failed (dead-letter).
        """
        event = await self.find_event(event_id)
        if event is None:
            log.warning("webhook_event_missing", event_id=event_id)
            return None

        if event.is_terminal:
            # Duplicate job for an event that already finished
            log.info("webhook_event_already_terminal", event_id=event_id, status=event.status.value)
            return event

        event_log = log.bind(
            event_id=event_id,
            installation_id=event.installation_id,
            event_type=event.type,
        )

        installation = await self.registry.find(event.installation_id)
        if installation is None or installation.is_uninstalled:
            event_log.info("webhook_skipped_uninstalled")
            return await self._fail(event, "Installation is uninstalled", dead_letter=False)

        webhook_url = installation.config.webhook_url
        if not webhook_url:
            event_log.warning("webhook_no_url")
            return await self._fail(event, str(NoWebhookUrl(event.installation_id)), error_type="NoWebhookUrl")

        event.attempts += 1

        timestamp = epoch_millis()
        signature = generate_webhook_signature(
            event.event_id, event.type, event.payload, timestamp, self.secret
        )
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: signature,
            EVENT_HEADER: event.type,
            EVENT_ID_HEADER: event.event_id,
            TIMESTAMP_HEADER: str(timestamp),
        }

        status_code = 0
        try:
            response = await self._post(webhook_url, json.dumps(event.payload, default=str), headers)
            status_code = response.status_code
            if 200 <= response.status_code < 300:
                event.status = WebhookEventStatus.DELIVERED
                event.delivered_at = utcnow()
                event.next_retry = None
                await self._save(event)
                track_webhook_sent(event.type, "delivered")
                event_log.info("webhook_delivered", attempts=event.attempts, status_code=status_code)
                return event
            message = f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            message = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__

        track_webhook_sent(event.type, "error")
        event.errors.append(DeliveryAttempt(status=status_code, message=message))
        event_log.warning(
            "webhook_attempt_failed",
            attempt=event.attempts,
            status_code=status_code,
            error=message,
        )

        if event.attempts >= self.max_attempts:
            event.status = WebhookEventStatus.FAILED
            event.next_retry = None
            await self._save(event)
            await self._dead_letter(event)
            event_log.error("webhook_failed", attempts=event.attempts)
            return event

        # Results for installations removed mid-flight are kept but not retried
        current = await self.registry.find(event.installation_id)
        if current is None or current.status == InstallationStatus.UNINSTALLED:
            event.status = WebhookEventStatus.FAILED
            event.next_retry = None
            await self._save(event)
            event_log.info("webhook_retry_dropped_uninstalled", attempts=event.attempts)
            return event

        delay = compute_backoff(event.attempts, self.backoff_base, self.max_backoff)
        event.status = WebhookEventStatus.RETRYING
        event.next_retry = utcnow() + timedelta(seconds=delay)
        await self._save(event)
        await self.queue.enqueue(
            DELIVER_JOB,
            event.event_id,
            defer_by=delay,
            job_id=f"{event.event_id}:{event.attempts}",
        )
        track_webhook_retry(event.type)
        event_log.info("webhook_retry_scheduled", attempt=event.attempts, delay_seconds=delay)
        return event

    async def _post(self, url: str, body: str, headers: dict) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(url, content=body, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, content=body, headers=headers)

    async def _fail(
        self,
        event: WebhookEvent,
        message: str,
        error_type: str | None = None,
        dead_letter: bool = True,
    ) -> WebhookEvent:
        """Terminal failure that is not worth retrying (configuration, uninstall)."""
        if error_type:
            message = f"{error_type}: {message}"
        event.errors.append(DeliveryAttempt(status=0, message=message))
        event.status = WebhookEventStatus.FAILED
        event.next_retry = None
        await self._save(event)
        if dead_letter:
            await self._dead_letter(event)
        return event

    async def _dead_letter(self, event: WebhookEvent):
        await self._index(DEAD_LETTER_KEY, event.event_id, epoch_millis())
        track_webhook_failed(event.type)
        capture_message(f"Webhook dead-lettered: {event.type} {event.event_id}", level="warning")

    async def _save(self, event: WebhookEvent):
        await self.store.put(event_key(event.event_id), event.dumps(), ttl=self.event_ttl)

    async def _index(self, key: str, event_id: str, score: int):
        await self.store.sorted_add(key, event_id, score)
        # Entries older than the event TTL point at expired records
        await self.store.sorted_trim(key, epoch_millis() - self.event_ttl * 1000)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def find_event(self, event_id: str) -> WebhookEvent | None:
        raw = await self.store.get(event_key(event_id))
        return WebhookEvent.loads(raw) if raw else None

    async def get_event(self, event_id: str) -> WebhookEvent:
        event = await self.find_event(event_id)
        if event is None:
            raise EventNotFound(event_id)
        return event

    async def list_events(self, installation_id: str, limit: int = 50) -> list[WebhookEvent]:
        """Most recent events for an installation (the delivery log)."""
        key = installation_events_key(installation_id)
        event_ids = await self.store.sorted_recent(key, limit)
        return await self._load_events(key, event_ids)

    async def list_failed(self, limit: int = 50) -> list[WebhookEvent]:
        """Dead-letter listing: events that need manual attention."""
        event_ids = await self.store.sorted_recent(DEAD_LETTER_KEY, limit)
        return await self._load_events(DEAD_LETTER_KEY, event_ids)

    async def _load_events(self, key: str, event_ids: list[str]) -> list[WebhookEvent]:
        events = []
        for event_id in event_ids:
            event = await self.find_event(event_id)
            if event is None:
                await self.store.sorted_remove(key, event_id)
                continue
            events.append(event)
        return events
