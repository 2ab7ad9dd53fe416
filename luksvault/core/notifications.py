"""Notification events and sinks.

Key lifecycle events are fanned out to every configured sink:
- LogSink: structured log line
- MemorySink: in-process list (tests, status output)
- WebhookSink: JSON POST via httpx with bounded retries

Delivery is best effort. A sink that keeps failing produces a warning that
is returned to the caller alongside the otherwise successful operation; it
never turns a completed rotation or backup into a failure.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx

from luksvault.core.logging import get_logger
from luksvault.core.metrics import NOTIFICATION_FAILURES_TOTAL

logger = get_logger(__name__)


class EventKind(str, Enum):
    """Kinds of lifecycle notification."""
    KEY_ROTATED = "KeyRotated"
    ROTATION_SCHEDULED = "RotationScheduled"
    ROTATION_APPROVAL_REQUIRED = "RotationApprovalRequired"
    KEY_AGE_WARNING = "KeyAgeWarning"
    KEY_EXPIRED = "KeyExpired"
    HEADER_BACKED_UP = "HeaderBackedUp"
    HEADER_RESTORED = "HeaderRestored"


@dataclass
class NotificationEvent:
    """A lifecycle event about one volume (and optionally one slot)."""
    event_kind: EventKind
    volume: str
    slot: Optional[int] = None
    actor: str = "system"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_kind": self.event_kind.value,
            "volume": self.volume,
            "slot": self.slot,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


class NotificationSink:
    """Destination for notification events."""

    name = "sink"

    async def send(self, event: NotificationEvent) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class LogSink(NotificationSink):
    name = "log"

    async def send(self, event: NotificationEvent) -> None:
        level = logging.WARNING if event.event_kind in (
            EventKind.KEY_EXPIRED, EventKind.KEY_AGE_WARNING
        ) else logging.INFO
        logger.log(
            level,
            f"{event.event_kind.value}: {event.volume}",
            extra={"extra_fields": {"slot": event.slot, "actor": event.actor, **event.details}},
        )


class MemorySink(NotificationSink):
    """Keeps every event; used by tests and ``status``."""

    name = "memory"

    def __init__(self):
        self.events: list[NotificationEvent] = []

    async def send(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> list[NotificationEvent]:
        return [e for e in self.events if e.event_kind == kind]


class WebhookSink(NotificationSink):
    """POST events as JSON to a webhook endpoint.

    Retries transport errors and 5xx responses with exponential backoff;
    4xx responses are not retried.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        retries: int = 3,
        timeout: float = 5.0,
        backoff: float = 0.5,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.retries = max(1, retries)
        self.timeout = timeout
        self.backoff = backoff
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def send(self, event: NotificationEvent) -> None:
        client = await self._get_client()
        last_error: Exception | None = None
        for attempt in range(1, self.retries + 1):
            try:
                response = await client.post(self.url, json=event.to_dict())
                if response.status_code < 500:
                    response.raise_for_status()
                    return
                last_error = httpx.HTTPStatusError(
                    f"Webhook returned {response.status_code}",
                    request=response.request,
                    response=response,
                )
            except httpx.HTTPStatusError:
                raise
            except httpx.HTTPError as e:
                last_error = e
            if attempt < self.retries:
                await asyncio.sleep(self.backoff * 2 ** (attempt - 1))
        raise last_error

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None


class Notifier:
    """Fan-out of events to sinks.

    Usage:
        notifier = Notifier([LogSink(), WebhookSink(url)])
        warnings = await notifier.emit(NotificationEvent(EventKind.KEY_ROTATED, "/dev/sda2"))
    """

    def __init__(self, sinks: list[NotificationSink] | None = None):
        self.sinks: list[NotificationSink] = list(sinks or [])

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    async def emit(self, event: NotificationEvent) -> list[str]:
        """Deliver to every sink. Returns warnings for sinks that failed."""
        warnings = []
        for sink in self.sinks:
            try:
                await sink.send(event)
            except Exception as e:
                NOTIFICATION_FAILURES_TOTAL.labels(sink=sink.name).inc()
                message = f"{sink.name} notification for {event.event_kind.value} failed: {e}"
                logger.warning(message, volume=event.volume)
                warnings.append(message)
        return warnings

    async def close(self) -> None:
        for sink in self.sinks:
            await sink.close()
