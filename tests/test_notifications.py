"""Tests for notification sinks."""

import json
import logging

import httpx
import pytest

from luksvault.core.notifications import (
    EventKind,
    LogSink,
    MemorySink,
    NotificationEvent,
    NotificationSink,
    Notifier,
    WebhookSink,
)

WEBHOOK_URL = "https://hooks.example.com/luksvault"


def _event(kind: EventKind = EventKind.KEY_ROTATED) -> NotificationEvent:
    return NotificationEvent(kind, "/dev/sda2", slot=1, actor="alice", details={"old_slot": 0})


def _sink(responses: list[int], seen: list[httpx.Request], retries: int = 3) -> WebhookSink:
    """Webhook sink whose transport answers with the given status codes."""
    codes = iter(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(next(codes))

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookSink(WEBHOOK_URL, retries=retries, backoff=0, client=client)


class FailingSink(NotificationSink):
    name = "failing"

    async def send(self, event: NotificationEvent) -> None:
        raise RuntimeError("unreachable")


class TestNotificationEvent:
    """Test event serialization."""

    def test_to_dict(self):
        """Test the JSON payload carries kind, volume and details."""
        data = _event().to_dict()

        assert data["event_kind"] == "KeyRotated"
        assert data["volume"] == "/dev/sda2"
        assert data["slot"] == 1
        assert data["details"] == {"old_slot": 0}
        json.dumps(data)


class TestWebhookSink:
    """Test webhook delivery and retries."""

    @pytest.mark.asyncio
    async def test_delivers_json(self):
        """Test the event is POSTed as JSON."""
        seen = []
        sink = _sink([200], seen)

        await sink.send(_event())
        await sink.close()

        assert len(seen) == 1
        assert seen[0].method == "POST"
        assert json.loads(seen[0].content)["event_kind"] == "KeyRotated"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        """Test 5xx responses are retried until success."""
        seen = []
        sink = _sink([503, 503, 200], seen)

        await sink.send(_event())
        await sink.close()

        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        """Test persistent 5xx responses raise after the last attempt."""
        seen = []
        sink = _sink([500, 500], seen, retries=2)

        with pytest.raises(httpx.HTTPStatusError):
            await sink.send(_event())
        await sink.close()

        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self):
        """Test a 4xx response fails immediately."""
        seen = []
        sink = _sink([400, 200], seen)

        with pytest.raises(httpx.HTTPStatusError):
            await sink.send(_event())
        await sink.close()

        assert len(seen) == 1


class TestNotifier:
    """Test fan-out to sinks."""

    @pytest.mark.asyncio
    async def test_fan_out(self):
        """Test every sink receives the event."""
        first, second = MemorySink(), MemorySink()
        notifier = Notifier([first, second])

        warnings = await notifier.emit(_event())

        assert warnings == []
        assert len(first.events) == 1
        assert len(second.events) == 1

    @pytest.mark.asyncio
    async def test_failing_sink_becomes_warning(self):
        """Test a failing sink does not stop delivery or raise."""
        memory = MemorySink()
        notifier = Notifier([FailingSink(), memory])

        warnings = await notifier.emit(_event())

        assert len(warnings) == 1
        assert "failing notification for KeyRotated failed" in warnings[0]
        assert len(memory.events) == 1

    @pytest.mark.asyncio
    async def test_memory_sink_filters_by_kind(self):
        """Test MemorySink.of_kind."""
        memory = MemorySink()
        notifier = Notifier()
        notifier.add_sink(memory)

        await notifier.emit(_event(EventKind.KEY_ROTATED))
        await notifier.emit(_event(EventKind.HEADER_BACKED_UP))

        assert [e.event_kind for e in memory.of_kind(EventKind.HEADER_BACKED_UP)] == [EventKind.HEADER_BACKED_UP]

    @pytest.mark.asyncio
    async def test_log_sink(self, caplog):
        """Test warnings about key age are logged at WARNING."""
        with caplog.at_level(logging.INFO, logger="luksvault.core.notifications"):
            await LogSink().send(_event(EventKind.KEY_EXPIRED))
            await LogSink().send(_event(EventKind.KEY_ROTATED))

        levels = [r.levelno for r in caplog.records if r.name == "luksvault.core.notifications"]
        assert levels == [logging.WARNING, logging.INFO]
