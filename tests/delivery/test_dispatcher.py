"""
Tests for the Dispatcher.

Covers fan-out to independent endpoints, failure isolation, sequential
batches, logging of final outcomes and shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

import pytest

from feedrelay.contracts import Item, SourceKind
from feedrelay.delivery.dispatcher import TEST_ITEM_ID, Dispatcher
from feedrelay.delivery.queue import EndpointQueue
from feedrelay.delivery.webhook import DeliveryResponse
from feedrelay.errors import TransportError
from feedrelay.metrics import RelayMetrics


def make_item(item_id: str, source_id: str = "UCaaaaaaaaaaaaaaaaaaaaaa") -> Item:
    return Item(
        id=item_id,
        title=f"Video {item_id}",
        link=f"https://www.youtube.com/watch?v={item_id}",
        source_kind=SourceKind.CHANNEL,
        source_id=source_id,
        source_name="Test Channel",
        published=datetime(2025, 1, 1, tzinfo=UTC),
        thumbnail=f"https://i.ytimg.com/vi/{item_id}/hqdefault.jpg",
    )


class StubClient:
    """Webhook client double that always succeeds or always fails."""

    def __init__(self, name: str, fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    async def post(self, payload: dict[str, Any]) -> DeliveryResponse:
        self.sent.append(payload)
        await asyncio.sleep(0)
        if self.fail:
            raise TransportError("HTTP 500: down", status_code=500)
        return DeliveryResponse(status_code=204)

    async def close(self) -> None:
        self.closed = True


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def make_dispatcher(
    *clients: StubClient, metrics: RelayMetrics | None = None, sleep: Any = no_sleep
) -> Dispatcher:
    queues = [
        EndpointQueue(client, index=i, sleep=sleep, metrics=metrics)  # type: ignore[arg-type]
        for i, client in enumerate(clients)
    ]
    return Dispatcher(queues, metrics=metrics)


class TestDeliverToAll:
    """Tests for Dispatcher.deliver_to_all()."""

    @pytest.mark.asyncio
    async def test_fans_out_to_every_endpoint(self) -> None:
        """Every endpoint receives the same formatted payload."""
        a, b = StubClient("webhook:a"), StubClient("webhook:b")
        dispatcher = make_dispatcher(a, b)

        outcomes = await dispatcher.deliver_to_all(make_item("vid1"))

        assert [o.success for o in outcomes] == [True, True]
        assert [o.endpoint_index for o in outcomes] == [0, 1]
        assert a.sent == b.sent
        embed = a.sent[0]["embeds"][0]
        assert embed["url"] == "https://www.youtube.com/watch?v=vid1"
        assert embed["color"] == 0xFF0000
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_failing_endpoint_isolated(self) -> None:
        """A failing endpoint does not fail or delay a healthy one."""
        release = asyncio.Event()

        async def blocked_sleep(_seconds: float) -> None:
            await release.wait()

        failing, healthy = StubClient("webhook:a", fail=True), StubClient("webhook:b")
        dispatcher = make_dispatcher(failing, healthy, sleep=blocked_sleep)

        task = asyncio.create_task(dispatcher.deliver_to_all(make_item("vid1")))
        for _ in range(10):
            await asyncio.sleep(0)

        # B is done while A is still stuck in its first backoff
        assert len(healthy.sent) == 1
        assert len(failing.sent) == 1
        assert dispatcher.endpoints[1].status()["queue_length"] == 0
        assert not task.done()

        release.set()
        outcomes = await task

        assert outcomes[0].success is False
        assert outcomes[0].attempts == 4
        assert outcomes[0].status_code == 500
        assert outcomes[1].success is True
        assert outcomes[1].attempts == 1
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_outcomes_logged_once(self, caplog: pytest.LogCaptureFixture) -> None:
        """Each final outcome is logged exactly once at the right level."""
        dispatcher = make_dispatcher(StubClient("webhook:a", fail=True), StubClient("webhook:b"))

        with caplog.at_level(logging.INFO, logger="feedrelay.delivery.dispatcher"):
            await dispatcher.deliver_to_all(make_item("vid1"))

        records = [r for r in caplog.records if r.name == "feedrelay.delivery.dispatcher"]
        sent = [r for r in records if r.getMessage() == "Webhook notification sent"]
        failed = [r for r in records if r.getMessage() == "Webhook notification failed"]
        assert len(sent) == 1
        assert len(failed) == 1
        assert failed[0].levelno == logging.ERROR
        assert failed[0].item_id == "vid1"  # type: ignore[attr-defined]
        assert failed[0].endpoint_index == 1  # type: ignore[attr-defined]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_metrics_recorded(self) -> None:
        """Per-endpoint outcomes update the counters."""
        metrics = RelayMetrics()
        dispatcher = make_dispatcher(
            StubClient("webhook:a", fail=True), StubClient("webhook:b"), metrics=metrics
        )

        await dispatcher.deliver_to_all(make_item("vid1"))

        assert metrics.deliveries_succeeded == 1
        assert metrics.deliveries_failed == 1
        assert metrics.endpoint_failures == {0: 1}
        assert metrics.endpoint_successes == {1: 1}
        assert metrics.retries == 3
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_closed_dispatcher_reports_failures(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        """After close() every endpoint reports a logged failure, nothing is sent."""
        a, b = StubClient("webhook:a"), StubClient("webhook:b")
        dispatcher = make_dispatcher(a, b)
        await dispatcher.close()

        with caplog.at_level(logging.ERROR, logger="feedrelay.delivery.dispatcher"):
            outcomes = await dispatcher.deliver_to_all(make_item("vid1"))

        assert [o.endpoint_index for o in outcomes] == [0, 1]
        assert all(not o.success for o in outcomes)
        assert all("closed" in (o.error or "") for o in outcomes)
        assert a.sent == [] and b.sent == []
        failures = [r for r in caplog.records if r.getMessage() == "Webhook notification failed"]
        assert len(failures) == 2


class TestDeliverBatch:
    """Tests for Dispatcher.deliver_batch()."""

    @pytest.mark.asyncio
    async def test_items_delivered_in_input_order(self) -> None:
        """Each endpoint sees items in batch order."""
        a, b = StubClient("webhook:a"), StubClient("webhook:b")
        dispatcher = make_dispatcher(a, b)
        items = [make_item(f"vid{i}") for i in range(3)]

        reports = await dispatcher.deliver_batch(items)

        assert [r.item_id for r in reports] == ["vid0", "vid1", "vid2"]
        assert all(r.succeeded == 2 and r.failed == 0 for r in reports)
        for client in (a, b):
            urls = [p["embeds"][0]["url"] for p in client.sent]
            assert urls == [f"https://www.youtube.com/watch?v=vid{i}" for i in range(3)]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_empty_batch(self) -> None:
        """Empty input yields no reports."""
        dispatcher = make_dispatcher(StubClient("webhook:a"))
        assert await dispatcher.deliver_batch([]) == []
        await dispatcher.close()


class TestTestEndpoints:
    """Tests for the connectivity probe."""

    @pytest.mark.asyncio
    async def test_single_attempt_per_endpoint(self) -> None:
        """Probe posts the test message once, even on failure."""
        metrics = RelayMetrics()
        failing, healthy = StubClient("webhook:a", fail=True), StubClient("webhook:b")
        dispatcher = make_dispatcher(failing, healthy, metrics=metrics)

        outcomes = await dispatcher.test_endpoints()

        assert [o.success for o in outcomes] == [False, True]
        assert all(o.item_id == TEST_ITEM_ID for o in outcomes)
        assert len(failing.sent) == 1
        assert "content" in healthy.sent[0]
        # Probes are not counted as deliveries
        assert metrics.deliveries_succeeded == 0
        assert metrics.deliveries_failed == 0
        await dispatcher.close()


class TestClose:
    """Tests for Dispatcher.close()."""

    @pytest.mark.asyncio
    async def test_pending_delivery_reported_as_cancelled(self) -> None:
        """Shutdown after the grace period turns pending sends into failures."""
        never = asyncio.Event()

        class HangingClient(StubClient):
            async def post(self, payload: dict[str, Any]) -> DeliveryResponse:
                self.sent.append(payload)
                await never.wait()
                return DeliveryResponse(status_code=204)

        client = HangingClient("webhook:a")
        dispatcher = make_dispatcher(client)

        task = asyncio.create_task(dispatcher.deliver_to_all(make_item("vid1")))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        await dispatcher.close(grace_s=0.05)
        outcomes = await task

        assert outcomes[0].success is False
        assert outcomes[0].error == "Delivery cancelled during shutdown"
        assert client.closed

    @pytest.mark.asyncio
    async def test_from_urls_builds_named_queues(self) -> None:
        """One queue per URL, named without the token."""
        dispatcher = Dispatcher.from_urls(
            [
                "https://discord.com/api/webhooks/111/token-a",
                "https://discord.com/api/webhooks/222/token-b",
            ]
        )

        assert [q.name for q in dispatcher.endpoints] == ["webhook:111", "webhook:222"]
        assert [q.index for q in dispatcher.endpoints] == [0, 1]
        assert dispatcher.pending() == 0
        assert [s["endpoint_index"] for s in dispatcher.queue_status()] == [1, 2]
        await dispatcher.close()
