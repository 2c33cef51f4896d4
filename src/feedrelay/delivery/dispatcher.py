"""
Dispatcher.

Fans one item out to every endpoint queue concurrently and aggregates the
per-endpoint outcomes. One endpoint's retries or failure never delays or
fails another. Batches are delivered item by item, in input order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from feedrelay.contracts import DispatchOutcome, ItemDeliveryReport
from feedrelay.delivery.formatter import ItemFormatter
from feedrelay.delivery.queue import EndpointQueue
from feedrelay.delivery.rate_limit import RateLimitConfig, SlidingWindowLimiter
from feedrelay.delivery.webhook import WebhookClient
from feedrelay.errors import TransportError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from feedrelay.contracts import Item
    from feedrelay.delivery.backoff import BackoffConfig
    from feedrelay.metrics import RelayMetrics

logger = logging.getLogger(__name__)

TEST_ITEM_ID = "connectivity-test"


class Dispatcher:
    """
    Delivers items to all configured endpoints.

    Flow:
    1. Item is formatted once into a webhook payload
    2. Payload is enqueued on every endpoint queue
    3. All outcomes are awaited (no short-circuit) and logged once each
    """

    def __init__(
        self,
        queues: Sequence[EndpointQueue],
        *,
        formatter: ItemFormatter | None = None,
        metrics: RelayMetrics | None = None,
    ) -> None:
        self._queues = list(queues)
        self._formatter = formatter or ItemFormatter()
        self._metrics = metrics

        if not self._queues:
            logger.warning("No delivery endpoints configured")
        else:
            logger.info("Initialized webhook endpoints", extra={"endpoints": len(self._queues)})

    @classmethod
    def from_urls(
        cls,
        urls: Sequence[str],
        *,
        metrics: RelayMetrics | None = None,
        timeout_s: float = 10.0,
        rate_limit: RateLimitConfig | None = None,
        backoff: BackoffConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> Dispatcher:
        """Build one independent EndpointQueue per webhook URL."""
        queues = []
        for index, url in enumerate(urls):
            limiter = SlidingWindowLimiter(config=rate_limit or RateLimitConfig())
            queues.append(
                EndpointQueue(
                    WebhookClient(url, timeout_s=timeout_s),
                    index=index,
                    limiter=limiter,
                    backoff=backoff,
                    metrics=metrics,
                    sleep=sleep,
                )
            )
        return cls(queues, metrics=metrics)

    @property
    def endpoints(self) -> list[EndpointQueue]:
        return list(self._queues)

    async def deliver_to_all(self, item: Item) -> list[DispatchOutcome]:
        """
        Deliver one item to every endpoint concurrently.

        Returns:
            One DispatchOutcome per endpoint, in endpoint order.
            A closed endpoint reports a failed outcome.
        """
        payload = self._formatter.format(item)
        return await self._fan_out(item.id, payload)

    async def deliver_batch(self, items: Sequence[Item]) -> list[ItemDeliveryReport]:
        """
        Deliver items one after another.

        Each item's fan-out settles before the next one starts, so delivery
        order matches input order on every endpoint.
        """
        reports: list[ItemDeliveryReport] = []
        for item in items:
            outcomes = await self.deliver_to_all(item)
            reports.append(ItemDeliveryReport(item_id=item.id, outcomes=outcomes))
        return reports

    async def test_endpoints(self) -> list[DispatchOutcome]:
        """Post one connectivity test message to every endpoint, no retries."""
        return await self._fan_out(TEST_ITEM_ID, self._formatter.test_payload(), probe=True)

    async def _fan_out(
        self, item_id: str, payload: dict[str, Any], *, probe: bool = False
    ) -> list[DispatchOutcome]:
        results = await asyncio.gather(
            *[self._deliver_one(queue, item_id, payload, probe=probe) for queue in self._queues],
            return_exceptions=True,
        )

        outcomes: list[DispatchOutcome] = []
        for queue, result in zip(self._queues, results, strict=True):
            if isinstance(result, DispatchOutcome):
                outcomes.append(result)
                continue
            if isinstance(result, asyncio.CancelledError):
                raise result
            # _deliver_one handles its own errors; this is a bug guard
            logger.error(
                "Endpoint delivery exception",
                extra={"endpoint_index": queue.index, "item_id": item_id, "error": str(result)},
            )
            outcomes.append(
                DispatchOutcome(
                    item_id=item_id,
                    endpoint_index=queue.index,
                    endpoint_name=queue.name,
                    success=False,
                    error=str(result),
                )
            )
        return outcomes

    async def _deliver_one(
        self,
        queue: EndpointQueue,
        item_id: str,
        payload: dict[str, Any],
        *,
        probe: bool = False,
    ) -> DispatchOutcome:
        """Send on one endpoint and turn its final result into an outcome."""
        try:
            if probe:
                response = await queue.probe(payload)
            else:
                response = await queue.enqueue(payload)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            outcome = DispatchOutcome(
                item_id=item_id,
                endpoint_index=queue.index,
                endpoint_name=queue.name,
                success=False,
                error="Delivery cancelled during shutdown",
            )
        except TransportError as e:
            outcome = DispatchOutcome(
                item_id=item_id,
                endpoint_index=queue.index,
                endpoint_name=queue.name,
                success=False,
                error=str(e),
                status_code=e.status_code,
                attempts=e.attempts,
            )
        except Exception as e:
            outcome = DispatchOutcome(
                item_id=item_id,
                endpoint_index=queue.index,
                endpoint_name=queue.name,
                success=False,
                error=f"Unexpected error: {e}",
            )
        else:
            outcome = DispatchOutcome(
                item_id=item_id,
                endpoint_index=queue.index,
                endpoint_name=queue.name,
                success=True,
                status_code=response.status_code,
                attempts=response.attempts,
            )

        self._log_outcome(outcome)
        if self._metrics is not None and item_id != TEST_ITEM_ID:
            self._metrics.record_outcome(outcome.endpoint_index, outcome.success)
        return outcome

    def _log_outcome(self, outcome: DispatchOutcome) -> None:
        fields = {
            "item_id": outcome.item_id,
            "endpoint_index": outcome.endpoint_index + 1,
            "endpoint": outcome.endpoint_name,
            "attempts": outcome.attempts,
        }
        if outcome.success:
            logger.info("Webhook notification sent", extra=fields)
        else:
            logger.error(
                "Webhook notification failed",
                extra={**fields, "error": outcome.error, "status": outcome.status_code},
            )

    def queue_status(self) -> list[dict[str, int | bool]]:
        """Status of every endpoint queue."""
        return [
            {"endpoint_index": queue.index + 1, **queue.status()} for queue in self._queues
        ]

    def pending(self) -> int:
        """Payloads waiting across all endpoints."""
        return sum(len(queue) for queue in self._queues)

    async def close(self, grace_s: float = 5.0) -> None:
        """
        Drain (bounded by grace_s) and close every endpoint queue.

        Deliveries requested afterwards still yield one failed outcome per
        endpoint (QueueClosedError).
        """
        results = await asyncio.gather(
            *[queue.close(grace_s) for queue in self._queues],
            return_exceptions=True,
        )
        for queue, result in zip(self._queues, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "Error closing endpoint",
                    extra={"endpoint_index": queue.index, "error": str(result)},
                )
