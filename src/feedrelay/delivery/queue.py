"""
Per-endpoint delivery queue.

Each endpoint owns an asyncio.Queue drained by exactly one worker task.
The worker paces sends through the endpoint's SlidingWindowLimiter and
retries failures per the backoff policy. Every enqueue gets its own Future
that resolves with the DeliveryResponse or the final error.

Ordering: strict FIFO per endpoint, one send in flight at a time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from feedrelay.delivery.backoff import BackoffConfig, compute_backoff_delay
from feedrelay.delivery.rate_limit import SlidingWindowLimiter
from feedrelay.errors import QuotaError, TransportError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from feedrelay.delivery.webhook import DeliveryResponse, WebhookClient
    from feedrelay.metrics import RelayMetrics

logger = logging.getLogger(__name__)


@dataclass
class QueuedPayload:
    """One pending send and the future its caller awaits."""

    payload: dict[str, Any]
    future: asyncio.Future[DeliveryResponse]
    enqueued_at: float = field(default_factory=time.monotonic)


class QueueClosedError(TransportError):
    """Payload was enqueued after the endpoint queue was closed."""


class EndpointQueue:
    """
    Serialized, rate-limited delivery to one webhook endpoint.

    enqueue() may be called from any number of concurrent tasks; a single
    worker sends in enqueue order. A failing payload only delays the payloads
    behind it by its own retries.
    """

    def __init__(
        self,
        client: WebhookClient,
        *,
        index: int = 0,
        limiter: SlidingWindowLimiter | None = None,
        backoff: BackoffConfig | None = None,
        metrics: RelayMetrics | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        """
        Args:
            client: Transport for this endpoint.
            index: Position of the endpoint in the configuration (for logs).
            limiter: Rate limiter (default: 5 requests / 2 s).
            backoff: Retry policy (default: 3 retries, 1 s base).
            metrics: Optional counters to update.
            sleep: Awaitable sleep, injectable for tests.
        """
        self._client = client
        self._index = index
        self._limiter = limiter or SlidingWindowLimiter()
        self._backoff = backoff or BackoffConfig()
        self._metrics = metrics
        self._sleep = sleep or asyncio.sleep

        self._queue: asyncio.Queue[QueuedPayload] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._processing = False
        self._closed = False

    @property
    def index(self) -> int:
        return self._index

    @property
    def name(self) -> str:
        return self._client.name

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return self._queue.qsize()

    def enqueue(self, payload: dict[str, Any]) -> asyncio.Future[DeliveryResponse]:
        """
        Queue a payload for delivery.

        Returns:
            Future resolving to the DeliveryResponse, or raising the final
            TransportError once retries are exhausted.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[DeliveryResponse] = loop.create_future()
        if self._closed:
            future.set_exception(QueueClosedError(f"Endpoint {self.name} is closed"))
            return future

        self._queue.put_nowait(QueuedPayload(payload=payload, future=future))
        self._ensure_worker()
        return future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name=f"endpoint-queue-{self._index}"
            )

    async def _run(self) -> None:
        """Worker loop: drain the queue forever, one payload at a time."""
        while True:
            entry = await self._queue.get()
            try:
                if entry.future.done():
                    # Caller gave up before we got to it
                    continue
                self._processing = True
                try:
                    response = await self._deliver(entry.payload)
                except asyncio.CancelledError:
                    entry.future.cancel()
                    raise
                except Exception as e:
                    if not entry.future.done():
                        entry.future.set_exception(e)
                else:
                    if not entry.future.done():
                        entry.future.set_result(response)
            finally:
                self._processing = False
                self._queue.task_done()

    async def _wait_for_slot(self) -> None:
        """Block until the limiter admits a send."""
        wait_ms = self._limiter.admit()
        while wait_ms > 0:
            if self._metrics is not None:
                self._metrics.rate_limit_waits += 1
            logger.warning(
                "Rate limit applied",
                extra={
                    "endpoint_index": self._index,
                    "delay_ms": wait_ms,
                    "queue_size": self._queue.qsize(),
                },
            )
            await self._sleep(wait_ms / 1000)
            wait_ms = self._limiter.admit()

    async def _deliver(self, payload: dict[str, Any]) -> DeliveryResponse:
        """
        Send one payload, retrying per the backoff policy.

        asyncio.CancelledError is never retried.
        """
        retry = 0
        while True:
            await self._wait_for_slot()
            try:
                try:
                    response = await self._client.post(payload)
                finally:
                    self._limiter.record()
                response.attempts = retry + 1
                return response
            except QuotaError as e:
                error: TransportError = e
                retry_after_ms = e.retry_after_ms
            except TransportError as e:
                error = e
                retry_after_ms = None
            except Exception as e:
                error = TransportError(f"Unexpected error: {e}")
                error.__cause__ = e
                retry_after_ms = None

            error.attempts = retry + 1
            if retry >= self._backoff.max_retries or self._closed:
                raise error

            delay_ms = compute_backoff_delay(self._backoff, retry, retry_after_ms)
            if self._metrics is not None:
                self._metrics.retries += 1
            logger.warning(
                "Webhook request failed, retrying",
                extra={
                    "endpoint_index": self._index,
                    "error": str(error),
                    "retry": retry + 1,
                    "delay_ms": delay_ms,
                    "rate_limited": isinstance(error, QuotaError),
                },
            )
            await self._sleep(delay_ms / 1000)
            if self._closed:
                # close() began during the backoff
                raise error
            retry += 1

    async def probe(self, payload: dict[str, Any]) -> DeliveryResponse:
        """
        Single send outside the FIFO, with no retries.

        Still paced by the limiter, so probes count against the quota.
        """
        await self._wait_for_slot()
        try:
            return await self._client.post(payload)
        except TransportError as e:
            e.attempts = 1
            raise
        finally:
            self._limiter.record()

    async def join(self) -> None:
        """Wait until every queued payload has been processed."""
        await self._queue.join()

    async def close(self, grace_s: float = 5.0) -> None:
        """
        Stop the worker.

        Already-queued payloads get up to grace_s to finish (no new retries
        are started once closing). Whatever is left is cancelled, including
        an in-flight request.
        """
        self._closed = True
        worker = self._worker
        if worker is not None and not worker.done():
            if grace_s > 0 and (self._queue.qsize() > 0 or self._processing):
                logger.info(
                    "Waiting for pending notifications",
                    extra={"endpoint_index": self._index, "pending": self._queue.qsize()},
                )
                try:
                    await asyncio.wait_for(self._queue.join(), timeout=grace_s)
                except TimeoutError:
                    logger.warning(
                        "Shutdown grace period expired with pending notifications",
                        extra={"endpoint_index": self._index, "pending": self._queue.qsize()},
                    )
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        self._worker = None

        while not self._queue.empty():
            entry = self._queue.get_nowait()
            entry.future.cancel()
            self._queue.task_done()

        await self._client.close()

    def status(self) -> dict[str, int | bool]:
        """Queue status for monitoring."""
        return {
            "queue_length": self._queue.qsize(),
            "is_processing": self._processing,
            "recent_requests": self._limiter.recent_requests,
        }
