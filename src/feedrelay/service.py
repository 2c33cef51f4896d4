"""
Relay service.

Owns every collaborator for one process (config, cache, dispatcher, feed
fetcher, metrics) and their lifecycle:

    start() -> load cache -> cycle -> wait poll interval -> cycle -> ...
    request_shutdown() -> stop scheduling, drain queues within the grace period
    stop() -> close HTTP sessions -> force-save cache

Also implements test mode: validate, probe webhooks, fetch once, print a
report, never post items.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
import time
from typing import TYPE_CHECKING, Any, TextIO

from feedrelay.cache import DedupCache
from feedrelay.cycle import CycleProcessor
from feedrelay.delivery.dispatcher import Dispatcher
from feedrelay.feeds import FeedFetcher
from feedrelay.metrics import RelayMetrics

if TYPE_CHECKING:
    from feedrelay.config import RelayConfig
    from feedrelay.contracts import Item
    from feedrelay.cycle import CycleResult
    from feedrelay.feeds import FetchResult
    from feedrelay.metrics import MetricsExporter

logger = logging.getLogger(__name__)

REPORT_WIDTH = 80
REPORT_MAX_ITEMS = 10


class RelayService:
    """
    Polling relay for one configuration.

    The shutdown event is the only signal between the signal handlers and the
    polling loop; handlers never call stop() themselves.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        cache: DedupCache | None = None,
        fetcher: FeedFetcher | None = None,
        dispatcher: Dispatcher | None = None,
        metrics: RelayMetrics | None = None,
        exporter: MetricsExporter | None = None,
    ) -> None:
        self._config = config
        self._metrics = metrics or RelayMetrics()
        self._exporter = exporter
        self._cache = cache or DedupCache(config.cache_file)
        self._fetcher = fetcher or FeedFetcher()
        if dispatcher is None and config.webhook_urls and not config.test_mode:
            dispatcher = Dispatcher.from_urls(config.webhook_urls, metrics=self._metrics)
        self._dispatcher = dispatcher

        self._processor = CycleProcessor(
            self._fetch,
            self._cache,
            self._dispatcher,
            run_mode=config.run_mode,
            metrics=self._metrics,
            should_stop=lambda: self.shutdown_requested,
        )

        self._shutdown = asyncio.Event()
        self._running = False
        self._stopped = False
        self._dispatcher_closed = False
        self._start_monotonic: float | None = None
        self._last_result: CycleResult | None = None

    @property
    def metrics(self) -> RelayMetrics:
        return self._metrics

    @property
    def cache(self) -> DedupCache:
        return self._cache

    @property
    def dispatcher(self) -> Dispatcher | None:
        return self._dispatcher

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    async def _fetch(self) -> FetchResult:
        return await self._fetcher.fetch_all(self._config)

    def get_health_info(self) -> dict[str, Any]:
        """Health info for the /healthz endpoint."""
        if self._stopped:
            status = "stopped"
        elif not self._running:
            status = "starting"
        else:
            status = "ok"
        uptime_s = (
            round(time.monotonic() - self._start_monotonic, 1)
            if self._start_monotonic is not None
            else 0.0
        )
        return {
            "status": status,
            "uptime_s": uptime_s,
            "cycles": self._processor.cycle_count,
            "last_cycle_ok": self._last_result.ok if self._last_result is not None else None,
            "pending_notifications": self._dispatcher.pending() if self._dispatcher else 0,
            "seen_items": len(self._cache.seen),
        }

    def request_shutdown(self) -> None:
        """Ask the polling loop to stop after the current cycle."""
        if self._shutdown.is_set():
            logger.warning("Shutdown already in progress")
            return
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def start(self, *, once: bool = False) -> None:
        """
        Run polling cycles until shutdown is requested.

        The first cycle runs immediately.

        Args:
            once: Run a single cycle and return.
        """
        if self._running:
            return

        self._running = True
        self._start_monotonic = time.monotonic()
        self._cache.load()
        logger.info(
            "Starting polling loop",
            extra={
                "poll_interval_s": self._config.poll_interval_s,
                "channels": len(self._config.channel_ids),
                "playlists": len(self._config.playlist_ids),
                "run_mode": self._config.run_mode.value,
            },
        )

        while not self._shutdown.is_set():
            await self._run_cycle()
            if once:
                break
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._config.poll_interval_s)

    async def _run_cycle(self) -> None:
        """Run one cycle; a shutdown request mid-cycle drains the queues."""
        cycle_task = asyncio.create_task(self._processor.run_once(), name="relay-cycle")
        shutdown_task = asyncio.create_task(self._shutdown.wait(), name="relay-shutdown-wait")
        try:
            done, _ = await asyncio.wait(
                {cycle_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if cycle_task not in done:
                logger.info("Shutdown requested during cycle, draining notifications")
                await self._close_dispatcher()
            self._last_result = await cycle_task
        finally:
            shutdown_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await shutdown_task
        self._publish_metrics()

    def _publish_metrics(self) -> None:
        if self._exporter is None:
            return
        self._exporter.update(
            self._metrics,
            cache_size=len(self._cache.seen),
            queue_depth=self._dispatcher.pending() if self._dispatcher else 0,
        )

    async def _close_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher_closed:
            return
        self._dispatcher_closed = True
        await self._dispatcher.close(self._config.shutdown_grace_s)

    async def stop(self) -> None:
        """Drain queues within the grace period, close sessions, save the cache."""
        if self._stopped:
            return
        self._shutdown.set()
        logger.info("Stopping relay")

        await self._close_dispatcher()
        await self._fetcher.close()
        self._cache.shutdown()

        self._stopped = True
        self._running = False
        m = self._metrics
        logger.info(
            "Relay stopped",
            extra={
                "cycles_run": m.cycles_run,
                "cycles_failed": m.cycles_failed,
                "deliveries_succeeded": m.deliveries_succeeded,
                "deliveries_failed": m.deliveries_failed,
                "retries": m.retries,
            },
        )


def _format_item(item: Item, index: int) -> str:
    return (
        f"  {index + 1}. {item.title}\n"
        f"     Channel: {item.source_name}\n"
        f"     Published: {item.published.date().isoformat()}\n"
        f"     Source: {item.source_key}\n"
        f"     URL: {item.link}"
    )


def _print_config_validation(config: RelayConfig, out: TextIO) -> None:
    checks = [
        (
            "Content Sources",
            f"{len(config.channel_ids)} channels, {len(config.playlist_ids)} playlists",
        ),
        ("Poll Interval", f"{config.poll_interval_s} seconds"),
        (
            "Keywords",
            f"{len(config.keywords)} keywords" if config.keywords else "No filtering (all videos)",
        ),
        ("Log Level", config.log_level),
        ("Cache File", config.cache_file or "Memory only"),
    ]
    print("\nCONFIGURATION VALIDATION:", file=out)
    for name, message in checks:
        print(f"   [ok] {name}: {message}", file=out)
    for warning in config.warnings():
        print(f"\nWARNING: {warning}", file=out)


def _print_fetch_report(config: RelayConfig, result: FetchResult, out: TextIO) -> None:
    rule = "=" * REPORT_WIDTH
    print(f"\n{rule}\nTEST MODE RESULTS\n{rule}", file=out)

    print("\nSOURCES PROCESSED:", file=out)
    print(f"   Total sources configured: {result.sources_total}", file=out)
    print(f"   Sources successfully fetched: {result.sources_processed}", file=out)
    print(f"   Channels: {len(config.channel_ids)} ({', '.join(config.channel_ids)})", file=out)
    print(f"   Playlists: {len(config.playlist_ids)} ({', '.join(config.playlist_ids)})", file=out)
    for source_key, error in result.errors.items():
        print(f"   Failed: {source_key}: {error}", file=out)

    print("\nFILTERING:", file=out)
    if config.keywords:
        print(f"   Keywords: {', '.join(config.keywords)}", file=out)
        print(f"   Match type: {config.match_type}", file=out)
        print(f"   Videos matching keywords: {len(result.items)}", file=out)
    else:
        print("   No keywords configured, all videos match", file=out)
        print(f"   Total videos found: {len(result.items)}", file=out)

    if not result.items:
        print("\nVIDEOS FOUND: None", file=out)
    else:
        shown = result.items[:REPORT_MAX_ITEMS]
        print(f"\nVIDEOS FOUND ({len(shown)} of {len(result.items)} shown):", file=out)
        for index, item in enumerate(shown):
            print(_format_item(item, index), file=out)
        if len(result.items) > REPORT_MAX_ITEMS:
            print(f"\n   ... and {len(result.items) - REPORT_MAX_ITEMS} more videos", file=out)

    print(f"\n{rule}\nTest completed successfully!\n{rule}", file=out)


async def run_test_mode(
    config: RelayConfig,
    *,
    fetcher: FeedFetcher | None = None,
    dispatcher: Dispatcher | None = None,
    out: TextIO | None = None,
) -> bool:
    """
    Validate configuration, probe webhooks and fetch feeds once.

    Items are only printed, never posted. Webhooks receive a single test
    message when URLs are configured.

    Returns:
        True if the feeds could be fetched. A failed webhook probe is reported
        but does not fail the run.
    """
    out = out or sys.stdout
    fetcher = fetcher or FeedFetcher()
    if dispatcher is None and config.webhook_urls:
        dispatcher = Dispatcher.from_urls(config.webhook_urls)

    print("Test mode starting...", file=out)
    _print_config_validation(config, out)

    try:
        if dispatcher is None:
            print("\nWEBHOOK TEST: Skipped (no webhook URL provided)", file=out)
        else:
            print("\nWEBHOOK TEST: Testing webhook connectivity...", file=out)
            for outcome in await dispatcher.test_endpoints():
                label = f"endpoint {outcome.endpoint_index + 1} ({outcome.endpoint_name})"
                if outcome.success:
                    print(f"   [ok] {label}: connection working", file=out)
                else:
                    print(f"   [failed] {label}: {outcome.error}", file=out)

        print("\nFetching videos from feeds...", file=out)
        result = await fetcher.fetch_all(config)
    except Exception as e:
        logger.error("Test mode failed", extra={"error": str(e)}, exc_info=True)
        print(f"\nTest mode failed: {e}", file=out)
        return False
    finally:
        if dispatcher is not None:
            await dispatcher.close(grace_s=0)
        await fetcher.close()

    _print_fetch_report(config, result, out)
    return True
