"""
Cycle processor.

One polling pass: fetch, deduplicate, deliver, persist. Errors never escape
run_once(), so a failed pass cannot stop the schedule.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from feedrelay.cache import DEFAULT_MAX_ENTRIES, CachePolicy
from feedrelay.config import RunMode
from feedrelay.errors import CycleError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from feedrelay.cache import DedupCache
    from feedrelay.delivery.dispatcher import Dispatcher
    from feedrelay.feeds import FetchResult
    from feedrelay.metrics import RelayMetrics

logger = logging.getLogger(__name__)

CLEANUP_EVERY_CYCLES = 50


@dataclass
class CycleResult:
    """Summary of one polling pass."""

    cycle: int
    items_found: int = 0
    items_selected: int = 0
    delivered: int = 0
    failed: int = 0
    sources_processed: int = 0
    policy: CachePolicy | None = None
    saved: bool = False
    cleaned_up: int = 0
    interrupted: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def select_policy(run_mode: RunMode, is_bootstrap: bool) -> CachePolicy:
    """
    Map run mode and cache state to a selection policy.

    Only a first production run is quiet; development samples one item per
    source; everything else delivers all new items.
    """
    if run_mode == RunMode.PRODUCTION and is_bootstrap:
        return CachePolicy.BOOTSTRAP_QUIET
    if run_mode == RunMode.DEVELOPMENT:
        return CachePolicy.SAMPLED
    return CachePolicy.FULL


class CycleProcessor:
    """
    Runs polling passes against injected collaborators.

    The processor is the only writer of the cache; saves always follow the
    mutation of the same pass.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[FetchResult]],
        cache: DedupCache,
        dispatcher: Dispatcher | None,
        *,
        run_mode: RunMode = RunMode.PRODUCTION,
        metrics: RelayMetrics | None = None,
        cleanup_every: int = CLEANUP_EVERY_CYCLES,
        max_cache_entries: int = DEFAULT_MAX_ENTRIES,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        """
        Args:
            fetch: Coroutine function returning the candidate items.
            cache: Dedup cache (already loaded).
            dispatcher: Delivery fan-out; None only in test mode.
            run_mode: Operating mode, decides the selection policy.
            metrics: Optional counters to update.
            cleanup_every: Run cache cleanup every N cycles.
            max_cache_entries: Seen-set cap applied by cleanup.
            should_stop: Returns True once shutdown was requested; a pass that
                sees it before deduplication leaves the cache untouched.
        """
        if cleanup_every < 1:
            raise ValueError(f"cleanup_every must be >= 1, got {cleanup_every}")
        self._fetch = fetch
        self._cache = cache
        self._dispatcher = dispatcher
        self._run_mode = run_mode
        self._metrics = metrics
        self._cleanup_every = cleanup_every
        self._max_cache_entries = max_cache_entries
        self._should_stop = should_stop
        self._cycle = 0

    @property
    def cycle_count(self) -> int:
        return self._cycle

    async def run_once(self) -> CycleResult:
        """
        Execute one polling pass.

        Returns:
            CycleResult; `error` is set when the pass was abandoned.
        """
        self._cycle += 1
        result = CycleResult(cycle=self._cycle)
        if self._metrics is not None:
            self._metrics.cycles_run += 1
        logger.debug("Starting polling cycle", extra={"cycle": self._cycle})

        try:
            await self._process(result)
            if self._cycle % self._cleanup_every == 0:
                result.cleaned_up = self._cache.cleanup(self._max_cache_entries)
        except Exception as e:
            error = CycleError(f"Polling cycle {self._cycle} failed: {e}", cycle=self._cycle)
            result.error = str(error)
            if self._metrics is not None:
                self._metrics.cycles_failed += 1
            logger.error(
                "Polling cycle failed",
                extra={"cycle": self._cycle, "error": str(e), "error_type": type(e).__name__},
                exc_info=True,
            )
            return result

        logger.info(
            "Polling cycle complete",
            extra={
                "cycle": self._cycle,
                "sources_processed": result.sources_processed,
                "items_found": result.items_found,
                "items_selected": result.items_selected,
                "delivered": result.delivered,
            },
        )
        return result

    async def _process(self, result: CycleResult) -> None:
        fetched = await self._fetch()
        result.sources_processed = fetched.sources_processed
        items = fetched.items
        result.items_found = len(items)
        if self._metrics is not None:
            self._metrics.items_found += len(items)

        if not items:
            logger.debug("No items found in current polling cycle")
            return

        if self._should_stop is not None and self._should_stop():
            # Items stay unseen so the next run picks them up
            result.interrupted = True
            logger.info(
                "Shutdown requested, skipping delivery",
                extra={"cycle": self._cycle, "items_found": len(items)},
            )
            return

        is_bootstrap = self._cache.is_bootstrap()
        policy = select_policy(self._run_mode, is_bootstrap)
        result.policy = policy
        if is_bootstrap:
            logger.info(
                "Detected initial run",
                extra={"run_mode": self._run_mode.value, "items_found": len(items)},
            )

        selected = self._cache.process(items, is_bootstrap, policy)
        result.items_selected = len(selected)
        if self._metrics is not None:
            self._metrics.items_selected += len(selected)

        if not selected:
            if policy == CachePolicy.BOOTSTRAP_QUIET:
                logger.info("Initial run complete, existing items marked as seen")
            result.saved = self._cache.save()
            return

        logger.info(
            "Found items to deliver",
            extra={
                "run_mode": self._run_mode.value,
                "policy": policy.value,
                "items_found": len(items),
                "items_selected": len(selected),
            },
        )

        if self._run_mode != RunMode.TEST and self._dispatcher is not None:
            reports = await self._dispatcher.deliver_batch(selected)
            result.delivered = sum(1 for r in reports if r.succeeded > 0)
            result.failed = sum(1 for r in reports if r.failed > 0)
            if result.failed:
                logger.warning(
                    "Some webhook notifications failed",
                    extra={"failed_items": result.failed, "delivered_items": result.delivered},
                )

        result.saved = self._cache.save(force=True)
