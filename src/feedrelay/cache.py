"""
Dedup cache.

Tracks which item ids were already handled and the latest publish time seen
per source, persists both to a JSON state file and applies the first-run and
reduced-volume policies.

Invariants:
- An id in `seen` is never returned by process() again.
- latest_by_source values never move backwards for a source.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson
from pydantic import ValidationError

from feedrelay.contracts import CacheState
from feedrelay.errors import CacheIOError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from feedrelay.contracts import Item

logger = logging.getLogger(__name__)

DEFAULT_SAVE_INTERVAL_S = 30.0
DEFAULT_MAX_ENTRIES = 10000


class CachePolicy(str, Enum):
    """Selection policy applied by DedupCache.process()."""

    BOOTSTRAP_QUIET = "bootstrap_quiet"  # first run: remember everything, deliver nothing
    SAMPLED = "sampled"  # first unseen item per source
    FULL = "full"  # every unseen item


def format_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class DedupCache:
    """
    Duplicate-suppression state for delivered items.

    Timestamps are kept as the ISO strings they were stored with so a
    save/load cycle reproduces the map exactly; comparisons always use the
    parsed datetimes.

    Usage:
        cache = DedupCache("state.json")
        cache.load()
        to_send = cache.process(items, cache.is_bootstrap(), CachePolicy.FULL)
        cache.save(force=bool(to_send))
    """

    def __init__(
        self,
        cache_file: str | Path | None = None,
        *,
        save_interval_s: float = DEFAULT_SAVE_INTERVAL_S,
        time_fn: Callable[[], float] | None = None,
    ) -> None:
        """
        Args:
            cache_file: State file path (None = memory-only).
            save_interval_s: Minimum seconds between unforced saves.
            time_fn: Monotonic clock in seconds, injectable for tests.
        """
        self._path = Path(cache_file) if cache_file else None
        self._save_interval_s = save_interval_s
        self._time_fn = time_fn or time.monotonic

        self._seen: set[str] = set()
        self._latest_by_source: dict[str, str] = {}
        self._last_save_at: float | None = None

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def seen(self) -> frozenset[str]:
        return frozenset(self._seen)

    @property
    def latest_by_source(self) -> dict[str, str]:
        return dict(self._latest_by_source)

    def is_bootstrap(self) -> bool:
        """True when nothing has ever been seen (first run)."""
        return not self._seen

    def has_seen(self, item_id: str) -> bool:
        return item_id in self._seen

    def mark_seen(self, item_ids: Iterable[str]) -> None:
        self._seen.update(item_ids)

    def latest_timestamp(self, source_key: str) -> datetime | None:
        raw = self._latest_by_source.get(source_key)
        return parse_timestamp(raw) if raw is not None else None

    def _update_latest(self, items: Sequence[Item]) -> None:
        for item in items:
            current = self.latest_timestamp(item.source_key)
            if current is None or item.published > current:
                self._latest_by_source[item.source_key] = format_timestamp(item.published)

    def process(
        self,
        items: Sequence[Item],
        is_bootstrap: bool,
        policy: CachePolicy,
    ) -> list[Item]:
        """
        Select the items to deliver and mark them seen.

        Args:
            items: Candidate items, in feed order.
            is_bootstrap: Whether the cache was empty before this pass.
            policy: Selection policy.

        Returns:
            Items to deliver, in input order. Never contains a seen id.
        """
        self._update_latest(items)

        unseen: list[Item] = []
        pending_ids: set[str] = set()
        for item in items:
            # Duplicate ids within one batch count once
            if item.id in self._seen or item.id in pending_ids:
                continue
            pending_ids.add(item.id)
            unseen.append(item)

        if policy == CachePolicy.BOOTSTRAP_QUIET and is_bootstrap:
            self.mark_seen(pending_ids)
            logger.info(
                "First run, marking existing items as seen",
                extra={"marked": len(pending_ids)},
            )
            return []

        if policy == CachePolicy.SAMPLED:
            selected: list[Item] = []
            sampled_sources: set[str] = set()
            for item in unseen:
                if item.source_key not in sampled_sources:
                    sampled_sources.add(item.source_key)
                    selected.append(item)
            self.mark_seen(pending_ids)
            logger.info(
                "Sampled one item per source",
                extra={"selected": len(selected), "unseen": len(unseen)},
            )
            return selected

        self.mark_seen(pending_ids)
        return unseen

    def cleanup(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> int:
        """
        Cap the seen set.

        Keeps the lexicographically largest ids. Ids carry no ordering, so this
        is a size bound and not a recency policy.

        Returns:
            Number of ids removed.
        """
        if max_entries < 0:
            raise ValueError(f"max_entries must be >= 0, got {max_entries}")
        excess = len(self._seen) - max_entries
        if excess <= 0:
            return 0
        self._seen = set(sorted(self._seen)[excess:])
        logger.info(
            "Cleaned up seen items",
            extra={"removed": excess, "remaining": len(self._seen)},
        )
        return excess

    def save_due(self) -> bool:
        """
        True when the unforced save interval has elapsed.

        A cache that has never been saved is always due, so the first pass
        (including a quiet bootstrap) is persisted right away rather than one
        interval after construction.
        """
        if self._last_save_at is None:
            return True
        return self._time_fn() - self._last_save_at >= self._save_interval_s

    def to_state(self) -> CacheState:
        return CacheState(
            seen=sorted(self._seen),
            latest_by_source=dict(self._latest_by_source),
            last_updated=format_timestamp(datetime.now(UTC)),
        )

    def save(self, force: bool = False) -> bool:
        """
        Persist state to the cache file.

        Unforced saves are throttled to one per save interval. Write errors
        are logged and never raised.

        Returns:
            True if the file was written.
        """
        if self._path is None:
            return False
        if not force and not self.save_due():
            return False

        try:
            self._write(self.to_state().to_json())
        except CacheIOError as e:
            logger.error("Failed to save cache", extra={"error": str(e)})
            return False

        self._last_save_at = self._time_fn()
        logger.debug(
            "Cache saved",
            extra={"seen": len(self._seen), "sources": len(self._latest_by_source)},
        )
        return True

    def _write(self, data: bytes) -> None:
        """Write via a temp file and atomic rename."""
        assert self._path is not None
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            tmp_path.replace(self._path)
        except OSError as e:
            raise CacheIOError(f"Cannot write {self._path}: {e}") from e

    def load(self) -> bool:
        """
        Restore state from the cache file.

        A missing file starts an empty cache; an unreadable or invalid file is
        logged and also starts an empty cache.

        Returns:
            True if state was restored from disk.
        """
        if self._path is None:
            logger.info("No cache file configured, using memory-only cache")
            return False
        if not self._path.exists():
            logger.info("No cache file found, starting fresh", extra={"path": str(self._path)})
            return False

        try:
            state = self._read()
        except CacheIOError as e:
            logger.warning("Failed to load cache, starting fresh", extra={"error": str(e)})
            self._seen = set()
            self._latest_by_source = {}
            return False

        self._seen = set(state.seen)
        self._latest_by_source = {}
        for source_key, raw in state.latest_by_source.items():
            try:
                parse_timestamp(raw)
            except ValueError:
                logger.warning(
                    "Dropping invalid cached timestamp",
                    extra={"source": source_key, "value": raw},
                )
                continue
            self._latest_by_source[source_key] = raw

        logger.info(
            "Cache loaded",
            extra={
                "seen": len(self._seen),
                "sources": len(self._latest_by_source),
                "last_updated": state.last_updated,
            },
        )
        return True

    def _read(self) -> CacheState:
        assert self._path is not None
        try:
            raw = self._path.read_bytes()
        except OSError as e:
            raise CacheIOError(f"Cannot read {self._path}: {e}") from e
        try:
            return CacheState.from_json(raw)
        except (orjson.JSONDecodeError, ValidationError) as e:
            raise CacheIOError(f"Invalid cache file {self._path}: {e}") from e

    def stats(self) -> dict[str, Any]:
        """Cache statistics for logs and test mode."""
        per_kind = Counter(key.split(":", 1)[0] for key in self._latest_by_source)
        return {
            "seen_items": len(self._seen),
            "sources": len(self._latest_by_source),
            "sources_by_kind": dict(per_kind),
            "persistent": self._path is not None,
        }

    def shutdown(self) -> None:
        """Final forced save."""
        if self._path is not None:
            logger.info("Saving cache before shutdown")
        self.save(force=True)
