"""
YouTube feed fetching and parsing.

Downloads channel and playlist Atom feeds with aiohttp, parses them with
feedparser and applies keyword filtering, so the cycle processor receives
ready-to-deliver Items.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

import aiohttp
import feedparser

from feedrelay.contracts import Item, SourceKind
from feedrelay.errors import FeedError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from feedrelay.config import RelayConfig

logger = logging.getLogger(__name__)

YOUTUBE_FEED_BASE = "https://www.youtube.com/feeds/videos.xml"
WATCH_URL = "https://www.youtube.com/watch?v={video_id}"
DEFAULT_THUMBNAIL_URL = "https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"
USER_AGENT = "feedrelay/1.0 (RSS Feed Monitor)"

_VIDEO_ID_IN_LINK = re.compile(r"[?&]v=([^&]+)")


def channel_feed_url(channel_id: str) -> str:
    return f"{YOUTUBE_FEED_BASE}?channel_id={channel_id}"


def playlist_feed_url(playlist_id: str) -> str:
    return f"{YOUTUBE_FEED_BASE}?playlist_id={playlist_id}"


def feed_url(source_kind: SourceKind, source_id: str) -> str:
    if source_kind == SourceKind.CHANNEL:
        return channel_feed_url(source_id)
    return playlist_feed_url(source_id)


def extract_video_id(entry_id: str | None, link: str | None) -> str | None:
    """Video id from a ``yt:video:<id>`` entry id, else from the watch link."""
    if entry_id and entry_id.startswith("yt:video:"):
        video_id = entry_id.removeprefix("yt:video:")
        if video_id:
            return video_id
    if link:
        match = _VIDEO_ID_IN_LINK.search(link)
        if match:
            return match.group(1)
    return None


def to_datetime(value: time.struct_time | None) -> datetime | None:
    """Convert feedparser's UTC struct_time to an aware datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(calendar.timegm(value), tz=UTC)


def _thumbnail(entry: Any, video_id: str) -> str:
    thumbnails = entry.get("media_thumbnail") or []
    for thumbnail in thumbnails:
        url = thumbnail.get("url") if isinstance(thumbnail, dict) else None
        if url:
            return str(url)
    return DEFAULT_THUMBNAIL_URL.format(video_id=video_id)


def parse_feed(
    document: str | bytes,
    source_kind: SourceKind,
    source_id: str,
) -> list[Item]:
    """
    Parse a YouTube Atom feed into Items.

    Entries without a recoverable video id are dropped.

    Raises:
        FeedError: If the document is not a feed at all.
    """
    source_key = f"{source_kind.value}:{source_id}"
    parsed = feedparser.parse(document)
    if parsed.bozo and not parsed.entries and not parsed.feed:
        raise FeedError(
            f"Feed parsing failed: {parsed.get('bozo_exception')}", source_key=source_key
        )

    feed_title = parsed.feed.get("title") or "Unknown Channel"
    items: list[Item] = []
    for entry in parsed.entries:
        link = entry.get("link")
        video_id = entry.get("yt_videoid") or extract_video_id(entry.get("id"), link)
        if not video_id:
            logger.debug("Skipping entry without video id", extra={"source": source_key})
            continue

        published = None
        for attr in ("published_parsed", "updated_parsed"):
            published = to_datetime(entry.get(attr))
            if published is not None:
                break

        items.append(
            Item(
                id=video_id,
                title=entry.get("title") or "Untitled",
                link=link or WATCH_URL.format(video_id=video_id),
                source_kind=source_kind,
                source_id=source_id,
                source_name=entry.get("author") or feed_title,
                published=published or datetime.now(UTC),
                thumbnail=_thumbnail(entry, video_id),
            )
        )
    return items


def matches_keywords(
    title: str,
    keywords: Sequence[str],
    match_type: Literal["any", "all"] = "any",
) -> bool:
    """Case-insensitive substring match; no keywords matches everything."""
    if not keywords:
        return True
    lower_title = title.lower()
    lowered = [k.lower() for k in keywords]
    if match_type == "all":
        return all(k in lower_title for k in lowered)
    return any(k in lower_title for k in lowered)


@dataclass
class FetchResult:
    """Items gathered from all sources in one pass."""

    items: list[Item] = field(default_factory=list)
    sources_processed: int = 0
    sources_total: int = 0
    errors: dict[str, str] = field(default_factory=dict)


class FeedFetcher:
    """
    Async fetcher for YouTube feeds.

    Usage:
        fetcher = FeedFetcher()
        result = await fetcher.fetch_all(config)
        await fetcher.close()
    """

    def __init__(self, timeout_s: float = 10.0) -> None:
        self._timeout_s = timeout_s
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def _download(self, url: str, source_key: str) -> bytes:
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/atom+xml, application/rss+xml, application/xml, text/xml",
        }
        try:
            session = await self._get_session()
            async with session.get(url, headers=headers) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise FeedError(f"HTTP {resp.status}: {resp.reason}", source_key=source_key)
                return await resp.read()
        except aiohttp.ClientError as e:
            raise FeedError(f"Connection error: {e}", source_key=source_key) from e
        except asyncio.TimeoutError as e:
            raise FeedError(
                f"Request timeout after {self._timeout_s}s", source_key=source_key
            ) from e

    async def fetch_source(
        self,
        source_kind: SourceKind,
        source_id: str,
        keywords: Sequence[str] = (),
        match_type: Literal["any", "all"] = "any",
    ) -> list[Item]:
        """
        Fetch one feed and keep the items whose title matches the keywords.

        Raises:
            FeedError: On HTTP, timeout or parse failure.
        """
        source_key = f"{source_kind.value}:{source_id}"
        document = await self._download(feed_url(source_kind, source_id), source_key)
        items = parse_feed(document, source_kind, source_id)
        matched = [i for i in items if matches_keywords(i.title, keywords, match_type)]
        logger.debug(
            "Feed fetched",
            extra={"source": source_key, "entries": len(items), "matched": len(matched)},
        )
        return matched

    async def fetch_all(self, config: RelayConfig) -> FetchResult:
        """
        Fetch every configured source concurrently.

        Failed sources are logged and skipped. Items are returned newest first.
        """
        sources = [(SourceKind.CHANNEL, c) for c in config.channel_ids] + [
            (SourceKind.PLAYLIST, p) for p in config.playlist_ids
        ]
        results = await asyncio.gather(
            *[
                self.fetch_source(kind, source_id, config.keywords, config.match_type)
                for kind, source_id in sources
            ],
            return_exceptions=True,
        )

        fetched = FetchResult(sources_total=len(sources))
        for (kind, source_id), result in zip(sources, results, strict=True):
            source_key = f"{kind.value}:{source_id}"
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                fetched.errors[source_key] = str(result)
                logger.warning(
                    "Skipping failed source", extra={"source": source_key, "error": str(result)}
                )
                continue
            fetched.sources_processed += 1
            fetched.items.extend(result)

        fetched.items.sort(key=lambda i: i.published, reverse=True)
        return fetched

    async def close(self) -> None:
        """Close aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
