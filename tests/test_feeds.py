"""Tests for YouTube feed parsing and fetching."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from feedrelay.config import RelayConfig
from feedrelay.contracts import SourceKind
from feedrelay.errors import FeedError
from feedrelay.feeds import (
    FeedFetcher,
    channel_feed_url,
    extract_video_id,
    matches_keywords,
    parse_feed,
    playlist_feed_url,
)

CHANNEL_ID = "UC" + "a" * 22
OTHER_CHANNEL_ID = "UC" + "b" * 22
PLAYLIST_ID = "PL" + "c" * 32

SAMPLE_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns:yt="http://www.youtube.com/xml/schemas/2015"
      xmlns:media="http://search.yahoo.com/mrss/"
      xmlns="http://www.w3.org/2005/Atom">
  <title>Feed Channel</title>
  <entry>
    <id>yt:video:vid00000001</id>
    <yt:videoId>vid00000001</yt:videoId>
    <title>Python release notes</title>
    <link rel="alternate" href="https://www.youtube.com/watch?v=vid00000001"/>
    <author><name>Entry Author</name></author>
    <published>2025-01-02T10:00:00+00:00</published>
    <media:group>
      <media:thumbnail url="https://i1.ytimg.com/vi/vid00000001/hqdefault.jpg" width="480" height="360"/>
    </media:group>
  </entry>
  <entry>
    <id>yt:video:vid00000002</id>
    <yt:videoId>vid00000002</yt:videoId>
    <title>Cooking show</title>
    <link rel="alternate" href="https://www.youtube.com/watch?v=vid00000002"/>
    <published>2025-01-01T10:00:00+00:00</published>
  </entry>
  <entry>
    <id>tag:example.com,2025:no-video</id>
    <title>Not a video</title>
    <link rel="alternate" href="https://example.com/post"/>
    <published>2025-01-01T09:00:00+00:00</published>
  </entry>
</feed>
"""


def feed_document(video_id: str, published: str, title: str = "Video") -> str:
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns:yt="http://www.youtube.com/xml/schemas/2015" xmlns="http://www.w3.org/2005/Atom">
  <title>Channel</title>
  <entry>
    <id>yt:video:{video_id}</id>
    <yt:videoId>{video_id}</yt:videoId>
    <title>{title}</title>
    <link rel="alternate" href="https://www.youtube.com/watch?v={video_id}"/>
    <published>{published}</published>
  </entry>
</feed>
"""


def mock_response(status: int, body: bytes = b"", reason: str = "OK") -> AsyncMock:
    response = AsyncMock()
    response.status = status
    response.reason = reason
    response.read = AsyncMock(return_value=body)
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=None)
    return response


def fetcher_with(get: Any) -> FeedFetcher:
    fetcher = FeedFetcher()
    session = AsyncMock()
    session.get = get
    session.closed = False
    fetcher._session = session
    return fetcher


class TestUrls:
    """Tests for feed URL helpers."""

    def test_channel_url(self) -> None:
        """Channel feeds use channel_id."""
        assert channel_feed_url(CHANNEL_ID) == (
            f"https://www.youtube.com/feeds/videos.xml?channel_id={CHANNEL_ID}"
        )

    def test_playlist_url(self) -> None:
        """Playlist feeds use playlist_id."""
        assert playlist_feed_url(PLAYLIST_ID) == (
            f"https://www.youtube.com/feeds/videos.xml?playlist_id={PLAYLIST_ID}"
        )


class TestExtractVideoId:
    """Tests for extract_video_id."""

    def test_from_entry_id(self) -> None:
        """yt:video:<id> entry ids are preferred."""
        assert extract_video_id("yt:video:abc", None) == "abc"

    def test_from_link(self) -> None:
        """Falls back to the v= query parameter."""
        assert extract_video_id("other", "https://www.youtube.com/watch?v=xyz&t=1") == "xyz"

    def test_none(self) -> None:
        """No recoverable id."""
        assert extract_video_id(None, "https://example.com/") is None


class TestParseFeed:
    """Tests for parse_feed."""

    def test_parses_video_entries(self) -> None:
        """Entries become Items; entries without a video id are dropped."""
        items = parse_feed(SAMPLE_FEED, SourceKind.CHANNEL, CHANNEL_ID)

        assert [i.id for i in items] == ["vid00000001", "vid00000002"]
        first, second = items
        assert first.title == "Python release notes"
        assert first.link == "https://www.youtube.com/watch?v=vid00000001"
        assert first.source_name == "Entry Author"
        assert first.published == datetime(2025, 1, 2, 10, 0, tzinfo=UTC)
        assert first.thumbnail == "https://i1.ytimg.com/vi/vid00000001/hqdefault.jpg"
        assert first.source_key == f"channel:{CHANNEL_ID}"

    def test_fallbacks(self) -> None:
        """Missing author and thumbnail fall back to feed title and default URL."""
        items = parse_feed(SAMPLE_FEED, SourceKind.PLAYLIST, PLAYLIST_ID)
        second = items[1]

        assert second.source_name == "Feed Channel"
        assert second.thumbnail == "https://i.ytimg.com/vi/vid00000002/hqdefault.jpg"
        assert second.source_kind == SourceKind.PLAYLIST

    def test_garbage_raises_feed_error(self) -> None:
        """A document that is not a feed is a FeedError."""
        with pytest.raises(FeedError):
            parse_feed(b"\x00\x01 not xml at all <<<", SourceKind.CHANNEL, CHANNEL_ID)


class TestMatchesKeywords:
    """Tests for matches_keywords."""

    def test_no_keywords_matches_all(self) -> None:
        """Empty keyword list matches everything."""
        assert matches_keywords("anything", [])

    def test_any_case_insensitive(self) -> None:
        """'any' needs one keyword, case-insensitively."""
        assert matches_keywords("Python Release", ["rust", "python"], "any")
        assert not matches_keywords("Cooking", ["rust", "python"], "any")

    def test_all(self) -> None:
        """'all' needs every keyword."""
        assert matches_keywords("Python release notes", ["python", "notes"], "all")
        assert not matches_keywords("Python release", ["python", "notes"], "all")


class TestFeedFetcher:
    """Tests for FeedFetcher."""

    @pytest.mark.asyncio
    async def test_fetch_source_filters_keywords(self) -> None:
        """Only matching titles are returned."""
        fetcher = fetcher_with(
            MagicMock(return_value=mock_response(200, SAMPLE_FEED.encode()))
        )

        items = await fetcher.fetch_source(SourceKind.CHANNEL, CHANNEL_ID, ["python"])

        assert [i.id for i in items] == ["vid00000001"]
        url = fetcher._session.get.call_args.args[0]  # type: ignore[union-attr]
        assert url == channel_feed_url(CHANNEL_ID)
        await fetcher.close()

    @pytest.mark.asyncio
    async def test_http_error_is_feed_error(self) -> None:
        """Non-2xx responses raise FeedError with the source key."""
        fetcher = fetcher_with(MagicMock(return_value=mock_response(404, reason="Not Found")))

        with pytest.raises(FeedError) as exc_info:
            await fetcher.fetch_source(SourceKind.CHANNEL, CHANNEL_ID)

        assert "404" in str(exc_info.value)
        assert exc_info.value.source_key == f"channel:{CHANNEL_ID}"

    @pytest.mark.asyncio
    async def test_connection_error_is_feed_error(self) -> None:
        """aiohttp errors and timeouts become FeedError."""
        for error in (aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError()):
            fetcher = fetcher_with(MagicMock(side_effect=error))
            with pytest.raises(FeedError):
                await fetcher.fetch_source(SourceKind.CHANNEL, CHANNEL_ID)

    @pytest.mark.asyncio
    async def test_fetch_all_skips_failures_and_sorts_newest_first(self) -> None:
        """Failed sources are skipped; items are merged newest first."""
        documents = {
            channel_feed_url(CHANNEL_ID): feed_document("older000001", "2025-01-01T00:00:00+00:00"),
            channel_feed_url(OTHER_CHANNEL_ID): None,
            playlist_feed_url(PLAYLIST_ID): feed_document("newer000001", "2025-01-03T00:00:00+00:00"),
        }

        def get(url: str, **_kwargs: Any) -> AsyncMock:
            document = documents[url]
            if document is None:
                return mock_response(500, reason="Server Error")
            return mock_response(200, document.encode())

        fetcher = fetcher_with(MagicMock(side_effect=get))
        config = RelayConfig(
            channel_ids=[CHANNEL_ID, OTHER_CHANNEL_ID],
            playlist_ids=[PLAYLIST_ID],
            test_mode=True,
        )

        result = await fetcher.fetch_all(config)

        assert [i.id for i in result.items] == ["newer000001", "older000001"]
        assert result.sources_total == 3
        assert result.sources_processed == 2
        assert list(result.errors) == [f"channel:{OTHER_CHANNEL_ID}"]
        await fetcher.close()
