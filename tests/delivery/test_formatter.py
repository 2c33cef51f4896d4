"""Tests for webhook payload formatting."""

from __future__ import annotations

from datetime import UTC, datetime

from feedrelay.contracts import Item, SourceKind
from feedrelay.delivery.formatter import TEST_MESSAGE, ItemFormatter


def make_item(
    *,
    source_kind: SourceKind = SourceKind.CHANNEL,
    source_id: str = "UCaaaaaaaaaaaaaaaaaaaaaa",
    thumbnail: str | None = "https://i.ytimg.com/vi/abc123/hqdefault.jpg",
) -> Item:
    return Item(
        id="abc123",
        title="New upload",
        link="https://www.youtube.com/watch?v=abc123",
        source_kind=source_kind,
        source_id=source_id,
        source_name="Some Channel",
        published=datetime(2025, 1, 1, 12, 0, tzinfo=UTC),
        thumbnail=thumbnail,
    )


class TestItemFormatter:
    """Tests for ItemFormatter."""

    def test_channel_embed(self) -> None:
        """Embed carries title, link, color, author and large image."""
        payload = ItemFormatter().format(make_item())

        assert payload == {
            "embeds": [
                {
                    "title": "New upload",
                    "url": "https://www.youtube.com/watch?v=abc123",
                    "color": 0xFF0000,
                    "author": {
                        "name": "Some Channel",
                        "url": "https://www.youtube.com/channel/UCaaaaaaaaaaaaaaaaaaaaaa",
                    },
                    "image": {"url": "https://i.ytimg.com/vi/abc123/maxresdefault.jpg"},
                }
            ]
        }

    def test_playlist_author_link(self) -> None:
        """Playlist items link to the playlist page."""
        item = make_item(source_kind=SourceKind.PLAYLIST, source_id="PL" + "b" * 32)
        embed = ItemFormatter().embed(item)

        assert embed["author"]["url"] == f"https://www.youtube.com/playlist?list=PL{'b' * 32}"

    def test_no_thumbnail_no_image(self) -> None:
        """The image is omitted when the feed had no thumbnail."""
        embed = ItemFormatter().embed(make_item(thumbnail=None))
        assert "image" not in embed

    def test_small_images(self) -> None:
        """With large images disabled the feed thumbnail is used as-is."""
        embed = ItemFormatter(large_images=False).embed(make_item())
        assert embed["image"]["url"] == "https://i.ytimg.com/vi/abc123/hqdefault.jpg"

    def test_deterministic(self) -> None:
        """Same item, same payload."""
        formatter = ItemFormatter()
        assert formatter.format(make_item()) == formatter.format(make_item())

    def test_test_payload(self) -> None:
        """Connectivity test message is plain content."""
        assert ItemFormatter().test_payload() == {"content": TEST_MESSAGE}
