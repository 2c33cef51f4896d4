"""
Item formatter.

Deterministic Discord embed payloads for delivered items.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from feedrelay.contracts import SourceKind

if TYPE_CHECKING:
    from feedrelay.contracts import Item

YOUTUBE_RED = 0xFF0000
CHANNEL_URL = "https://www.youtube.com/channel/{source_id}"
PLAYLIST_URL = "https://www.youtube.com/playlist?list={source_id}"
LARGE_THUMBNAIL_URL = "https://i.ytimg.com/vi/{item_id}/maxresdefault.jpg"

TEST_MESSAGE = (
    "\U0001f9ea **Test Message**\n\n"
    "Webhook connection successful! Bot is configured and ready to monitor YouTube feeds."
)


class ItemFormatter:
    """Builds webhook payloads from Items."""

    def __init__(self, color: int = YOUTUBE_RED, large_images: bool = True) -> None:
        self._color = color
        self._large_images = large_images

    def source_link(self, item: Item) -> str:
        if item.source_kind == SourceKind.CHANNEL:
            return CHANNEL_URL.format(source_id=item.source_id)
        return PLAYLIST_URL.format(source_id=item.source_id)

    def image_url(self, item: Item) -> str | None:
        """Large image for the embed, only when the feed had a thumbnail."""
        if not item.thumbnail:
            return None
        if self._large_images:
            return LARGE_THUMBNAIL_URL.format(item_id=item.id)
        return item.thumbnail

    def embed(self, item: Item) -> dict[str, Any]:
        embed: dict[str, Any] = {
            "title": item.title,
            "url": item.link,
            "color": self._color,
            "author": {
                "name": item.source_name,
                "url": self.source_link(item),
            },
        }
        image = self.image_url(item)
        if image:
            embed["image"] = {"url": image}
        return embed

    def format(self, item: Item) -> dict[str, Any]:
        """Format an Item into a webhook payload."""
        return {"embeds": [self.embed(item)]}

    def test_payload(self) -> dict[str, Any]:
        """Connectivity test payload."""
        return {"content": TEST_MESSAGE}
