"""
Data contracts for feedrelay.

These are the canonical records passed between the feed layer, the dedup
cache and the delivery core.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator

CACHE_SCHEMA_VERSION = "1.0.0"


class SourceKind(str, Enum):
    """Kind of content source a feed belongs to."""

    CHANNEL = "channel"
    PLAYLIST = "playlist"


class Item(BaseModel):
    """
    A single piece of content discovered from a feed.

    Attributes:
        id: Opaque unique identity (YouTube video id).
        title: Human title.
        link: Canonical URL.
        source_kind: Kind of source the item came from.
        source_id: Channel or playlist id.
        source_name: Display name of the source (channel name).
        published: Publish timestamp (timezone-aware).
        thumbnail: Optional thumbnail URL.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, description="Opaque unique identity")
    title: str = Field(default="Untitled", description="Item title")
    link: str = Field(..., min_length=1, description="Canonical URL")
    source_kind: SourceKind = Field(..., description="Source kind")
    source_id: str = Field(..., min_length=1, description="Source identifier")
    source_name: str = Field(default="Unknown Channel", description="Source display name")
    published: datetime = Field(..., description="Publish timestamp")
    thumbnail: str | None = Field(default=None, description="Thumbnail URL")

    @field_validator("published")
    @classmethod
    def validate_published(cls, v: datetime) -> datetime:
        """Require timezone-aware timestamps so comparisons are well defined."""
        if v.tzinfo is None:
            raise ValueError("published must be timezone-aware")
        return v

    @property
    def source_key(self) -> str:
        """Source reference used by the dedup cache, e.g. ``channel:UC...``."""
        return f"{self.source_kind.value}:{self.source_id}"


class CacheState(BaseModel):
    """
    Persisted dedup cache record.

    Field aliases keep the on-disk keys compatible with existing state files.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    seen: list[str] = Field(default_factory=list, alias="seenVideoIds")
    latest_by_source: dict[str, str] = Field(
        default_factory=dict, alias="latestVideoTimestamps"
    )
    last_updated: str | None = Field(default=None, alias="lastUpdated")
    version: str = Field(default=CACHE_SCHEMA_VERSION)

    def to_json(self) -> bytes:
        """Serialize to indented JSON bytes using orjson."""
        return orjson.dumps(
            self.model_dump(mode="json", by_alias=True),
            option=orjson.OPT_INDENT_2,
        )

    @classmethod
    def from_json(cls, data: bytes | str) -> CacheState:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))


@dataclass
class DispatchOutcome:
    """Final outcome of delivering one item to one endpoint."""

    item_id: str
    endpoint_index: int
    endpoint_name: str
    success: bool
    error: str | None = None
    status_code: int | None = None
    attempts: int = 0


@dataclass
class ItemDeliveryReport:
    """All endpoint outcomes for one item."""

    item_id: str
    outcomes: list[DispatchOutcome]

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)
