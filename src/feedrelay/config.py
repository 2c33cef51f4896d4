"""
Relay configuration.

All settings come from ET_* environment variables and are validated at
construction time. Any invalid value raises ConfigurationError.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Literal
from urllib.parse import urlsplit

from feedrelay.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")
WEBHOOK_HOSTS = frozenset({"discord.com", "discordapp.com"})
MIN_POLL_INTERVAL_S = 60


class RunMode(str, Enum):
    """Operating mode of the relay."""

    PRODUCTION = "production"
    DEVELOPMENT = "development"  # one item per source per cycle
    TEST = "test"  # fetch and report, never post


def parse_comma_separated(value: str | None) -> list[str]:
    """Split a comma-separated setting, dropping blanks."""
    if not value or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def validate_channel_id(channel_id: str) -> str:
    if not channel_id.startswith("UC") or len(channel_id) != 24:
        raise ConfigurationError(
            f"Invalid channel ID format: {channel_id}. "
            "Must start with 'UC' and be 24 characters long."
        )
    return channel_id


def validate_playlist_id(playlist_id: str) -> str:
    if not playlist_id.startswith("PL") or len(playlist_id) != 34:
        raise ConfigurationError(
            f"Invalid playlist ID format: {playlist_id}. "
            "Must start with 'PL' and be 34 characters long."
        )
    return playlist_id


def validate_webhook_url(url: str) -> str:
    """Accept only Discord webhook URLs."""
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ConfigurationError("Invalid webhook URL format")
    if parts.hostname not in WEBHOOK_HOSTS:
        raise ConfigurationError("Discord webhook URL must be from discord.com or discordapp.com")
    if not parts.path.startswith("/api/webhooks/"):
        raise ConfigurationError("Invalid Discord webhook URL format")
    return url


@dataclass
class RelayConfig:
    """Validated relay configuration."""

    channel_ids: list[str] = field(default_factory=list)
    playlist_ids: list[str] = field(default_factory=list)

    # Keyword filtering (empty = match all)
    keywords: list[str] = field(default_factory=list)
    match_type: Literal["any", "all"] = "any"

    webhook_urls: list[str] = field(default_factory=list)

    poll_interval_s: int = 300
    cache_file: str | None = None  # None = memory-only
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    test_mode: bool = False
    development_mode: bool = False

    # 0 = metrics server disabled
    metrics_port: int = 0
    shutdown_grace_s: float = 5.0

    def __post_init__(self) -> None:
        self.channel_ids = [validate_channel_id(c) for c in self.channel_ids]
        self.playlist_ids = [validate_playlist_id(p) for p in self.playlist_ids]
        if not self.channel_ids and not self.playlist_ids:
            raise ConfigurationError(
                "At least one of ET_CHANNEL_IDS or ET_PLAYLIST_IDS must be provided"
            )
        if self.match_type not in ("any", "all"):
            raise ConfigurationError('ET_MATCH_TYPE must be either "any" or "all"')
        if not self.test_mode and not self.webhook_urls:
            raise ConfigurationError("ET_DISCORD_WEBHOOK_URLS is required")
        self.webhook_urls = [validate_webhook_url(u) for u in self.webhook_urls]
        if self.poll_interval_s < MIN_POLL_INTERVAL_S:
            raise ConfigurationError(
                f"ET_POLL_INTERVAL_SECONDS must be a number >= {MIN_POLL_INTERVAL_S}"
            )
        self.log_level = self.log_level.upper()
        if self.log_level not in VALID_LOG_LEVELS:
            raise ConfigurationError(
                f"ET_LOG_LEVEL must be one of: {', '.join(VALID_LOG_LEVELS)}"
            )
        if self.log_format not in ("json", "text"):
            raise ConfigurationError('ET_LOG_FORMAT must be either "json" or "text"')
        if not 0 <= self.metrics_port <= 65535:
            raise ConfigurationError(f"ET_METRICS_PORT must be 0..65535, got {self.metrics_port}")
        if self.shutdown_grace_s < 0:
            raise ConfigurationError(
                f"ET_SHUTDOWN_GRACE_SECONDS must be >= 0, got {self.shutdown_grace_s}"
            )

    @property
    def run_mode(self) -> RunMode:
        if self.test_mode:
            return RunMode.TEST
        if self.development_mode:
            return RunMode.DEVELOPMENT
        return RunMode.PRODUCTION

    @property
    def python_log_level(self) -> str:
        """Level name understood by the logging module."""
        return "WARNING" if self.log_level == "WARN" else self.log_level

    def summary(self) -> dict[str, object]:
        """Configuration summary that is safe to log."""
        return {
            "channels": len(self.channel_ids),
            "playlists": len(self.playlist_ids),
            "keywords": list(self.keywords),
            "match_type": self.match_type,
            "webhooks": len(self.webhook_urls),
            "poll_interval_s": self.poll_interval_s,
            "log_level": self.log_level,
            "run_mode": self.run_mode.value,
            "cache": "enabled" if self.cache_file else "memory-only",
        }

    def warnings(self) -> list[str]:
        """Non-fatal configuration warnings."""
        found = []
        if self.channel_ids and self.playlist_ids:
            found.append(
                "Monitoring both channels and playlists may cause duplicate "
                "notifications if playlists belong to monitored channels."
            )
        if self.poll_interval_s < 300:
            found.append(
                "Poll interval is less than 5 minutes; very frequent polling may hit rate limits."
            )
        return found


def _parse_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def load_config(env: Mapping[str, str] | None = None) -> RelayConfig:
    """
    Build RelayConfig from environment variables.

    Args:
        env: Mapping to read from (default: os.environ).

    Raises:
        ConfigurationError: On any missing or invalid setting.
    """
    if env is None:
        env = os.environ

    webhook_urls = parse_comma_separated(env.get("ET_DISCORD_WEBHOOK_URLS"))
    legacy_url = (env.get("ET_DISCORD_WEBHOOK_URL") or "").strip()
    if legacy_url and legacy_url not in webhook_urls:
        webhook_urls.append(legacy_url)

    match_type = (env.get("ET_MATCH_TYPE") or "any").strip().lower()
    log_format = (env.get("ET_LOG_FORMAT") or "json").strip().lower()

    config = RelayConfig(
        channel_ids=parse_comma_separated(env.get("ET_CHANNEL_IDS")),
        playlist_ids=parse_comma_separated(env.get("ET_PLAYLIST_IDS")),
        keywords=parse_comma_separated(env.get("ET_KEYWORDS")),
        match_type=match_type,  # type: ignore[arg-type]
        webhook_urls=webhook_urls,
        poll_interval_s=_parse_int(env, "ET_POLL_INTERVAL_SECONDS", 300),
        cache_file=(env.get("ET_CACHE_FILE") or "").strip() or None,
        log_level=(env.get("ET_LOG_LEVEL") or "INFO").strip(),
        log_format=log_format,  # type: ignore[arg-type]
        test_mode=env.get("ET_TEST_MODE") == "true",
        development_mode=(
            env.get("ET_DEVELOPMENT_MODE") == "true" or env.get("NODE_ENV") == "development"
        ),
        metrics_port=_parse_int(env, "ET_METRICS_PORT", 0),
        shutdown_grace_s=_parse_float(env, "ET_SHUTDOWN_GRACE_SECONDS", 5.0),
    )
    return config
