"""
Retry and backoff policy for webhook delivery.

- Transport errors: exponential backoff (1s, 2s, 4s), max 3 retries
- 429: honour the server's Retry-After when given, else the same backoff
- Cancellation is never retried
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from feedrelay.errors import QuotaError, TransportError


@dataclass
class BackoffConfig:
    """Configuration for exponential backoff."""

    base_delay_ms: int = 1000
    max_delay_ms: int = 60000
    multiplier: float = 2.0
    jitter_factor: float = 0.0  # 0.5 = +/-50% jitter
    max_retries: int = 3

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if not 0.0 <= self.jitter_factor < 1.0:
            raise ValueError(f"jitter_factor must be in [0, 1), got {self.jitter_factor}")


def compute_backoff_delay(
    config: BackoffConfig,
    retry: int,
    retry_after_ms: int | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """
    Compute the delay before retry number ``retry`` (0-based).

    Args:
        config: Backoff configuration.
        retry: How many retries already happened for this payload.
        retry_after_ms: Server-provided delay. Takes precedence when positive.
        rng: Optional seeded Random instance for deterministic jitter.

    Returns:
        Delay in milliseconds.
    """
    if retry_after_ms is not None and retry_after_ms > 0:
        return retry_after_ms

    delay = config.base_delay_ms * (config.multiplier**retry)

    if config.jitter_factor > 0:
        jitter_min = 1.0 - config.jitter_factor
        jitter_max = 1.0 + config.jitter_factor
        if rng is not None:
            delay *= rng.uniform(jitter_min, jitter_max)
        else:
            delay *= random.uniform(jitter_min, jitter_max)

    return int(min(delay, config.max_delay_ms))


def parse_retry_after(value: str | float | int | None) -> int | None:
    """
    Convert a Retry-After value in seconds to milliseconds.

    Returns None when the value is missing or not a number.
    """
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return int(seconds * 1000)


def handle_error_response(
    status_code: int,
    body: str = "",
    retry_after_ms: int | None = None,
) -> TransportError:
    """
    Map a non-2xx webhook response to a delivery error.

    Args:
        status_code: HTTP status code.
        body: Response text (truncated in the message).
        retry_after_ms: Server-provided retry delay, if any.

    Returns:
        QuotaError for 429, TransportError otherwise.
    """
    if status_code == 429:
        return QuotaError(
            "Rate limited (429)",
            status_code=status_code,
            retry_after_ms=retry_after_ms,
        )
    return TransportError(f"HTTP {status_code}: {body[:200]}", status_code=status_code)
