"""
Webhook delivery core.

Per-endpoint rate-limited queues with retry/backoff, fanned out in parallel
by the Dispatcher.
"""

from __future__ import annotations

from feedrelay.delivery.backoff import BackoffConfig, compute_backoff_delay
from feedrelay.delivery.dispatcher import Dispatcher
from feedrelay.delivery.formatter import ItemFormatter
from feedrelay.delivery.queue import EndpointQueue
from feedrelay.delivery.rate_limit import RateLimitConfig, SlidingWindowLimiter
from feedrelay.delivery.webhook import DeliveryResponse, WebhookClient

__all__ = [
    "BackoffConfig",
    "DeliveryResponse",
    "Dispatcher",
    "EndpointQueue",
    "ItemFormatter",
    "RateLimitConfig",
    "SlidingWindowLimiter",
    "WebhookClient",
    "compute_backoff_delay",
]
