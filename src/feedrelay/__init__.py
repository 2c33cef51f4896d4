"""
feedrelay: relays new YouTube videos to Discord webhooks.

Delivery core: per-endpoint rate-limited queues with retry/backoff fanned out
across independent endpoints, plus a persistent duplicate-suppression cache.
"""

__version__ = "1.0.0"
