"""
Webhook transport.

One HTTP POST per call. Retrying, pacing and ordering live in EndpointQueue;
this client only classifies the response.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import aiohttp
import orjson

from feedrelay.delivery.backoff import handle_error_response, parse_retry_after
from feedrelay.errors import TransportError

logger = logging.getLogger(__name__)

USER_AGENT = "feedrelay/1.0 (Discord Bot)"


@dataclass
class DeliveryResponse:
    """Successful webhook response."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)
    attempts: int = 1


def webhook_display_name(url: str) -> str:
    """
    Name an endpoint without exposing its token.

    Discord webhook paths look like /api/webhooks/<id>/<token>; only the id
    is kept.
    """
    segments = [s for s in urlsplit(url).path.split("/") if s]
    if len(segments) >= 3 and segments[:2] == ["api", "webhooks"]:
        return f"webhook:{segments[2]}"
    return "webhook:custom"


class WebhookClient:
    """
    Async client for a single webhook URL.

    Raises TransportError (or QuotaError for 429) on any failure, so the
    caller can decide whether to retry.
    """

    def __init__(self, url: str, timeout_s: float = 10.0) -> None:
        if timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {timeout_s}")
        self._url = url
        self._timeout_s = timeout_s
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return webhook_display_name(self._url)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def post(self, payload: dict[str, Any]) -> DeliveryResponse:
        """
        POST a JSON payload.

        Returns:
            DeliveryResponse on any 2xx.

        Raises:
            QuotaError: On 429, with the server's retry delay when provided.
            TransportError: On network errors, timeouts and other non-2xx.
        """
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        try:
            session = await self._get_session()
            async with session.post(self._url, json=payload, headers=headers) as resp:
                status = resp.status

                if 200 <= status < 300:
                    return DeliveryResponse(status_code=status, body=await _read_json(resp))

                if status == 429:
                    retry_after_ms = parse_retry_after(resp.headers.get("Retry-After"))
                    if retry_after_ms is None:
                        body = await _read_json(resp)
                        retry_after_ms = parse_retry_after(body.get("retry_after"))
                    raise handle_error_response(status, retry_after_ms=retry_after_ms)

                error_text = await resp.text()
                raise handle_error_response(status, body=error_text)

        except aiohttp.ClientError as e:
            raise TransportError(f"Connection error: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransportError(f"Request timeout after {self._timeout_s}s") from e

    async def close(self) -> None:
        """Close aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


async def _read_json(resp: aiohttp.ClientResponse) -> dict[str, Any]:
    """Best-effort JSON body; webhooks often answer 204 with no content."""
    try:
        raw = await resp.read()
    except aiohttp.ClientError:
        return {}
    if not raw:
        return {}
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}
