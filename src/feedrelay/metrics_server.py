"""
HTTP server for Prometheus /metrics and the /healthz probe.

Runs on aiohttp.web, which the relay already depends on for its HTTP
clients. Enabled when ET_METRICS_PORT is non-zero.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import orjson
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

if TYPE_CHECKING:
    from prometheus_client.registry import CollectorRegistry

logger = logging.getLogger(__name__)

HealthFn = Callable[[], dict[str, Any]]
_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

# /healthz answers 503 for any other status
HEALTHY_STATUSES = frozenset({"ok", "starting"})


def _metrics_handler(registry: CollectorRegistry) -> _Handler:
    content_type, _, charset = CONTENT_TYPE_LATEST.partition("; charset=")

    async def handler(request: web.Request) -> web.Response:
        return web.Response(
            body=generate_latest(registry),
            content_type=content_type,
            charset=charset or "utf-8",
        )

    return handler


def _healthz_handler(health_fn: HealthFn | None) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        info = health_fn() if health_fn is not None else {"status": "ok"}
        status = 200 if info.get("status", "ok") in HEALTHY_STATUSES else 503
        return web.Response(
            body=orjson.dumps(info),
            status=status,
            content_type="application/json",
        )

    return handler


def create_metrics_app(
    registry: CollectorRegistry,
    *,
    health_fn: HealthFn | None = None,
) -> web.Application:
    """
    Build the Application with /metrics and /healthz routes.

    Args:
        registry: Prometheus registry to expose.
        health_fn: Callback returning the service health dict.
    """
    app = web.Application()
    app.router.add_get("/metrics", _metrics_handler(registry))
    app.router.add_get("/healthz", _healthz_handler(health_fn))
    return app


async def start_metrics_server(
    registry: CollectorRegistry,
    host: str = "0.0.0.0",
    port: int = 9090,
    *,
    health_fn: HealthFn | None = None,
) -> web.AppRunner:
    """
    Start serving in the running event loop.

    Returns:
        AppRunner; pass it to stop_metrics_server() on shutdown.
    """
    runner = web.AppRunner(create_metrics_app(registry, health_fn=health_fn), access_log=None)
    await runner.setup()
    await web.TCPSite(runner, host, port).start()
    logger.info("Metrics server started", extra={"host": host, "port": port})
    return runner


async def stop_metrics_server(runner: web.AppRunner) -> None:
    await runner.cleanup()
    logger.info("Metrics server stopped")
