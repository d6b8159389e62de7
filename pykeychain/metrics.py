"""Prometheus metrics for pykeychain.

This module defines all Prometheus metrics recorded by the key chains and the
filter builder. They live on a dedicated registry which a wallet can expose
either through ``MetricsController`` mounted in its own Litestar app or through
the standalone ``MetricsServer``.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from litestar import Controller, get
from litestar.response import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    start_http_server,
)

if TYPE_CHECKING:
    from http.server import ThreadingHTTPServer
    from wsgiref.simple_server import WSGIServer

    from .config import Config

logger = logging.getLogger(__name__)

REGISTRY = CollectorRegistry()

# Application info
APP_INFO = Info(
    "pykeychain_build_info",
    "Build information about pykeychain",
    registry=REGISTRY,
)
APP_INFO.info({"version": "0.1.0", "name": "pykeychain"})

# Key metrics
KEYS_MANAGED = Gauge(
    "keys_managed",
    "Number of keys held by key chains",
    ["chain_type"],
    registry=REGISTRY,
)

KEYS_ISSUED_TOTAL = Counter(
    "keys_issued_total",
    "Total number of keys handed out by get_key",
    ["purpose"],
    registry=REGISTRY,
)

KEY_ISSUANCE_ERRORS_TOTAL = Counter(
    "key_issuance_errors_total",
    "Total number of failed get_key calls",
    ["error_type"],
    registry=REGISTRY,
)

# Bloom filter metrics
BLOOM_FILTER_BUILDS_TOTAL = Counter(
    "bloom_filter_builds_total",
    "Total number of Bloom filters built",
    registry=REGISTRY,
)

BLOOM_FILTER_BUILD_DURATION_SECONDS = Histogram(
    "bloom_filter_build_duration_seconds",
    "Time spent inserting identifiers into Bloom filters",
    buckets=[0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
    registry=REGISTRY,
)

# Listener metrics
LISTENER_ERRORS_TOTAL = Counter(
    "listener_errors_total",
    "Total number of key chain event listener callbacks that failed",
    registry=REGISTRY,
)


def get_metrics_output() -> bytes:
    """Generate Prometheus-formatted metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


class MetricsController(Controller):  # type: ignore[misc]
    """Prometheus metrics HTTP endpoints for mounting in a wallet's Litestar app."""

    path = "/"

    @get("/metrics")  # type: ignore[untyped-decorator]
    async def metrics(self) -> Response:
        """Handler for the /metrics endpoint."""
        return Response(
            content=get_metrics_output(),
            headers={"Content-Type": get_metrics_content_type()},
        )

    @get("/health")  # type: ignore[untyped-decorator]
    async def health(self) -> dict[str, str]:
        """Health check for metrics server."""
        return {"status": "healthy"}


class MetricsServer:
    """Standalone Prometheus metrics HTTP server using prometheus_client.start_http_server.

    Useful for wallets that do not run an HTTP app of their own.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 8081) -> None:
        self._host = host
        self._port = port
        self._httpd: WSGIServer | ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(cls, config: Config) -> MetricsServer:
        return cls(host=config.metrics_host, port=config.metrics_port)

    @property
    def address(self) -> tuple[str, int]:
        return self._host, self._port

    def start(self) -> None:
        """Start the metrics server.

        start_http_server() serves from its own daemon thread, so this returns
        once the socket is bound.
        """
        try:
            server, thread = start_http_server(
                port=self._port,
                addr=self._host,
                registry=REGISTRY,
            )
        except Exception:
            logger.exception("Failed to start metrics server")
            raise
        self._httpd = server
        self._thread = thread
        # Port 0 asks the OS for a free port
        self._port = server.server_port
        logger.info(
            f"Metrics server started at http://{self._host}:{self._port}/metrics",
        )

    def stop(self) -> None:
        """Stop the metrics server."""
        if self._httpd is not None:
            try:
                self._httpd.shutdown()
                self._httpd.server_close()
            except Exception:
                logger.exception("Error stopping metrics server")
            finally:
                self._httpd = None

        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None

        logger.info("Metrics server stopped")
