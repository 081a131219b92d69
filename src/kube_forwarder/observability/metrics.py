"""
Prometheus metrics for kube-forwarder.

This module tracks connection attempts, active tunnels and resolution errors
per forwarded resource, and provides an optional HTTP server exposing them
together with a status view of every supervised forward.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

from aiohttp.web import (
    Application,
    AppRunner,
    Request,
    Response,
    TCPSite,
    json_response,
)
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

logger = logging.getLogger(__name__)

# Global metrics registry
_metrics_registry: CollectorRegistry | None = None

# Metrics definitions
FORWARD_ATTEMPTS_TOTAL = Counter(
    "kube_forwarder_attempts_total",
    "Total number of forwarding attempts",
    ["namespace", "kind", "name", "result"],
    registry=None,  # Will be set during initialization
)

SESSIONS_ACTIVE = Gauge(
    "kube_forwarder_sessions_active",
    "Number of tunnel sessions currently running",
    ["namespace", "kind", "name"],
    registry=None,
)

SESSION_ENDS_TOTAL = Counter(
    "kube_forwarder_session_ends_total",
    "Total number of tunnel sessions that ended",
    ["namespace", "kind", "name", "reason"],
    registry=None,
)

RESOLUTION_ERRORS_TOTAL = Counter(
    "kube_forwarder_resolution_errors_total",
    "Total number of failed endpoint resolutions",
    ["namespace", "kind", "error_type"],
    registry=None,
)


def get_metrics_registry() -> CollectorRegistry:
    """Get or create the global metrics registry."""
    global _metrics_registry

    if _metrics_registry is None:
        _metrics_registry = CollectorRegistry()

        for metric in [
            FORWARD_ATTEMPTS_TOTAL,
            SESSIONS_ACTIVE,
            SESSION_ENDS_TOTAL,
            RESOLUTION_ERRORS_TOTAL,
        ]:
            _metrics_registry.register(metric)

    return _metrics_registry


class MetricsCollector:
    """Records forwarder metrics keyed by resource reference."""

    def __init__(self):
        self.registry = get_metrics_registry()

    def record_attempt(self, reference: Any, result: str) -> None:
        """
        Record a forwarding attempt.

        Args:
            reference: The ResourceReference being forwarded
            result: "launched", "resolution_error" or "launch_error"
        """
        FORWARD_ATTEMPTS_TOTAL.labels(
            namespace=reference.namespace,
            kind=reference.kind.value,
            name=reference.name,
            result=result,
        ).inc()

    def record_resolution_error(self, reference: Any, error: Exception) -> None:
        RESOLUTION_ERRORS_TOTAL.labels(
            namespace=reference.namespace,
            kind=reference.kind.value,
            error_type=type(error).__name__,
        ).inc()

    def session_started(self, reference: Any) -> None:
        SESSIONS_ACTIVE.labels(
            namespace=reference.namespace,
            kind=reference.kind.value,
            name=reference.name,
        ).inc()

    def session_ended(self, reference: Any, reason: str) -> None:
        """
        Record the end of a session.

        Args:
            reference: The ResourceReference being forwarded
            reason: "stopped" or "error"
        """
        SESSIONS_ACTIVE.labels(
            namespace=reference.namespace,
            kind=reference.kind.value,
            name=reference.name,
        ).dec()
        SESSION_ENDS_TOTAL.labels(
            namespace=reference.namespace,
            kind=reference.kind.value,
            name=reference.name,
            reason=reason,
        ).inc()


# Global metrics collector instance
metrics_collector = MetricsCollector()


class MetricsServer:
    """HTTP server for exposing Prometheus metrics and forward status."""

    def __init__(
        self,
        port: int = 9100,
        host: str = "127.0.0.1",
        status_provider: Callable[[], dict[str, str]] | None = None,
    ):
        """
        Initialize metrics server.

        Args:
            port: Port to serve metrics on
            host: Host interface to bind to
            status_provider: Callable returning per-resource loop states
        """
        self.port = port
        self.host = host
        self.status_provider = status_provider
        self.app = Application()
        self.runner: AppRunner | None = None
        self.site: TCPSite | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/metrics", self._metrics_handler)
        self.app.router.add_get("/healthz", self._healthz_handler)
        self.app.router.add_get("/status", self._status_handler)

    async def _metrics_handler(self, request: Request) -> Response:
        """Handle /metrics endpoint for Prometheus scraping."""
        try:
            registry = get_metrics_registry()
            metrics_data = generate_latest(registry)
            return Response(
                body=metrics_data, headers={"Content-Type": CONTENT_TYPE_LATEST}
            )
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            return Response(
                text=f"Error generating metrics: {type(e).__name__}. Check logs for details.",
                status=500,
            )

    async def _healthz_handler(self, request: Request) -> Response:
        return Response(text="ok")

    async def _status_handler(self, request: Request) -> Response:
        """Handle /status endpoint with the state of every supervised forward."""
        forwards = self.status_provider() if self.status_provider else {}
        return json_response({"timestamp": time.time(), "forwards": forwards})

    async def start(self) -> None:
        """Start the metrics server."""
        try:
            self.runner = AppRunner(self.app)
            await self.runner.setup()

            self.site = TCPSite(self.runner, self.host, self.port)
            await self.site.start()

            logger.info(f"Metrics available at http://{self.host}:{self.port}/metrics")
        except Exception as e:
            logger.error(f"Failed to start metrics server: {e}")
            raise

    async def stop(self) -> None:
        """Stop the metrics server."""
        if self.site:
            await self.site.stop()
            self.site = None

        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        logger.info("Metrics server stopped")

