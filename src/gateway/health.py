"""Health check endpoints for the gateway.

Serves session counts and remote service health for load balancers and the
tutor frontend, plus a liveness probe and Prometheus metrics.
"""

import logging
import time
from typing import TYPE_CHECKING, Any

from aiohttp import web

from gateway.metrics import MetricsCollector, get_metrics_collector

if TYPE_CHECKING:
    from gateway.coordinator import SessionGateway

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """HTTP handlers backed by a running ``SessionGateway``."""

    def __init__(
        self, gateway: "SessionGateway", metrics: MetricsCollector | None = None
    ) -> None:
        """Initialize health check handler.

        Args:
            gateway: Gateway whose session counts are reported
            metrics: Metrics collector (process-wide if omitted)
        """
        self.gateway = gateway
        self.start_time = time.time()
        self.metrics_collector = metrics if metrics is not None else get_metrics_collector()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Response format:
        {
            "status": "healthy",
            "activeSessions": int,
            "maxSessions": int,
            "geminiModel": str,
            "services": {"voice": bool, "room": bool},
            "uptimeSeconds": float
        }
        """
        response_data: dict[str, Any] = self.gateway.health_snapshot()
        response_data["uptimeSeconds"] = time.time() - self.start_time

        logger.debug(
            "Health check performed",
            extra={
                "active_sessions": response_data["activeSessions"],
                "services": response_data["services"],
            },
        )
        return web.json_response(response_data, status=200)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint. OK whenever the process is serving."""
        return web.json_response(
            {
                "status": "alive",
                "uptimeSeconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint."""
        try:
            metrics_text = self.metrics_collector.export_prometheus()
            return web.Response(
                text=metrics_text,
                content_type="text/plain",
                charset="utf-8",
                headers={"X-Prometheus-Format": "0.0.4"},
                status=200,
            )
        except Exception as e:
            logger.error("Failed to export metrics", extra={"error": str(e)}, exc_info=True)
            return web.Response(
                text=f"# Error exporting metrics: {e}\n",
                content_type="text/plain",
                status=500,
            )


def setup_health_routes(
    app: web.Application,
    gateway: "SessionGateway",
    metrics: MetricsCollector | None = None,
) -> HealthCheckHandler:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        gateway: Running gateway
        metrics: Metrics collector (process-wide if omitted)

    Returns:
        The handler bound to the routes
    """
    handler = HealthCheckHandler(gateway, metrics=metrics)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/api/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/metrics", handler.metrics_endpoint)

    logger.info("Health check endpoints configured: /health, /api/health, /liveness, /metrics")
    return handler
