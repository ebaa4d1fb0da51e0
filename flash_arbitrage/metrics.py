"""
Prometheus metrics for the flash arbitrage bot.

Exposes swap processing, detection and execution counters for monitoring and
alerting, optionally served over HTTP.
"""

import logging
from typing import Optional

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class ArbitrageMetrics:
    """
    Metrics collection and exposure.

    Provides Prometheus-compatible metrics for:
    - Swaps processed per venue
    - Opportunities detected and their triggering price impact
    - Transactions submitted and failed
    - Event stream reconnects
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics with custom registry or default"""
        self.registry = registry or REGISTRY
        self._initialize_metrics()

        self._app = None
        self._runner = None
        self._site = None

    def _initialize_metrics(self):
        self.swaps_processed_total = Counter(
            "flash_arbitrage_swaps_processed_total",
            "Total number of swap events processed",
            ["venue"],
            registry=self.registry,
        )

        self.opportunities_detected_total = Counter(
            "flash_arbitrage_opportunities_detected_total",
            "Total number of profitable opportunities detected",
            ["venue"],
            registry=self.registry,
        )

        self.transactions_submitted_total = Counter(
            "flash_arbitrage_transactions_submitted_total",
            "Total number of flash-loan transactions submitted or simulated",
            ["venue", "mode"],
            registry=self.registry,
        )

        self.transaction_failures_total = Counter(
            "flash_arbitrage_transaction_failures_total",
            "Total number of failed execution attempts",
            ["venue", "stage"],
            registry=self.registry,
        )

        self.stream_reconnects_total = Counter(
            "flash_arbitrage_stream_reconnects_total",
            "Total number of event stream reconnects",
            registry=self.registry,
        )

        self.price_impact_bps = Histogram(
            "flash_arbitrage_price_impact_bps",
            "Price impact of swaps that produced an opportunity",
            ["venue"],
            buckets=[10, 25, 50, 100, 250, 500, 1000, 2500],
            registry=self.registry,
        )

    def record_swap(self, venue: str):
        self.swaps_processed_total.labels(venue=venue).inc()

    def record_opportunity(self, venue: str, price_impact_bps):
        self.opportunities_detected_total.labels(venue=venue).inc()
        if price_impact_bps is not None:
            self.price_impact_bps.labels(venue=venue).observe(float(price_impact_bps))

    def record_execution(self, venue: str, result):
        """Record an ExecutionResult"""
        if result.success:
            mode = "dry_run" if result.dry_run else "live"
            self.transactions_submitted_total.labels(venue=venue, mode=mode).inc()
        else:
            self.transaction_failures_total.labels(
                venue=venue, stage=result.stage or "unknown"
            ).inc()

    def record_reconnect(self):
        self.stream_reconnects_total.inc()

    # === SERVER MANAGEMENT ===

    async def start_server(
        self, port: int = 8000, host: str = "0.0.0.0", path: str = "/metrics"
    ) -> bool:
        """Start Prometheus metrics HTTP server"""
        try:
            self._app = web.Application()
            self._app.router.add_get(path, self._metrics_handler)
            self._app.router.add_get("/health", self._health_handler)

            self._runner = web.AppRunner(self._app)
            await self._runner.setup()

            self._site = web.TCPSite(self._runner, host, port)
            await self._site.start()

            logger.info(f"Prometheus metrics server started on http://{host}:{port}{path}")
            return True

        except OSError as e:
            logger.error(f"Failed to start metrics server: {e}")
            return False

    async def stop_server(self):
        """Stop the metrics server"""
        if self._runner:
            await self._runner.cleanup()
            logger.info("Metrics server stopped")
        self._app = None
        self._runner = None
        self._site = None

    async def _metrics_handler(self, request):
        metrics_output = generate_latest(self.registry)
        # aiohttp rejects a charset inside content_type
        content_type = CONTENT_TYPE_LATEST.split(";")[0]
        return web.Response(text=metrics_output.decode("utf-8"), content_type=content_type)

    async def _health_handler(self, request):
        return web.Response(
            text='{"status": "healthy", "service": "flash_arbitrage_metrics"}',
            content_type="application/json",
        )
