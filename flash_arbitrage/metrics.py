"""
Prometheus metrics for the opportunity monitor.

Counts ticks, evaluations, triggered executions and their outcomes, and
exposes them over a small aiohttp endpoint.
"""

import logging
from typing import Optional

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class ArbitrageMetrics:
    """
    Prometheus-compatible metrics for the monitor and orchestrator.

    Pass a dedicated ``CollectorRegistry`` in tests so instances do not
    collide on the global registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY
        self._initialize_metrics()

        self._app = None
        self._runner = None
        self._site = None

    def _initialize_metrics(self):
        self.ticks_total = Counter(
            "flash_arbitrage_ticks_total",
            "Total polling cycles completed",
            registry=self.registry,
        )

        self.evaluations_total = Counter(
            "flash_arbitrage_evaluations_total",
            "Pair evaluations by result",
            ["pair", "result"],
            registry=self.registry,
        )

        self.executions_total = Counter(
            "flash_arbitrage_executions_total",
            "Triggered executions by outcome",
            ["pair", "outcome"],
            registry=self.registry,
        )

        self.single_flight_skips_total = Counter(
            "flash_arbitrage_single_flight_skips_total",
            "Ticks that skipped a pair because it was already executing",
            ["pair"],
            registry=self.registry,
        )

        self.realized_profit_total = Counter(
            "flash_arbitrage_realized_profit_total",
            "Cumulative realized profit in raw settlement units",
            ["pair"],
            registry=self.registry,
        )

        self.in_flight = Gauge(
            "flash_arbitrage_in_flight_executions",
            "Executions currently in flight",
            registry=self.registry,
        )

        self.execution_duration_seconds = Histogram(
            "flash_arbitrage_execution_duration_seconds",
            "Wall time from trigger to terminal state",
            ["pair"],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry,
        )

    def record_evaluation(self, pair: str, result: str):
        self.evaluations_total.labels(pair=pair, result=result).inc()

    def record_execution(
        self, pair: str, outcome: str, realized_profit: int, duration_s: float
    ):
        self.executions_total.labels(pair=pair, outcome=outcome).inc()
        if realized_profit > 0:
            self.realized_profit_total.labels(pair=pair).inc(realized_profit)
        self.execution_duration_seconds.labels(pair=pair).observe(duration_s)

    def record_skip(self, pair: str):
        self.single_flight_skips_total.labels(pair=pair).inc()

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
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        logger.info("Metrics server stopped")

    async def _metrics_handler(self, request):
        metrics_output = generate_latest(self.registry)
        # aiohttp rejects a charset inside content_type
        content_type = CONTENT_TYPE_LATEST.split(";")[0]
        return web.Response(text=metrics_output.decode("utf-8"), content_type=content_type)

    async def _health_handler(self, request):
        return web.Response(
            text='{"status": "healthy", "service": "flash_arbitrage_monitor"}',
            content_type="application/json",
        )
