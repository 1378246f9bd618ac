"""
Prometheus Metrics for the Crossed-Market Arbitrage Engine

Exposes per-block cycle statistics, opportunity counts, submission gate
outcomes and relay submissions.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

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
    Engine metrics collection and exposure

    Provides Prometheus-compatible metrics for:
    - Block cycles and their duration
    - Reserve refreshes
    - Crossed markets and best profit
    - Submission gate rejections and relay submissions
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics with custom registry or default"""
        self.registry = registry or REGISTRY
        self._initialize_metrics()

        self._app = None
        self._runner = None
        self._site = None

        self._lock = threading.RLock()

    def _initialize_metrics(self):
        """Initialize all Prometheus metrics"""

        # === CYCLE METRICS ===
        self.cycles_total = Counter(
            "crossed_arbitrage_cycles_total",
            "Block cycles run, by outcome",
            ["status"],
            registry=self.registry,
        )

        self.cycle_duration_seconds = Histogram(
            "crossed_arbitrage_cycle_duration_seconds",
            "Duration of a full block cycle",
            buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

        self.dropped_triggers_total = Counter(
            "crossed_arbitrage_dropped_triggers_total",
            "Block triggers replaced by a newer block before they ran",
            registry=self.registry,
        )

        self.last_block_number = Gauge(
            "crossed_arbitrage_last_block_number",
            "Block number of the most recent cycle",
            registry=self.registry,
        )

        # === MARKET DATA METRICS ===
        self.reserve_refresh_seconds = Histogram(
            "crossed_arbitrage_reserve_refresh_seconds",
            "Duration of the batched reserve refresh",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
            registry=self.registry,
        )

        self.snapshot_version = Gauge(
            "crossed_arbitrage_snapshot_version",
            "Version of the reserve snapshot currently applied",
            registry=self.registry,
        )

        self.markets_tracked = Gauge(
            "crossed_arbitrage_markets_tracked",
            "Markets above the liquidity floor in the current snapshot",
            registry=self.registry,
        )

        # === OPPORTUNITY METRICS ===
        self.crossed_markets_found = Gauge(
            "crossed_arbitrage_crossed_markets_found",
            "Tokens with a profitable crossed market in the last cycle",
            registry=self.registry,
        )

        self.best_profit_eth = Gauge(
            "crossed_arbitrage_best_profit_eth",
            "Best expected profit in the last cycle, in ETH",
            registry=self.registry,
        )

        # === SUBMISSION METRICS ===
        self.gate_rejections_total = Counter(
            "crossed_arbitrage_gate_rejections_total",
            "Opportunities rejected by a submission gate",
            ["reason"],
            registry=self.registry,
        )

        self.bundles_submitted_total = Counter(
            "crossed_arbitrage_bundles_submitted_total",
            "Bundle submissions to the relay, per target block",
            ["status"],
            registry=self.registry,
        )

        self.system_errors_total = Counter(
            "crossed_arbitrage_system_errors_total",
            "Total system errors encountered",
            ["error_type"],
            registry=self.registry,
        )

    # === METRIC RECORDING METHODS ===

    def record_cycle(self, status: str, duration_seconds: float = 0.0, block_number: int = 0):
        """Record a finished block cycle"""
        with self._lock:
            self.cycles_total.labels(status=status).inc()
            if duration_seconds > 0:
                self.cycle_duration_seconds.observe(duration_seconds)
            if block_number:
                self.last_block_number.set(block_number)

    def record_dropped_trigger(self):
        with self._lock:
            self.dropped_triggers_total.inc()

    def record_refresh(self, duration_seconds: float, version: int, markets: int):
        """Record an applied reserve snapshot"""
        with self._lock:
            self.reserve_refresh_seconds.observe(duration_seconds)
            self.snapshot_version.set(version)
            self.markets_tracked.set(markets)

    def record_opportunities(self, count: int, best_profit_eth: float = 0.0):
        with self._lock:
            self.crossed_markets_found.set(count)
            self.best_profit_eth.set(best_profit_eth)

    def record_rejection(self, reason: str):
        with self._lock:
            self.gate_rejections_total.labels(reason=reason).inc()

    def record_submission(self, success: bool):
        with self._lock:
            self.bundles_submitted_total.labels(
                status="accepted" if success else "failed"
            ).inc()

    def record_system_error(self, error_type: str):
        """Record system error"""
        with self._lock:
            self.system_errors_total.labels(error_type=error_type).inc()

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
            text='{"status": "healthy", "service": "crossed_arbitrage_metrics"}',
            content_type="application/json",
        )

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Current values of the headline gauges"""
        return {
            "snapshot_version": self.snapshot_version._value.get(),
            "markets_tracked": self.markets_tracked._value.get(),
            "crossed_markets_found": self.crossed_markets_found._value.get(),
            "best_profit_eth": self.best_profit_eth._value.get(),
            "timestamp": time.time(),
        }


_global_metrics: Optional[ArbitrageMetrics] = None


def get_metrics() -> ArbitrageMetrics:
    """Get or create global metrics instance"""
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = ArbitrageMetrics()
    return _global_metrics


def initialize_metrics(registry: Optional[CollectorRegistry] = None) -> ArbitrageMetrics:
    """Initialize global metrics with custom registry"""
    global _global_metrics
    _global_metrics = ArbitrageMetrics(registry)
    return _global_metrics
