"""
Prometheus metrics for the streaming market feed
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, start_http_server
from typing import Any, Optional


# Numeric encoding for the connection state gauge
CONNECTION_STATE_CODES = {
    "idle": 0,
    "connecting": 1,
    "connected": 2,
    "disconnected": 3,
    "reconnecting": 4,
    "failed": 5,
}


class PrometheusMetricsCollector:
    """Feed metrics exposed in Prometheus format"""

    def __init__(self, registry: Optional[CollectorRegistry] = None, settings: Optional[Any] = None):
        self.registry = registry or CollectorRegistry()
        self._http_server = None
        self._http_thread = None
        buckets = None
        if settings is not None and hasattr(settings, "monitoring"):
            buckets = getattr(settings.monitoring, "tick_latency_buckets_seconds", None)

        # Market data metrics
        self.market_ticks_received = Counter(
            'market_ticks_received_total',
            'Total market ticks decoded from the feed',
            ['source', 'mode'],
            registry=self.registry
        )
        self.market_ticks_dropped = Counter(
            'market_ticks_dropped_total',
            'Ticks dropped because the processing queue was full',
            ['source'],
            registry=self.registry
        )
        self.market_tick_processing_latency = Histogram(
            'market_tick_processing_latency_seconds',
            'Latency from decode to sink hand-off',
            ['service'],
            buckets=buckets or [
                0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0
            ],
            registry=self.registry,
        )

        # Connection metrics
        self.connection_state = Gauge(
            'feed_connection_state',
            'Feed connection state (0=idle 1=connecting 2=connected 3=disconnected 4=reconnecting 5=failed)',
            ['source'],
            registry=self.registry
        )
        self.reconnect_attempts = Counter(
            'feed_reconnect_attempts_total',
            'Reconnect attempts scheduled after a transport drop',
            ['source'],
            registry=self.registry
        )

        # Error metrics
        self.errors_total = Counter(
            'feed_errors_total',
            'Total feed errors by type',
            ['source', 'error_type'],
            registry=self.registry
        )

    def record_market_tick(self, source: str, mode: str) -> None:
        self.market_ticks_received.labels(source=source, mode=mode).inc()

    def record_dropped_tick(self, source: str) -> None:
        self.market_ticks_dropped.labels(source=source).inc()

    def record_tick_processing_latency(self, service: str, seconds: float) -> None:
        self.market_tick_processing_latency.labels(service=service).observe(seconds)

    def set_connection_state(self, source: str, state: str) -> None:
        self.connection_state.labels(source=source).set(CONNECTION_STATE_CODES.get(state, -1))

    def record_reconnect_attempt(self, source: str) -> None:
        self.reconnect_attempts.labels(source=source).inc()

    def record_error(self, source: str, error_type: str) -> None:
        self.errors_total.labels(source=source, error_type=error_type).inc()

    def serve(self, port: int, addr: str = "0.0.0.0") -> int:
        """Expose this registry at http://addr:port/metrics; returns the bound port."""
        if self._http_server is None:
            self._http_server, self._http_thread = start_http_server(port, addr=addr, registry=self.registry)
        return self._http_server.server_port

    def shutdown(self) -> None:
        server, self._http_server = self._http_server, None
        if server is not None:
            server.shutdown()
            server.server_close()
            self._http_thread.join(timeout=5)
            self._http_thread = None
