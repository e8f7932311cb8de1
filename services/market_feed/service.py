# smart_feed/services/market_feed/service.py

from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
from datetime import datetime, timezone

from core.config.settings import Settings
from core.logging import get_market_data_logger_safe, get_error_logger_safe, get_monitoring_logger_safe
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector

from .auth import BrokerAuthenticator
from .client import SmartStreamClient
from .exceptions import DecodeError, FeedError, ProtocolError, TransportError
from .formatter import TickFormatter
from .models import (
    ConnectionState,
    Instrument,
    MarketDataMetrics,
    ReconnectionConfig,
    SubscriptionMode,
    Tick,
)
from .transport import websocket_transport_factory

TickSink = Callable[[Dict[str, Any]], Awaitable[None]]


class MarketFeedService:
    """
    Streams live market data for the configured watchlist and hands each
    formatted tick to a sink (a store, a publisher, a test collector).
    """

    def __init__(
        self,
        settings: Settings,
        sink: TickSink,
        client: Optional[SmartStreamClient] = None,
        authenticator: Optional[BrokerAuthenticator] = None,
        prometheus_metrics: Optional[PrometheusMetricsCollector] = None,
    ):
        self.settings = settings
        self._sink = sink
        self.authenticator = authenticator or BrokerAuthenticator(settings)
        self.formatter = TickFormatter(settings.market_feed.watchlist)
        self.prom_metrics = prometheus_metrics
        self.client = client or self._build_client(settings, prometheus_metrics)

        self.logger = get_market_data_logger_safe("market_feed")
        self.error_logger = get_error_logger_safe("market_feed_errors")
        self.monitoring_logger = get_monitoring_logger_safe("market_feed_monitoring")

        self.metrics = MarketDataMetrics()
        self._running = False
        self._start_time: Optional[datetime] = None
        self._stopped = asyncio.Event()

        # Bounded queue between the feed callback and the sink
        self._tick_queue: asyncio.Queue = asyncio.Queue(maxsize=settings.market_feed.queue_maxsize)
        self._processor_task: Optional[asyncio.Task] = None

    @staticmethod
    def _build_client(settings: Settings, metrics: Optional[PrometheusMetricsCollector]) -> SmartStreamClient:
        feed = settings.market_feed
        return SmartStreamClient(
            transport_factory=websocket_transport_factory(
                feed.ws_url,
                open_timeout=feed.open_timeout_seconds,
                ping_interval=feed.protocol_ping_interval_seconds,
            ),
            reconnection=ReconnectionConfig(
                max_attempts=settings.reconnection.max_attempts,
                base_delay=settings.reconnection.base_delay_seconds,
            ),
            heartbeat_interval=feed.heartbeat_interval_seconds,
            metrics=metrics,
        )

    async def start(self):
        """
        Loads session credentials, connects the feed and subscribes the
        configured watchlist. Raises on any failure so the caller can exit.
        """
        self.logger.info("Starting Market Feed Service...")
        credentials = self.authenticator.get_credentials()
        self._assign_callbacks()

        self._start_time = datetime.now(timezone.utc)
        self._running = True
        self._stopped.clear()
        self._processor_task = asyncio.create_task(self._tick_processor())

        try:
            await self.client.connect(credentials)
            await self._subscribe_watchlist()
        except FeedError as e:
            self.error_logger.error("FATAL: Market Feed Service could not start", error=str(e))
            await self.stop()
            raise
        self.logger.info("Market Feed Service started", instruments=self.metrics.instruments_subscribed)

    async def stop(self):
        """Disconnects the feed and stops the processor task."""
        self._running = False
        await self.client.disconnect()

        if self._processor_task:
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
            self._processor_task = None

        self._stopped.set()
        self.logger.info("Market Feed Service stopped.")

    async def wait_until_stopped(self):
        """Blocks until stop() runs or the feed gives up reconnecting."""
        await self._stopped.wait()

    async def _subscribe_watchlist(self):
        watchlist = self.settings.market_feed.watchlist
        if not watchlist:
            self.logger.warning("Watchlist is empty; nothing to subscribe")
            return

        mode = SubscriptionMode(self.settings.market_feed.default_mode)
        instruments = [
            Instrument(exchange_type=entry.exchange_type, token=entry.token, symbol=entry.symbol)
            for entry in watchlist
        ]
        await self.client.subscribe(instruments, mode)
        self.metrics.instruments_subscribed = len(self.client.subscriptions)

    def _assign_callbacks(self):
        """Assigns the handler methods to the feed client."""
        self.client.on_data(self._on_tick)
        self.client.on_connect(self._on_connect)
        self.client.on_disconnect(self._on_disconnect)
        self.client.on_error(self._on_error)

    def _on_tick(self, tick: Tick):
        if not self._running:
            return

        self.metrics.ticks_received += 1
        self.metrics.last_tick_time = tick.received_at
        try:
            self._tick_queue.put_nowait(tick)
        except asyncio.QueueFull:
            self.metrics.ticks_dropped += 1
            if self.prom_metrics:
                self.prom_metrics.record_dropped_tick("smart_stream")
            self.logger.warning(
                "Tick queue is full. Dropping tick to maintain stability.",
                total_dropped=self.metrics.ticks_dropped,
            )

    def _on_connect(self):
        self.logger.info("Market feed connected", subscriptions=len(self.client.subscriptions))

    def _on_disconnect(self, reason: str):
        self.logger.warning("Market feed disconnected", reason=reason)

    def _on_error(self, error: FeedError):
        if isinstance(error, DecodeError):
            self.metrics.decode_errors += 1
        elif isinstance(error, ProtocolError):
            self.metrics.protocol_errors += 1
            self.logger.warning("Feed reported an error", error_code=error.error_code, error=error.error_message)
        elif isinstance(error, TransportError) and self.client.state is not ConnectionState.FAILED:
            self.logger.warning("Market feed transport error; reconnect policy applies", error=str(error))
        else:
            self.error_logger.error("Market feed error", error=str(error), error_type=type(error).__name__)

        if self._running and self.client.state is ConnectionState.FAILED:
            self.error_logger.error("Market feed failed permanently; stopping service")
            self._running = False
            self._stopped.set()

    async def _tick_processor(self):
        """Worker task that consumes ticks from the queue and hands them to the sink."""
        self.logger.info("Tick processor worker started.")
        while True:
            try:
                tick = await self._tick_queue.get()
            except asyncio.CancelledError:
                self.logger.info("Tick processor worker stopping.")
                raise
            try:
                await self._emit_tick(tick)
            except Exception as e:
                self.metrics.sink_failures += 1
                self.error_logger.error(
                    "Failed to hand tick to sink",
                    instrument_token=tick.instrument_token,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self._tick_queue.task_done()

    async def _emit_tick(self, tick: Tick):
        row = self.formatter.format_tick(tick)
        await self._sink(row)
        self.metrics.ticks_processed += 1
        if self.prom_metrics:
            latency = (datetime.now(timezone.utc) - tick.received_at).total_seconds()
            self.prom_metrics.record_tick_processing_latency("market_feed", latency)

    async def get_metrics(self) -> Dict[str, Any]:
        """Get comprehensive service metrics."""
        stats = self.client.stats
        return {
            'ticks_received': self.metrics.ticks_received,
            'ticks_processed': self.metrics.ticks_processed,
            'ticks_dropped': self.metrics.ticks_dropped,
            'sink_failures': self.metrics.sink_failures,
            'decode_errors': self.metrics.decode_errors,
            'protocol_errors': self.metrics.protocol_errors,
            'instruments_subscribed': len(self.client.subscriptions),
            'reconnection_attempts': self.client.reconnect_attempts,
            'heartbeats_sent': stats.heartbeats_sent,
            'queue_size': self._tick_queue.qsize(),
            'connection_status': self.client.state.value,
            'is_running': self._running,
            'processing_rate': self._calculate_processing_rate()
        }

    def _calculate_processing_rate(self) -> float:
        """Calculate ticks per second processing rate."""
        if not self._start_time or self.metrics.ticks_processed == 0:
            return 0.0

        elapsed = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return self.metrics.ticks_processed / elapsed if elapsed > 0 else 0.0

    async def health_check(self) -> Dict[str, Any]:
        """Health check for monitoring systems."""
        metrics = await self.get_metrics()
        issues = self._identify_health_issues(metrics)
        status = 'healthy' if not issues else 'unhealthy'
        if issues:
            self.monitoring_logger.warning("Market feed health degraded", issues=issues)

        return {
            'status': status,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'metrics': metrics,
            'issues': issues
        }

    def _identify_health_issues(self, metrics: Dict[str, Any]) -> List[str]:
        """Identify specific health issues."""
        issues = []

        if not self._running:
            issues.append("Service not running")
        if metrics['connection_status'] != ConnectionState.CONNECTED.value:
            issues.append("WebSocket disconnected")
        if metrics['queue_size'] > 0.8 * self.settings.market_feed.queue_maxsize:
            issues.append("Queue near capacity")
        if metrics['sink_failures'] / max(metrics['ticks_processed'], 1) > 0.01:
            issues.append("High sink failure rate")
        if metrics['ticks_dropped'] > 0:
            issues.append("Dropped ticks detected")

        return issues
