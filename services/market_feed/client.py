import asyncio
from typing import Any, Callable, FrozenSet, Iterable, List, Optional, Tuple, Union

from core.logging import get_market_data_logger_safe
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector

from .codec import WireCodec
from .connection import ConnectionStateMachine, FeedCallbacks, SleepFn
from .exceptions import FeedError, NotConnectedError
from .models import (
    ConnectionState,
    ConnectionStats,
    Instrument,
    ReconnectionConfig,
    SessionCredentials,
    SubscriptionAction,
    SubscriptionKey,
    SubscriptionMode,
    Tick,
)
from .registry import SubscriptionRegistry
from .transport import TransportFactory, websocket_transport_factory

DEFAULT_FEED_URL = "wss://smartapisocket.angelone.in/smart-stream"

InstrumentLike = Union[Instrument, Tuple[int, str]]


class SmartStreamClient:
    """
    Public API of the streaming feed: connect, subscribe, unsubscribe,
    disconnect and four single-slot callbacks.

    Each instance owns its own transport, timers and subscription registry.
    Subscription intent survives transient drops: whatever is in the
    registry is re-sent every time the connection comes back.
    """

    def __init__(
        self,
        transport_factory: Optional[TransportFactory] = None,
        reconnection: Optional[ReconnectionConfig] = None,
        heartbeat_interval: float = 30.0,
        sleep: SleepFn = asyncio.sleep,
        metrics: Optional[PrometheusMetricsCollector] = None,
    ):
        self._codec = WireCodec()
        self._registry = SubscriptionRegistry()
        self._callbacks = FeedCallbacks()
        self._connection = ConnectionStateMachine(
            transport_factory=transport_factory or websocket_transport_factory(DEFAULT_FEED_URL),
            registry=self._registry,
            callbacks=self._callbacks,
            codec=self._codec,
            reconnection=reconnection,
            heartbeat_interval=heartbeat_interval,
            sleep=sleep,
            metrics=metrics,
        )
        self.logger = get_market_data_logger_safe("market_feed_client")

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self._connection.is_connected

    @property
    def subscriptions(self) -> FrozenSet[SubscriptionKey]:
        return self._registry.keys()

    @property
    def reconnect_attempts(self) -> int:
        return self._connection.reconnect_attempts

    @property
    def stats(self) -> ConnectionStats:
        return self._connection.stats

    async def connect(self, credentials: SessionCredentials) -> None:
        """Open the feed. Raises CredentialError, AlreadyConnectedError or TransportError."""
        self.logger.info("Connecting to market feed", client_code=credentials.client_code)
        await self._connection.connect(credentials)

    async def subscribe(
        self,
        instruments: Iterable[InstrumentLike],
        mode: SubscriptionMode = SubscriptionMode.LTP,
    ) -> None:
        keys = self._keys_for(instruments, mode)
        if not keys:
            return
        self._require_connected()

        self._registry.add(keys)
        request = self._codec.encode_request(SubscriptionAction.SUBSCRIBE, mode, keys)
        await self._connection.send(request.to_wire())
        self.logger.info(
            "Subscribed to instruments",
            mode=mode.name,
            instruments=len(keys),
            correlation_id=request.correlation_id,
        )

    async def unsubscribe(
        self,
        instruments: Iterable[InstrumentLike],
        mode: SubscriptionMode = SubscriptionMode.LTP,
    ) -> None:
        keys = self._keys_for(instruments, mode)
        if not keys:
            return
        self._require_connected()

        request = self._codec.encode_request(SubscriptionAction.UNSUBSCRIBE, mode, keys)
        await self._connection.send(request.to_wire())
        # Only forget the keys once the server has been told
        removed = self._registry.remove(keys)
        self.logger.info(
            "Unsubscribed from instruments",
            mode=mode.name,
            instruments=len(removed),
            correlation_id=request.correlation_id,
        )

    async def disconnect(self) -> None:
        await self._connection.disconnect()

    # Single-slot registration: the last handler registered wins, None clears.

    def on_connect(self, callback: Optional[Callable[[], Any]]) -> None:
        self._callbacks.on_connect = callback

    def on_disconnect(self, callback: Optional[Callable[[str], Any]]) -> None:
        self._callbacks.on_disconnect = callback

    def on_data(self, callback: Optional[Callable[[Tick], Any]]) -> None:
        self._callbacks.on_data = callback

    def on_error(self, callback: Optional[Callable[[FeedError], Any]]) -> None:
        self._callbacks.on_error = callback

    def _require_connected(self) -> None:
        if not self._connection.is_connected:
            raise NotConnectedError(f"Cannot change subscriptions while feed is {self.state.value}")

    @staticmethod
    def _keys_for(instruments: Iterable[InstrumentLike], mode: SubscriptionMode) -> List[SubscriptionKey]:
        mode = SubscriptionMode(mode)
        keys = {}
        for item in instruments:
            instrument = Instrument.coerce(item)
            keys[SubscriptionKey(instrument.exchange_type, instrument.token, mode)] = None
        return list(keys)
