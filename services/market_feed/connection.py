"""
Connection state machine for the streaming feed.

Owns the transport, the heartbeat task, the reader task and the reconnect
policy. Everything runs on one asyncio loop; state changes happen between
awaits so no locking is needed.

    IDLE/FAILED --connect()--> CONNECTING --open--> CONNECTED
    CONNECTING --open fails (initial)--> FAILED
    CONNECTED --transport closed--> DISCONNECTED
    DISCONNECTED --attempts < max--> RECONNECTING --delay--> CONNECTING
    DISCONNECTED --attempts >= max--> FAILED
    any --disconnect()--> IDLE
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from core.logging import get_error_logger_safe, get_market_data_logger_safe
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector

from .codec import HEARTBEAT_PING, WireCodec
from .exceptions import (
    AlreadyConnectedError,
    CredentialError,
    DecodeError,
    FeedError,
    NotConnectedError,
    ProtocolError,
    TransportError,
)
from .models import (
    ConnectionState,
    ConnectionStats,
    ControlKind,
    ReconnectionConfig,
    SessionCredentials,
    SubscriptionAction,
    Tick,
)
from .registry import SubscriptionRegistry
from .transport import Message, Transport, TransportFactory

SleepFn = Callable[[float], Awaitable[Any]]


class FeedCallbacks:
    """Single-slot callback table.

    Registering a handler replaces the previous one; this is not an event
    bus. Handlers run synchronously on the event that triggers them. A
    handler that raises is logged and does not interrupt the feed.
    """

    def __init__(self):
        self.on_connect: Optional[Callable[[], Any]] = None
        self.on_disconnect: Optional[Callable[[str], Any]] = None
        self.on_data: Optional[Callable[[Tick], Any]] = None
        self.on_error: Optional[Callable[[FeedError], Any]] = None
        self.error_logger = get_error_logger_safe("market_feed_callbacks")

    def emit_connect(self) -> None:
        self._invoke("on_connect", self.on_connect)

    def emit_disconnect(self, reason: str) -> None:
        self._invoke("on_disconnect", self.on_disconnect, reason)

    def emit_data(self, tick: Tick) -> None:
        self._invoke("on_data", self.on_data, tick)

    def emit_error(self, error: FeedError) -> None:
        self._invoke("on_error", self.on_error, error)

    def _invoke(self, slot: str, handler: Optional[Callable[..., Any]], *args: Any) -> None:
        if handler is None:
            return
        try:
            handler(*args)
        except Exception:
            self.error_logger.exception("Feed callback raised", slot=slot)


class ConnectionStateMachine:
    """Drives one feed connection through connect, heartbeat and reconnect."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        registry: SubscriptionRegistry,
        callbacks: FeedCallbacks,
        codec: Optional[WireCodec] = None,
        reconnection: Optional[ReconnectionConfig] = None,
        heartbeat_interval: float = 30.0,
        sleep: SleepFn = asyncio.sleep,
        metrics: Optional[PrometheusMetricsCollector] = None,
        source: str = "smart_stream",
    ):
        self._transport_factory = transport_factory
        self._registry = registry
        self._callbacks = callbacks
        self._codec = codec or WireCodec()
        self._reconnection = reconnection or ReconnectionConfig()
        self._heartbeat_interval = heartbeat_interval
        self._sleep = sleep
        self._metrics = metrics
        self._source = source

        self.state = ConnectionState.IDLE
        self.reconnect_attempts = 0
        self.stats = ConnectionStats()

        self._credentials: Optional[SessionCredentials] = None
        self._transport: Optional[Transport] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self.logger = get_market_data_logger_safe("market_feed_connection")
        self.error_logger = get_error_logger_safe("market_feed_connection_errors")

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    async def connect(self, credentials: SessionCredentials) -> None:
        missing = credentials.missing_fields()
        if missing:
            raise CredentialError(missing)
        if self.state not in (ConnectionState.IDLE, ConnectionState.FAILED):
            raise AlreadyConnectedError(f"Feed is {self.state.value}; call disconnect() first")

        self._credentials = credentials
        self.reconnect_attempts = 0
        await self._open(initial=True)

    async def send(self, message: Message) -> None:
        transport = self._transport
        if self.state is not ConnectionState.CONNECTED or transport is None:
            raise NotConnectedError(f"Feed is {self.state.value}")
        try:
            await transport.send(message)
        except TransportError as e:
            self._record_error(e)
            self.logger.warning("Feed send failed", error=str(e))
            raise

    async def disconnect(self) -> None:
        was_connected = self.state is ConnectionState.CONNECTED
        self._set_state(ConnectionState.IDLE)
        self.reconnect_attempts = 0

        current = asyncio.current_task()
        tasks = [
            task for task in (self._heartbeat_task, self._reconnect_task, self._reader_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._heartbeat_task = self._reconnect_task = self._reader_task = None

        self._registry.clear()

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except TransportError as e:
                self.logger.warning("Error closing feed transport", error=str(e))

        if was_connected:
            self.stats.disconnections += 1
            self.stats.last_disconnection_time = datetime.now(timezone.utc)
            self._callbacks.emit_disconnect("client disconnect")
        self.logger.info("Feed disconnected by client")

    # --- lifecycle ---

    async def _open(self, initial: bool) -> None:
        self._set_state(ConnectionState.CONNECTING)
        self.stats.connection_attempts += 1
        transport = self._transport_factory(self._credentials)

        try:
            await transport.open()
        except TransportError as e:
            if self.state is not ConnectionState.CONNECTING:
                return
            self._record_error(e)
            self.logger.warning("Feed connection attempt failed", error=str(e), initial=initial)
            if initial:
                # Initial failures are not retried
                self._set_state(ConnectionState.FAILED)
                self._callbacks.emit_error(e)
                raise
            self._set_state(ConnectionState.DISCONNECTED)
            self._callbacks.emit_error(e)
            self._schedule_reconnect()
            return

        if self.state is not ConnectionState.CONNECTING:
            # disconnect() ran while the socket was opening
            await transport.close()
            return

        self._transport = transport
        self.reconnect_attempts = 0
        self.stats.successful_connections += 1
        self.stats.last_connection_time = datetime.now(timezone.utc)
        self._set_state(ConnectionState.CONNECTED)
        self.logger.info("Feed connected", subscriptions=len(self._registry))

        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(transport))
        self._reader_task = asyncio.create_task(self._read_loop(transport))

        await self._replay_subscriptions(transport)
        if self.state is ConnectionState.CONNECTED and self._transport is transport:
            self._callbacks.emit_connect()

    async def _replay_subscriptions(self, transport: Transport) -> None:
        """Resend the registry contents, one request per mode."""
        for mode, keys in self._registry.snapshot().items():
            if self._transport is not transport:
                return
            request = self._codec.encode_request(SubscriptionAction.SUBSCRIBE, mode, keys)
            try:
                await transport.send(request.to_wire())
            except TransportError as e:
                self._record_error(e)
                self.logger.warning("Subscription replay failed", mode=mode.name, error=str(e))
                self._callbacks.emit_error(e)
                return
            self.logger.info(
                "Replayed subscriptions",
                mode=mode.name,
                instruments=len(keys),
                correlation_id=request.correlation_id,
            )

    def _handle_transport_closed(self, transport: Transport, error: TransportError) -> None:
        if transport is not self._transport or self.state is not ConnectionState.CONNECTED:
            return

        self._transport = None
        self._cancel_heartbeat()
        self.stats.disconnections += 1
        self.stats.last_disconnection_time = datetime.now(timezone.utc)
        self._set_state(ConnectionState.DISCONNECTED)
        self._record_error(error)
        self.logger.warning("Feed connection lost", reason=str(error))
        self._callbacks.emit_disconnect(str(error))
        self._callbacks.emit_error(error)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        max_attempts = self._reconnection.max_attempts
        if self.reconnect_attempts >= max_attempts:
            self._set_state(ConnectionState.FAILED)
            error = TransportError(f"Giving up after {max_attempts} reconnect attempts")
            self.error_logger.error("Feed reconnection exhausted", max_attempts=max_attempts)
            self._record_error(error)
            self._callbacks.emit_error(error)
            return

        self.reconnect_attempts += 1
        self.stats.reconnect_attempts += 1
        delay = self._reconnection.delay_for(self.reconnect_attempts)
        self._set_state(ConnectionState.RECONNECTING)
        self.logger.info(
            "Reconnect scheduled",
            attempt=self.reconnect_attempts,
            max_attempts=max_attempts,
            delay_seconds=delay,
        )
        if self._metrics:
            self._metrics.record_reconnect_attempt(self._source)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self.state is not ConnectionState.RECONNECTING:
            return
        # Reuses the credentials given to connect()
        await self._open(initial=False)

    # --- background tasks ---

    async def _read_loop(self, transport: Transport) -> None:
        while True:
            try:
                frame = await transport.recv()
            except TransportError as e:
                self._handle_transport_closed(transport, e)
                return
            self._dispatch(frame)

    def _dispatch(self, frame: Message) -> None:
        try:
            message = self._codec.decode(frame)
        except (DecodeError, ProtocolError) as e:
            self._record_error(e)
            self.logger.warning("Discarding feed frame", error=str(e), error_type=type(e).__name__)
            self._callbacks.emit_error(e)
            return

        if isinstance(message, Tick):
            if self._metrics:
                self._metrics.record_market_tick(self._source, message.mode.name)
            self._callbacks.emit_data(message)
        elif message.kind is ControlKind.PONG:
            self.stats.last_pong_time = datetime.now(timezone.utc)
            self.logger.debug("Heartbeat acknowledged")
        else:
            self.logger.debug("Ignoring text frame", text=message.text[:200])

    async def _heartbeat_loop(self, transport: Transport) -> None:
        # Passive keepalive: a missing pong never forces a disconnect
        while True:
            await self._sleep(self._heartbeat_interval)
            if self.state is not ConnectionState.CONNECTED or self._transport is not transport:
                return
            try:
                await transport.send(HEARTBEAT_PING)
            except TransportError as e:
                # A real drop ends this loop via the reader's close handling
                self.logger.warning("Heartbeat send failed", error=str(e))
                continue
            self.stats.heartbeats_sent += 1
            self.logger.debug("Heartbeat sent")

    def _cancel_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # --- helpers ---

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self.state
        if old_state is new_state:
            return
        self.state = new_state
        self.logger.debug("Feed state changed", from_state=old_state.value, to_state=new_state.value)
        if self._metrics:
            self._metrics.set_connection_state(self._source, new_state.value)

    def _record_error(self, error: FeedError) -> None:
        if self._metrics:
            self._metrics.record_error(self._source, type(error).__name__)
