# WebSocket transport for the smart-stream endpoint
import asyncio
from typing import Callable, Optional, Protocol, Union
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from core.logging import get_market_data_logger_safe
from .exceptions import ConnectionClosedError, TransportError
from .models import SessionCredentials

Message = Union[str, bytes]


class Transport(Protocol):
    """Message-oriented bidirectional socket the connection state machine drives."""

    async def open(self) -> None: ...

    async def send(self, message: Message) -> None: ...

    async def recv(self) -> Message:
        """Next frame; raises ConnectionClosedError once the socket is closed."""
        ...

    async def close(self) -> None: ...


TransportFactory = Callable[[SessionCredentials], Transport]


def build_feed_url(base_url: str, credentials: SessionCredentials) -> str:
    """Attach the session identifiers the feed endpoint expects as query parameters."""
    query = urlencode({
        "clientCode": credentials.client_code,
        "feedToken": credentials.feed_token,
        "apiKey": credentials.api_key,
    })
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{query}"


class WebSocketTransport:
    """Transport backed by a ``websockets`` client connection."""

    def __init__(
        self,
        url: str,
        open_timeout: float = 10.0,
        ping_interval: Optional[float] = 20.0,
        max_size: int = 10 * 1024 * 1024,
    ):
        self._url = url
        self._open_timeout = open_timeout
        self._ping_interval = ping_interval
        self._max_size = max_size
        self._ws = None
        self.logger = get_market_data_logger_safe("market_feed_transport")

    async def open(self) -> None:
        try:
            self._ws = await websockets.connect(
                self._url,
                open_timeout=self._open_timeout,
                ping_interval=self._ping_interval,
                max_size=self._max_size,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(f"Failed to open feed connection: {e}") from e
        self.logger.debug("Feed socket opened")

    async def send(self, message: Message) -> None:
        if self._ws is None:
            raise TransportError("Transport is not open")
        try:
            await self._ws.send(message)
        except ConnectionClosed as e:
            raise _closed_error(e) from e
        except (OSError, WebSocketException) as e:
            raise TransportError(f"Send failed: {e}") from e

    async def recv(self) -> Message:
        if self._ws is None:
            raise ConnectionClosedError(None, "transport not open")
        try:
            return await self._ws.recv()
        except ConnectionClosed as e:
            raise _closed_error(e) from e
        except (OSError, WebSocketException) as e:
            raise ConnectionClosedError(None, str(e)) from e

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            self.logger.warning("Error while closing feed socket", error=str(e))


def _closed_error(exc: ConnectionClosed) -> ConnectionClosedError:
    rcvd = exc.rcvd
    if rcvd is None:
        return ConnectionClosedError(1006, "connection lost")
    return ConnectionClosedError(rcvd.code, rcvd.reason)


def websocket_transport_factory(
    base_url: str,
    open_timeout: float = 10.0,
    ping_interval: Optional[float] = 20.0,
) -> TransportFactory:
    def factory(credentials: SessionCredentials) -> Transport:
        return WebSocketTransport(
            build_feed_url(base_url, credentials),
            open_timeout=open_timeout,
            ping_interval=ping_interval,
        )
    return factory
