# Market Feed Service Models
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionMode(IntEnum):
    """Feed modes; each richer mode is a superset of the previous one"""
    LTP = 1
    QUOTE = 2
    SNAP_QUOTE = 3


class SubscriptionAction(IntEnum):
    UNSUBSCRIBE = 0
    SUBSCRIBE = 1


class ExchangeType(IntEnum):
    """Known exchange segment codes. The wire may carry others."""
    NSE_CM = 1
    NSE_FO = 2
    BSE_CM = 3
    BSE_FO = 4
    MCX_FO = 5
    NCX_FO = 7
    CDE_FO = 13


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class SessionCredentials(BaseModel):
    """Session material for one feed session; never mutated once minted"""
    model_config = ConfigDict(frozen=True)

    session_token: str = ""
    feed_token: str = ""
    api_key: str = ""
    client_code: str = ""

    def missing_fields(self) -> Tuple[str, ...]:
        return tuple(
            name for name in ("session_token", "feed_token", "api_key", "client_code")
            if not (getattr(self, name) or "").strip()
        )


@dataclass(frozen=True)
class Instrument:
    """An instrument a caller wants data for"""
    exchange_type: int
    token: str
    symbol: Optional[str] = None

    @classmethod
    def coerce(cls, value: Union["Instrument", Tuple[int, str]]) -> "Instrument":
        if isinstance(value, cls):
            return value
        exchange_type, token = value
        return cls(exchange_type=int(exchange_type), token=str(token))


@dataclass(frozen=True)
class SubscriptionKey:
    exchange_type: int
    token: str
    mode: SubscriptionMode


class Tick(BaseModel):
    """One decoded market update"""
    model_config = ConfigDict(frozen=True)

    mode: SubscriptionMode
    exchange_type: int
    instrument_token: str
    sequence_number: int
    exchange_timestamp: int = Field(..., description="Exchange timestamp, epoch milliseconds")
    last_traded_price: Decimal

    # QUOTE and SNAP_QUOTE only
    last_traded_quantity: Optional[int] = None
    average_traded_price: Optional[Decimal] = None
    total_volume_traded: Optional[int] = None

    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def exchange_time(self) -> datetime:
        return datetime.fromtimestamp(self.exchange_timestamp / 1000, tz=timezone.utc)


class ControlKind(str, Enum):
    PONG = "pong"
    OTHER = "other"


class ControlMessage(BaseModel):
    """Non-tick text frame"""
    kind: ControlKind
    text: str
    payload: Optional[dict] = None


class ReconnectionConfig(BaseModel):
    """Configuration for reconnection behavior"""
    max_attempts: int = 5
    base_delay: float = 5.0

    def delay_for(self, attempt: int) -> float:
        """Linear backoff: attempt 1 waits base_delay, attempt n waits n * base_delay."""
        return self.base_delay * attempt


class ConnectionStats(BaseModel):
    """WebSocket connection statistics"""
    connection_attempts: int = 0
    successful_connections: int = 0
    disconnections: int = 0
    reconnect_attempts: int = 0
    heartbeats_sent: int = 0
    last_connection_time: Optional[datetime] = None
    last_disconnection_time: Optional[datetime] = None
    last_pong_time: Optional[datetime] = None


class MarketDataMetrics(BaseModel):
    """Market data processing metrics"""
    ticks_received: int = 0
    ticks_processed: int = 0
    ticks_dropped: int = 0
    sink_failures: int = 0
    decode_errors: int = 0
    protocol_errors: int = 0
    last_tick_time: Optional[datetime] = None
    instruments_subscribed: int = 0
