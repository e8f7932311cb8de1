"""
Wire codec for the smart-stream feed.

Binary market frames are little-endian and laid out as::

    0   u8      subscription mode (1=LTP, 2=QUOTE, 3=SNAP_QUOTE)
    1   u8      exchange type
    2   25s     instrument token, ASCII, NUL terminated
    27  u64     sequence number
    35  u64     exchange timestamp (epoch ms)
    43  u64     last traded price (paise)
    51  u64     last traded quantity        (mode >= QUOTE)
    59  u64     average traded price, paise (mode >= QUOTE)
    67  u64     total volume traded         (mode >= QUOTE)

Anything after the fields a mode defines is vendor specific and ignored.
Outbound subscription requests are JSON text frames.
"""
import json
import struct
import uuid
from decimal import Decimal
from typing import Dict, Iterable, List, Union

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import DecodeError, ProtocolError
from .models import (
    ControlKind,
    ControlMessage,
    SubscriptionAction,
    SubscriptionKey,
    SubscriptionMode,
    Tick,
)

HEARTBEAT_PING = "ping"
HEARTBEAT_PONG = "pong"

TOKEN_FIELD_SIZE = 25

_LTP_LAYOUT = struct.Struct("<BB25sQQQ")
_QUOTE_LAYOUT = struct.Struct("<QQQ")

LTP_FRAME_SIZE = _LTP_LAYOUT.size                         # 51
QUOTE_FRAME_SIZE = LTP_FRAME_SIZE + _QUOTE_LAYOUT.size    # 75

_MIN_FRAME_SIZE = {
    SubscriptionMode.LTP: LTP_FRAME_SIZE,
    SubscriptionMode.QUOTE: QUOTE_FRAME_SIZE,
    SubscriptionMode.SNAP_QUOTE: QUOTE_FRAME_SIZE,
}

Frame = Union[bytes, bytearray, memoryview, str]


class TokenGroup(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    exchange_type: int = Field(alias="exchangeType")
    tokens: List[str]


class RequestParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mode: SubscriptionMode
    token_list: List[TokenGroup] = Field(alias="tokenList")


class SubscriptionRequest(BaseModel):
    """Subscribe/unsubscribe request as sent on the wire"""
    model_config = ConfigDict(populate_by_name=True)

    correlation_id: str = Field(alias="correlationID")
    action: SubscriptionAction
    params: RequestParams

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)


def paise_to_rupees(raw: int) -> Decimal:
    # Exact decimal shift, no float round-trip
    return Decimal(raw).scaleb(-2)


def rupees_to_paise(value: Decimal) -> int:
    return int((Decimal(value) * 100).to_integral_value())


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:10]


class WireCodec:
    """Stateless translation between feed frames and typed messages."""

    def decode(self, frame: Frame) -> Union[Tick, ControlMessage]:
        if isinstance(frame, str):
            return self.decode_text(frame)
        return self.decode_binary(frame)

    def decode_binary(self, buffer: Union[bytes, bytearray, memoryview]) -> Tick:
        data = bytes(buffer)
        if len(data) < LTP_FRAME_SIZE:
            raise DecodeError(f"Frame too short: {len(data)} bytes, need at least {LTP_FRAME_SIZE}")

        mode_code, exchange_type, raw_token, sequence, exchange_ts, ltp = _LTP_LAYOUT.unpack_from(data, 0)
        try:
            mode = SubscriptionMode(mode_code)
        except ValueError:
            raise DecodeError(f"Unknown subscription mode {mode_code}") from None

        required = _MIN_FRAME_SIZE[mode]
        if len(data) < required:
            raise DecodeError(f"{mode.name} frame too short: {len(data)} bytes, need {required}")

        try:
            token = raw_token.split(b"\x00", 1)[0].decode("ascii")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Instrument token is not ASCII: {raw_token!r}") from e

        fields = dict(
            mode=mode,
            exchange_type=exchange_type,
            instrument_token=token,
            sequence_number=sequence,
            exchange_timestamp=exchange_ts,
            last_traded_price=paise_to_rupees(ltp),
        )

        if mode >= SubscriptionMode.QUOTE:
            quantity, avg_price, volume = _QUOTE_LAYOUT.unpack_from(data, LTP_FRAME_SIZE)
            fields.update(
                last_traded_quantity=quantity,
                average_traded_price=paise_to_rupees(avg_price),
                total_volume_traded=volume,
            )

        return Tick(**fields)

    def decode_text(self, text: str) -> ControlMessage:
        """Decode a text frame; raises ProtocolError when the server reports an error."""
        if text.strip() == HEARTBEAT_PONG:
            return ControlMessage(kind=ControlKind.PONG, text=text)

        try:
            payload = json.loads(text)
        except ValueError:
            return ControlMessage(kind=ControlKind.OTHER, text=text)

        if not isinstance(payload, dict):
            return ControlMessage(kind=ControlKind.OTHER, text=text)

        error_code = payload.get("errorCode")
        if error_code:
            raise ProtocolError(
                error_code=str(error_code),
                error_message=str(payload.get("errorMessage") or payload.get("message") or ""),
                payload=payload,
            )
        return ControlMessage(kind=ControlKind.OTHER, text=text, payload=payload)

    def encode_request(
        self,
        action: SubscriptionAction,
        mode: SubscriptionMode,
        keys: Iterable[SubscriptionKey],
    ) -> SubscriptionRequest:
        """Build one request for ``mode``, batching tokens per exchange type."""
        grouped: Dict[int, List[str]] = {}
        for key in keys:
            tokens = grouped.setdefault(int(key.exchange_type), [])
            if key.token not in tokens:
                tokens.append(key.token)

        return SubscriptionRequest(
            correlation_id=new_correlation_id(),
            action=action,
            params=RequestParams(
                mode=mode,
                token_list=[
                    TokenGroup(exchange_type=exchange_type, tokens=tokens)
                    for exchange_type, tokens in grouped.items()
                ],
            ),
        )

    def encode_tick(self, tick: Tick) -> bytes:
        """Render a tick in the binary frame layout (feed simulators, tooling)."""
        token = tick.instrument_token.encode("ascii")
        if len(token) > TOKEN_FIELD_SIZE:
            raise ValueError(f"Instrument token longer than {TOKEN_FIELD_SIZE} bytes: {tick.instrument_token}")

        frame = _LTP_LAYOUT.pack(
            int(tick.mode),
            tick.exchange_type,
            token,  # struct pads with NULs
            tick.sequence_number,
            tick.exchange_timestamp,
            rupees_to_paise(tick.last_traded_price),
        )
        if tick.mode >= SubscriptionMode.QUOTE:
            frame += _QUOTE_LAYOUT.pack(
                tick.last_traded_quantity or 0,
                rupees_to_paise(tick.average_traded_price or Decimal(0)),
                tick.total_volume_traded or 0,
            )
        return frame
