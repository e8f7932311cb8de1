# Tick formatting for downstream storage sinks
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from core.config.settings import WatchlistEntry

from .models import ExchangeType, Tick

# Exchange names as stored in market data rows
EXCHANGE_NAMES = {
    ExchangeType.NSE_CM: "NSE",
    ExchangeType.NSE_FO: "NFO",
    ExchangeType.BSE_CM: "BSE",
    ExchangeType.BSE_FO: "BFO",
    ExchangeType.MCX_FO: "MCX",
    ExchangeType.NCX_FO: "NCDEX",
    ExchangeType.CDE_FO: "CDS",
}


class TickFormatter:
    """Formats decoded ticks into the flat market data row a sink persists"""

    def __init__(self, watchlist: Iterable[WatchlistEntry] = ()):
        self._symbols: Dict[Tuple[int, str], str] = {
            (entry.exchange_type, entry.token): entry.symbol for entry in watchlist
        }

    def format_tick(self, tick: Tick) -> Dict[str, Any]:
        """
        Format a tick into a row keyed by (token, exchange). Quote fields are
        only present when the tick carried them.
        """
        row: Dict[str, Any] = {
            "token": tick.instrument_token,
            "exchange": self.exchange_name(tick.exchange_type),
            "symbol": self.symbol_for(tick.exchange_type, tick.instrument_token),
            "mode": tick.mode.name,
            "ltp": tick.last_traded_price,
            "sequence_number": tick.sequence_number,
            "timestamp": self._format_timestamp(tick),
            "last_updated": self._normalize_to_utc(tick.received_at),
        }

        # Volume and quantity data (available in quote/snap quote mode)
        if tick.last_traded_quantity is not None:
            row["last_traded_quantity"] = tick.last_traded_quantity
        if tick.average_traded_price is not None:
            row["avg_price"] = tick.average_traded_price
        if tick.total_volume_traded is not None:
            row["volume"] = tick.total_volume_traded

        return row

    def symbol_for(self, exchange_type: int, token: str) -> str:
        # Unknown instruments fall back to their token
        return self._symbols.get((exchange_type, token), token)

    @staticmethod
    def exchange_name(exchange_type: int) -> str:
        try:
            return EXCHANGE_NAMES[ExchangeType(exchange_type)]
        except (ValueError, KeyError):
            return str(exchange_type)

    def _format_timestamp(self, tick: Tick) -> datetime:
        """Exchange time when the feed supplied one, otherwise receipt time"""
        if tick.exchange_timestamp:
            return tick.exchange_time
        return self._normalize_to_utc(tick.received_at)

    def _normalize_to_utc(self, dt_value: Optional[datetime]) -> datetime:
        """Normalize any datetime value to UTC."""
        if dt_value is None:
            return datetime.now(timezone.utc)
        if dt_value.tzinfo is None:
            return dt_value.replace(tzinfo=timezone.utc)
        return dt_value.astimezone(timezone.utc)
