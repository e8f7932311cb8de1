# Complete settings with ALL required sections
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from enum import Enum
from typing import List, Optional


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class AngelSettings(BaseModel):
    # Session material minted by the login flow (TOTP login happens elsewhere)
    api_key: str = ""
    client_code: str = ""
    jwt_token: str = ""
    feed_token: str = ""


class WatchlistEntry(BaseModel):
    exchange_type: int = 1
    token: str
    symbol: str


def _default_watchlist() -> List[WatchlistEntry]:
    nse = [
        ("3045", "SBIN"), ("881", "RELIANCE"), ("99926004", "INFY"), ("2885", "TCS"),
        ("1333", "HDFCBANK"), ("17963", "ITC"), ("11536", "LT"), ("1660", "KOTAKBANK"),
        ("288", "AXISBANK"), ("5633", "MARUTI"), ("1594", "ICICIBANK"), ("10999", "BHARTIARTL"),
        ("526", "BAJFINANCE"), ("16675", "ASIANPAINT"), ("1330", "HDFC"),
    ]
    entries = [WatchlistEntry(exchange_type=1, token=token, symbol=symbol) for token, symbol in nse]
    entries.append(WatchlistEntry(exchange_type=2, token="58662", symbol="NIFTY_JUN_FUT"))
    return entries


class MarketFeedSettings(BaseModel):
    """Runtime settings for the streaming market feed"""
    ws_url: str = "wss://smartapisocket.angelone.in/smart-stream"
    heartbeat_interval_seconds: float = 30.0
    default_mode: int = 1  # 1=LTP, 2=QUOTE, 3=SNAP_QUOTE
    queue_maxsize: int = 10000
    open_timeout_seconds: float = 10.0
    # websockets protocol-level keepalive; None disables it
    protocol_ping_interval_seconds: Optional[float] = 20.0
    watchlist: List[WatchlistEntry] = Field(default_factory=_default_watchlist)

    @field_validator("default_mode")
    @classmethod
    def validate_mode(cls, v):
        if v not in (1, 2, 3):
            raise ValueError(f"Unsupported subscription mode: {v}")
        return v


class ReconnectionSettings(BaseModel):
    """Market feed reconnection configuration"""
    max_attempts: int = 5
    base_delay_seconds: float = 5.0


class LoggingSettings(BaseModel):
    # Core logging settings
    level: str = "INFO"
    json_format: bool = True

    # Console logging
    console_enabled: bool = True
    console_json_format: bool = False  # Plain text for console by default

    # File logging
    file_enabled: bool = True
    logs_dir: str = "logs"
    file_max_size: str = "100MB"
    file_backup_count: int = 5

    # Multi-channel logging
    multi_channel_enabled: bool = True

    # Channel-specific levels
    market_data_level: str = "INFO"
    api_level: str = "INFO"

    # Redaction
    redact_keys: list[str] = [
        "authorization", "jwt_token", "feed_token", "session_token", "refresh_token",
        "api_key", "api_secret", "password", "secret", "totp_secret", "mpin",
    ]


class MonitoringSettings(BaseModel):
    metrics_enabled: bool = True
    # Scrape endpoint served by the stream command
    metrics_addr: str = "0.0.0.0"
    metrics_port: int = 9108
    tick_latency_buckets_seconds: list[float] = [
        0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0
    ]


class Settings(BaseSettings):
    """Main application settings, loaded from environment variables"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    app_name: str = "Smart Feed"
    version: str = "0.1.0"
    environment: Environment = Environment.DEVELOPMENT

    angel: AngelSettings = AngelSettings()
    market_feed: MarketFeedSettings = MarketFeedSettings()
    reconnection: ReconnectionSettings = ReconnectionSettings()
    logging: LoggingSettings = LoggingSettings()
    monitoring: MonitoringSettings = MonitoringSettings()

    @property
    def logs_dir(self) -> str:
        """Get absolute path to logs directory"""
        return self.logging.logs_dir


# No global settings instance - use dependency injection instead
