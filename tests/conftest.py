"""
Pytest configuration and shared fixtures for Smart Feed tests.
"""
import struct

import pytest

from core.config.settings import (
    AngelSettings,
    LoggingSettings,
    MarketFeedSettings,
    ReconnectionSettings,
    Settings,
    WatchlistEntry,
)
from services.market_feed.client import SmartStreamClient
from services.market_feed.models import ReconnectionConfig, SessionCredentials
from tests.mocks.fake_transport import FakeTransportFactory
from tests.mocks.manual_clock import ManualClock


@pytest.fixture
def test_settings(tmp_path):
    """Test settings configuration."""
    return Settings(
        environment="testing",
        angel=AngelSettings(
            api_key="test_api_key",
            client_code="A123456",
            jwt_token="test_jwt",
            feed_token="test_feed_token",
        ),
        market_feed=MarketFeedSettings(
            queue_maxsize=100,
            watchlist=[
                WatchlistEntry(exchange_type=1, token="3045", symbol="SBIN"),
                WatchlistEntry(exchange_type=1, token="881", symbol="RELIANCE"),
            ],
        ),
        reconnection=ReconnectionSettings(max_attempts=5, base_delay_seconds=5.0),
        logging=LoggingSettings(file_enabled=False, console_enabled=False, logs_dir=str(tmp_path / "logs")),
    )


@pytest.fixture
def credentials():
    return SessionCredentials(
        session_token="test_jwt",
        feed_token="test_feed_token",
        api_key="test_api_key",
        client_code="A123456",
    )


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def feed_client(transport_factory, clock):
    """Client wired to in-memory transports and a manual clock."""
    return SmartStreamClient(
        transport_factory=transport_factory,
        reconnection=ReconnectionConfig(max_attempts=5, base_delay=5.0),
        heartbeat_interval=30.0,
        sleep=clock.sleep,
    )


@pytest.fixture
def frame_builder():
    """Factory for binary feed frames."""
    def _build(mode=1, exchange_type=1, token="3045", sequence=1, exchange_ts=1_700_000_000_000,
               ltp=250050, quote=None, trailing=b""):
        frame = struct.pack("<BB25sQQQ", mode, exchange_type, token.encode("ascii"), sequence, exchange_ts, ltp)
        if quote is not None:
            frame += struct.pack("<QQQ", *quote)
        return frame + trailing

    return _build
