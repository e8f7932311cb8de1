import asyncio
from decimal import Decimal

import pytest

from core.config.settings import AngelSettings
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector
from prometheus_client import CollectorRegistry
from services.market_feed.client import SmartStreamClient
from services.market_feed.exceptions import CredentialError, TransportError
from services.market_feed.models import ConnectionState, ReconnectionConfig
from services.market_feed.service import MarketFeedService
from tests.mocks.fake_transport import FakeTransport, FakeTransportFactory
from tests.mocks.manual_clock import settle


class CollectingSink:
    def __init__(self):
        self.rows = []

    async def __call__(self, row):
        self.rows.append(row)


@pytest.mark.asyncio
async def test_start_subscribes_watchlist(test_settings, feed_client, transport_factory):
    service = MarketFeedService(test_settings, sink=CollectingSink(), client=feed_client)

    await service.start()

    assert feed_client.state is ConnectionState.CONNECTED
    assert len(feed_client.subscriptions) == 2
    assert len(transport_factory.latest.requests()) == 1
    assert service.metrics.instruments_subscribed == 2
    await service.stop()


@pytest.mark.asyncio
async def test_ticks_flow_to_sink_as_rows(test_settings, feed_client, transport_factory, frame_builder):
    sink = CollectingSink()
    metrics = PrometheusMetricsCollector(registry=CollectorRegistry(), settings=test_settings)
    service = MarketFeedService(test_settings, sink=sink, client=feed_client, prometheus_metrics=metrics)
    await service.start()

    transport_factory.latest.push(frame_builder(token="3045", ltp=250050))
    transport_factory.latest.push(frame_builder(token="881", ltp=123400, sequence=2))
    await settle()

    assert [row["symbol"] for row in sink.rows] == ["SBIN", "RELIANCE"]
    assert sink.rows[0]["exchange"] == "NSE"
    assert sink.rows[0]["ltp"] == Decimal("2500.50")
    assert service.metrics.ticks_received == 2
    assert service.metrics.ticks_processed == 2
    count = metrics.registry.get_sample_value(
        "market_tick_processing_latency_seconds_count", {"service": "market_feed"}
    )
    assert count == 2
    await service.stop()


@pytest.mark.asyncio
async def test_full_queue_drops_ticks(test_settings, feed_client, transport_factory, frame_builder):
    test_settings.market_feed.queue_maxsize = 1
    release = asyncio.Event()

    async def slow_sink(row):
        await release.wait()

    service = MarketFeedService(test_settings, sink=slow_sink, client=feed_client)
    await service.start()

    for seq in range(1, 4):
        transport_factory.latest.push(frame_builder(sequence=seq))
    await settle()
    release.set()
    await settle()

    assert service.metrics.ticks_received == 3
    assert service.metrics.ticks_dropped >= 1
    assert service.metrics.ticks_processed + service.metrics.ticks_dropped == 3
    await service.stop()


@pytest.mark.asyncio
async def test_sink_failure_is_counted_and_processing_continues(test_settings, feed_client, transport_factory, frame_builder):
    rows = []

    async def flaky_sink(row):
        if row["sequence_number"] == 1:
            raise RuntimeError("store unavailable")
        rows.append(row)

    service = MarketFeedService(test_settings, sink=flaky_sink, client=feed_client)
    await service.start()

    transport_factory.latest.push(frame_builder(sequence=1))
    transport_factory.latest.push(frame_builder(sequence=2))
    await settle()

    assert service.metrics.sink_failures == 1
    assert [row["sequence_number"] for row in rows] == [2]
    await service.stop()


@pytest.mark.asyncio
async def test_decode_errors_are_counted(test_settings, feed_client, transport_factory):
    service = MarketFeedService(test_settings, sink=CollectingSink(), client=feed_client)
    await service.start()

    transport_factory.latest.push(b"\x00" * 10)
    transport_factory.latest.push('{"errorCode": "E1002", "errorMessage": "Invalid Request"}')
    await settle()

    assert service.metrics.decode_errors == 1
    assert service.metrics.protocol_errors == 1
    assert feed_client.is_connected
    await service.stop()


@pytest.mark.asyncio
async def test_missing_credentials_stop_startup(test_settings, feed_client, transport_factory):
    test_settings.angel = AngelSettings(api_key="key", client_code="A1", jwt_token="jwt", feed_token="")
    service = MarketFeedService(test_settings, sink=CollectingSink(), client=feed_client)

    with pytest.raises(CredentialError):
        await service.start()

    assert transport_factory.created == []


@pytest.mark.asyncio
async def test_initial_connect_failure_propagates(test_settings, clock):
    factory = FakeTransportFactory([FakeTransport(fail_open=True)])
    client = SmartStreamClient(transport_factory=factory, sleep=clock.sleep)
    service = MarketFeedService(test_settings, sink=CollectingSink(), client=client)

    with pytest.raises(TransportError):
        await service.start()

    assert not service._running
    await asyncio.wait_for(service.wait_until_stopped(), timeout=1)


@pytest.mark.asyncio
async def test_service_stops_when_reconnection_is_exhausted(test_settings, clock):
    factory = FakeTransportFactory([FakeTransport(), FakeTransport(fail_open=True)])
    client = SmartStreamClient(
        transport_factory=factory,
        reconnection=ReconnectionConfig(max_attempts=1, base_delay=5.0),
        sleep=clock.sleep,
    )
    service = MarketFeedService(test_settings, sink=CollectingSink(), client=client)
    await service.start()

    factory.latest.drop()
    await settle()
    await clock.fire(5.0)

    assert client.state is ConnectionState.FAILED
    await asyncio.wait_for(service.wait_until_stopped(), timeout=1)
    await service.stop()


@pytest.mark.asyncio
async def test_health_check_reports_status(test_settings, feed_client):
    service = MarketFeedService(test_settings, sink=CollectingSink(), client=feed_client)
    await service.start()

    health = await service.health_check()
    assert health["status"] == "healthy"
    assert health["metrics"]["connection_status"] == "connected"
    assert health["metrics"]["instruments_subscribed"] == 2

    await service.stop()
    health = await service.health_check()
    assert health["status"] == "unhealthy"
    assert "Service not running" in health["issues"]
