import json

import pytest
from prometheus_client import CollectorRegistry

from core.monitoring.prometheus_metrics import PrometheusMetricsCollector
from services.market_feed.connection import ConnectionStateMachine, FeedCallbacks
from services.market_feed.exceptions import (
    AlreadyConnectedError,
    ConnectionClosedError,
    CredentialError,
    DecodeError,
    ProtocolError,
    TransportError,
)
from services.market_feed.models import (
    ConnectionState,
    ReconnectionConfig,
    SessionCredentials,
    SubscriptionMode,
)
from services.market_feed.registry import SubscriptionRegistry
from tests.mocks.fake_transport import FakeTransport, FakeTransportFactory
from tests.mocks.manual_clock import settle


HEARTBEAT = 30.0


class Recorder:
    """Collects callback invocations."""

    def __init__(self, client):
        self.connects = 0
        self.disconnects = []
        self.ticks = []
        self.errors = []
        client.on_connect(self._connect)
        client.on_disconnect(self.disconnects.append)
        client.on_data(self.ticks.append)
        client.on_error(self.errors.append)

    def _connect(self):
        self.connects += 1


def _token_lists(transport):
    return [json.loads(frame)["params"] for frame in transport.requests()]


@pytest.mark.asyncio
async def test_connect_opens_transport_and_fires_on_connect(feed_client, transport_factory, credentials):
    recorder = Recorder(feed_client)

    await feed_client.connect(credentials)

    assert feed_client.state is ConnectionState.CONNECTED
    assert recorder.connects == 1
    assert transport_factory.latest.opened
    assert transport_factory.credentials == [credentials]
    # Empty registry: nothing replayed
    assert transport_factory.latest.requests() == []
    await feed_client.disconnect()


@pytest.mark.asyncio
async def test_missing_credentials_open_no_transport(feed_client, transport_factory):
    partial = SessionCredentials(session_token="jwt", feed_token="", api_key="key", client_code=" ")

    with pytest.raises(CredentialError) as info:
        await feed_client.connect(partial)

    assert set(info.value.missing_fields) == {"feed_token", "client_code"}
    assert transport_factory.created == []
    assert feed_client.state is ConnectionState.IDLE


@pytest.mark.asyncio
async def test_connect_while_connected_is_rejected(feed_client, transport_factory, credentials):
    await feed_client.connect(credentials)

    with pytest.raises(AlreadyConnectedError):
        await feed_client.connect(credentials)

    assert len(transport_factory.created) == 1
    await feed_client.disconnect()


@pytest.mark.asyncio
async def test_initial_open_failure_goes_to_failed_without_retry(clock, credentials):
    factory = FakeTransportFactory([FakeTransport(fail_open=True)])
    callbacks = FeedCallbacks()
    errors = []
    callbacks.on_error = errors.append
    machine = ConnectionStateMachine(factory, SubscriptionRegistry(), callbacks, sleep=clock.sleep)

    with pytest.raises(TransportError):
        await machine.connect(credentials)
    await settle()

    assert machine.state is ConnectionState.FAILED
    assert len(errors) == 1
    assert isinstance(errors[0], TransportError)
    assert clock.pending() == 0
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_connect_allowed_again_after_failure(clock, credentials):
    factory = FakeTransportFactory([FakeTransport(fail_open=True)])
    machine = ConnectionStateMachine(factory, SubscriptionRegistry(), FeedCallbacks(), sleep=clock.sleep)

    with pytest.raises(TransportError):
        await machine.connect(credentials)
    await machine.connect(credentials)

    assert machine.state is ConnectionState.CONNECTED
    await machine.disconnect()


@pytest.mark.asyncio
async def test_drop_reconnects_and_replays_subscriptions(feed_client, transport_factory, clock, credentials):
    recorder = Recorder(feed_client)
    await feed_client.connect(credentials)
    await feed_client.subscribe([(1, "3045"), (1, "881")], SubscriptionMode.LTP)
    await feed_client.subscribe([(2, "58662")], SubscriptionMode.QUOTE)
    first = transport_factory.latest

    first.drop(reason="server went away")
    await settle()

    assert feed_client.state is ConnectionState.RECONNECTING
    assert feed_client.reconnect_attempts == 1
    assert len(recorder.disconnects) == 1
    assert "server went away" in recorder.disconnects[0]
    assert len(recorder.errors) == 1
    assert isinstance(recorder.errors[0], ConnectionClosedError)
    assert recorder.errors[0].code == 1006
    assert clock.pending(5.0) == 1

    await clock.fire(5.0)

    second = transport_factory.latest
    assert second is not first
    assert feed_client.state is ConnectionState.CONNECTED
    assert feed_client.reconnect_attempts == 0
    assert recorder.connects == 2
    assert _token_lists(second) == [
        {"mode": 1, "tokenList": [{"exchangeType": 1, "tokens": ["3045", "881"]}]},
        {"mode": 2, "tokenList": [{"exchangeType": 2, "tokens": ["58662"]}]},
    ]
    await feed_client.disconnect()


@pytest.mark.asyncio
async def test_reconnect_gives_up_after_five_attempts(clock, credentials):
    factory = FakeTransportFactory([FakeTransport()] + [FakeTransport(fail_open=True) for _ in range(5)])
    callbacks = FeedCallbacks()
    errors = []
    callbacks.on_error = errors.append
    machine = ConnectionStateMachine(
        factory,
        SubscriptionRegistry(),
        callbacks,
        reconnection=ReconnectionConfig(max_attempts=5, base_delay=5.0),
        heartbeat_interval=HEARTBEAT,
        sleep=clock.sleep,
    )
    await machine.connect(credentials)

    factory.latest.drop()
    await settle()
    for delay in (5.0, 10.0, 15.0, 20.0, 25.0):
        assert clock.pending(delay) == 1
        await clock.fire(delay)

    assert machine.state is ConnectionState.FAILED
    assert [d for d in clock.requested if d != HEARTBEAT] == [5.0, 10.0, 15.0, 20.0, 25.0]
    assert len(factory.created) == 6
    # The drop, one error per failed open, then the final give-up
    assert len(errors) == 7
    assert all(isinstance(e, TransportError) for e in errors)
    assert clock.pending() == 0
    assert machine.stats.reconnect_attempts == 5


@pytest.mark.asyncio
async def test_heartbeat_pings_every_interval(feed_client, transport_factory, clock, credentials):
    await feed_client.connect(credentials)
    await settle()
    transport = transport_factory.latest

    await clock.fire(HEARTBEAT)
    await clock.fire(HEARTBEAT)

    assert transport.pings() == 2
    assert feed_client.stats.heartbeats_sent == 2
    await feed_client.disconnect()


@pytest.mark.asyncio
async def test_no_heartbeat_after_disconnect(feed_client, transport_factory, clock, credentials):
    await feed_client.connect(credentials)
    await settle()
    transport = transport_factory.latest

    await feed_client.disconnect()

    assert clock.pending(HEARTBEAT) == 0
    assert await clock.fire(HEARTBEAT) == 0
    assert transport.pings() == 0
    assert transport.closed


@pytest.mark.asyncio
async def test_heartbeat_resumes_after_failed_ping(feed_client, transport_factory, clock, credentials):
    await feed_client.connect(credentials)
    await settle()
    transport = transport_factory.latest

    transport.fail_send = True
    await clock.fire(HEARTBEAT)
    transport.fail_send = False
    await clock.fire(HEARTBEAT)
    await clock.fire(HEARTBEAT)

    assert feed_client.state is ConnectionState.CONNECTED
    assert transport.pings() == 2
    assert clock.pending(HEARTBEAT) == 1
    await feed_client.disconnect()


@pytest.mark.asyncio
async def test_drop_is_counted_as_feed_error(clock, credentials):
    metrics = PrometheusMetricsCollector(registry=CollectorRegistry())
    factory = FakeTransportFactory()
    machine = ConnectionStateMachine(
        factory, SubscriptionRegistry(), FeedCallbacks(), sleep=clock.sleep, metrics=metrics
    )
    await machine.connect(credentials)

    factory.latest.drop(code=1011, reason="internal error")
    await settle()

    assert metrics.registry.get_sample_value(
        "feed_errors_total", {"source": "smart_stream", "error_type": "ConnectionClosedError"}
    ) == 1
    assert machine.state is ConnectionState.RECONNECTING
    await machine.disconnect()


@pytest.mark.asyncio
async def test_missing_pong_never_disconnects(feed_client, transport_factory, clock, credentials):
    await feed_client.connect(credentials)
    await settle()

    for _ in range(4):
        await clock.fire(HEARTBEAT)

    assert feed_client.state is ConnectionState.CONNECTED
    assert transport_factory.latest.pings() == 4
    await feed_client.disconnect()


@pytest.mark.asyncio
async def test_pong_is_timestamped(feed_client, transport_factory, credentials):
    await feed_client.connect(credentials)
    transport_factory.latest.push("pong")
    await settle()

    assert feed_client.stats.last_pong_time is not None
    await feed_client.disconnect()


@pytest.mark.asyncio
async def test_bad_frames_reach_on_error_and_stream_continues(feed_client, transport_factory, credentials, frame_builder):
    recorder = Recorder(feed_client)
    await feed_client.connect(credentials)
    transport = transport_factory.latest

    transport.push(b"\x01\x01short")
    transport.push(json.dumps({"errorCode": "E1001", "errorMessage": "bad token"}))
    transport.push(frame_builder(token="3045", ltp=250050))
    await settle()

    assert [type(e) for e in recorder.errors] == [DecodeError, ProtocolError]
    assert len(recorder.ticks) == 1
    assert recorder.ticks[0].instrument_token == "3045"
    assert feed_client.state is ConnectionState.CONNECTED
    await feed_client.disconnect()


@pytest.mark.asyncio
async def test_ticks_delivered_in_order(feed_client, transport_factory, credentials, frame_builder):
    recorder = Recorder(feed_client)
    await feed_client.connect(credentials)

    for seq in range(1, 6):
        transport_factory.latest.push(frame_builder(sequence=seq))
    await settle()

    assert [t.sequence_number for t in recorder.ticks] == [1, 2, 3, 4, 5]
    await feed_client.disconnect()


@pytest.mark.asyncio
async def test_raising_callback_does_not_break_feed(feed_client, transport_factory, credentials, frame_builder):
    seen = []

    def flaky(tick):
        seen.append(tick.sequence_number)
        if tick.sequence_number == 1:
            raise RuntimeError("boom")

    feed_client.on_data(flaky)
    await feed_client.connect(credentials)
    transport_factory.latest.push(frame_builder(sequence=1))
    transport_factory.latest.push(frame_builder(sequence=2))
    await settle()

    assert seen == [1, 2]
    assert feed_client.is_connected
    await feed_client.disconnect()


@pytest.mark.asyncio
async def test_disconnect_during_reconnect_wait_cancels_retry(feed_client, transport_factory, clock, credentials):
    await feed_client.connect(credentials)
    transport_factory.latest.drop()
    await settle()
    assert feed_client.state is ConnectionState.RECONNECTING

    await feed_client.disconnect()

    assert feed_client.state is ConnectionState.IDLE
    assert clock.pending() == 0
    await clock.fire(5.0)
    assert len(transport_factory.created) == 1


@pytest.mark.asyncio
async def test_disconnect_clears_registry_and_reports(feed_client, credentials):
    recorder = Recorder(feed_client)
    await feed_client.connect(credentials)
    await feed_client.subscribe([(1, "3045")])

    await feed_client.disconnect()

    assert feed_client.subscriptions == frozenset()
    assert recorder.disconnects == ["client disconnect"]
    assert feed_client.stats.disconnections == 1


@pytest.mark.asyncio
async def test_disconnect_when_idle_is_quiet(feed_client):
    recorder = Recorder(feed_client)
    await feed_client.disconnect()

    assert feed_client.state is ConnectionState.IDLE
    assert recorder.disconnects == []
