"""
Stream Supervisor Tests.

============================================================
PURPOSE
============================================================
Supervised subscriptions over scripted in-memory transports.

TEST CATEGORIES:
- Connect retry schedule
- Ordered delivery across reconnects
- Ping handling
- Malformed frames and receive loop failures
- Idle watchdog
- Backpressure
- Consumer cancellation and handle drop
- Channel semantics

Sleep is injected and recorded, so no test waits on real
backoff delays.

============================================================
"""

import asyncio
import gc
import itertools
import json
import logging

import pytest

from market_connector.channel import EventChannel
from market_connector.config import ConnectorConfig, StreamConfig
from market_connector.decoders import Decoder, StreamKind, decoder_for
from market_connector.exceptions import (
    ClosedError,
    ConnectFailureError,
    ConnectionEndedError,
    ProtocolError,
    TransportError,
)
from market_connector.streams import MarketStreamClient
from market_connector.supervisor import StreamState, connect_with_retry
from market_connector.transport import Frame, FrameType, Transport, TransportFactory


# ============================================================
# FAKES
# ============================================================

class ScriptedTransport(Transport):
    """
    Replays scripted frames (or raises scripted errors). Once the
    script is exhausted, receive() blocks until close().
    """

    def __init__(self, url, frames):
        self._url = url
        self._frames = iter(frames)
        self._closed = asyncio.Event()
        self.reads = 0
        self.pongs = []
        self.close_calls = 0

    @property
    def url(self):
        return self._url

    @property
    def closed(self):
        return self._closed.is_set()

    async def receive(self):
        self.reads += 1
        await asyncio.sleep(0)
        if self._closed.is_set():
            raise TransportError("receive on closed transport", url=self._url)
        try:
            item = next(self._frames)
        except StopIteration:
            await self._closed.wait()
            return Frame.close(1000)
        if isinstance(item, Exception):
            raise item
        return item

    async def send_pong(self, data=b""):
        self.pongs.append(data)

    async def close(self):
        self.close_calls += 1
        self._closed.set()


class ScriptedFactory(TransportFactory):
    """One script per open() call; an Exception entry fails that open."""

    def __init__(self, *scripts):
        self._scripts = list(scripts)
        self.opened = []
        self.open_calls = 0
        self.closed = False

    async def open(self, url):
        self.open_calls += 1
        if not self._scripts:
            await asyncio.Event().wait()
        item = self._scripts.pop(0)
        if isinstance(item, Exception):
            raise item
        transport = ScriptedTransport(url, item)
        self.opened.append(transport)
        return transport

    async def close(self):
        self.closed = True


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)
        await asyncio.sleep(0)


class FailingDecoder(Decoder):
    """Raw decoder that blows up on the payload "boom"."""

    def decode(self, payload):
        if payload == "boom":
            raise RuntimeError("decoder bug")
        return super().decode(payload)


def texts(*values):
    return [Frame.text(v) for v in values]


def counting_frames():
    return (Frame.text(str(i)) for i in itertools.count())


async def recv(handle, timeout=1.0):
    return await asyncio.wait_for(handle.recv(), timeout)


async def wait_until(predicate, timeout=1.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0)
    await asyncio.wait_for(poll(), timeout)


def make_streams(factory, sleep, **stream_overrides):
    config = ConnectorConfig(stream=StreamConfig(**stream_overrides))
    return MarketStreamClient(config, transport_factory=factory, sleep=sleep)


RAW = decoder_for(StreamKind.RAW)
TARGET = "wss://example.test/ws/btcusdt@trade"


# ============================================================
# CONNECT WITH RETRY
# ============================================================

class TestConnectWithRetry:
    """Tests for connect_with_retry."""

    @pytest.mark.asyncio
    async def test_exponential_schedule_then_failure(self):
        failures = [ConnectFailureError(f"refused {i}", url=TARGET) for i in range(5)]
        factory = ScriptedFactory(*failures)
        sleep = RecordingSleep()

        with pytest.raises(ConnectFailureError) as exc_info:
            await connect_with_retry(factory, TARGET, sleep=sleep)

        assert factory.open_calls == 5
        assert sleep.calls == [1.0, 2.0, 4.0, 8.0]
        assert exc_info.value.attempts == 5

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        factory = ScriptedFactory(ConnectFailureError("refused"), [])
        sleep = RecordingSleep()

        transport = await connect_with_retry(factory, TARGET, sleep=sleep)

        assert transport is factory.opened[0]
        assert sleep.calls == [1.0]


# ============================================================
# SUPERVISED DELIVERY
# ============================================================

class TestSupervisedDelivery:
    """Tests for delivery through StreamSupervisor."""

    @pytest.mark.asyncio
    async def test_order_preserved_across_reconnect(self):
        factory = ScriptedFactory(
            texts("1", "2", "3") + [Frame.close(1001)],
            texts("4", "5", "6"),
        )
        sleep = RecordingSleep()
        streams = make_streams(factory, sleep)

        handle = streams.subscribe(TARGET, RAW)
        received = [(await recv(handle)).event.text for _ in range(6)]

        assert received == ["1", "2", "3", "4", "5", "6"]
        assert sleep.calls == [5.0]
        assert factory.open_calls == 2
        assert factory.opened[0].closed
        assert handle.state == StreamState.ACTIVE

        await streams.close()

    @pytest.mark.asyncio
    async def test_transport_error_triggers_reconnect(self):
        factory = ScriptedFactory(
            texts("a") + [TransportError("reset by peer")],
            texts("b"),
        )
        sleep = RecordingSleep()
        streams = make_streams(factory, sleep)

        handle = streams.subscribe(TARGET, RAW)

        assert (await recv(handle)).event.text == "a"
        assert (await recv(handle)).event.text == "b"
        assert sleep.calls == [5.0]

        await streams.close()

    @pytest.mark.asyncio
    async def test_connect_exhaustion_backs_off_and_retries(self):
        failures = [ConnectFailureError(f"refused {i}") for i in range(5)]
        factory = ScriptedFactory(*failures, texts("late"))
        sleep = RecordingSleep()
        streams = make_streams(factory, sleep)

        handle = streams.subscribe(TARGET, RAW)

        assert (await recv(handle)).event.text == "late"
        assert sleep.calls == [1.0, 2.0, 4.0, 8.0, 5.0]

        await streams.close()

    @pytest.mark.asyncio
    async def test_ping_answered_with_pong(self):
        factory = ScriptedFactory([Frame.ping(b"hb"), Frame.text("after")])
        streams = make_streams(factory, RecordingSleep())

        handle = streams.subscribe(TARGET, RAW)

        assert (await recv(handle)).event.text == "after"
        assert factory.opened[0].pongs == [b"hb"]

        await streams.close()

    @pytest.mark.asyncio
    async def test_malformed_frame_is_not_fatal(self):
        trade = {"e": "trade", "s": "BTCUSDT", "t": 1, "p": "1.0", "q": "2.0", "T": 1700000000000, "m": False}
        factory = ScriptedFactory(texts(json.dumps(trade), "{broken", json.dumps({**trade, "t": 2})))
        streams = make_streams(factory, RecordingSleep())

        handle = streams.subscribe(TARGET, decoder_for(StreamKind.TRADE, "BTCUSDT"))
        first, second, third = [await recv(handle) for _ in range(3)]

        assert first.unwrap().id == 1
        assert isinstance(second.error, ProtocolError)
        assert third.unwrap().id == 2
        assert factory.open_calls == 1

        await streams.close()

    @pytest.mark.asyncio
    async def test_corrupt_binary_frame_is_not_fatal(self):
        corrupt = b"\x1f\x8b\x08\x00\x00\x00\x00\x00\x00\xff" + b"\xff" * 16
        factory = ScriptedFactory([Frame(FrameType.BINARY, corrupt), Frame.text("ok")])
        streams = make_streams(factory, RecordingSleep())

        handle = streams.subscribe(TARGET, decoder_for(StreamKind.RAW))
        bad = await recv(handle)
        good = await recv(handle)

        assert isinstance(bad.error, ProtocolError)
        assert good.event.text == "ok"
        assert factory.open_calls == 1

        await streams.close()

    @pytest.mark.asyncio
    async def test_receive_loop_failure_reconnects(self):
        factory = ScriptedFactory(texts("boom", "lost"), texts("after"))
        sleep = RecordingSleep()
        streams = make_streams(factory, sleep)

        handle = streams.subscribe(TARGET, FailingDecoder(StreamKind.RAW))

        assert (await recv(handle)).event.text == "after"
        assert factory.opened[0].closed
        assert sleep.calls == [5.0]
        assert not handle.closed

        await streams.close()

    @pytest.mark.asyncio
    async def test_idle_connection_reconnects(self):
        factory = ScriptedFactory([], texts("after"))
        sleep = RecordingSleep()
        streams = make_streams(factory, sleep, idle_timeout_seconds=0.01)

        handle = streams.subscribe(TARGET, RAW)

        assert (await recv(handle)).event.text == "after"
        assert factory.opened[0].close_calls == 1
        assert sleep.calls[0] == 5.0
        assert factory.open_calls >= 2

        await streams.close()

    @pytest.mark.asyncio
    async def test_supervisor_crash_is_logged(self, caplog):
        caplog.set_level(logging.ERROR, logger="market_connector.streams")
        factory = ScriptedFactory(RuntimeError("factory bug"))
        streams = make_streams(factory, RecordingSleep())

        handle = streams.subscribe(TARGET, RAW)
        await wait_until(lambda: any("factory bug" in r.getMessage() for r in caplog.records))

        assert handle.closed
        with pytest.raises(ClosedError):
            await recv(handle)

        await streams.close()

    @pytest.mark.asyncio
    async def test_connection_errors_emitted_when_enabled(self):
        factory = ScriptedFactory([Frame.close(1006)], texts("next"))
        streams = make_streams(factory, RecordingSleep(), emit_connection_errors=True)

        handle = streams.subscribe(TARGET, RAW)
        lost = await recv(handle)

        assert isinstance(lost.error, ConnectionEndedError)
        assert lost.error.close_code == 1006
        assert (await recv(handle)).event.text == "next"

        await streams.close()


# ============================================================
# BACKPRESSURE AND CANCELLATION
# ============================================================

class TestBackpressureAndCancellation:
    """Tests for bounded delivery and consumer-driven shutdown."""

    @pytest.mark.asyncio
    async def test_full_channel_blocks_reads(self):
        factory = ScriptedFactory(counting_frames())
        streams = make_streams(factory, RecordingSleep(), channel_capacity=2)

        handle = streams.subscribe(TARGET, RAW)
        await wait_until(lambda: handle.pending() == 2)
        for _ in range(20):
            await asyncio.sleep(0)

        transport = factory.opened[0]
        assert handle.pending() == 2
        assert transport.reads <= 3

        received = [(await recv(handle)).event.text for _ in range(5)]
        assert received == ["0", "1", "2", "3", "4"]

        await streams.close()

    @pytest.mark.asyncio
    async def test_cancel_releases_transport(self):
        factory = ScriptedFactory(counting_frames())
        streams = make_streams(factory, RecordingSleep(), channel_capacity=4)

        handle = streams.subscribe(TARGET, RAW)
        await recv(handle)
        await recv(handle)

        streams.cancel(handle)
        await asyncio.wait_for(handle.wait_closed(), 1.0)

        transport = factory.opened[0]
        reads_at_close = transport.reads
        for _ in range(20):
            await asyncio.sleep(0)

        assert transport.closed
        assert transport.reads == reads_at_close
        assert transport.reads <= 2 + 4 + 2
        assert handle.state == StreamState.CLOSED
        assert factory.open_calls == 1
        assert streams.active_subscriptions == 0

    @pytest.mark.asyncio
    async def test_dropping_handle_stops_supervisor(self):
        factory = ScriptedFactory(counting_frames())
        streams = make_streams(factory, RecordingSleep(), channel_capacity=4)

        handle = streams.subscribe(TARGET, RAW)
        await recv(handle)
        del handle
        gc.collect()

        await wait_until(lambda: streams.active_subscriptions == 0)

        transport = factory.opened[0]
        assert transport.closed
        assert transport.close_calls == 1
        assert factory.open_calls == 1

    @pytest.mark.asyncio
    async def test_buffered_events_drain_after_cancel(self):
        factory = ScriptedFactory(texts("x", "y"))
        streams = make_streams(factory, RecordingSleep())

        handle = streams.subscribe(TARGET, RAW)
        await wait_until(lambda: handle.pending() == 2)
        handle.cancel()

        assert [envelope.event.text async for envelope in handle] == ["x", "y"]
        with pytest.raises(ClosedError):
            await handle.recv()

        await streams.close()

    @pytest.mark.asyncio
    async def test_client_close_stops_all_subscriptions(self):
        factory = ScriptedFactory(counting_frames(), counting_frames())
        streams = make_streams(factory, RecordingSleep())

        first = streams.subscribe(TARGET, RAW)
        second = streams.subscribe(TARGET, RAW)
        await recv(first)
        await recv(second)

        await streams.close()

        assert first.state == StreamState.CLOSED
        assert second.state == StreamState.CLOSED
        assert all(t.closed for t in factory.opened)
        assert factory.closed


# ============================================================
# CHANNEL
# ============================================================

class TestEventChannel:
    """Tests for EventChannel."""

    @pytest.mark.asyncio
    async def test_send_on_closed_channel_raises(self):
        channel = EventChannel(1)
        channel.close()

        with pytest.raises(ClosedError):
            await channel.send("x")

    @pytest.mark.asyncio
    async def test_blocked_send_released_by_close(self):
        channel = EventChannel(1)
        await channel.send("first")

        pending = asyncio.ensure_future(channel.send("second"))
        await asyncio.sleep(0)
        assert not pending.done()

        channel.close()
        with pytest.raises(ClosedError):
            await asyncio.wait_for(pending, 1.0)

    @pytest.mark.asyncio
    async def test_blocked_recv_released_by_close(self):
        channel = EventChannel(1)

        pending = asyncio.ensure_future(channel.recv())
        await asyncio.sleep(0)
        channel.close()

        with pytest.raises(ClosedError):
            await asyncio.wait_for(pending, 1.0)

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            EventChannel(0)
