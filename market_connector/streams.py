"""
Market Connector - Stream Client.

============================================================
PURPOSE
============================================================
Long-lived market data subscriptions.

subscribe() spawns one supervisor task per subscription and
returns a SubscriptionHandle; the consumer reads envelopes
from it in arrival order. The subscription ends only when the
consumer cancels it, drops its handle, or closes the client.

============================================================
USAGE
============================================================
```python
async with MarketStreamClient(ConnectorConfig.from_env()) as streams:
    handle = streams.kline_stream("BTCUSDT", Interval.M1)
    async for envelope in handle:
        if envelope.ok:
            print(envelope.event.close)
```

============================================================
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, Set, Union

from market_connector.channel import EventChannel, SubscriptionHandle
from market_connector.config import ConnectorConfig
from market_connector.decoders import Decoder, StreamKind, decoder_for
from market_connector.endpoints import StreamNames, combined_stream_url, stream_url
from market_connector.models import Interval
from market_connector.supervisor import StreamSupervisor, Subscription
from market_connector.transport import AiohttpTransportFactory, TransportFactory


logger = logging.getLogger(__name__)


class MarketStreamClient:
    """Spawns and tracks supervised stream subscriptions."""

    def __init__(
        self,
        config: Optional[ConnectorConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize stream client.

        Args:
            config: Connector configuration (defaults if omitted)
            transport_factory: Opens connections; aiohttp
                WebSockets if omitted
            sleep: Sleep function used for connect and reconnect delays

        Raises:
            ConfigError: If the configuration is invalid
        """
        self._config = config or ConnectorConfig()
        self._config.validate()
        self._factory = transport_factory or AiohttpTransportFactory(
            connect_timeout=self._config.timeout_seconds,
        )
        self._sleep = sleep
        self._ws_url = self._config.get_ws_url()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def config(self) -> ConnectorConfig:
        return self._config

    @property
    def active_subscriptions(self) -> int:
        """Supervisor tasks still running."""
        return sum(1 for task in self._tasks if not task.done())

    # --------------------------------------------------------
    # SUBSCRIBE / CANCEL
    # --------------------------------------------------------

    def subscribe(self, target: str, decoder: Decoder) -> SubscriptionHandle:
        """
        Start a supervised subscription.

        Must be called from a running event loop.

        Args:
            target: Stream URL to connect to
            decoder: Decoder applied to every data frame

        Returns:
            Handle from which envelopes are read
        """
        subscription = Subscription(target=target, decoder=decoder)
        channel = EventChannel(self._config.stream.channel_capacity)
        supervisor = StreamSupervisor(
            subscription,
            self._factory,
            channel,
            config=self._config.stream,
            sleep=self._sleep,
        )

        task = asyncio.get_running_loop().create_task(
            supervisor.run(), name=f"stream-{subscription.id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

        logger.info(f"[{subscription.id}] Subscribed to {target} ({decoder.kind.value})")
        return SubscriptionHandle(channel, supervisor, task)

    def cancel(self, handle: SubscriptionHandle) -> None:
        """Cancel a subscription. Cooperative; idempotent."""
        handle.cancel()

    def _on_task_done(self, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Supervisor {task.get_name()} failed: {error!r}")

    # --------------------------------------------------------
    # PER-KIND HELPERS
    # --------------------------------------------------------

    def _subscribe_named(self, stream_name: str, kind: StreamKind, symbol: str) -> SubscriptionHandle:
        return self.subscribe(stream_url(self._ws_url, stream_name), decoder_for(kind, symbol))

    def ticker_stream(self, symbol: str) -> SubscriptionHandle:
        """24-hour rolling ticker updates."""
        return self._subscribe_named(StreamNames.ticker(symbol), StreamKind.TICKER, symbol)

    def mini_ticker_stream(self, symbol: str) -> SubscriptionHandle:
        """Lightweight last-price updates."""
        return self._subscribe_named(StreamNames.mini_ticker(symbol), StreamKind.MINI_TICKER, symbol)

    def kline_stream(self, symbol: str, interval: Union[Interval, str]) -> SubscriptionHandle:
        """Candle updates for one interval."""
        if not isinstance(interval, Interval):
            interval = Interval.parse(interval)
        return self._subscribe_named(StreamNames.kline(symbol, interval), StreamKind.KLINE, symbol)

    def trade_stream(self, symbol: str) -> SubscriptionHandle:
        """Individual public trades."""
        return self._subscribe_named(StreamNames.trade(symbol), StreamKind.TRADE, symbol)

    def depth_stream(self, symbol: str) -> SubscriptionHandle:
        """Order book diff updates."""
        return self._subscribe_named(StreamNames.depth(symbol), StreamKind.DEPTH, symbol)

    def combined_stream(self, streams: Iterable[str]) -> SubscriptionHandle:
        """
        Several named streams over one connection; events arrive as
        raw text, including the {"stream", "data"} wrapper.
        """
        names = list(streams)
        if not names:
            raise ValueError("combined_stream needs at least one stream name")
        base = self._ws_url
        if base.rstrip("/").endswith("/ws"):
            base = base.rstrip("/")[:-len("/ws")]
        return self.subscribe(combined_stream_url(base, names), decoder_for(StreamKind.RAW))

    # --------------------------------------------------------
    # SHUTDOWN
    # --------------------------------------------------------

    async def close(self) -> None:
        """Stop every supervisor and release the transport factory."""
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Stopped {len(tasks)} subscription(s)")
        await self._factory.close()

    async def __aenter__(self) -> "MarketStreamClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
