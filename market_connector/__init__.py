"""
Market Connector Package - Exchange market data client core.

Rate-limited, retrying REST requests and self-healing stream
subscriptions for public market data.

Features:
- Shared token-bucket admission gate for all outgoing requests
- Retry with per-failure-kind exponential backoff
- Supervised streams that reconnect until the consumer leaves
- Bounded, ordered per-subscription channels with backpressure
- Per-kind decoders; malformed frames become non-fatal errors

Quick Start:
    from market_connector import (
        ConnectorConfig,
        MarketDataClient,
        MarketStreamClient,
        Interval,
    )

    async def main():
        config = ConnectorConfig.from_env()

        async with MarketDataClient(config) as client:
            ticker = await client.get_ticker_price("BTCUSDT")
            print(f"{ticker.symbol}: {ticker.price}")

        async with MarketStreamClient(config) as streams:
            handle = streams.kline_stream("BTCUSDT", Interval.M1)
            async for envelope in handle:
                if envelope.ok:
                    print(envelope.event.close)
                else:
                    print(f"skipped frame: {envelope.error}")

Custom Streams:
    handle = streams.subscribe(url, decoder_for(StreamKind.RAW))
"""

from market_connector.channel import EventChannel, SubscriptionHandle
from market_connector.client import MarketDataClient, RawResponse, create_client
from market_connector.config import ConnectorConfig, StreamConfig
from market_connector.decoders import Decoder, Envelope, StreamKind, decoder_for
from market_connector.exceptions import (
    ApiError,
    ClosedError,
    ConfigError,
    ConnectFailureError,
    ConnectionEndedError,
    ConnectorError,
    ProtocolError,
    RateLimitExceeded,
    RequestTimeoutError,
    TransportError,
)
from market_connector.models import (
    DomainEvent,
    Interval,
    Kline,
    OrderBook,
    PriceLevel,
    RawMessage,
    SymbolInfo,
    Ticker,
    Ticker24h,
    Trade,
)
from market_connector.rate_limiter import AdmissionGate, Permit, RateBudget
from market_connector.retry import FailureKind, RetryExecutor, RetryPolicy
from market_connector.streams import MarketStreamClient
from market_connector.supervisor import (
    StreamState,
    StreamSupervisor,
    Subscription,
    connect_with_retry,
)
from market_connector.transport import (
    AiohttpTransport,
    AiohttpTransportFactory,
    Frame,
    FrameType,
    Transport,
    TransportFactory,
)


__version__ = "1.0.0"

__all__ = [
    # Clients
    "MarketDataClient",
    "MarketStreamClient",
    "create_client",
    "RawResponse",
    # Configuration
    "ConnectorConfig",
    "StreamConfig",
    # Admission / retry
    "AdmissionGate",
    "Permit",
    "RateBudget",
    "FailureKind",
    "RetryExecutor",
    "RetryPolicy",
    # Streams
    "EventChannel",
    "SubscriptionHandle",
    "StreamState",
    "StreamSupervisor",
    "Subscription",
    "connect_with_retry",
    # Transport
    "AiohttpTransport",
    "AiohttpTransportFactory",
    "Frame",
    "FrameType",
    "Transport",
    "TransportFactory",
    # Decoding
    "Decoder",
    "Envelope",
    "StreamKind",
    "decoder_for",
    # Models
    "DomainEvent",
    "Interval",
    "Kline",
    "OrderBook",
    "PriceLevel",
    "RawMessage",
    "SymbolInfo",
    "Ticker",
    "Ticker24h",
    "Trade",
    # Exceptions
    "ApiError",
    "ClosedError",
    "ConfigError",
    "ConnectFailureError",
    "ConnectionEndedError",
    "ConnectorError",
    "ProtocolError",
    "RateLimitExceeded",
    "RequestTimeoutError",
    "TransportError",
]
