"""
Stream demo for supervised subscriptions.

Demonstrates:
- Trade and kline subscriptions side by side
- Decode errors arriving as envelopes
- Cancelling a subscription and closing the client

Usage:
    python scripts/stream_market_data.py [SYMBOL] [EVENTS]
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from market_connector import (
    ConnectorConfig,
    Interval,
    Kline,
    MarketStreamClient,
    SubscriptionHandle,
    Trade,
)


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-5s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def describe(event) -> str:
    if isinstance(event, Trade):
        side = "SELL" if event.is_buyer_maker else "BUY"
        return f"trade {event.symbol} {side:<4} {event.quantity} @ {event.price}"
    if isinstance(event, Kline):
        state = "closed" if event.is_closed else "open"
        return f"kline {event.symbol} C: {event.close} V: {event.volume} ({state})"
    return repr(event)


async def consume(name: str, handle: SubscriptionHandle, limit: int) -> None:
    """Print up to `limit` entries from one subscription."""
    received = 0
    async for envelope in handle:
        if envelope.ok:
            print(f"  [{name}] {describe(envelope.event)}")
        else:
            logger.warning(f"[{name}] {envelope.error.message}")
        received += 1
        if received >= limit:
            break
    handle.cancel()


async def main():
    """Run the demo."""
    symbol = sys.argv[1] if len(sys.argv) > 1 else "BTCUSDT"
    limit = int(sys.argv[2]) if len(sys.argv) > 2 else 10

    config = ConnectorConfig.from_env(Path(".env"))

    async with MarketStreamClient(config) as streams:
        trades = streams.trade_stream(symbol)
        klines = streams.kline_stream(symbol, Interval.M1)

        print(f"\nStreaming {limit} events per subscription for {symbol}...")
        await asyncio.gather(
            consume("trades", trades, limit),
            consume("klines", klines, limit),
        )

        await trades.wait_closed()
        await klines.wait_closed()
        print(f"\nActive subscriptions left: {streams.active_subscriptions}")


if __name__ == "__main__":
    asyncio.run(main())
