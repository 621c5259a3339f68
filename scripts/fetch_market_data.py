"""
Fetch demo for the REST market data client.

Demonstrates:
- Ticker, 24h statistics and klines
- Order book snapshot and recent trades
- Admission budget status
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from market_connector import (
    ConnectorConfig,
    ConnectorError,
    Interval,
    Kline,
    MarketDataClient,
)


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-5s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

SYMBOL = "BTCUSDT"


def print_banner(text: str) -> None:
    """Print a banner."""
    print("\n" + "=" * 60)
    print(f"  {text}")
    print("=" * 60)


def print_kline(kline: Kline) -> None:
    """Print a candle."""
    print(
        f"  {kline.open_time.strftime('%Y-%m-%d %H:%M')} | "
        f"O: {kline.open:>10} | H: {kline.high:>10} | "
        f"L: {kline.low:>10} | C: {kline.close:>10} | "
        f"V: {kline.volume:>12}"
    )


async def show_prices(client: MarketDataClient) -> None:
    print_banner(f"PRICES: {SYMBOL}")

    ticker = await client.get_ticker_price(SYMBOL)
    print(f"\nLast price: {ticker.price}")

    stats = await client.get_ticker_24h(SYMBOL)
    print(f"24h change: {stats.price_change_percent}%")
    print(f"24h high/low: {stats.high_price} / {stats.low_price}")
    print(f"Spread: {stats.spread()} (mid {stats.mid()})")


async def show_klines(client: MarketDataClient) -> None:
    print_banner(f"KLINES: {SYMBOL} 1h")

    klines = await client.get_klines(SYMBOL, Interval.H1, 5)
    print(f"\nReceived {len(klines)} candles:")
    for kline in klines:
        print_kline(kline)


async def show_book_and_trades(client: MarketDataClient) -> None:
    print_banner(f"ORDER BOOK AND TRADES: {SYMBOL}")

    book = await client.get_depth(SYMBOL, 5)
    if book.best_bid and book.best_ask:
        print(f"\nBest bid: {book.best_bid.price} x {book.best_bid.quantity}")
        print(f"Best ask: {book.best_ask.price} x {book.best_ask.quantity}")

    trades = await client.get_recent_trades(SYMBOL, 5)
    print(f"\nLast {len(trades)} trades:")
    for trade in trades:
        side = "SELL" if trade.is_buyer_maker else "BUY"
        print(f"  {trade.time.strftime('%H:%M:%S')} {side:<4} {trade.quantity} @ {trade.price}")


async def main():
    """Run the demo."""
    config = ConnectorConfig.from_env(Path(".env"))

    async with MarketDataClient(config) as client:
        if not await client.health_check():
            logger.error("Exchange is unreachable")
            return

        try:
            await show_prices(client)
            await show_klines(client)
            await show_book_and_trades(client)
        except ConnectorError as e:
            logger.error(f"Request failed: {e}", exc_info=True)
            raise

        print_banner("ADMISSION BUDGET")
        for key, value in client.get_rate_limit_status().items():
            print(f"  {key}: {value}")


if __name__ == "__main__":
    asyncio.run(main())
