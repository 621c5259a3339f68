"""
Market Connector - Endpoint Definitions.

REST paths and WebSocket stream names.
"""

from typing import Iterable

from market_connector.models import Interval


class Endpoints:
    """REST API paths (GET)."""

    TICKER_PRICE = "/api/v3/ticker/price"
    TICKER_24H = "/api/v3/ticker/24hr"
    KLINES = "/api/v3/klines"
    DEPTH = "/api/v3/depth"
    TRADES = "/api/v3/trades"
    EXCHANGE_INFO = "/api/v3/exchangeInfo"
    TIME = "/api/v3/time"
    PING = "/api/v3/ping"


class StreamNames:
    """WebSocket stream names, appended to the ws base URL."""

    @staticmethod
    def ticker(symbol: str) -> str:
        return f"{symbol.lower()}@ticker"

    @staticmethod
    def mini_ticker(symbol: str) -> str:
        return f"{symbol.lower()}@miniTicker"

    @staticmethod
    def kline(symbol: str, interval: Interval) -> str:
        return f"{symbol.lower()}@kline_{interval.value}"

    @staticmethod
    def trade(symbol: str) -> str:
        return f"{symbol.lower()}@trade"

    @staticmethod
    def depth(symbol: str) -> str:
        return f"{symbol.lower()}@depth"


def stream_url(ws_url: str, stream_name: str) -> str:
    """Single-stream URL: <ws_url>/<stream>."""
    return f"{ws_url.rstrip('/')}/{stream_name}"


def combined_stream_url(ws_url: str, streams: Iterable[str]) -> str:
    """Combined-stream URL: <ws_url>/stream?streams=a/b/c."""
    return f"{ws_url.rstrip('/')}/stream?streams={'/'.join(streams)}"
