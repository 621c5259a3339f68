"""
Market Connector - Domain Models.

Normalized market data records produced by the REST client
and the stream decoders. Prices and quantities are Decimal;
timestamps are timezone-aware UTC datetimes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class Interval(Enum):
    """Candlestick interval."""
    S1 = "1s"
    M1 = "1m"
    M3 = "3m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H2 = "2h"
    H4 = "4h"
    H6 = "6h"
    H8 = "8h"
    H12 = "12h"
    D1 = "1d"
    D3 = "3d"
    W1 = "1w"
    MO1 = "1M"

    @property
    def duration_ms(self) -> int:
        """Interval length in milliseconds."""
        return _INTERVAL_MS[self]

    @classmethod
    def parse(cls, value: str) -> "Interval":
        """Parse the exchange string form ("1m", "4h", ...)."""
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Invalid interval: {value}") from None

    def __str__(self) -> str:
        return self.value


_INTERVAL_MS = {
    Interval.S1: 1_000,
    Interval.M1: 60_000,
    Interval.M3: 180_000,
    Interval.M5: 300_000,
    Interval.M15: 900_000,
    Interval.M30: 1_800_000,
    Interval.H1: 3_600_000,
    Interval.H2: 7_200_000,
    Interval.H4: 14_400_000,
    Interval.H6: 21_600_000,
    Interval.H8: 28_800_000,
    Interval.H12: 43_200_000,
    Interval.D1: 86_400_000,
    Interval.D3: 259_200_000,
    Interval.W1: 604_800_000,
    Interval.MO1: 2_592_000_000,
}


@dataclass(frozen=True)
class Ticker:
    """Latest price for a symbol."""
    symbol: str
    price: Decimal
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "symbol": self.symbol,
            "price": str(self.price),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Ticker24h:
    """Rolling 24-hour ticker statistics."""
    symbol: str
    price_change: Decimal
    price_change_percent: Decimal
    weighted_avg_price: Decimal
    prev_close_price: Decimal
    last_price: Decimal
    bid_price: Decimal
    ask_price: Decimal
    open_price: Decimal
    high_price: Decimal
    low_price: Decimal
    volume: Decimal
    quote_volume: Decimal
    open_time: datetime
    close_time: datetime
    first_id: int
    last_id: int
    count: int

    def spread(self) -> Decimal:
        """Ask minus bid."""
        return self.ask_price - self.bid_price

    def mid(self) -> Decimal:
        """Midpoint between bid and ask."""
        return (self.bid_price + self.ask_price) / 2

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "symbol": self.symbol,
            "price_change": str(self.price_change),
            "price_change_percent": str(self.price_change_percent),
            "weighted_avg_price": str(self.weighted_avg_price),
            "prev_close_price": str(self.prev_close_price),
            "last_price": str(self.last_price),
            "bid_price": str(self.bid_price),
            "ask_price": str(self.ask_price),
            "open_price": str(self.open_price),
            "high_price": str(self.high_price),
            "low_price": str(self.low_price),
            "volume": str(self.volume),
            "quote_volume": str(self.quote_volume),
            "open_time": self.open_time.isoformat(),
            "close_time": self.close_time.isoformat(),
            "first_id": self.first_id,
            "last_id": self.last_id,
            "count": self.count,
        }


@dataclass(frozen=True)
class Kline:
    """OHLCV candlestick."""
    symbol: str
    open_time: datetime
    close_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    quote_volume: Decimal
    trades: int
    taker_buy_base: Decimal
    taker_buy_quote: Decimal
    is_closed: bool

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "symbol": self.symbol,
            "open_time": self.open_time.isoformat(),
            "close_time": self.close_time.isoformat(),
            "open": str(self.open),
            "high": str(self.high),
            "low": str(self.low),
            "close": str(self.close),
            "volume": str(self.volume),
            "quote_volume": str(self.quote_volume),
            "trades": self.trades,
            "taker_buy_base": str(self.taker_buy_base),
            "taker_buy_quote": str(self.taker_buy_quote),
            "is_closed": self.is_closed,
        }


@dataclass(frozen=True)
class Trade:
    """Single executed trade."""
    id: int
    symbol: str
    price: Decimal
    quantity: Decimal
    quote_quantity: Decimal
    time: datetime
    is_buyer_maker: bool

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "symbol": self.symbol,
            "price": str(self.price),
            "quantity": str(self.quantity),
            "quote_quantity": str(self.quote_quantity),
            "time": self.time.isoformat(),
            "is_buyer_maker": self.is_buyer_maker,
        }


@dataclass(frozen=True)
class PriceLevel:
    """One order book level."""
    price: Decimal
    quantity: Decimal


@dataclass(frozen=True)
class OrderBook:
    """Order book depth snapshot or update."""
    symbol: str
    last_update_id: int
    bids: List[PriceLevel]
    asks: List[PriceLevel]
    timestamp: datetime

    def best_bid(self) -> Optional[PriceLevel]:
        return self.bids[0] if self.bids else None

    def best_ask(self) -> Optional[PriceLevel]:
        return self.asks[0] if self.asks else None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "symbol": self.symbol,
            "last_update_id": self.last_update_id,
            "bids": [[str(l.price), str(l.quantity)] for l in self.bids],
            "asks": [[str(l.price), str(l.quantity)] for l in self.asks],
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class SymbolInfo:
    """Exchange symbol metadata."""
    symbol: str
    status: str
    base_asset: str
    quote_asset: str
    base_asset_precision: int
    quote_asset_precision: int
    order_types: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "symbol": self.symbol,
            "status": self.status,
            "base_asset": self.base_asset,
            "quote_asset": self.quote_asset,
            "base_asset_precision": self.base_asset_precision,
            "quote_asset_precision": self.quote_asset_precision,
            "order_types": list(self.order_types),
        }


@dataclass(frozen=True)
class RawMessage:
    """Undecoded text payload (combined streams)."""
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text}


DomainEvent = Union[Ticker, Ticker24h, Kline, Trade, OrderBook, RawMessage]
