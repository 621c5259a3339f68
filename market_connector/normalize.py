"""
Market Connector - Payload Normalization.

Maps REST responses and stream payloads (already parsed from
JSON) onto the domain records in models.py. Numeric strings
become Decimal, epoch milliseconds become UTC datetimes.

Every mapper raises ProtocolError on malformed input and
nothing else.
"""

import functools
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Sequence, TypeVar

from market_connector.exceptions import ProtocolError
from market_connector.models import (
    Kline,
    OrderBook,
    PriceLevel,
    SymbolInfo,
    Ticker,
    Ticker24h,
    Trade,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAPPING_ERRORS = (KeyError, IndexError, TypeError, ValueError, ArithmeticError, OSError)


def _mapper(func: Callable[..., T]) -> Callable[..., T]:
    """Turn any shape/parse failure inside a mapper into ProtocolError."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> T:
        try:
            return func(*args, **kwargs)
        except ProtocolError:
            raise
        except _MAPPING_ERRORS as e:
            payload = args[-1] if args else None
            raise ProtocolError(
                f"{func.__name__}: malformed payload ({e.__class__.__name__}: {e})",
                payload=payload,
                original_error=e,
            ) from e

    return wrapper


def to_decimal(value: Any) -> Decimal:
    """Parse a numeric string (or number) into Decimal."""
    if isinstance(value, bool) or value is None:
        raise TypeError(f"not a number: {value!r}")
    result = Decimal(str(value))
    if not result.is_finite():
        raise ValueError(f"non-finite number: {value!r}")
    return result


def ms_to_datetime(value: Any) -> datetime:
    """Epoch milliseconds to a timezone-aware UTC datetime."""
    if isinstance(value, bool):
        raise TypeError(f"not a timestamp: {value!r}")
    return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)


def _levels(rows: Sequence[Sequence[Any]]) -> List[PriceLevel]:
    return [PriceLevel(price=to_decimal(row[0]), quantity=to_decimal(row[1])) for row in rows]


def _require_mapping(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise TypeError(f"expected object, got {type(data).__name__}")
    return data


# ============================================================
# REST RESPONSES
# ============================================================

@_mapper
def ticker_from_rest(data: Dict[str, Any]) -> Ticker:
    """/api/v3/ticker/price entry."""
    data = _require_mapping(data)
    return Ticker(
        symbol=str(data["symbol"]),
        price=to_decimal(data["price"]),
        timestamp=datetime.now(timezone.utc),
    )


@_mapper
def ticker_24h_from_rest(data: Dict[str, Any]) -> Ticker24h:
    """/api/v3/ticker/24hr response."""
    data = _require_mapping(data)
    return Ticker24h(
        symbol=str(data["symbol"]),
        price_change=to_decimal(data["priceChange"]),
        price_change_percent=to_decimal(data["priceChangePercent"]),
        weighted_avg_price=to_decimal(data["weightedAvgPrice"]),
        prev_close_price=to_decimal(data["prevClosePrice"]),
        last_price=to_decimal(data["lastPrice"]),
        bid_price=to_decimal(data["bidPrice"]),
        ask_price=to_decimal(data["askPrice"]),
        open_price=to_decimal(data["openPrice"]),
        high_price=to_decimal(data["highPrice"]),
        low_price=to_decimal(data["lowPrice"]),
        volume=to_decimal(data["volume"]),
        quote_volume=to_decimal(data["quoteVolume"]),
        open_time=ms_to_datetime(data["openTime"]),
        close_time=ms_to_datetime(data["closeTime"]),
        first_id=int(data["firstId"]),
        last_id=int(data["lastId"]),
        count=int(data["count"]),
    )


@_mapper
def kline_from_rest(symbol: str, row: Sequence[Any]) -> Kline:
    """
    /api/v3/klines row:
    [open_time, open, high, low, close, volume, close_time,
     quote_volume, trades, taker_buy_base, taker_buy_quote, ignore]
    """
    if not isinstance(row, (list, tuple)):
        raise TypeError(f"expected kline array, got {type(row).__name__}")
    return Kline(
        symbol=symbol,
        open_time=ms_to_datetime(row[0]),
        close_time=ms_to_datetime(row[6]),
        open=to_decimal(row[1]),
        high=to_decimal(row[2]),
        low=to_decimal(row[3]),
        close=to_decimal(row[4]),
        volume=to_decimal(row[5]),
        quote_volume=to_decimal(row[7]),
        trades=int(row[8]),
        taker_buy_base=to_decimal(row[9]),
        taker_buy_quote=to_decimal(row[10]),
        is_closed=True,
    )


@_mapper
def order_book_from_rest(symbol: str, data: Dict[str, Any]) -> OrderBook:
    """/api/v3/depth response."""
    data = _require_mapping(data)
    return OrderBook(
        symbol=symbol,
        last_update_id=int(data["lastUpdateId"]),
        bids=_levels(data["bids"]),
        asks=_levels(data["asks"]),
        timestamp=datetime.now(timezone.utc),
    )


@_mapper
def trade_from_rest(symbol: str, data: Dict[str, Any]) -> Trade:
    """/api/v3/trades entry."""
    data = _require_mapping(data)
    return Trade(
        id=int(data["id"]),
        symbol=symbol,
        price=to_decimal(data["price"]),
        quantity=to_decimal(data["qty"]),
        quote_quantity=to_decimal(data["quoteQty"]),
        time=ms_to_datetime(data["time"]),
        is_buyer_maker=bool(data["isBuyerMaker"]),
    )


@_mapper
def symbol_info_from_rest(data: Dict[str, Any]) -> SymbolInfo:
    """/api/v3/exchangeInfo symbols[] entry."""
    data = _require_mapping(data)
    return SymbolInfo(
        symbol=str(data["symbol"]),
        status=str(data["status"]),
        base_asset=str(data["baseAsset"]),
        quote_asset=str(data["quoteAsset"]),
        base_asset_precision=int(data["baseAssetPrecision"]),
        quote_asset_precision=int(data["quoteAssetPrecision"]),
        order_types=[str(t) for t in data.get("orderTypes", [])],
    )


# ============================================================
# STREAM PAYLOADS
# ============================================================

@_mapper
def ticker_24h_from_stream(data: Dict[str, Any]) -> Ticker24h:
    """<symbol>@ticker event."""
    data = _require_mapping(data)
    return Ticker24h(
        symbol=str(data["s"]),
        price_change=to_decimal(data["p"]),
        price_change_percent=to_decimal(data["P"]),
        weighted_avg_price=to_decimal(data["w"]),
        prev_close_price=to_decimal(data["x"]),
        last_price=to_decimal(data["c"]),
        bid_price=to_decimal(data["b"]),
        ask_price=to_decimal(data["a"]),
        open_price=to_decimal(data["o"]),
        high_price=to_decimal(data["h"]),
        low_price=to_decimal(data["l"]),
        volume=to_decimal(data["v"]),
        quote_volume=to_decimal(data["q"]),
        open_time=ms_to_datetime(data["O"]),
        close_time=ms_to_datetime(data["C"]),
        first_id=int(data["F"]),
        last_id=int(data["L"]),
        count=int(data["n"]),
    )


@_mapper
def mini_ticker_from_stream(data: Dict[str, Any]) -> Ticker:
    """<symbol>@miniTicker event."""
    data = _require_mapping(data)
    return Ticker(
        symbol=str(data["s"]),
        price=to_decimal(data["c"]),
        timestamp=ms_to_datetime(data["E"]),
    )


@_mapper
def kline_from_stream(symbol: str, data: Dict[str, Any]) -> Kline:
    """<symbol>@kline_<interval> event."""
    k = _require_mapping(_require_mapping(data)["k"])
    return Kline(
        symbol=symbol,
        open_time=ms_to_datetime(k["t"]),
        close_time=ms_to_datetime(k["T"]),
        open=to_decimal(k["o"]),
        high=to_decimal(k["h"]),
        low=to_decimal(k["l"]),
        close=to_decimal(k["c"]),
        volume=to_decimal(k["v"]),
        quote_volume=to_decimal(k["q"]),
        trades=int(k["n"]),
        taker_buy_base=to_decimal(k["V"]),
        taker_buy_quote=to_decimal(k["Q"]),
        is_closed=bool(k["x"]),
    )


@_mapper
def trade_from_stream(symbol: str, data: Dict[str, Any]) -> Trade:
    """<symbol>@trade event. Quote quantity is price * quantity."""
    data = _require_mapping(data)
    price = to_decimal(data["p"])
    quantity = to_decimal(data["q"])
    return Trade(
        id=int(data["t"]),
        symbol=symbol,
        price=price,
        quantity=quantity,
        quote_quantity=price * quantity,
        time=ms_to_datetime(data["T"]),
        is_buyer_maker=bool(data["m"]),
    )


@_mapper
def order_book_from_stream(symbol: str, data: Dict[str, Any]) -> OrderBook:
    """<symbol>@depth diff event."""
    data = _require_mapping(data)
    return OrderBook(
        symbol=symbol,
        last_update_id=int(data["u"]),
        bids=_levels(data["b"]),
        asks=_levels(data["a"]),
        timestamp=datetime.now(timezone.utc),
    )
