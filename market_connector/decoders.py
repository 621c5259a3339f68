"""
Market Connector - Stream Decoders.

============================================================
PURPOSE
============================================================
Maps raw frame payloads to domain events, one decoder per
subscription kind, selected at subscription time.

CONTRACT:
- decode() is pure, never blocks and never raises
- Malformed payloads yield an Envelope carrying ProtocolError
- Payload routing only; field normalization lives in
  normalize.py

============================================================
"""

import gzip
import json
import logging
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from market_connector import normalize
from market_connector.exceptions import ConnectorError, ProtocolError
from market_connector.models import DomainEvent, RawMessage


logger = logging.getLogger(__name__)


class StreamKind(Enum):
    """Supported subscription kinds."""

    TICKER = "ticker"
    MINI_TICKER = "mini_ticker"
    KLINE = "kline"
    TRADE = "trade"
    DEPTH = "depth"
    RAW = "raw"


# ============================================================
# ENVELOPE
# ============================================================

@dataclass(frozen=True)
class Envelope:
    """
    One entry on a subscription channel: either a decoded
    event or a non-fatal error.
    """

    event: Optional[DomainEvent] = None
    error: Optional[ConnectorError] = None

    @classmethod
    def of(cls, event: DomainEvent) -> "Envelope":
        return cls(event=event)

    @classmethod
    def failure(cls, error: ConnectorError) -> "Envelope":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> DomainEvent:
        """Return the event or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.event

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        if self.error is not None:
            return {"ok": False, "error": self.error.to_dict()}
        return {"ok": True, "event": self.event.to_dict()}


# ============================================================
# DECODE FUNCTIONS
# ============================================================

def _payload_text(payload: Union[str, bytes]) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, (bytes, bytearray)):
        data = bytes(payload)
        if data[:2] == b"\x1f\x8b":
            data = gzip.decompress(data)
        return data.decode("utf-8")
    raise ValueError(f"unsupported payload type: {type(payload).__name__}")


def _unwrap_combined(data: Any) -> Any:
    # Combined streams wrap each event as {"stream": name, "data": event}
    if isinstance(data, dict) and "stream" in data and "data" in data:
        return data["data"]
    return data


def _decode_ticker(symbol: Optional[str], data: Any) -> DomainEvent:
    return normalize.ticker_24h_from_stream(data)


def _decode_mini_ticker(symbol: Optional[str], data: Any) -> DomainEvent:
    return normalize.mini_ticker_from_stream(data)


def _decode_kline(symbol: Optional[str], data: Any) -> DomainEvent:
    return normalize.kline_from_stream(symbol or _event_symbol(data), data)


def _decode_trade(symbol: Optional[str], data: Any) -> DomainEvent:
    return normalize.trade_from_stream(symbol or _event_symbol(data), data)


def _decode_depth(symbol: Optional[str], data: Any) -> DomainEvent:
    return normalize.order_book_from_stream(symbol or _event_symbol(data), data)


def _event_symbol(data: Any) -> str:
    if isinstance(data, dict) and isinstance(data.get("s"), str):
        return data["s"]
    raise ProtocolError("Event carries no symbol", payload=data)


_DECODE_FUNCS: Dict[StreamKind, Callable[[Optional[str], Any], DomainEvent]] = {
    StreamKind.TICKER: _decode_ticker,
    StreamKind.MINI_TICKER: _decode_mini_ticker,
    StreamKind.KLINE: _decode_kline,
    StreamKind.TRADE: _decode_trade,
    StreamKind.DEPTH: _decode_depth,
}


# ============================================================
# DECODER
# ============================================================

@dataclass(frozen=True)
class Decoder:
    """
    Decoder capability for one subscription kind.

    Attributes:
        kind: Subscription kind; selects the decode function
        symbol: Symbol stamped on events whose payload omits it
    """

    kind: StreamKind
    symbol: Optional[str] = None

    def decode(self, payload: Union[str, bytes]) -> Envelope:
        """Decode one data frame payload. Never raises."""
        try:
            text = _payload_text(payload)
        except (ValueError, OSError, EOFError, zlib.error) as e:
            return Envelope.failure(ProtocolError(
                f"Undecodable {self.kind.value} frame: {e}",
                payload=payload,
                original_error=e,
            ))

        if self.kind == StreamKind.RAW:
            return Envelope.of(RawMessage(text=text))

        try:
            data = _unwrap_combined(json.loads(text))
            return Envelope.of(_DECODE_FUNCS[self.kind](self.symbol, data))
        except ProtocolError as e:
            return Envelope.failure(e)
        except (ValueError, RecursionError) as e:
            return Envelope.failure(ProtocolError(
                f"Invalid JSON in {self.kind.value} frame: {e}",
                payload=text,
                original_error=e,
            ))


def decoder_for(kind: Union[StreamKind, str], symbol: Optional[str] = None) -> Decoder:
    """Build a decoder from a kind (or its string value)."""
    return Decoder(kind=StreamKind(kind), symbol=symbol.upper() if symbol else None)
