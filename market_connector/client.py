"""
Market Connector - REST Market Data Client.

============================================================
PURPOSE
============================================================
One-shot market data requests against the exchange REST API.

EVERY REQUEST:
- Draws one permit from the shared AdmissionGate
- Runs inside the RetryExecutor; each attempt re-acquires
  a permit
- Has its transport failures classified as timeout / connect
  / other

RESPONSE MAPPING:
- 200 -> parsed JSON (unparseable body -> ApiError code 0)
- 400 -> ApiError(code, msg) from the error body
- 429 -> RateLimitExceeded (Retry-After, default 60s);
  surfaced to the caller, never retried here
- other -> ApiError(status, body)

============================================================
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar, Union

import aiohttp

from market_connector import normalize
from market_connector.config import ConnectorConfig
from market_connector.endpoints import Endpoints
from market_connector.exceptions import (
    ApiError,
    ConnectFailureError,
    ProtocolError,
    RateLimitExceeded,
    RequestTimeoutError,
    TransportError,
)
from market_connector.models import Interval, Kline, OrderBook, SymbolInfo, Ticker, Ticker24h, Trade
from market_connector.rate_limiter import AdmissionGate
from market_connector.retry import RetryExecutor


logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_KLINES_LIMIT = 1000


@dataclass(frozen=True)
class RawResponse:
    """Fully read HTTP response."""

    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)


def _interval(value: Union[Interval, str]) -> Interval:
    return value if isinstance(value, Interval) else Interval.parse(value)


def _require_list(data: Any, what: str) -> List[Any]:
    if not isinstance(data, list):
        raise ProtocolError(f"Expected a list of {what}, got {type(data).__name__}", payload=data)
    return data


# ============================================================
# CLIENT
# ============================================================

class MarketDataClient:
    """
    Async REST client for public market data.

    Usage:
        async with MarketDataClient(ConnectorConfig.from_env()) as client:
            ticker = await client.get_ticker_price("BTCUSDT")
            klines = await client.get_klines("BTCUSDT", Interval.M5, 100)

    Several clients drawing on one quota should share a single
    AdmissionGate passed as `gate`.
    """

    def __init__(
        self,
        config: Optional[ConnectorConfig] = None,
        gate: Optional[AdmissionGate] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize client.

        Args:
            config: Connector configuration (defaults if omitted)
            gate: Shared admission gate; one is built from the
                configured budget if omitted
            session: HTTP session to use; the client owns and
                closes its own session otherwise
            sleep: Sleep function used for retry backoff

        Raises:
            ConfigError: If the configuration is invalid
        """
        self._config = config or ConnectorConfig()
        self._config.validate()

        self._gate = gate or AdmissionGate(self._config.rate_budget())
        self._retry = RetryExecutor(self._config.retry_policy(), sleep=sleep)

        self._session = session
        self._owns_session = session is None
        self._base_url = self._config.get_base_url().rstrip("/")

        logger.info(
            f"MarketDataClient initialized ({self._base_url}, "
            f"{self._config.requests_per_minute} req/min, "
            f"retries={'on' if self._config.enable_retries else 'off'})"
        )

    @property
    def config(self) -> ConnectorConfig:
        return self._config

    @property
    def gate(self) -> AdmissionGate:
        return self._gate

    # --------------------------------------------------------
    # SESSION
    # --------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client owns it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "MarketDataClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # --------------------------------------------------------
    # ONE-SHOT EXECUTION
    # --------------------------------------------------------

    async def one_shot(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run one admitted, retried operation.

        Each attempt waits for a permit from the gate, then runs
        a fresh `operation()`.

        Raises:
            The final attempt's error, un-wrapped
        """
        async def attempt() -> T:
            await self._gate.acquire()
            return await operation()

        return await self._retry.execute(attempt)

    async def _fetch(self, path: str, params: Optional[Dict[str, Any]] = None) -> RawResponse:
        """Single GET, fully read, with transport errors classified."""
        url = f"{self._base_url}{path}"
        session = await self._get_session()

        start = time.monotonic()
        try:
            async with session.get(url, params=params) as response:
                body = await response.read()
                logger.debug(
                    f"GET {path} -> {response.status} "
                    f"in {(time.monotonic() - start) * 1000:.1f}ms"
                )
                return RawResponse(
                    status=response.status,
                    headers=dict(response.headers),
                    body=body,
                )
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(
                f"Request timed out: {path}",
                url=url,
                timeout_seconds=self._config.timeout_seconds,
                original_error=e,
            ) from e
        except (aiohttp.ClientConnectionError, OSError) as e:
            raise ConnectFailureError(f"Connection failed: {e}", url=url, original_error=e) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"HTTP client error: {e}", url=url, original_error=e) from e

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self.one_shot(lambda: self._fetch(path, params))
        return self._handle_response(response)

    def _handle_response(self, response: RawResponse) -> Any:
        """Map a response to parsed JSON or the matching error."""
        status = response.status

        if status == 200:
            try:
                return response.json()
            except ValueError as e:
                raise ApiError(0, f"Failed to parse response: {e}", status=status, original_error=e) from e

        if status == 400:
            try:
                data = response.json()
                raise ApiError(int(data["code"]), str(data["msg"]), status=status)
            except (ValueError, KeyError, TypeError):
                raise ApiError(400, "Bad request", status=status) from None

        if status == 429:
            retry_after = _parse_retry_after(response.headers)
            logger.warning(f"Rate limit exceeded, server asks to retry after {retry_after}s")
            raise RateLimitExceeded(retry_after_seconds=retry_after)

        raise ApiError(status, response.text(), status=status)

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_ticker_price(self, symbol: str) -> Ticker:
        """Latest price for one symbol."""
        data = await self._get(Endpoints.TICKER_PRICE, {"symbol": symbol})
        return normalize.ticker_from_rest(data)

    async def get_all_ticker_prices(self) -> List[Ticker]:
        """Latest price for every symbol."""
        data = await self._get(Endpoints.TICKER_PRICE)
        return [normalize.ticker_from_rest(item) for item in _require_list(data, "tickers")]

    async def get_ticker_24h(self, symbol: str) -> Ticker24h:
        """Rolling 24-hour statistics for one symbol."""
        data = await self._get(Endpoints.TICKER_24H, {"symbol": symbol})
        return normalize.ticker_24h_from_rest(data)

    async def get_klines(
        self,
        symbol: str,
        interval: Union[Interval, str],
        limit: int = 500,
    ) -> List[Kline]:
        """
        Most recent candles.

        Args:
            symbol: Trading pair (e.g. "BTCUSDT")
            interval: Candle interval
            limit: Number of candles, 1..1000

        Raises:
            ValueError: If limit is out of range
        """
        if limit > MAX_KLINES_LIMIT or limit < 1:
            raise ValueError(f"Limit {limit} outside 1..{MAX_KLINES_LIMIT}")

        params = {"symbol": symbol, "interval": _interval(interval).value, "limit": limit}
        data = await self._get(Endpoints.KLINES, params)
        return [normalize.kline_from_rest(symbol, row) for row in _require_list(data, "klines")]

    async def get_klines_range(
        self,
        symbol: str,
        interval: Union[Interval, str],
        start_time: int,
        end_time: int,
    ) -> List[Kline]:
        """Candles between two epoch-millisecond timestamps."""
        if end_time < start_time:
            raise ValueError(f"end_time {end_time} is before start_time {start_time}")

        params = {
            "symbol": symbol,
            "interval": _interval(interval).value,
            "startTime": start_time,
            "endTime": end_time,
        }
        data = await self._get(Endpoints.KLINES, params)
        return [normalize.kline_from_rest(symbol, row) for row in _require_list(data, "klines")]

    async def get_depth(self, symbol: str, limit: int = 100) -> OrderBook:
        """Order book snapshot (valid limits: 5, 10, 20, 50, 100, 500, 1000, 5000)."""
        data = await self._get(Endpoints.DEPTH, {"symbol": symbol, "limit": limit})
        return normalize.order_book_from_rest(symbol, data)

    async def get_recent_trades(self, symbol: str, limit: int = 500) -> List[Trade]:
        """Most recent public trades."""
        data = await self._get(Endpoints.TRADES, {"symbol": symbol, "limit": limit})
        return [normalize.trade_from_rest(symbol, item) for item in _require_list(data, "trades")]

    async def get_exchange_info(self) -> List[SymbolInfo]:
        """Trading rules for every listed symbol."""
        data = await self._get(Endpoints.EXCHANGE_INFO)
        if not isinstance(data, dict):
            raise ProtocolError("Expected exchange info object", payload=data)
        symbols = _require_list(data.get("symbols"), "symbols")
        return [normalize.symbol_info_from_rest(item) for item in symbols]

    async def get_server_time(self) -> int:
        """Server time in epoch milliseconds."""
        data = await self._get(Endpoints.TIME)
        try:
            return int(data["serverTime"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError("Malformed server time response", payload=data, original_error=e) from e

    # --------------------------------------------------------
    # HEALTH
    # --------------------------------------------------------

    async def ping(self) -> bool:
        """
        Connectivity check. Bypasses the admission gate and the
        retry executor.

        Raises:
            TransportError: If the server cannot be reached
        """
        response = await self._fetch(Endpoints.PING)
        return response.status == 200

    async def health_check(self) -> bool:
        """True when the server answers a ping; transport failures count as unhealthy."""
        try:
            return await self.ping()
        except TransportError as e:
            logger.warning(f"Health check failed: {e}")
            return False

    def get_rate_limit_status(self) -> Dict[str, Any]:
        """Current admission budget status."""
        return {
            "budget": self._gate.budget.to_dict(),
            "available_permits": self._gate.available_permits(),
            "wait_seconds": self._gate.get_wait_time(),
        }


def _parse_retry_after(headers: Mapping[str, str]) -> int:
    raw = None
    for key, value in headers.items():
        if key.lower() == "retry-after":
            raw = value
            break
    try:
        return int(raw)
    except (TypeError, ValueError):
        return RateLimitExceeded.DEFAULT_RETRY_AFTER_SECONDS


def create_client(gate: Optional[AdmissionGate] = None, **overrides: Any) -> MarketDataClient:
    """
    Create a client from default configuration plus overrides.

    Example:
        client = create_client(testnet=True, max_retries=5)

    Raises:
        ConfigError: On unknown or invalid settings
    """
    return MarketDataClient(ConnectorConfig.from_dict(overrides), gate=gate)
