"""
Market Connector - Stream Transport.

============================================================
PURPOSE
============================================================
Abstraction over one open bidirectional connection.

A Transport yields inbound frames (data / ping / close),
accepts outbound control frames (pong) and can be closed.
A TransportFactory opens a Transport for a target URL.

The stream layer only relies on frame granularity; it never
looks at the wire encoding.

============================================================
IMPLEMENTATIONS
============================================================
- AiohttpTransport / AiohttpTransportFactory: WebSocket over
  aiohttp. Automatic ping answering is disabled so that ping
  frames reach the supervisor, which answers with a pong.

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import aiohttp

from market_connector.exceptions import ConnectFailureError, TransportError


logger = logging.getLogger(__name__)


# ============================================================
# FRAMES
# ============================================================

class FrameType(Enum):
    """Inbound frame classification."""

    TEXT = "TEXT"
    BINARY = "BINARY"
    PING = "PING"
    PONG = "PONG"
    CLOSE = "CLOSE"


@dataclass(frozen=True)
class Frame:
    """One inbound frame."""

    type: FrameType
    data: Union[str, bytes, None] = None
    close_code: Optional[int] = None

    @property
    def is_data(self) -> bool:
        return self.type in (FrameType.TEXT, FrameType.BINARY)

    @classmethod
    def text(cls, data: str) -> "Frame":
        return cls(FrameType.TEXT, data)

    @classmethod
    def ping(cls, data: bytes = b"") -> "Frame":
        return cls(FrameType.PING, data)

    @classmethod
    def close(cls, code: Optional[int] = None) -> "Frame":
        return cls(FrameType.CLOSE, None, code)


# ============================================================
# ABSTRACT TRANSPORT
# ============================================================

class Transport(ABC):
    """An open connection."""

    @property
    @abstractmethod
    def url(self) -> str:
        """Target this transport is connected to."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Whether close() has been called or the peer closed."""

    @abstractmethod
    async def receive(self) -> Frame:
        """
        Block until the next frame arrives.

        Returns:
            The next frame; a CLOSE frame when the peer closes

        Raises:
            TransportError: On a transport-level read failure
        """

    @abstractmethod
    async def send_pong(self, data: bytes = b"") -> None:
        """
        Send a pong control frame.

        Raises:
            TransportError: If the frame cannot be sent
        """

    @abstractmethod
    async def close(self) -> None:
        """Close and release the connection. Idempotent."""


class TransportFactory(ABC):
    """Opens transports."""

    @abstractmethod
    async def open(self, url: str) -> Transport:
        """
        Open a transport.

        Raises:
            ConnectFailureError: If the connection cannot be established
        """

    async def close(self) -> None:
        """Release resources shared by opened transports."""


# ============================================================
# AIOHTTP IMPLEMENTATION
# ============================================================

class AiohttpTransport(Transport):
    """WebSocket transport backed by aiohttp.ClientWebSocketResponse."""

    def __init__(self, url: str, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._url = url
        self._ws = ws

    @property
    def url(self) -> str:
        return self._url

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def receive(self) -> Frame:
        try:
            msg = await self._ws.receive()
        except (aiohttp.ClientError, ConnectionError) as e:
            raise TransportError(f"WebSocket read failed: {e}", url=self._url, original_error=e) from e

        if msg.type == aiohttp.WSMsgType.TEXT:
            return Frame(FrameType.TEXT, msg.data)

        if msg.type == aiohttp.WSMsgType.BINARY:
            return Frame(FrameType.BINARY, msg.data)

        if msg.type == aiohttp.WSMsgType.PING:
            return Frame(FrameType.PING, msg.data)

        if msg.type == aiohttp.WSMsgType.PONG:
            return Frame(FrameType.PONG, msg.data)

        if msg.type in (
            aiohttp.WSMsgType.CLOSE,
            aiohttp.WSMsgType.CLOSING,
            aiohttp.WSMsgType.CLOSED,
        ):
            code = msg.data if isinstance(msg.data, int) else self._ws.close_code
            return Frame.close(code)

        if msg.type == aiohttp.WSMsgType.ERROR:
            error = self._ws.exception()
            raise TransportError(f"WebSocket error: {error}", url=self._url, original_error=error)

        raise TransportError(f"Unexpected WebSocket message type: {msg.type}", url=self._url)

    async def send_pong(self, data: bytes = b"") -> None:
        try:
            await self._ws.pong(data)
        except (aiohttp.ClientError, ConnectionError) as e:
            raise TransportError(f"Failed to send pong: {e}", url=self._url, original_error=e) from e

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


class AiohttpTransportFactory(TransportFactory):
    """
    Opens aiohttp WebSocket transports.

    The HTTP session is created lazily and owned by the factory
    unless one is supplied.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._connect_timeout = connect_timeout

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def open(self, url: str) -> Transport:
        session = await self._get_session()
        try:
            ws = await asyncio.wait_for(
                session.ws_connect(url, autoping=False),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ConnectFailureError(f"WebSocket connect timed out: {url}", url=url, original_error=e) from e
        except (aiohttp.ClientError, OSError) as e:
            raise ConnectFailureError(f"WebSocket connect failed: {e}", url=url, original_error=e) from e

        logger.info(f"WebSocket connected: {url}")
        return AiohttpTransport(url, ws)

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
