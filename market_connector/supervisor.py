"""
Market Connector - Stream Supervisor.

============================================================
PURPOSE
============================================================
Keeps one long-lived subscription alive and pumps decoded
events into its channel.

STATES:
    CONNECTING -> ACTIVE -> BACKOFF -> CONNECTING ...
    any -> CLOSED (consumer gone or cancelled)

CONNECT:
- Up to connect_max_attempts tries, sleeping
  base * 2^(n-1) seconds between them.

ACTIVE:
- Data frame: decode, then send to the channel (blocks while
  the channel is full).
- Ping frame: answered with a pong.
- Close frame / read failure / idle timeout: the connection
  cycle ends. So does an unexpected error in the receive
  loop, which is logged.

BACKOFF:
- Fixed reconnect delay, then reconnect. Reconnection is
  retried indefinitely; only the consumer ends a subscription.

CLOSED:
- Entered when a send fails because the channel is closed, or
  the channel is found closed between cycles. The transport is
  always released before CLOSED is reported.

============================================================
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from market_connector.channel import EventChannel
from market_connector.config import StreamConfig
from market_connector.decoders import Decoder, Envelope, StreamKind
from market_connector.exceptions import (
    ClosedError,
    ConnectFailureError,
    ConnectionEndedError,
    ConnectorError,
    TransportError,
)
from market_connector.transport import Frame, FrameType, Transport, TransportFactory


logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class StreamState(Enum):
    """Lifecycle of a supervised subscription."""

    CONNECTING = "CONNECTING"
    ACTIVE = "ACTIVE"
    BACKOFF = "BACKOFF"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class Subscription:
    """What a supervisor is asked to keep alive."""

    target: str
    decoder: Decoder
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    @property
    def kind(self) -> StreamKind:
        return self.decoder.kind


# ============================================================
# CONNECT WITH RETRY
# ============================================================

async def connect_with_retry(
    factory: TransportFactory,
    url: str,
    max_attempts: int = 5,
    backoff_base_seconds: float = 1.0,
    sleep: SleepFunc = asyncio.sleep,
) -> Transport:
    """
    Open a transport, retrying with exponential backoff.

    Delay before attempt n+1 is backoff_base_seconds * 2^(n-1).

    Raises:
        ConnectFailureError: After max_attempts failed attempts
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await factory.open(url)
        except TransportError as e:
            if attempt >= max_attempts:
                raise ConnectFailureError(
                    f"Failed to connect after {attempt} attempts: {e.message}",
                    url=url,
                    attempts=attempt,
                    original_error=e,
                ) from e

            delay = backoff_base_seconds * (2 ** (attempt - 1))
            logger.warning(
                f"Connect attempt {attempt}/{max_attempts} to {url} failed: "
                f"{e.message}. Retrying in {delay}s"
            )
            await sleep(delay)


# ============================================================
# SUPERVISOR
# ============================================================

class StreamSupervisor:
    """
    Drives one subscription through its connection lifecycle.

    The supervisor never holds a reference to the consumer's
    handle; it only sees the channel.
    """

    def __init__(
        self,
        subscription: Subscription,
        transport_factory: TransportFactory,
        channel: "EventChannel[Envelope]",
        config: Optional[StreamConfig] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._subscription = subscription
        self._factory = transport_factory
        self._channel = channel
        self._config = config or StreamConfig()
        self._sleep = sleep

        self._state = StreamState.CONNECTING
        self._connections = 0
        self._delivered = 0

    @property
    def subscription(self) -> Subscription:
        return self._subscription

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def connections(self) -> int:
        """Number of successful connects so far."""
        return self._connections

    @property
    def delivered(self) -> int:
        """Number of envelopes handed to the channel."""
        return self._delivered

    def _set_state(self, state: StreamState) -> None:
        if state != self._state:
            logger.debug(
                f"[{self._subscription.id}] {self._state.value} -> {state.value}"
            )
            self._state = state

    async def run(self) -> None:
        """Run until the consumer goes away or the task is cancelled."""
        sid = self._subscription.id
        logger.info(
            f"[{sid}] Supervising {self._subscription.kind.value} stream: "
            f"{self._subscription.target}"
        )

        try:
            while not self._channel.closed:
                self._set_state(StreamState.CONNECTING)
                try:
                    transport = await connect_with_retry(
                        self._factory,
                        self._subscription.target,
                        max_attempts=self._config.connect_max_attempts,
                        backoff_base_seconds=self._config.connect_backoff_base_seconds,
                        sleep=self._sleep,
                    )
                except ConnectFailureError as e:
                    logger.error(f"[{sid}] {e.message}")
                    await self._report(e)
                else:
                    self._connections += 1
                    self._set_state(StreamState.ACTIVE)
                    logger.info(f"[{sid}] Connected (connection #{self._connections})")
                    try:
                        ended = await self._pump(transport)
                    except ClosedError:
                        raise
                    except Exception as e:
                        logger.error(f"[{sid}] Error in receive loop: {e!r}")
                        ended = ConnectionEndedError(
                            f"Receive loop failed: {e!r}",
                            url=transport.url,
                            original_error=e,
                        )
                    finally:
                        await self._release(transport)
                    logger.warning(f"[{sid}] {ended.message}")
                    await self._report(ended)

                if self._channel.closed:
                    break

                self._set_state(StreamState.BACKOFF)
                delay = self._config.reconnect_delay_seconds
                logger.info(f"[{sid}] Reconnecting in {delay}s")
                await self._sleep(delay)

        except ClosedError:
            logger.info(f"[{sid}] Consumer gone, stopping")

        finally:
            self._set_state(StreamState.CLOSED)
            self._channel.close()
            logger.info(
                f"[{sid}] Closed after {self._connections} connection(s), "
                f"{self._delivered} event(s) delivered"
            )

    async def _pump(self, transport: Transport) -> ConnectionEndedError:
        """
        Forward frames until the connection cycle ends.

        Returns:
            Why the connection ended

        Raises:
            ClosedError: If the channel is closed
        """
        url = transport.url
        decoder = self._subscription.decoder

        while True:
            if self._channel.closed:
                raise ClosedError("Channel closed by consumer")

            try:
                frame = await self._receive(transport)
            except asyncio.TimeoutError as e:
                return ConnectionEndedError(
                    f"No frame received within {self._config.idle_timeout_seconds}s",
                    url=url,
                    original_error=e,
                )
            except TransportError as e:
                return ConnectionEndedError(
                    f"Read failed: {e.message}", url=url, original_error=e
                )

            if frame.is_data:
                envelope = decoder.decode(frame.data)
                if not envelope.ok:
                    logger.debug(
                        f"[{self._subscription.id}] Decode failed: {envelope.error.message}"
                    )
                await self._channel.send(envelope)
                self._delivered += 1

            elif frame.type == FrameType.PING:
                try:
                    await transport.send_pong(frame.data or b"")
                except TransportError as e:
                    return ConnectionEndedError(
                        f"Pong failed: {e.message}", url=url, original_error=e
                    )

            elif frame.type == FrameType.CLOSE:
                return ConnectionEndedError(
                    "Server closed the connection",
                    url=url,
                    close_code=frame.close_code,
                )

    async def _receive(self, transport: Transport) -> Frame:
        """
        Next frame, unless the consumer leaves first.

        Raises:
            ClosedError: If the channel closes while waiting
            asyncio.TimeoutError: If the idle timeout elapses
            TransportError: On a read failure
        """
        receive = asyncio.ensure_future(transport.receive())
        closed = asyncio.ensure_future(self._channel.wait_closed())
        try:
            await asyncio.wait(
                {receive, closed},
                timeout=self._config.idle_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for future in (receive, closed):
                if not future.done():
                    future.cancel()

        if receive.done() and not receive.cancelled():
            return receive.result()
        if closed.done() and not closed.cancelled():
            raise ClosedError("Channel closed by consumer")
        raise asyncio.TimeoutError()

    async def _report(self, error: ConnectorError) -> None:
        # Connection-level errors reach the consumer only when asked for
        if self._config.emit_connection_errors:
            await self._channel.send(Envelope.failure(error))

    async def _release(self, transport: Transport) -> None:
        try:
            await transport.close()
        except TransportError as e:
            logger.warning(
                f"[{self._subscription.id}] Error closing transport: {e.message}"
            )
