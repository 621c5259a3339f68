"""
Market Connector - Subscription Channel.

============================================================
PURPOSE
============================================================
Bounded, ordered hand-off between one stream supervisor
(producer) and one consumer.

- send() blocks while the channel is full (backpressure);
  nothing is dropped or reordered.
- send() raises ClosedError once the consumer is gone, which
  is how the supervisor learns it must stop.
- recv() drains remaining entries after close, then raises
  ClosedError.

The consumer-facing SubscriptionHandle closes its channel
when cancelled or when it is garbage collected.

============================================================
"""

import asyncio
import logging
import weakref
from typing import TYPE_CHECKING, Any, Generic, Optional, TypeVar

from market_connector.exceptions import ClosedError

if TYPE_CHECKING:
    from market_connector.decoders import Envelope
    from market_connector.supervisor import StreamState, StreamSupervisor, Subscription


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CHANNEL_CAPACITY = 100


class EventChannel(Generic[T]):
    """Bounded single-producer / single-consumer channel."""

    def __init__(self, capacity: int = DEFAULT_CHANNEL_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("Channel capacity must be >= 1")
        self._capacity = capacity
        self._queue: "asyncio.Queue[T]" = asyncio.Queue(maxsize=capacity)
        self._closed = asyncio.Event()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def qsize(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Close the channel. Buffered entries stay readable. Idempotent."""
        self._closed.set()

    async def wait_closed(self) -> None:
        """Wait until close() is called."""
        await self._closed.wait()

    async def send(self, item: T) -> None:
        """
        Append one entry, waiting while the channel is full.

        Raises:
            ClosedError: If the channel is (or becomes) closed
                before the entry could be enqueued
        """
        if self._closed.is_set():
            raise ClosedError("Channel closed by consumer")

        try:
            self._queue.put_nowait(item)
            return
        except asyncio.QueueFull:
            pass

        put = asyncio.ensure_future(self._queue.put(item))
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({put, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for future in (put, closed):
                if not future.done():
                    future.cancel()

        if put.done() and not put.cancelled():
            return
        raise ClosedError("Channel closed by consumer")

    async def recv(self) -> T:
        """
        Take the oldest entry, waiting if the channel is empty.

        Raises:
            ClosedError: Once the channel is closed and drained
        """
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._closed.is_set():
                raise ClosedError()

            get = asyncio.ensure_future(self._queue.get())
            closed = asyncio.ensure_future(self._closed.wait())
            try:
                await asyncio.wait({get, closed}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for future in (get, closed):
                    if not future.done():
                        future.cancel()

            if get.done() and not get.cancelled():
                return get.result()


# ============================================================
# SUBSCRIPTION HANDLE
# ============================================================

class SubscriptionHandle:
    """
    Consumer side of one subscription.

    Usage:
        handle = streams.subscribe(url, decoder)
        async for envelope in handle:
            if envelope.ok:
                process(envelope.event)

    Dropping the last reference to a handle, or calling
    cancel(), closes the channel; the supervisor notices on
    its next send and stops without reconnecting.
    """

    def __init__(
        self,
        channel: "EventChannel[Envelope]",
        supervisor: "StreamSupervisor",
        task: Optional["asyncio.Task[Any]"] = None,
    ) -> None:
        self._channel = channel
        self._supervisor = supervisor
        self._task = task
        self._finalizer = weakref.finalize(self, channel.close)

    @property
    def subscription(self) -> "Subscription":
        return self._supervisor.subscription

    @property
    def state(self) -> "StreamState":
        return self._supervisor.state

    @property
    def closed(self) -> bool:
        return self._channel.closed

    def pending(self) -> int:
        """Entries buffered and not yet received."""
        return self._channel.qsize()

    async def recv(self) -> "Envelope":
        """
        Next envelope in arrival order.

        Raises:
            ClosedError: After cancellation (once drained)
        """
        return await self._channel.recv()

    def cancel(self) -> None:
        """Cancel the subscription. Cooperative; idempotent."""
        if not self._channel.closed:
            logger.info(f"[{self.subscription.id}] Subscription cancelled by consumer")
        self._channel.close()

    async def wait_closed(self) -> None:
        """Wait until the supervisor has released its transport and stopped."""
        if self._task is not None:
            await asyncio.shield(self._task)

    def __aiter__(self) -> "SubscriptionHandle":
        return self

    async def __anext__(self) -> "Envelope":
        try:
            return await self._channel.recv()
        except ClosedError:
            raise StopAsyncIteration from None

    def __repr__(self) -> str:
        return (
            f"<SubscriptionHandle(id={self.subscription.id}, "
            f"target={self.subscription.target}, state={self.state.value})>"
        )
