"""Cancellation and backpressure handles for in-flight chat streams."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, AsyncIterable, AsyncIterator
import logging
import threading
from typing import Any, Protocol, runtime_checkable

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class Subscription(Protocol):
    """Capability used to stop a stream or signal readiness for more items."""

    def request(self, n: int) -> None: ...

    def cancel(self) -> None: ...


class EmptySubscription:
    """Stateless subscription that ignores every signal."""

    _instance: EmptySubscription | None = None

    def __new__(cls) -> EmptySubscription:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def request(self, n: int) -> None:
        return None

    def cancel(self) -> None:
        return None

    def __repr__(self) -> str:
        return "EMPTY_SUBSCRIPTION"


EMPTY_SUBSCRIPTION = EmptySubscription()


class SubscriptionSlot:
    """Lock-guarded cell holding the current subscription of a started exchange."""

    __slots__ = ("_lock", "_value")

    def __init__(self, subscription: Subscription = EMPTY_SUBSCRIPTION) -> None:
        if subscription is None:
            raise ValueError("subscription must not be None")
        self._lock = threading.Lock()
        self._value = subscription

    def get(self) -> Subscription:
        with self._lock:
            return self._value

    def set(self, subscription: Subscription) -> None:
        if subscription is None:
            raise ValueError("subscription must not be None")
        with self._lock:
            self._value = subscription


_END = object()


async def _read_next(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class StreamSubscription:
    """Subscription over an async chunk stream with demand accounting.

    ``demand=None`` means unbounded demand: every chunk is delivered as soon
    as the stream produces it. With a numeric demand, ``chunks()`` suspends
    once the outstanding demand is used up until ``request(n)`` is called.
    ``cancel()`` and ``request()`` may be called from any thread; a cancel
    also abandons a read that is still waiting on the stream.
    """

    def __init__(self, stream: AsyncIterable[Any], demand: int | None = None) -> None:
        if demand is not None and demand < 0:
            raise ValueError("demand must not be negative")
        self._stream = stream
        self._lock = threading.Lock()
        self._demand = demand
        self._cancelled = False
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._cancel_signal = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def outstanding(self) -> int | None:
        """Remaining demand, or ``None`` when unbounded."""
        with self._lock:
            return self._demand

    def request(self, n: int) -> None:
        if n <= 0:
            raise ValueError(f"request count must be positive, got {n}")
        with self._lock:
            if self._cancelled or self._demand is None:
                return
            self._demand += n
        self._notify(self._wake)

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
        LOGGER.debug(
            "chat.subscription.cancelled",
            extra={"event": "chat.subscription.cancelled"},
        )
        self._notify(self._wake)
        self._notify(self._cancel_signal)

    def _notify(self, signal: asyncio.Event) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            signal.set()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(signal.set)

    async def _await_demand(self) -> bool:
        """Wait until one item may be delivered; return False once cancelled."""
        while True:
            with self._lock:
                if self._cancelled:
                    return False
                if self._demand is None:
                    return True
                if self._demand > 0:
                    self._demand -= 1
                    return True
                self._wake.clear()
            await self._wake.wait()

    async def _next_or_cancel(self, iterator: AsyncIterator[Any]) -> Any:
        """Read one item, or return ``_END`` if the stream ends or is cancelled."""
        read = asyncio.ensure_future(_read_next(iterator))
        cancelled = asyncio.ensure_future(self._cancel_signal.wait())
        try:
            await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not read.done():
                # The abandoned read must unwind before the stream gets closed.
                read.cancel()
                await asyncio.gather(read, return_exceptions=True)
        if read.cancelled():
            return _END
        return read.result()

    async def chunks(self) -> AsyncGenerator[Any, None]:
        """Yield raw stream items while demand allows and until cancelled."""
        iterator = self._stream.__aiter__()
        try:
            while await self._await_demand():
                item = await self._next_or_cancel(iterator)
                if item is _END or self.cancelled:
                    return
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
