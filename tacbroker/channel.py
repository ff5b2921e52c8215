"""Asynchronous in-process queues with non-blocking send and close semantics."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Deque, Optional


class ChannelFull(Exception):
    """Raised when sending into a bounded channel that has no room left."""


class ChannelClosed(Exception):
    """Raised when sending into a closed channel or receiving from a drained one."""


class ChannelEmpty(Exception):
    """Raised by a non-blocking receive when no item is queued."""


class Channel:
    """A FIFO queue whose sending side never blocks.

    Senders use :meth:`try_send`, which fails with :class:`ChannelFull` or
    :class:`ChannelClosed` instead of waiting. Receivers await :meth:`recv`
    or iterate the channel asynchronously. Items queued before :meth:`close`
    can still be received afterwards.
    """

    def __init__(self, maxsize: Optional[int] = None) -> None:
        if maxsize is not None and maxsize < 1:
            raise ValueError("channel capacity must be at least 1")
        self._maxsize = maxsize
        self._items: Deque[Any] = deque()
        self._closed = False
        self._waiters: Deque[asyncio.Future] = deque()

    def try_send(self, item: Any) -> None:
        """Enqueue ``item`` without waiting."""
        if self._closed:
            raise ChannelClosed("channel is closed")
        if self._maxsize is not None and len(self._items) >= self._maxsize:
            raise ChannelFull("channel is full")
        self._items.append(item)
        self._wake_one()

    def close(self) -> bool:
        """Close the channel; return True if this call closed it."""
        if self._closed:
            return False
        self._closed = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
        return True

    def closed(self) -> bool:
        """Whether the channel has been closed."""
        return self._closed

    async def recv(self) -> Any:
        """Wait for and return the next item.

        Raises :class:`ChannelClosed` once the channel is closed and empty.
        """
        while True:
            if self._items:
                return self._items.popleft()
            if self._closed:
                raise ChannelClosed("channel is closed")
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
                if waiter.done() and not waiter.cancelled() and self._items:
                    self._wake_one()
                raise

    def try_recv(self) -> Any:
        """Return the next item without waiting."""
        if self._items:
            return self._items.popleft()
        if self._closed:
            raise ChannelClosed("channel is closed")
        raise ChannelEmpty("channel is empty")

    def __len__(self) -> int:
        return len(self._items)

    def __aiter__(self) -> "Channel":
        return self

    async def __anext__(self) -> Any:
        try:
            return await self.recv()
        except ChannelClosed:
            raise StopAsyncIteration from None

    def _wake_one(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return


def bounded(capacity: int) -> Channel:
    """Create a channel holding at most ``capacity`` items."""
    return Channel(capacity)


def unbounded() -> Channel:
    """Create a channel without a size limit."""
    return Channel(None)