"""Command and event conduits between the engine and its consumers.

Both are FIFO. The command side accepts submissions from any thread and is
drained by the engine loop; the event side is fed by the engine loop and read
either from async code (``async for event in events``) or from a plain
thread (``events.get()``).
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from collections.abc import AsyncIterator, Iterator

from .irc.commands import Command
from .irc.events import Event


class ChannelClosed(Exception):
    """Submission to a channel that has been closed."""


def _call_in_loop(loop: asyncio.AbstractEventLoop, callback) -> None:
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        callback()
    elif not loop.is_closed():
        loop.call_soon_threadsafe(callback)


class CommandChannel:
    """Multi-producer, single-consumer command queue."""

    def __init__(self) -> None:
        self._items: deque[Command] = deque()
        self._lock = threading.Lock()
        self._closed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready: asyncio.Event | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach to the engine loop; called from inside that loop."""
        self._loop = loop
        self._ready = asyncio.Event()
        with self._lock:
            if self._items or self._closed:
                self._ready.set()

    def submit(self, command: Command) -> None:
        """Queue a command. Safe to call from any thread.

        Raises:
            ChannelClosed: the engine is shutting down.
        """
        with self._lock:
            if self._closed:
                raise ChannelClosed("command channel is closed")
            self._items.append(command)
        self._notify()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._notify()

    def poke(self) -> None:
        """Wake the engine without submitting anything."""
        self._notify()

    def _notify(self) -> None:
        loop, ready = self._loop, self._ready
        if loop is None or ready is None:
            return
        _call_in_loop(loop, ready.set)

    def get_nowait(self) -> Command | None:
        with self._lock:
            return self._items.popleft() if self._items else None

    async def wait(self) -> None:
        """Return once a command is queued, the channel closes or is poked.

        Cancelling the wait never loses a command.
        """
        if self._ready is None:
            self.bind(asyncio.get_running_loop())
        assert self._ready is not None
        await self._ready.wait()
        with self._lock:
            if not self._items and not self._closed:
                self._ready.clear()


class EventChannel:
    """Single-consumer event queue readable from async code or a thread."""

    def __init__(self) -> None:
        self._items: deque[Event] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    def put(self, event: Event) -> None:
        with self._cond:
            if self._closed:
                raise ChannelClosed("event channel is closed")
            self._items.append(event)
            self._cond.notify_all()
            waiters, self._waiters = self._waiters, []
        self._wake(waiters)

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
            waiters, self._waiters = self._waiters, []
        self._wake(waiters)

    @staticmethod
    def _wake(waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future]]) -> None:
        for loop, future in waiters:
            _call_in_loop(loop, lambda f=future: f.done() or f.set_result(None))

    def get_nowait(self) -> Event | None:
        with self._cond:
            return self._items.popleft() if self._items else None

    def get(self, timeout: float | None = None) -> Event | None:
        """Block until an event arrives. ``None`` once closed and drained.

        Raises:
            TimeoutError: nothing arrived within ``timeout`` seconds.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._items:
                if self._closed:
                    return None
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise TimeoutError("no event within timeout")
                self._cond.wait(remaining)
            return self._items.popleft()

    async def aget(self) -> Event | None:
        """Await the next event. ``None`` once closed and drained."""
        loop = asyncio.get_running_loop()
        while True:
            with self._cond:
                if self._items:
                    return self._items.popleft()
                if self._closed:
                    return None
                future = loop.create_future()
                self._waiters.append((loop, future))
            try:
                await future
            finally:
                with self._cond:
                    if (loop, future) in self._waiters:
                        self._waiters.remove((loop, future))

    def drain(self) -> list[Event]:
        with self._cond:
            items = list(self._items)
            self._items.clear()
            return items

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._aiter()

    async def _aiter(self) -> AsyncIterator[Event]:
        while (event := await self.aget()) is not None:
            yield event

    def __iter__(self) -> Iterator[Event]:
        while (event := self.get()) is not None:
            yield event
