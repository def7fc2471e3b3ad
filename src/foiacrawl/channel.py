from __future__ import annotations
import asyncio
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

class UrlChannel(Generic[T]):
    """
    Bounded single-producer channel between discovery and the download workers.

    The producer learns that the consumers are gone from ``send`` returning
    False; consumers learn that the producer is done from ``recv`` returning
    None once the buffer is empty.
    """

    def __init__(self, maxsize: int = 500):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._closed = asyncio.Event()
        self._finished = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    async def send(self, item: T) -> bool:
        """Wait for buffer space; False if the receiving side closed first."""
        if self._closed.is_set():
            return False
        put = asyncio.ensure_future(self._queue.put(item))
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({put, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            put.cancel()
            closed.cancel()
        return put.done() and not put.cancelled() and not self._closed.is_set()

    async def recv(self) -> Optional[T]:
        while True:
            if self._closed.is_set():
                return None
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._finished.is_set():
                return None
            get = asyncio.ensure_future(self._queue.get())
            done_waiting = asyncio.ensure_future(self._finished.wait())
            closed = asyncio.ensure_future(self._closed.wait())
            try:
                await asyncio.wait({get, done_waiting, closed}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                done_waiting.cancel()
                closed.cancel()
            if get.done() and not get.cancelled():
                return get.result()
            get.cancel()

    def finish(self) -> None:
        """Called by the producer when it has nothing more to send."""
        self._finished.set()

    def close(self) -> None:
        """Called by the receiving side; pending and future sends fail."""
        self._closed.set()
        while not self._queue.empty():
            self._queue.get_nowait()

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        item = await self.recv()
        if item is None:
            raise StopAsyncIteration
        return item
