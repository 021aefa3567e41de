"""
toothpaste.link - The raw-send collaborator the transport writes through.

A link accepts fire-and-forget writes and signals when it can take another
one. Connection management belongs to whoever owns the link; the transport
never touches it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)


class RawLink(ABC):
    """Abstract base for link implementations."""

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Queue `data` onto the physical link without waiting for delivery."""
        raise NotImplementedError

    @abstractmethod
    async def wait_ready(self) -> None:
        """Return once the link can accept another write."""
        raise NotImplementedError


class MemoryLink(RawLink):
    """In-memory link for loopback use and tests.

    Writes land in a queue that the far end drains with receive(). Readiness
    is signalled once the number of unconsumed writes drops below
    `capacity`, modelling a link that only holds a few unacknowledged writes.
    """

    def __init__(self, capacity: int = 1, mtu: Optional[int] = None):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.mtu = mtu
        self.closed = False
        self.writes: list[bytes] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._ready = asyncio.Event()
        self._ready.set()

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionError("link is closed")
        if self.mtu is not None and len(data) > self.mtu:
            raise ValueError(f"write of {len(data)} bytes exceeds link mtu {self.mtu}")
        data = bytes(data)
        self.writes.append(data)
        self._queue.put_nowait(data)
        if self._queue.qsize() >= self.capacity:
            self._ready.clear()

    async def wait_ready(self) -> None:
        await self._ready.wait()

    async def receive(self) -> bytes:
        """Far-end read; frees a slot and signals readiness."""
        data = await self._queue.get()
        if self._queue.qsize() < self.capacity:
            self._ready.set()
        return data

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self.closed = True
        logger.debug("Memory link closed")
