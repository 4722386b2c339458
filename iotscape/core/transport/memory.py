"""In-process datagram transports (test/local use)."""

from __future__ import annotations

import asyncio
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger

from iotscape.core.errors import (
    TransportBindError,
    TransportClosed,
    TransportSendError,
)
from iotscape.datastructures.type_aliases import PeerAddress

from .interfaces import AsyncDatagramTransport, DatagramTransport

type DropFilter = Callable[[PeerAddress, PeerAddress, bytes], bool]

_CLOSED = None


@dataclass(slots=True)
class MemoryNetwork:
    """Routes datagrams between in-process endpoints by address.

    ``drop_filter(source, destination, data)`` returning True discards a
    packet silently, emulating loss. ``fail_sends`` makes every send raise,
    emulating a dead interface.
    """

    drop_filter: DropFilter | None = None
    fail_sends: bool = False
    _endpoints: dict[PeerAddress, MemoryTransport | AsyncMemoryTransport] = field(
        default_factory=dict
    )
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def attach(self, endpoint: MemoryTransport | AsyncMemoryTransport) -> None:
        with self._lock:
            if endpoint.address in self._endpoints:
                raise TransportBindError(f"Address already in use: {endpoint.address}")
            self._endpoints[endpoint.address] = endpoint

    def detach(self, address: PeerAddress) -> None:
        with self._lock:
            self._endpoints.pop(address, None)

    def route(self, source: PeerAddress, destination: PeerAddress, data: bytes) -> None:
        if self.fail_sends:
            raise TransportSendError(f"Send to {destination} failed: network down")
        if self.drop_filter is not None and self.drop_filter(source, destination, data):
            logger.debug("Dropped packet {} -> {}", source, destination)
            return
        with self._lock:
            endpoint = self._endpoints.get(destination)
        if endpoint is None:
            # unreachable peers lose the packet, as UDP would
            logger.debug("No endpoint at {}, packet lost", destination)
            return
        endpoint.deliver(source, data)


@dataclass(slots=True)
class MemoryTransport(DatagramTransport):
    """Blocking endpoint on a ``MemoryNetwork``."""

    network: MemoryNetwork
    address: PeerAddress
    _queue: queue.Queue[tuple[PeerAddress, bytes] | None] = field(
        default_factory=queue.Queue, init=False, repr=False
    )
    _closed: bool = field(default=False, init=False)
    _opened: bool = field(default=False, init=False)

    def open(self) -> PeerAddress:
        if not self._opened:
            self.network.attach(self)
            self._opened = True
        return self.address

    def send(self, address: PeerAddress, data: bytes) -> None:
        if self._closed:
            raise TransportClosed("Memory transport is closed")
        self.network.route(self.address, address, data)

    def receive(self) -> tuple[PeerAddress, bytes]:
        if self._closed and self._queue.empty():
            raise TransportClosed("Memory transport is closed")
        item = self._queue.get()
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            raise TransportClosed("Memory transport is closed")
        return item

    def receive_timeout(self, timeout: float) -> tuple[PeerAddress, bytes] | None:
        """Receive with a deadline; returns None when nothing arrived."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            raise TransportClosed("Memory transport is closed")
        return item

    def deliver(self, source: PeerAddress, data: bytes) -> None:
        if not self._closed:
            self._queue.put((source, data))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.network.detach(self.address)
        self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed


@dataclass(slots=True)
class AsyncMemoryTransport(AsyncDatagramTransport):
    """Cooperative endpoint on a ``MemoryNetwork``."""

    network: MemoryNetwork
    address: PeerAddress
    _queue: asyncio.Queue[tuple[PeerAddress, bytes] | None] = field(
        default_factory=asyncio.Queue, init=False, repr=False
    )
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)
    _closed: bool = field(default=False, init=False)

    async def open(self) -> PeerAddress:
        if self._loop is None:
            loop = asyncio.get_running_loop()
            self.network.attach(self)
            self._loop = loop
        return self.address

    async def send(self, address: PeerAddress, data: bytes) -> None:
        if self._closed:
            raise TransportClosed("Memory transport is closed")
        self.network.route(self.address, address, data)

    async def receive(self) -> tuple[PeerAddress, bytes]:
        if self._closed and self._queue.empty():
            raise TransportClosed("Memory transport is closed")
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise TransportClosed("Memory transport is closed")
        return item

    async def receive_timeout(self, timeout: float) -> tuple[PeerAddress, bytes] | None:
        try:
            return await asyncio.wait_for(self.receive(), timeout=timeout)
        except TimeoutError:
            return None

    def deliver(self, source: PeerAddress, data: bytes) -> None:
        if self._closed or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, (source, data))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.network.detach(self.address)
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._queue.put_nowait, _CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed
