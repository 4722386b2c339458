"""UDP socket transports."""

from __future__ import annotations

import asyncio
import socket
import threading
from dataclasses import dataclass, field

from loguru import logger

from iotscape.core.errors import (
    TransportBindError,
    TransportClosed,
    TransportSendError,
)
from iotscape.datastructures.type_aliases import PeerAddress

from .interfaces import (
    DEFAULT_MAX_PACKET_SIZE,
    DEFAULT_RECEIVE_POLL_INTERVAL,
    AsyncDatagramTransport,
    DatagramTransport,
)


def _family_for(host: str) -> socket.AddressFamily:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def _peer(address: tuple[object, ...]) -> PeerAddress:
    return (str(address[0]), int(address[1]))  # type: ignore[call-overload]


@dataclass(slots=True)
class UdpTransport(DatagramTransport):
    """Blocking UDP transport.

    The socket uses a short timeout so that a ``close()`` issued from another
    thread is noticed by the receiving thread within ``poll_interval``.
    """

    bind_address: PeerAddress = ("0.0.0.0", 0)
    max_packet_size: int = DEFAULT_MAX_PACKET_SIZE
    poll_interval: float = DEFAULT_RECEIVE_POLL_INTERVAL
    _socket: socket.socket | None = field(default=None, init=False, repr=False)
    _closed: threading.Event = field(default_factory=threading.Event, init=False)

    def open(self) -> PeerAddress:
        if self._socket is not None:
            return _peer(self._socket.getsockname())
        sock = socket.socket(_family_for(self.bind_address[0]), socket.SOCK_DGRAM)
        try:
            sock.bind(self.bind_address)
        except OSError as e:
            sock.close()
            raise TransportBindError(
                f"Cannot bind UDP socket to {self.bind_address}: {e}"
            ) from e
        sock.settimeout(self.poll_interval)
        self._socket = sock
        local = _peer(sock.getsockname())
        logger.info("UDP transport bound to {}", local)
        return local

    def send(self, address: PeerAddress, data: bytes) -> None:
        sock = self._socket
        if sock is None or self._closed.is_set():
            raise TransportClosed("UDP transport is closed")
        try:
            sock.sendto(data, address)
        except OSError as e:
            logger.error("Failed to send {} bytes to {}: {}", len(data), address, e)
            raise TransportSendError(f"Send to {address} failed: {e}") from e

    def receive(self) -> tuple[PeerAddress, bytes]:
        while True:
            sock = self._socket
            if sock is None or self._closed.is_set():
                raise TransportClosed("UDP transport is closed")
            try:
                data, address = sock.recvfrom(self.max_packet_size)
            except TimeoutError:
                continue
            except OSError as e:
                if self._closed.is_set():
                    raise TransportClosed("UDP transport is closed") from e
                # ICMP errors from earlier sends surface here; they are not fatal
                logger.warning("UDP receive error: {}", e)
                continue
            return _peer(address), data

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._socket is not None:
            self._socket.close()
        logger.info("UDP transport closed")

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def local_address(self) -> PeerAddress | None:
        if self._socket is None or self.closed:
            return None
        return _peer(self._socket.getsockname())


class _QueueingProtocol(asyncio.DatagramProtocol):
    def __init__(self, queue: asyncio.Queue[tuple[PeerAddress, bytes] | None]) -> None:
        self.queue = queue

    def datagram_received(self, data: bytes, addr: tuple[object, ...]) -> None:
        self.queue.put_nowait((_peer(addr), data))

    def error_received(self, exc: Exception) -> None:
        logger.warning("UDP receive error: {}", exc)

    def connection_lost(self, exc: Exception | None) -> None:
        self.queue.put_nowait(None)


@dataclass(slots=True)
class AsyncUdpTransport(AsyncDatagramTransport):
    """UDP transport built on an asyncio datagram endpoint."""

    bind_address: PeerAddress = ("0.0.0.0", 0)
    _transport: asyncio.DatagramTransport | None = field(
        default=None, init=False, repr=False
    )
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)
    _queue: asyncio.Queue[tuple[PeerAddress, bytes] | None] = field(
        default_factory=asyncio.Queue, init=False, repr=False
    )
    _closed: bool = field(default=False, init=False)

    async def open(self) -> PeerAddress:
        if self._transport is not None:
            return _peer(self._transport.get_extra_info("sockname"))
        self._loop = asyncio.get_running_loop()
        try:
            transport, _ = await self._loop.create_datagram_endpoint(
                lambda: _QueueingProtocol(self._queue),
                local_addr=self.bind_address,
                family=_family_for(self.bind_address[0]),
            )
        except OSError as e:
            raise TransportBindError(
                f"Cannot bind UDP socket to {self.bind_address}: {e}"
            ) from e
        self._transport = transport
        local = _peer(transport.get_extra_info("sockname"))
        logger.info("Async UDP transport bound to {}", local)
        return local

    async def send(self, address: PeerAddress, data: bytes) -> None:
        transport = self._transport
        if transport is None or self._closed or transport.is_closing():
            raise TransportClosed("UDP transport is closed")
        try:
            transport.sendto(data, address)
        except OSError as e:
            logger.error("Failed to send {} bytes to {}: {}", len(data), address, e)
            raise TransportSendError(f"Send to {address} failed: {e}") from e

    async def receive(self) -> tuple[PeerAddress, bytes]:
        if self._closed and self._queue.empty():
            raise TransportClosed("UDP transport is closed")
        item = await self._queue.get()
        if item is None:
            # keep the sentinel for any other receiver
            self._queue.put_nowait(None)
            raise TransportClosed("UDP transport is closed")
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        transport = self._transport
        if transport is None:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            transport.close()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            transport.close()
        else:
            loop.call_soon_threadsafe(transport.close)
        logger.info("Async UDP transport closed")

    @property
    def closed(self) -> bool:
        return self._closed
