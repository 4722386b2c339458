"""
Datagram transport interfaces.

Two interchangeable families implement the same contract. The blocking
family parks the calling OS thread in ``receive()``; the cooperative family
suspends the calling task. Either way ``receive()`` returns packets in the
order the underlying socket produced them and raises ``TransportClosed`` once
``close()`` has been called, from any thread.

Example Usage:
    transport = UdpTransport(("0.0.0.0", 0))
    transport.open()
    try:
        transport.send(("127.0.0.1", 1978), b"{}")
        address, data = transport.receive()
    finally:
        transport.close()
"""

from __future__ import annotations

import socket
from abc import ABC, abstractmethod

from iotscape.core.errors import TransportError
from iotscape.datastructures.type_aliases import HostAddress, PeerAddress, PortNumber

DEFAULT_MAX_PACKET_SIZE = 65507
DEFAULT_RECEIVE_POLL_INTERVAL = 0.05


def parse_address(value: str | PeerAddress, default_port: PortNumber = 1978) -> PeerAddress:
    """Turn ``"host:port"`` (or a ready tuple) into a ``(host, port)`` pair."""
    if isinstance(value, tuple):
        host, port = value[0], value[1]
        return (str(host), int(port))
    text = value.strip()
    if text.startswith("["):
        host, _, rest = text[1:].partition("]")
        port_text = rest.lstrip(":")
    elif text.count(":") == 1:
        host, _, port_text = text.partition(":")
    else:
        host, port_text = text, ""
    if not host:
        raise ValueError(f"Missing host in address: {value!r}")
    try:
        port = int(port_text) if port_text else default_port
    except ValueError:
        raise ValueError(f"Invalid port in address: {value!r}") from None
    return (host, port)


def resolve_address(host: HostAddress, port: PortNumber) -> PeerAddress:
    """Resolve a host name once so packets are not sent to a name per call."""
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
    except socket.gaierror as e:
        raise TransportError(f"Cannot resolve {host}:{port}: {e}") from e
    family, _, _, _, sockaddr = infos[0]
    return (str(sockaddr[0]), int(sockaddr[1]))


class DatagramTransport(ABC):
    """Blocking datagram transport; one OS thread sits in ``receive()``."""

    @abstractmethod
    def open(self) -> PeerAddress:
        """Bind the local endpoint and return the bound address.

        Raises:
            TransportBindError: the address cannot be bound
        """
        pass

    @abstractmethod
    def send(self, address: PeerAddress, data: bytes) -> None:
        """Send one datagram.

        Raises:
            TransportClosed: the transport has been closed
            TransportSendError: the socket refused the datagram
        """
        pass

    @abstractmethod
    def receive(self) -> tuple[PeerAddress, bytes]:
        """Block until a datagram arrives.

        Raises:
            TransportClosed: the transport was closed while waiting
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the transport. Safe to call from any thread, more than once."""
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass


class AsyncDatagramTransport(ABC):
    """Cooperative datagram transport for an asyncio event loop."""

    @abstractmethod
    async def open(self) -> PeerAddress:
        pass

    @abstractmethod
    async def send(self, address: PeerAddress, data: bytes) -> None:
        pass

    @abstractmethod
    async def receive(self) -> tuple[PeerAddress, bytes]:
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the transport. Safe to call from any thread, more than once."""
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass
