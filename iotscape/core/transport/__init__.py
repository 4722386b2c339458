"""Datagram transports: blocking and asyncio UDP, plus in-memory pairs."""

from .interfaces import (
    DEFAULT_MAX_PACKET_SIZE,
    DEFAULT_RECEIVE_POLL_INTERVAL,
    AsyncDatagramTransport,
    DatagramTransport,
    parse_address,
    resolve_address,
)
from .memory import AsyncMemoryTransport, MemoryNetwork, MemoryTransport
from .udp import AsyncUdpTransport, UdpTransport

__all__ = [
    "DEFAULT_MAX_PACKET_SIZE",
    "DEFAULT_RECEIVE_POLL_INTERVAL",
    "AsyncDatagramTransport",
    "AsyncMemoryTransport",
    "AsyncUdpTransport",
    "DatagramTransport",
    "MemoryNetwork",
    "MemoryTransport",
    "UdpTransport",
    "parse_address",
    "resolve_address",
]
