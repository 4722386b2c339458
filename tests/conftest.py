"""Pytest configuration and fixtures for iotscape testing.

Services under test talk over an in-memory datagram network. A fake server
endpoint sits at the server address and lets tests read what the service
sent and inject packets of their own. Every fixture stops what it started.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncGenerator, Callable, Generator
from dataclasses import dataclass
from typing import Any

import orjson
import pytest
import pytest_asyncio

from iotscape.core.config import IoTScapeSettings
from iotscape.core.definition import (
    MethodDescription,
    MethodReturns,
    ServiceDefinition,
    ServiceIdentity,
)
from iotscape.core.transport import AsyncMemoryTransport, MemoryNetwork, MemoryTransport
from iotscape.datastructures.type_aliases import PeerAddress

SERVER_ADDRESS: PeerAddress = ("127.0.0.1", 1978)
SERVICE_ADDRESS: PeerAddress = ("127.0.0.1", 40001)


def wait_until(
    predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01
) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


async def wait_until_async(
    predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01
) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@dataclass
class FakeServer:
    """The NetsBlox side of an in-memory conversation (blocking)."""

    transport: MemoryTransport

    def send(self, address: PeerAddress, payload: dict[str, Any] | bytes) -> None:
        data = payload if isinstance(payload, bytes) else orjson.dumps(payload)
        self.transport.send(address, data)

    def receive(self, timeout: float = 2.0) -> tuple[PeerAddress, dict[str, Any]] | None:
        item = self.transport.receive_timeout(timeout)
        if item is None:
            return None
        address, data = item
        return address, orjson.loads(data)

    def expect(
        self, kind: str | None = None, timeout: float = 2.0
    ) -> tuple[PeerAddress, dict[str, Any]]:
        """Next packet of ``kind``; packets of other kinds are skipped."""
        deadline = time.monotonic() + timeout
        while (remaining := deadline - time.monotonic()) > 0:
            item = self.receive(remaining)
            if item is None:
                break
            if kind is None or item[1].get("kind") == kind:
                return item
        raise AssertionError(f"No {kind or 'packet'} received within {timeout}s")

    def call(
        self,
        address: PeerAddress,
        method: str,
        *args: Any,
        request_id: str = "r1",
        service: str = "TempSensor",
        timeout: float = 2.0,
    ) -> dict[str, Any]:
        self.send(
            address,
            {
                "kind": "request",
                "id": request_id,
                "service": service,
                "method": method,
                "args": list(args),
            },
        )
        while True:
            _, reply = self.expect(timeout=timeout)
            if reply.get("kind") in ("response", "error") and reply["id"] == request_id:
                return reply


@dataclass
class AsyncFakeServer:
    """The NetsBlox side of an in-memory conversation (asyncio)."""

    transport: AsyncMemoryTransport

    async def send(self, address: PeerAddress, payload: dict[str, Any] | bytes) -> None:
        data = payload if isinstance(payload, bytes) else orjson.dumps(payload)
        await self.transport.send(address, data)

    async def expect(
        self, kind: str | None = None, timeout: float = 2.0
    ) -> tuple[PeerAddress, dict[str, Any]]:
        deadline = time.monotonic() + timeout
        while (remaining := deadline - time.monotonic()) > 0:
            item = await self.transport.receive_timeout(remaining)
            if item is None:
                break
            address, data = item
            payload = orjson.loads(data)
            if kind is None or payload.get("kind") == kind:
                return address, payload
        raise AssertionError(f"No {kind or 'packet'} received within {timeout}s")

    async def call(
        self,
        address: PeerAddress,
        method: str,
        *args: Any,
        request_id: str = "r1",
        service: str = "TempSensor",
        timeout: float = 2.0,
    ) -> dict[str, Any]:
        await self.send(
            address,
            {
                "kind": "request",
                "id": request_id,
                "service": service,
                "method": method,
                "args": list(args),
            },
        )
        while True:
            _, reply = await self.expect(timeout=timeout)
            if reply.get("kind") in ("response", "error") and reply["id"] == request_id:
                return reply


@pytest.fixture
def identity() -> ServiceIdentity:
    definition = ServiceDefinition(
        methods={
            "getTemperature": MethodDescription(
                documentation="Current temperature in Celsius",
                returns=MethodReturns(("number",)),
            ),
        },
    )
    return ServiceIdentity("TempSensor", "dev1", definition)


@pytest.fixture
def settings() -> IoTScapeSettings:
    return IoTScapeSettings(
        server_address=f"{SERVER_ADDRESS[0]}:{SERVER_ADDRESS[1]}",
        announce_interval=60.0,
        request_timeout=1.0,
        client_idle_timeout=60.0,
        stop_timeout=2.0,
    )


@pytest.fixture
def network() -> MemoryNetwork:
    return MemoryNetwork()


@pytest.fixture
def fake_server(network: MemoryNetwork) -> Generator[FakeServer, None, None]:
    transport = MemoryTransport(network, SERVER_ADDRESS)
    transport.open()
    yield FakeServer(transport)
    transport.close()


@pytest.fixture
def service_transport(network: MemoryNetwork) -> MemoryTransport:
    return MemoryTransport(network, SERVICE_ADDRESS)


@pytest_asyncio.fixture
async def async_fake_server(
    network: MemoryNetwork,
) -> AsyncGenerator[AsyncFakeServer, None]:
    transport = AsyncMemoryTransport(network, SERVER_ADDRESS)
    await transport.open()
    yield AsyncFakeServer(transport)
    transport.close()


@pytest.fixture
def async_service_transport(network: MemoryNetwork) -> AsyncMemoryTransport:
    return AsyncMemoryTransport(network, SERVICE_ADDRESS)
