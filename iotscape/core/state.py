"""
Connection state store.

The store is the single piece of mutable state shared between the dispatch
loop, the announcer and caller threads/tasks. It owns three tables:

- pending request slots for outbound requests awaiting a response,
- the client registry of peers that have sent us requests,
- the inbound request table used to suppress duplicate dispatch.

Every public method takes the store lock for the duration of a dictionary
update only. A slot is moved out of the pending table and its future is
completed in one critical section, so a reader never observes a partially
resolved slot. The only callbacks attached to slot futures are asyncio
thread-safe wakeups, which never take the store lock.

Resolved slots stay collectable until their waiter picks the result up, so a
response that beats the caller into ``wait`` is not lost.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import ulid
from loguru import logger

from iotscape.core.errors import RequestTimeout, UnknownRequestId
from iotscape.core.locks import STORE_RANK, OrderedLock
from iotscape.datastructures.type_aliases import (
    ClientId,
    DurationSeconds,
    PeerAddress,
    RequestId,
    Timestamp,
)


@dataclass(slots=True)
class PendingSlot:
    """Placeholder for one outstanding request."""

    request_id: RequestId
    created_at: Timestamp
    peer: PeerAddress | None = None
    future: concurrent.futures.Future[Any] = field(
        default_factory=concurrent.futures.Future, repr=False
    )


@dataclass(slots=True)
class ClientHandle:
    """A remote peer that has addressed requests to this service."""

    address: PeerAddress
    client_id: ClientId
    first_seen: Timestamp
    last_seen: Timestamp
    request_count: int = 0

    @property
    def key(self) -> tuple[PeerAddress, ClientId]:
        return (self.address, self.client_id)


class InboundState(Enum):
    NEW = "new"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class InboundClaim:
    state: InboundState
    cached_reply: bytes | None = None


@dataclass(slots=True)
class ConnectionStateStore:
    """Thread- and task-safe registry of pending requests and known clients."""

    duplicate_cache_size: int = 256
    instrumented: bool = False
    _lock: OrderedLock = field(init=False, repr=False)
    _pending: dict[RequestId, PendingSlot] = field(default_factory=dict, init=False)
    _resolved: dict[RequestId, PendingSlot] = field(default_factory=dict, init=False)
    _clients: dict[tuple[PeerAddress, ClientId], ClientHandle] = field(
        default_factory=dict, init=False
    )
    _inflight: set[tuple[PeerAddress, RequestId]] = field(
        default_factory=set, init=False
    )
    _completed: OrderedDict[tuple[PeerAddress, RequestId], bytes] = field(
        default_factory=OrderedDict, init=False
    )

    def __post_init__(self) -> None:
        self._lock = OrderedLock("store", STORE_RANK, instrumented=self.instrumented)

    # Pending request slots

    def register_pending(self, peer: PeerAddress | None = None) -> RequestId:
        """Allocate a fresh request id and its pending slot."""
        with self._lock:
            request_id = str(ulid.new())
            while request_id in self._pending or request_id in self._resolved:
                request_id = str(ulid.new())
            self._pending[request_id] = PendingSlot(
                request_id=request_id, created_at=time.time(), peer=peer
            )
        return request_id

    def resolve(self, request_id: RequestId, result: Any) -> None:
        """Complete a pending slot with a result.

        Raises:
            UnknownRequestId: the slot was never allocated, already resolved,
                or removed after a timeout.
        """
        with self._lock:
            slot = self._move_to_resolved(request_id)
            slot.future.set_result(result)

    def fail(self, request_id: RequestId, error: BaseException) -> None:
        """Complete a pending slot with an exception."""
        with self._lock:
            slot = self._move_to_resolved(request_id)
            slot.future.set_exception(error)

    def _move_to_resolved(self, request_id: RequestId) -> PendingSlot:
        slot = self._pending.pop(request_id, None)
        if slot is None:
            raise UnknownRequestId(request_id)
        self._resolved[request_id] = slot
        return slot

    def has_pending(self, request_id: RequestId) -> bool:
        with self._lock:
            return request_id in self._pending

    def pending_ids(self) -> tuple[RequestId, ...]:
        with self._lock:
            return tuple(self._pending)

    def discard_pending(self, request_id: RequestId) -> bool:
        """Drop a slot without resolving it. Returns whether it existed."""
        with self._lock:
            slot = self._pending.pop(request_id, None)
            self._resolved.pop(request_id, None)
            if slot is None:
                return False
            slot.future.cancel()
            return True

    def _future_for(self, request_id: RequestId) -> concurrent.futures.Future[Any]:
        with self._lock:
            slot = self._pending.get(request_id) or self._resolved.get(request_id)
        if slot is None:
            raise UnknownRequestId(request_id)
        return slot.future

    def wait(self, request_id: RequestId, timeout: DurationSeconds | None = None) -> Any:
        """Block the calling thread until the slot is resolved.

        On expiry the slot is removed, so a response arriving afterwards is
        reported as unknown and dropped by the dispatcher.
        """
        future = self._future_for(request_id)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            if not self._expire(request_id):
                # resolved between the timeout and the expiry
                return future.result()
            raise RequestTimeout(request_id, timeout) from None
        finally:
            self._collect(request_id)

    async def wait_async(
        self, request_id: RequestId, timeout: DurationSeconds | None = None
    ) -> Any:
        """Cooperative counterpart of ``wait``."""
        future = self._future_for(request_id)
        try:
            return await asyncio.wait_for(
                asyncio.shield(asyncio.wrap_future(future)), timeout=timeout
            )
        except TimeoutError:
            if not self._expire(request_id):
                return future.result()
            raise RequestTimeout(request_id, timeout) from None
        finally:
            self._collect(request_id)

    def _expire(self, request_id: RequestId) -> bool:
        with self._lock:
            slot = self._pending.pop(request_id, None)
            if slot is None:
                return False
            slot.future.cancel()
        logger.debug("Pending request {} expired", request_id)
        return True

    def _collect(self, request_id: RequestId) -> None:
        with self._lock:
            self._resolved.pop(request_id, None)

    def purge_resolved(
        self, age: DurationSeconds, now: Timestamp | None = None
    ) -> tuple[RequestId, ...]:
        """Drop resolved slots whose waiter never came to collect them.

        Live pending slots are left alone; those end with their waiter's
        timeout.
        """
        now = time.time() if now is None else now
        with self._lock:
            stale = [
                request_id
                for request_id, slot in self._resolved.items()
                if now - slot.created_at > age
            ]
            for request_id in stale:
                del self._resolved[request_id]
        return tuple(stale)

    def resolved_ids(self) -> tuple[RequestId, ...]:
        with self._lock:
            return tuple(self._resolved)

    # Client registry

    def take_client(
        self, address: PeerAddress, client_id: ClientId, now: Timestamp | None = None
    ) -> ClientHandle:
        """Return the entry for a peer, creating it on first contact."""
        now = time.time() if now is None else now
        key = (address, client_id)
        with self._lock:
            handle = self._clients.get(key)
            if handle is None:
                handle = ClientHandle(
                    address=address, client_id=client_id, first_seen=now, last_seen=now
                )
                self._clients[key] = handle
                logger.debug("New client {} at {}", client_id, address)
            handle.last_seen = now
            handle.request_count += 1
            return ClientHandle(
                address=handle.address,
                client_id=handle.client_id,
                first_seen=handle.first_seen,
                last_seen=handle.last_seen,
                request_count=handle.request_count,
            )

    def remove_client(self, address: PeerAddress, client_id: ClientId) -> bool:
        with self._lock:
            return self._clients.pop((address, client_id), None) is not None

    def evict_idle(
        self, threshold: DurationSeconds, now: Timestamp | None = None
    ) -> list[ClientHandle]:
        """Remove clients not seen for longer than ``threshold`` seconds."""
        now = time.time() if now is None else now
        with self._lock:
            idle = [
                handle
                for handle in self._clients.values()
                if now - handle.last_seen > threshold
            ]
            for handle in idle:
                del self._clients[handle.key]
        for handle in idle:
            logger.debug("Evicted idle client {} at {}", handle.client_id, handle.address)
        return idle

    def clients(self) -> tuple[ClientHandle, ...]:
        with self._lock:
            return tuple(self._clients.values())

    def client_addresses(self) -> tuple[PeerAddress, ...]:
        """Distinct peer addresses, in first-contact order."""
        with self._lock:
            return tuple(dict.fromkeys(handle.address for handle in self._clients.values()))

    # Inbound request table

    def claim_inbound(self, address: PeerAddress, request_id: RequestId) -> InboundClaim:
        """Mark an inbound request as in flight unless it was seen before."""
        key = (address, request_id)
        with self._lock:
            if key in self._inflight:
                return InboundClaim(InboundState.IN_FLIGHT)
            cached = self._completed.get(key)
            if cached is not None:
                self._completed.move_to_end(key)
                return InboundClaim(InboundState.COMPLETED, cached)
            self._inflight.add(key)
            return InboundClaim(InboundState.NEW)

    def complete_inbound(
        self, address: PeerAddress, request_id: RequestId, reply: bytes
    ) -> None:
        """Record the encoded reply so duplicates can be answered from cache."""
        key = (address, request_id)
        with self._lock:
            self._inflight.discard(key)
            if self.duplicate_cache_size <= 0:
                return
            self._completed[key] = reply
            self._completed.move_to_end(key)
            while len(self._completed) > self.duplicate_cache_size:
                self._completed.popitem(last=False)

    def abandon_inbound(self, address: PeerAddress, request_id: RequestId) -> None:
        with self._lock:
            self._inflight.discard((address, request_id))

    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)
