"""
Dispatch engine.

``Dispatcher`` holds every routing decision and owns no I/O: it turns one
received datagram into at most one *action* for a driver to perform. The two
drivers, ``ThreadedDispatchLoop`` and ``AsyncDispatchLoop``, only move bytes
and call handlers, so both scheduling models share the same semantics.

Actions:

- ``Reply``: encoded bytes to send back to a peer.
- ``Invocation``: a handler call whose outcome must be passed to
  ``Dispatcher.complete()``, which returns the ``Reply`` to send. The driver
  calls ``Dispatcher.end_invocation()`` once that reply has been sent, so
  ``wait_idle()`` never returns while a reply is still on its way out.
- ``Delivery``: an inbound event for the event listener.

Lifecycle: ``IDLE -> RUNNING -> STOPPING -> STOPPED``. Once ``STOPPING`` has
been entered no new invocation is started; invocations already running are
allowed to finish.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from contextvars import ContextVar
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

from loguru import logger

from iotscape.core.codec import decode, encode
from iotscape.core.definition import ServiceIdentity
from iotscape.core.errors import (
    DecodeError,
    HandlerError,
    RemoteError,
    TransportClosed,
    TransportError,
    UnknownMethod,
    UnknownRequestId,
)
from iotscape.core.locks import STATS_RANK, OrderedLock, assert_no_locks_held
from iotscape.core.model import (
    AnnounceAckEnvelope,
    AnnounceEnvelope,
    ErrorEnvelope,
    EventEnvelope,
    RequestEnvelope,
    ResponseEnvelope,
)
from iotscape.core.registry import Handler, HandlerRegistry
from iotscape.core.state import ClientHandle, ConnectionStateStore, InboundState
from iotscape.core.transport.interfaces import AsyncDatagramTransport, DatagramTransport
from iotscape.datastructures.type_aliases import PeerAddress

HEARTBEAT_METHOD = "heartbeat"

ERROR_CODE_BAD_REQUEST = 400
ERROR_CODE_UNKNOWN_METHOD = 404
ERROR_CODE_HANDLER_FAILED = 500

type EventListener = Callable[[PeerAddress, EventEnvelope], Any]

# Set by the dispatch loops while a handler runs; read by handlers that need
# the id of the request they are serving.
current_request: ContextVar[RequestEnvelope | None] = ContextVar(
    "current_request", default=None
)


class DispatchState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(slots=True)
class DispatchStatistics:
    """Counters maintained by the dispatcher."""

    packets_received: int = 0
    decode_failures: int = 0
    requests_dispatched: int = 0
    duplicate_requests: int = 0
    unknown_methods: int = 0
    handler_errors: int = 0
    heartbeats: int = 0
    responses_resolved: int = 0
    late_responses: int = 0
    events_received: int = 0
    dropped_while_stopping: int = 0
    send_failures: int = 0
    _lock: OrderedLock = field(
        default_factory=lambda: OrderedLock("stats", STATS_RANK), repr=False
    )

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                f.name: getattr(self, f.name)
                for f in fields(self)
                if not f.name.startswith("_")
            }


@dataclass(frozen=True, slots=True)
class Reply:
    address: PeerAddress
    data: bytes


@dataclass(frozen=True, slots=True)
class Invocation:
    address: PeerAddress
    request: RequestEnvelope
    handler: Handler
    client: ClientHandle


@dataclass(frozen=True, slots=True)
class Delivery:
    address: PeerAddress
    event: EventEnvelope
    listener: EventListener


type DispatchAction = Reply | Invocation | Delivery | None


@dataclass(slots=True)
class Dispatcher:
    """Routing core shared by both scheduling models."""

    identity: ServiceIdentity
    store: ConnectionStateStore
    handlers: HandlerRegistry
    event_listener: EventListener | None = None
    instrumented: bool = False
    stats: DispatchStatistics = field(default_factory=DispatchStatistics)
    _state: DispatchState = field(default=DispatchState.IDLE, init=False)
    _inflight: int = field(default=0, init=False)
    # leaf lock: nothing else is acquired while it is held
    _condition: threading.Condition = field(
        default_factory=threading.Condition, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self.stats._lock.instrumented = self.instrumented

    @property
    def state(self) -> DispatchState:
        return self._state

    @property
    def inflight(self) -> int:
        with self._condition:
            return self._inflight

    # Lifecycle

    def begin(self) -> None:
        with self._condition:
            if self._state is not DispatchState.IDLE:
                raise RuntimeError(f"Dispatcher cannot start from {self._state.value}")
            self._state = DispatchState.RUNNING

    def begin_stop(self) -> bool:
        """Enter ``STOPPING``. Returns False if already stopping or stopped."""
        with self._condition:
            if self._state in (DispatchState.STOPPING, DispatchState.STOPPED):
                return False
            self._state = DispatchState.STOPPING
            self._condition.notify_all()
            return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no invocation is in flight."""
        with self._condition:
            return self._condition.wait_for(lambda: self._inflight == 0, timeout)

    def mark_stopped(self) -> None:
        with self._condition:
            self._state = DispatchState.STOPPED
            self._condition.notify_all()

    def _begin_invocation(self) -> bool:
        with self._condition:
            if self._state is not DispatchState.RUNNING:
                return False
            self._inflight += 1
            return True

    def end_invocation(self) -> None:
        """Release an invocation admitted by ``route()``; call after its reply is sent."""
        with self._condition:
            self._inflight -= 1
            if self._inflight == 0:
                self._condition.notify_all()

    # Routing

    def route(self, address: PeerAddress, data: bytes) -> DispatchAction:
        """Decide what to do with one received datagram."""
        self.stats.increment("packets_received")
        try:
            envelope = decode(data)
        except DecodeError as e:
            self.stats.increment("decode_failures")
            logger.warning("Dropping malformed packet from {}: {}", address, e)
            return None

        match envelope:
            case RequestEnvelope():
                return self._route_request(address, envelope)
            case ResponseEnvelope():
                self._resolve(envelope.id, envelope.response)
            case AnnounceAckEnvelope():
                self._resolve(envelope.id, True)
            case ErrorEnvelope():
                self._fail(
                    envelope.id,
                    RemoteError(envelope.id, envelope.error, envelope.code),
                )
            case EventEnvelope():
                self.stats.increment("events_received")
                if self.event_listener is not None:
                    return Delivery(address, envelope, self.event_listener)
                logger.debug("Ignoring event {} from {}", envelope.event, address)
            case AnnounceEnvelope():
                logger.debug("Ignoring announce for {} from {}", envelope.service, address)
        return None

    def _route_request(
        self, address: PeerAddress, request: RequestEnvelope
    ) -> DispatchAction:
        if self._state is not DispatchState.RUNNING:
            self.stats.increment("dropped_while_stopping")
            logger.debug("Dropping request {} while {}", request.id, self._state.value)
            return None

        if request.service != self.identity.service_type:
            logger.warning(
                "Request {} for service {} reached {}",
                request.id,
                request.service,
                self.identity.service_type,
            )
            return Reply(
                address,
                self._error_bytes(
                    request,
                    f"Unknown service: {request.service}",
                    ERROR_CODE_BAD_REQUEST,
                ),
            )

        client = self.store.take_client(address, request.client or "")

        claim = self.store.claim_inbound(address, request.id)
        if claim.state is InboundState.IN_FLIGHT:
            self.stats.increment("duplicate_requests")
            logger.debug("Duplicate request {} still in flight, dropped", request.id)
            return None
        if claim.state is InboundState.COMPLETED:
            self.stats.increment("duplicate_requests")
            logger.debug("Duplicate request {}, resending cached reply", request.id)
            return Reply(address, claim.cached_reply or b"")

        if request.method == HEARTBEAT_METHOD and HEARTBEAT_METHOD not in self.handlers:
            self.stats.increment("heartbeats")
            return self._finish(address, request, self._response_bytes(request, None))

        try:
            handler = self.handlers.get(request.method)
        except UnknownMethod as e:
            self.stats.increment("unknown_methods")
            logger.warning("Unknown method {} requested by {}", request.method, address)
            return self._finish(
                address,
                request,
                self._error_bytes(request, str(e), ERROR_CODE_UNKNOWN_METHOD),
            )

        if not self._begin_invocation():
            # stop() won the race after the state check above
            self.store.abandon_inbound(address, request.id)
            self.stats.increment("dropped_while_stopping")
            return None

        self.stats.increment("requests_dispatched")
        return Invocation(address=address, request=request, handler=handler, client=client)

    def complete(
        self,
        invocation: Invocation,
        result: Any = None,
        error: BaseException | None = None,
    ) -> Reply:
        """Turn a handler outcome into the reply for the requester.

        The invocation stays in flight until ``end_invocation()``.
        """
        request = invocation.request
        if error is not None:
            self.stats.increment("handler_errors")
            if isinstance(error, HandlerError):
                data = self._error_bytes(request, error.message, error.code)
            else:
                logger.opt(exception=error).error(
                    "Handler {} failed for request {}", request.method, request.id
                )
                data = self._error_bytes(
                    request,
                    f"{type(error).__name__}: {error}",
                    ERROR_CODE_HANDLER_FAILED,
                )
        else:
            try:
                data = self._response_bytes(request, result)
            except (TypeError, ValueError) as e:
                self.stats.increment("handler_errors")
                logger.error(
                    "Result of {} is not JSON serializable: {}", request.method, e
                )
                data = self._error_bytes(
                    request,
                    f"Result is not serializable: {e}",
                    ERROR_CODE_HANDLER_FAILED,
                )
        return self._finish(invocation.address, request, data)

    def _finish(self, address: PeerAddress, request: RequestEnvelope, data: bytes) -> Reply:
        self.store.complete_inbound(address, request.id, data)
        return Reply(address, data)

    def _resolve(self, request_id: str, result: Any) -> None:
        try:
            self.store.resolve(request_id, result)
        except UnknownRequestId:
            self.stats.increment("late_responses")
            logger.info("Dropping late or duplicate response {}", request_id)
            return
        self.stats.increment("responses_resolved")

    def _fail(self, request_id: str, error: RemoteError) -> None:
        try:
            self.store.fail(request_id, error)
        except UnknownRequestId:
            self.stats.increment("late_responses")
            logger.info("Dropping late or duplicate error {}", request_id)
            return
        self.stats.increment("responses_resolved")

    # Envelope construction

    def _response_bytes(self, request: RequestEnvelope, result: Any) -> bytes:
        return encode(
            ResponseEnvelope(
                id=request.id,
                service=self.identity.service_type,
                device=self.identity.instance_id,
                response=result,
            )
        )

    def _error_bytes(self, request: RequestEnvelope, message: str, code: int) -> bytes:
        return encode(
            ErrorEnvelope(
                id=request.id,
                service=self.identity.service_type,
                device=self.identity.instance_id,
                error=message,
                code=code,
            )
        )


@dataclass(slots=True)
class ThreadedDispatchLoop:
    """Runs the receive cycle on one dedicated OS thread.

    Handlers run on the dispatch thread, one at a time, in arrival order.
    """

    dispatcher: Dispatcher
    transport: DatagramTransport
    _thread: threading.Thread | None = field(default=None, init=False, repr=False)

    def start(self) -> None:
        self.dispatcher.begin()
        self._thread = threading.Thread(
            target=self._run,
            name=f"iotscape-dispatch-{self.dispatcher.identity.instance_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop accepting requests, wait for the running handler, close the transport."""
        self.dispatcher.begin_stop()
        on_loop_thread = threading.current_thread() is self._thread
        if not on_loop_thread:
            if not self.dispatcher.wait_idle(timeout):
                logger.warning("Handlers still running after {} seconds", timeout)
        self.transport.close()
        if self._thread is not None and not on_loop_thread:
            self._thread.join(timeout)
        if self._thread is None or not self._thread.is_alive():
            self.dispatcher.mark_stopped()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def on_loop_thread(self) -> bool:
        return threading.current_thread() is self._thread

    def _run(self) -> None:
        logger.debug("Dispatch loop started")
        try:
            while True:
                try:
                    address, data = self.transport.receive()
                except TransportClosed:
                    break
                try:
                    self._perform(self.dispatcher.route(address, data))
                except Exception:
                    logger.exception("Unexpected error handling packet from {}", address)
        finally:
            self.dispatcher.mark_stopped()
            logger.debug("Dispatch loop stopped")

    def _perform(self, action: DispatchAction) -> None:
        match action:
            case Reply():
                self._send(action)
            case Invocation():
                try:
                    self._send(self._invoke(action))
                finally:
                    self.dispatcher.end_invocation()
            case Delivery():
                self._deliver(action)

    def _invoke(self, invocation: Invocation) -> Reply:
        if self.dispatcher.instrumented:
            assert_no_locks_held(f"handler {invocation.handler.name}")
        handler = invocation.handler
        token = current_request.set(invocation.request)
        try:
            if handler.is_coroutine:
                result = asyncio.run(handler.call_async(*invocation.request.args))
            else:
                result = handler(*invocation.request.args)
        except Exception as e:
            return self.dispatcher.complete(invocation, error=e)
        finally:
            current_request.reset(token)
        return self.dispatcher.complete(invocation, result=result)

    def _deliver(self, delivery: Delivery) -> None:
        try:
            outcome = delivery.listener(delivery.address, delivery.event)
            if asyncio.iscoroutine(outcome):
                asyncio.run(outcome)
        except Exception:
            logger.exception("Event listener failed for {}", delivery.event.event)

    def _send(self, reply: Reply) -> None:
        if self.dispatcher.instrumented:
            assert_no_locks_held("send")
        try:
            self.transport.send(reply.address, reply.data)
        except TransportError as e:
            self.dispatcher.stats.increment("send_failures")
            logger.warning("Could not send reply to {}: {}", reply.address, e)


@dataclass(slots=True)
class AsyncDispatchLoop:
    """Runs the receive cycle as an asyncio task.

    Each invocation gets its own task so a slow handler does not hold up
    the receive cycle.
    """

    dispatcher: Dispatcher
    transport: AsyncDatagramTransport
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _invocations: set[asyncio.Task[None]] = field(default_factory=set, init=False)

    def start(self) -> None:
        self.dispatcher.begin()
        self._task = asyncio.create_task(
            self._run(),
            name=f"iotscape-dispatch-{self.dispatcher.identity.instance_id}",
        )

    async def stop(self, timeout: float | None = None) -> None:
        self.dispatcher.begin_stop()
        current = asyncio.current_task()
        pending = [task for task in self._invocations if task is not current]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            if still_running:
                logger.warning(
                    "{} handlers still running after {} seconds",
                    len(still_running),
                    timeout,
                )
        self.transport.close()
        if self._task is not None and self._task is not current:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout)
            except TimeoutError:
                logger.warning("Dispatch task did not exit, cancelling")
                self._task.cancel()
        self.dispatcher.mark_stopped()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        logger.debug("Dispatch task started")
        try:
            while True:
                try:
                    address, data = await self.transport.receive()
                except TransportClosed:
                    break
                try:
                    await self._perform(self.dispatcher.route(address, data))
                except Exception:
                    logger.exception("Unexpected error handling packet from {}", address)
        finally:
            self.dispatcher.mark_stopped()
            logger.debug("Dispatch task stopped")

    async def _perform(self, action: DispatchAction) -> None:
        match action:
            case Reply():
                await self._send(action)
            case Invocation():
                task = asyncio.create_task(self._invoke(action))
                self._invocations.add(task)
                task.add_done_callback(self._invocations.discard)
            case Delivery():
                await self._deliver(action)

    async def _invoke(self, invocation: Invocation) -> None:
        # each invocation task runs in its own copy of the context
        current_request.set(invocation.request)
        try:
            if self.dispatcher.instrumented:
                assert_no_locks_held(f"handler {invocation.handler.name}")
            try:
                result = await invocation.handler.call_async(*invocation.request.args)
            except asyncio.CancelledError:
                self.dispatcher.complete(invocation, error=HandlerError("Handler cancelled"))
                raise
            except Exception as e:
                reply = self.dispatcher.complete(invocation, error=e)
            else:
                reply = self.dispatcher.complete(invocation, result=result)
            await self._send(reply)
        finally:
            self.dispatcher.end_invocation()

    async def _deliver(self, delivery: Delivery) -> None:
        try:
            outcome = delivery.listener(delivery.address, delivery.event)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception:
            logger.exception("Event listener failed for {}", delivery.event.event)

    async def _send(self, reply: Reply) -> None:
        try:
            await self.transport.send(reply.address, reply.data)
        except TransportError as e:
            self.dispatcher.stats.increment("send_failures")
            logger.warning("Could not send reply to {}: {}", reply.address, e)
