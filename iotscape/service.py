"""
Service facade.

A service is one device registered with a NetsBlox server. It owns the
connection state store, the handler registry, a dispatch loop and an
announcer, and exposes them through a small surface:

    service = ThreadedService(identity, settings=IoTScapeSettings())

    @service.handler()
    def getTemperature() -> float:
        return 21.5

    with service:
        service.send_event("ready", ["dev1"])
        ...

``ThreadedService`` runs its loops on OS threads; ``AsyncService`` runs them
as tasks on the current event loop. ``create_service()`` picks one from the
``scheduling_model`` setting.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any, TypeVar

import ulid
from loguru import logger

from iotscape.core.announcer import (
    Announcer,
    AsyncAnnouncer,
    ConnectionRecord,
    RegistrationStatus,
    ThreadedAnnouncer,
)
from iotscape.core.codec import encode, encode_announcement
from iotscape.core.config import IoTScapeSettings
from iotscape.core.definition import ServiceIdentity
from iotscape.core.dispatch import (
    AsyncDispatchLoop,
    Dispatcher,
    EventListener,
    ThreadedDispatchLoop,
)
from iotscape.core.errors import (
    ServiceStartError,
    TransportClosed,
    TransportError,
)
from iotscape.core.http_announce import HttpAnnouncer
from iotscape.core.model import AnnounceEnvelope, EventEnvelope, RequestEnvelope
from iotscape.core.registry import Handler, HandlerRegistry
from iotscape.core.state import ClientHandle, ConnectionStateStore
from iotscape.core.transport import (
    AsyncDatagramTransport,
    AsyncUdpTransport,
    DatagramTransport,
    UdpTransport,
    parse_address,
    resolve_address,
)
from iotscape.datastructures.type_aliases import (
    DurationSeconds,
    EventName,
    MethodName,
    PeerAddress,
    RequestId,
)

F = TypeVar("F", bound=Callable[..., Any])

MIN_SWEEP_INTERVAL = 0.05


@dataclass(slots=True)
class ServiceBase:
    """State and wire logic shared by both scheduling models."""

    identity: ServiceIdentity
    settings: IoTScapeSettings = field(default_factory=IoTScapeSettings)
    server_address: str | PeerAddress | None = None
    store: ConnectionStateStore = field(init=False)
    handlers: HandlerRegistry = field(default_factory=HandlerRegistry, init=False)
    dispatcher: Dispatcher = field(init=False)
    announcer: Announcer = field(init=False)
    local_address: PeerAddress | None = field(default=None, init=False)
    _server: PeerAddress = field(init=False)
    _lifecycle: threading.Lock = field(default_factory=threading.Lock, init=False)
    _starting: bool = field(default=False, init=False)
    _started: bool = field(default=False, init=False)
    _stopped: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        instrumented = self.settings.debug_lock_order
        self._server = (
            parse_address(self.server_address)
            if self.server_address is not None
            else self.settings.server
        )
        self.store = ConnectionStateStore(
            duplicate_cache_size=self.settings.duplicate_cache_size,
            instrumented=instrumented,
        )
        self.dispatcher = Dispatcher(
            identity=self.identity,
            store=self.store,
            handlers=self.handlers,
            instrumented=instrumented,
        )
        self.announcer = Announcer(
            ConnectionRecord(
                server_address=self._server,
                announce_interval=self.settings.announce_interval,
                retry_interval=self.settings.retry_interval,
            ),
            instrumented=instrumented,
        )

    # Handlers and listeners

    def register_handler(self, method: MethodName, fun: Callable[..., Any]) -> Handler:
        """Bind a handler to a method name.

        Raises:
            DuplicateHandler: the method already has a handler.
        """
        if self.identity.definition.methods and (
            method not in self.identity.definition.methods
        ):
            logger.warning(
                "Handler {} is not part of the {} definition", method, self.identity.service_type
            )
        return self.handlers.register(method, fun)

    def handler(self, name: MethodName | None = None) -> Callable[[F], F]:
        """Decorator form of ``register_handler``; defaults to the function name."""

        def decorator(fun: F) -> F:
            self.register_handler(name or fun.__name__, fun)
            return fun

        return decorator

    def on_event(self, listener: EventListener | None) -> None:
        """Receive inbound ``event`` envelopes (None to ignore them again)."""
        self.dispatcher.event_listener = listener

    # Introspection

    @property
    def server(self) -> PeerAddress:
        return self._server

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    @property
    def status(self) -> RegistrationStatus:
        return self.announcer.status

    def connection(self) -> ConnectionRecord:
        return self.announcer.snapshot()

    def clients(self) -> tuple[ClientHandle, ...]:
        return self.store.clients()

    def stats(self) -> dict[str, int]:
        return self.dispatcher.stats.snapshot()

    # Lifecycle bookkeeping

    def _claim_start(self) -> None:
        with self._lifecycle:
            if self._started or self._starting:
                raise ServiceStartError(f"{self.identity.service_type} was already started")
            self._starting = True

    def _finish_start(self, succeeded: bool) -> None:
        with self._lifecycle:
            self._starting = False
            self._started = succeeded

    def _claim_stop(self) -> bool:
        with self._lifecycle:
            if not self._started or self._stopped:
                return False
            self._stopped = True
            return True

    def _require_running(self) -> None:
        if not self.running:
            raise TransportClosed(f"{self.identity.service_type} is not running")

    def _require_transport(
        self, transport: DatagramTransport | AsyncDatagramTransport | None
    ) -> None:
        """Sending stays possible while ``stop()`` drains in-flight handlers."""
        if not self._started or transport is None or transport.closed:
            raise TransportClosed(f"{self.identity.service_type} is not running")

    def _resolve_server(self) -> None:
        try:
            self._server = resolve_address(*self._server)
        except TransportError as e:
            raise ServiceStartError(str(e)) from e
        self.announcer.record.server_address = self._server

    def _sweep_interval(self) -> DurationSeconds:
        return max(MIN_SWEEP_INTERVAL, self.settings.client_idle_timeout / 4)

    def _sweep(self) -> None:
        evicted = self.store.evict_idle(self.settings.client_idle_timeout)
        if evicted:
            logger.info("Evicted {} idle clients", len(evicted))
        purged = self.store.purge_resolved(self.settings.request_timeout)
        if purged:
            logger.debug("Purged {} uncollected responses", len(purged))

    # Wire construction

    def _announce_packet(self) -> tuple[RequestId | None, bytes]:
        """Build the announce datagram and, if an ack is awaited, its slot id."""
        if self.settings.announce_format == "legacy":
            # the legacy body carries no id, so it cannot be acknowledged
            return None, encode_announcement(self.identity)
        if self.settings.announce_ack_timeout is not None:
            request_id = self.store.register_pending(self._server)
        else:
            request_id = None
        envelope = AnnounceEnvelope(
            id=request_id or str(ulid.new()),
            service=self.identity.service_type,
            device=self.identity.instance_id,
            definition=self.identity.to_dict(),
        )
        return request_id, encode(envelope)

    def _event_packet(
        self, name: EventName, args: Iterable[Any], request_id: RequestId | None
    ) -> bytes:
        return encode(
            EventEnvelope(
                id=str(ulid.new()),
                service=self.identity.service_type,
                device=self.identity.instance_id,
                event=name,
                args=tuple(args),
                request=request_id,
            )
        )

    def _request_packet(
        self, request_id: RequestId, method: MethodName, args: Iterable[Any]
    ) -> bytes:
        return encode(
            RequestEnvelope(
                id=request_id,
                service=self.identity.service_type,
                device=self.identity.instance_id,
                client=self.identity.instance_id,
                method=method,
                args=tuple(args),
            )
        )

    def _event_targets(self) -> tuple[PeerAddress, ...]:
        if self.settings.event_target == "clients":
            return self.store.client_addresses()
        return (self._server,)


@dataclass(slots=True)
class ThreadedService(ServiceBase):
    """Service whose dispatch loop, announcer and sweeper run on OS threads.

    Handlers run on the dispatch thread one at a time. A handler must not
    call ``request()``: the response would have to be received by the very
    thread that is waiting for it.
    """

    transport: DatagramTransport | None = None
    http_announcer: HttpAnnouncer = field(default_factory=HttpAnnouncer)
    _loop: ThreadedDispatchLoop | None = field(default=None, init=False)
    _announcer_driver: ThreadedAnnouncer | None = field(default=None, init=False)
    _sweeper: threading.Thread | None = field(default=None, init=False)
    _sweep_stop: threading.Event = field(default_factory=threading.Event, init=False)

    def start(self, announce: bool = True) -> None:
        """Bind the socket and start the background threads.

        Raises:
            ServiceStartError: the socket cannot be bound, the server address
                cannot be resolved, or the service was already started.
        """
        self._claim_start()
        if self.transport is None:
            self.transport = UdpTransport(
                bind_address=self.settings.bind,
                max_packet_size=self.settings.max_packet_size,
                poll_interval=self.settings.receive_poll_interval,
            )
        try:
            self.local_address = self.transport.open()
        except TransportError as e:
            self._finish_start(False)
            raise ServiceStartError(f"Cannot start {self.identity.service_type}: {e}") from e
        try:
            self._resolve_server()
        except ServiceStartError:
            self.transport.close()
            self._finish_start(False)
            raise
        self._finish_start(True)

        self._loop = ThreadedDispatchLoop(self.dispatcher, self.transport)
        self._loop.start()
        if announce:
            self._announcer_driver = ThreadedAnnouncer(self.announcer, self._announce_once)
            self._announcer_driver.start()
        self._sweeper = threading.Thread(
            target=self._run_sweeper, name="iotscape-sweeper", daemon=True
        )
        self._sweeper.start()
        logger.info(
            "Service {} ({}) listening on {}, server {}",
            self.identity.service_type,
            self.identity.instance_id,
            self.local_address,
            self._server,
        )

    def stop(self) -> None:
        """Stop the service. Safe to call repeatedly and from any thread."""
        if not self._claim_stop():
            return
        timeout = self.settings.stop_timeout
        self.dispatcher.begin_stop()
        if self._announcer_driver is not None:
            self._announcer_driver.stop(timeout)
        self._sweep_stop.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout)
        if self._loop is not None:
            self._loop.stop(timeout)
        logger.info("Service {} stopped", self.identity.service_type)

    def announce_now(self) -> None:
        """Force an announce attempt on the announcer thread."""
        self._require_running()
        if self._announcer_driver is None:
            raise RuntimeError("The announcer was not started")
        self._announcer_driver.announce_now()

    def announce_once(self) -> bool:
        """Run one announce attempt on the calling thread."""
        self._require_running()
        return self.announcer.run_attempt(self._announce_once)

    def send_event(
        self,
        name: EventName,
        args: Iterable[Any] = (),
        request_id: RequestId | None = None,
    ) -> int:
        """Send an event to the server or to every known client.

        Returns the number of datagrams sent.

        Raises:
            TransportError: a datagram could not be sent.
        """
        self._require_transport(self.transport)
        assert self.transport is not None
        data = self._event_packet(name, args, request_id)
        targets = self._event_targets()
        for address in targets:
            self.transport.send(address, data)
        logger.debug("Sent event {} to {} peers", name, len(targets))
        return len(targets)

    def request(
        self,
        method: MethodName,
        args: Iterable[Any] = (),
        timeout: DurationSeconds | None = None,
    ) -> Any:
        """Call a method on the server and wait for its response.

        Raises:
            RequestTimeout: no response arrived in time.
            RemoteError: the server answered with an error envelope.
            TransportError: the request could not be sent.
        """
        self._require_transport(self.transport)
        assert self.transport is not None and self._loop is not None
        if self._loop.on_loop_thread:
            raise RuntimeError("request() cannot be called from a handler")
        request_id = self.store.register_pending(self._server)
        try:
            self.transport.send(self._server, self._request_packet(request_id, method, args))
        except TransportError:
            self.store.discard_pending(request_id)
            raise
        return self.store.wait(
            request_id, self.settings.request_timeout if timeout is None else timeout
        )

    def _announce_once(self) -> None:
        if self.settings.announce_transport == "http":
            assert self.settings.http_announce_url is not None
            self.http_announcer.announce(self.identity, self.settings.http_announce_url)
            return
        assert self.transport is not None
        request_id, data = self._announce_packet()
        try:
            self.transport.send(self._server, data)
        except TransportError:
            if request_id is not None:
                self.store.discard_pending(request_id)
            raise
        if request_id is not None:
            self.store.wait(request_id, self.settings.announce_ack_timeout)

    def _run_sweeper(self) -> None:
        interval = self._sweep_interval()
        while not self._sweep_stop.wait(interval):
            self._sweep()

    def __enter__(self) -> ThreadedService:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.stop()


@dataclass(slots=True)
class AsyncService(ServiceBase):
    """Service whose loops run as tasks on the running event loop.

    Every inbound request is handled in its own task; coroutine handlers are
    awaited and plain callables are invoked inline.
    """

    transport: AsyncDatagramTransport | None = None
    http_announcer: HttpAnnouncer = field(default_factory=HttpAnnouncer)
    _loop: AsyncDispatchLoop | None = field(default=None, init=False)
    _announcer_driver: AsyncAnnouncer | None = field(default=None, init=False)
    _sweeper: asyncio.Task[None] | None = field(default=None, init=False)

    async def start(self, announce: bool = True) -> None:
        """Bind the socket and start the background tasks.

        Raises:
            ServiceStartError: see ``ThreadedService.start``.
        """
        self._claim_start()
        if self.transport is None:
            self.transport = AsyncUdpTransport(bind_address=self.settings.bind)
        try:
            self.local_address = await self.transport.open()
        except TransportError as e:
            self._finish_start(False)
            raise ServiceStartError(f"Cannot start {self.identity.service_type}: {e}") from e
        try:
            self._resolve_server()
        except ServiceStartError:
            self.transport.close()
            self._finish_start(False)
            raise
        self._finish_start(True)

        self._loop = AsyncDispatchLoop(self.dispatcher, self.transport)
        self._loop.start()
        if announce:
            self._announcer_driver = AsyncAnnouncer(self.announcer, self._announce_once)
            self._announcer_driver.start()
        self._sweeper = asyncio.create_task(self._run_sweeper(), name="iotscape-sweeper")
        logger.info(
            "Service {} ({}) listening on {}, server {}",
            self.identity.service_type,
            self.identity.instance_id,
            self.local_address,
            self._server,
        )

    async def stop(self) -> None:
        """Stop the service. Safe to call repeatedly, including from a handler."""
        if not self._claim_stop():
            return
        timeout = self.settings.stop_timeout
        self.dispatcher.begin_stop()
        if self._announcer_driver is not None:
            await self._announcer_driver.stop(timeout)
        if self._sweeper is not None and self._sweeper is not asyncio.current_task():
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
        if self._loop is not None:
            await self._loop.stop(timeout)
        logger.info("Service {} stopped", self.identity.service_type)

    def announce_now(self) -> None:
        self._require_running()
        if self._announcer_driver is None:
            raise RuntimeError("The announcer was not started")
        self._announcer_driver.announce_now()

    async def announce_once(self) -> bool:
        self._require_running()
        return await self.announcer.run_attempt_async(self._announce_once)

    async def send_event(
        self,
        name: EventName,
        args: Iterable[Any] = (),
        request_id: RequestId | None = None,
    ) -> int:
        self._require_transport(self.transport)
        assert self.transport is not None
        data = self._event_packet(name, args, request_id)
        targets = self._event_targets()
        for address in targets:
            await self.transport.send(address, data)
        logger.debug("Sent event {} to {} peers", name, len(targets))
        return len(targets)

    async def request(
        self,
        method: MethodName,
        args: Iterable[Any] = (),
        timeout: DurationSeconds | None = None,
    ) -> Any:
        self._require_transport(self.transport)
        assert self.transport is not None
        request_id = self.store.register_pending(self._server)
        try:
            await self.transport.send(
                self._server, self._request_packet(request_id, method, args)
            )
        except TransportError:
            self.store.discard_pending(request_id)
            raise
        return await self.store.wait_async(
            request_id, self.settings.request_timeout if timeout is None else timeout
        )

    async def _announce_once(self) -> None:
        if self.settings.announce_transport == "http":
            assert self.settings.http_announce_url is not None
            await self.http_announcer.announce_async(
                self.identity, self.settings.http_announce_url
            )
            return
        assert self.transport is not None
        request_id, data = self._announce_packet()
        try:
            await self.transport.send(self._server, data)
        except TransportError:
            if request_id is not None:
                self.store.discard_pending(request_id)
            raise
        if request_id is not None:
            await self.store.wait_async(request_id, self.settings.announce_ack_timeout)

    async def _run_sweeper(self) -> None:
        interval = self._sweep_interval()
        while True:
            await asyncio.sleep(interval)
            self._sweep()

    async def __aenter__(self) -> AsyncService:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()


def create_service(
    identity: ServiceIdentity,
    server_address: str | PeerAddress | None = None,
    settings: IoTScapeSettings | None = None,
) -> ThreadedService | AsyncService:
    """Build the service flavour selected by ``settings.scheduling_model``."""
    settings = settings or IoTScapeSettings()
    if settings.scheduling_model == "cooperative":
        return AsyncService(identity, settings=settings, server_address=server_address)
    return ThreadedService(identity, settings=settings, server_address=server_address)
