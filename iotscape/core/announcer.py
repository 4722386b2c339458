"""
Periodic (re)registration of a service with the server.

The ``Announcer`` owns the ``ConnectionRecord`` and decides *when* to
announce; an *attempt* callable supplied by the service decides *how* (native
datagram or HTTP). An attempt succeeds by returning and fails by raising.

Retry policy is a fixed interval: after a failure the next attempt happens
``retry_interval`` seconds later, after a success ``interval`` seconds later.
There is no backoff. Re-announcing while registered is required because the
server forgets registrations it has not heard about for a while.

Status moves ``UNREGISTERED/REGISTERED/FAILED -> ANNOUNCING`` when an attempt
starts and ``ANNOUNCING -> REGISTERED/FAILED`` when it ends. Nothing else
changes it.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import Enum

from loguru import logger

from iotscape.core.errors import IoTScapeError, RegistrationError
from iotscape.core.locks import RECORD_RANK, OrderedLock, assert_no_locks_held
from iotscape.datastructures.type_aliases import DurationSeconds, PeerAddress, Timestamp

type AnnounceAttempt = Callable[[], None]
type AsyncAnnounceAttempt = Callable[[], Awaitable[None]]


class RegistrationStatus(Enum):
    UNREGISTERED = "unregistered"
    ANNOUNCING = "announcing"
    REGISTERED = "registered"
    FAILED = "failed"


@dataclass(slots=True)
class ConnectionRecord:
    """The service's registration with the server."""

    server_address: PeerAddress
    announce_interval: DurationSeconds
    retry_interval: DurationSeconds
    status: RegistrationStatus = RegistrationStatus.UNREGISTERED
    last_announced: Timestamp | None = None
    last_attempt: Timestamp | None = None
    last_error: str | None = None
    attempts: int = 0
    failures: int = 0


@dataclass(slots=True)
class Announcer:
    """Registration state machine shared by both scheduling models."""

    record: ConnectionRecord
    instrumented: bool = False
    _lock: OrderedLock = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._lock = OrderedLock("record", RECORD_RANK, instrumented=self.instrumented)

    def snapshot(self) -> ConnectionRecord:
        with self._lock:
            return replace(self.record)

    @property
    def status(self) -> RegistrationStatus:
        with self._lock:
            return self.record.status

    def seconds_until_due(self, now: Timestamp | None = None) -> DurationSeconds:
        now = time.time() if now is None else now
        with self._lock:
            record = self.record
            if record.status is RegistrationStatus.ANNOUNCING:
                return record.retry_interval
            if record.status is RegistrationStatus.REGISTERED:
                assert record.last_announced is not None
                return max(0.0, record.last_announced + record.announce_interval - now)
            if record.last_attempt is None:
                return 0.0
            return max(0.0, record.last_attempt + record.retry_interval - now)

    def due(self, now: Timestamp | None = None) -> bool:
        return self.seconds_until_due(now) <= 0.0

    def make_due(self) -> None:
        """Schedule the next attempt for right now unless one is running."""
        with self._lock:
            record = self.record
            if record.status is RegistrationStatus.ANNOUNCING:
                return
            record.last_attempt = None
            if record.status is RegistrationStatus.REGISTERED:
                record.last_announced = 0.0

    def begin_attempt(self, now: Timestamp | None = None) -> bool:
        """Enter ``ANNOUNCING``. Returns False if an attempt is already running."""
        now = time.time() if now is None else now
        with self._lock:
            if self.record.status is RegistrationStatus.ANNOUNCING:
                return False
            self.record.status = RegistrationStatus.ANNOUNCING
            self.record.last_attempt = now
            self.record.attempts += 1
            return True

    def succeed(self, now: Timestamp | None = None) -> None:
        now = time.time() if now is None else now
        with self._lock:
            self.record.status = RegistrationStatus.REGISTERED
            self.record.last_announced = now
            self.record.last_error = None
        logger.info("Registered with server {}", self.record.server_address)

    def fail(self, error: BaseException) -> None:
        with self._lock:
            self.record.status = RegistrationStatus.FAILED
            self.record.last_error = str(error)
            self.record.failures += 1
            retry = self.record.retry_interval
        logger.warning("Announce failed ({}), retrying in {} seconds", error, retry)

    def run_attempt(self, attempt: AnnounceAttempt) -> bool:
        """Run one blocking attempt and record its outcome."""
        if not self.begin_attempt():
            return False
        if self.instrumented:
            assert_no_locks_held("announce")
        try:
            attempt()
        except (IoTScapeError, OSError) as e:
            self.fail(e)
            return False
        self.succeed()
        return True

    async def run_attempt_async(self, attempt: AsyncAnnounceAttempt) -> bool:
        if not self.begin_attempt():
            return False
        try:
            await attempt()
        except (IoTScapeError, OSError) as e:
            self.fail(e)
            return False
        except asyncio.CancelledError:
            self.fail(RegistrationError("Announce cancelled"))
            raise
        self.succeed()
        return True


@dataclass(slots=True)
class ThreadedAnnouncer:
    """Announces from a dedicated OS thread."""

    announcer: Announcer
    attempt: AnnounceAttempt
    name: str = "iotscape-announcer"
    _thread: threading.Thread | None = field(default=None, init=False, repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, init=False)
    _wake: threading.Event = field(default_factory=threading.Event, init=False)

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def announce_now(self) -> None:
        """Wake the announcer for an immediate attempt."""
        self.announcer.make_due()
        self._wake.set()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        logger.debug("Announcer thread started")
        while not self._stop.is_set():
            if self.announcer.due():
                self.announcer.run_attempt(self.attempt)
            self._wake.wait(self.announcer.seconds_until_due())
            self._wake.clear()
        logger.debug("Announcer thread stopped")


@dataclass(slots=True)
class AsyncAnnouncer:
    """Announces from an asyncio task."""

    announcer: Announcer
    attempt: AsyncAnnounceAttempt
    name: str = "iotscape-announcer"
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _stop: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _wake: asyncio.Event = field(default_factory=asyncio.Event, init=False)

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=self.name)

    def announce_now(self) -> None:
        self.announcer.make_due()
        self._wake.set()

    async def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        self._wake.set()
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except TimeoutError:
            logger.warning("Announce attempt still running, cancelling")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        logger.debug("Announcer task started")
        while not self._stop.is_set():
            if self.announcer.due():
                await self.announcer.run_attempt_async(self.attempt)
            try:
                await asyncio.wait_for(
                    self._wake.wait(), self.announcer.seconds_until_due()
                )
            except TimeoutError:
                pass
            self._wake.clear()
        logger.debug("Announcer task stopped")
