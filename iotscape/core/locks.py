"""
Lock-order discipline for the runtime's shared state.

The runtime has exactly three locks and they must be taken in rank order:

    STORE (10)  ->  RECORD (20)  ->  STATS (30)

No lock may be held while a handler runs or while a network call is in
progress. ``OrderedLock`` checks both rules when instrumentation is enabled
(``debug_lock_order`` in the settings); otherwise it behaves as a plain
re-entrant lock with no bookkeeping.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from threading import RLock
from types import TracebackType

from loguru import logger

from iotscape.core.errors import LockOrderViolation

STORE_RANK = 10
RECORD_RANK = 20
STATS_RANK = 30

_held = threading.local()


def _held_stack() -> list[OrderedLock]:
    stack = getattr(_held, "stack", None)
    if stack is None:
        stack = []
        _held.stack = stack
    return stack


def held_locks() -> tuple[str, ...]:
    """Names of instrumented locks held by the calling thread, outermost first."""
    return tuple(lock.name for lock in _held_stack())


def assert_no_locks_held(context: str) -> None:
    """Raise if the calling thread holds any instrumented lock.

    Called before handler invocation and before network calls.
    """
    stack = _held_stack()
    if stack:
        names = ", ".join(lock.name for lock in stack)
        logger.error("Lock(s) {} held during {}", names, context)
        raise LockOrderViolation(f"Lock(s) {names} held during {context}")


@dataclass(slots=True, eq=False)
class OrderedLock:
    name: str
    rank: int
    instrumented: bool = False
    _lock: RLock = field(default_factory=RLock, repr=False)

    def acquire(self) -> None:
        if self.instrumented:
            stack = _held_stack()
            if self not in stack:
                for held in stack:
                    if held.rank >= self.rank:
                        raise LockOrderViolation(
                            f"Acquiring {self.name} (rank {self.rank}) while "
                            f"holding {held.name} (rank {held.rank})"
                        )
            self._lock.acquire()
            stack.append(self)
        else:
            self._lock.acquire()

    def release(self) -> None:
        if self.instrumented:
            stack = _held_stack()
            # remove the innermost entry for this lock (re-entrant acquires)
            for index in range(len(stack) - 1, -1, -1):
                if stack[index] is self:
                    del stack[index]
                    break
        self._lock.release()

    def __enter__(self) -> OrderedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
