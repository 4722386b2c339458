"""
Loguru setup for iotscape processes.

Modules log through ``loguru.logger`` directly; this module only decides
where records go. The runtime is chatty at DEBUG (every datagram, every
announce attempt), so ``debug_scopes`` opens DEBUG for chosen subsystems
while the rest of the process stays at ``level``. A scope is either a full
module path (``"iotscape.core.dispatch"``) or a short name (``"dispatch"``,
``"transport"``) looked up under ``iotscape.`` and ``iotscape.core.``.
"""

from __future__ import annotations

import sys
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TextIO

from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

    from iotscape.core.config import IoTScapeSettings

PACKAGE = "iotscape"

# thread name tells the dispatch loop, announcer and sweeper apart
DEFAULT_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {thread.name: <18} | "
    "{name}:{function}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class ScopeFilter:
    """Passes DEBUG records whose module falls under one of ``prefixes``."""

    prefixes: tuple[str, ...]

    @classmethod
    def from_scopes(cls, scopes: Iterable[str]) -> ScopeFilter:
        prefixes: list[str] = []
        for scope in scopes:
            scope = scope.strip().strip(".")
            if not scope:
                continue
            if scope == PACKAGE or scope.startswith(f"{PACKAGE}."):
                prefixes.append(scope)
            else:
                prefixes.append(f"{PACKAGE}.{scope}")
                prefixes.append(f"{PACKAGE}.core.{scope}")
        return cls(tuple(dict.fromkeys(prefixes)))

    def __bool__(self) -> bool:
        return bool(self.prefixes)

    def __call__(self, record: Record) -> bool:
        if record["level"].name != "DEBUG":
            return False
        name = record["name"] or ""
        return any(
            name == prefix or name.startswith(f"{prefix}.") for prefix in self.prefixes
        )


def configure_logging(
    level: str = "INFO",
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
    sink: TextIO | None = None,
) -> tuple[int, ...]:
    """Replace loguru's handlers; returns the ids of the handlers added."""
    level = level.upper()
    target = sys.stderr if sink is None else sink
    logger.remove()

    handler_ids = [
        logger.add(target, level=level, format=DEFAULT_LOG_FORMAT, colorize=colorize)
    ]

    scope_filter = ScopeFilter.from_scopes(debug_scopes)
    if scope_filter and level != "DEBUG":
        handler_ids.append(
            logger.add(
                target,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=scope_filter,
            )
        )

    return tuple(handler_ids)


def configure_from_settings(
    settings: IoTScapeSettings, *, sink: TextIO | None = None
) -> tuple[int, ...]:
    return configure_logging(
        settings.log_level,
        debug_scopes=settings.log_debug_scopes,
        colorize=settings.log_colorize,
        sink=sink,
    )
