import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from iotscape.core.errors import DuplicateHandler, UnknownMethod


@dataclass(slots=True)
class Handler:
    name: str
    fun: Callable[..., Any]

    @property
    def is_coroutine(self) -> bool:
        return inspect.iscoroutinefunction(self.fun)

    def __call__(self, *args: Any) -> Any:
        return self.fun(*args)

    async def call_async(self, *args: Any) -> Any:
        """Call the handler, awaiting it if it is a coroutine function."""
        if self.is_coroutine:
            return await self.fun(*args)
        result = self.fun(*args)
        if asyncio.iscoroutine(result):
            return await result
        return result


@dataclass(slots=True)
class HandlerRegistry:
    """Method name to handler bindings for one service."""

    _handlers: dict[str, Handler] = field(default_factory=dict)

    def register(self, name: str, fun: Callable[..., Any]) -> Handler:
        """Bind ``fun`` to ``name``.

        Raises:
            DuplicateHandler: the name is already bound.
        """
        if name in self._handlers:
            raise DuplicateHandler(name)
        handler = Handler(name=name, fun=fun)
        self._handlers[name] = handler
        logger.debug(f"Registered handler: {name}")
        return handler

    def unregister(self, name: str) -> bool:
        return self._handlers.pop(name, None) is not None

    def get(self, name: str) -> Handler:
        try:
            return self._handlers[name]
        except KeyError:
            raise UnknownMethod(name) from None

    def names(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
