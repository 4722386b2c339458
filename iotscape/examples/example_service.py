"""
ExampleService: a small service exercising every runtime feature.

Methods:
    helloWorld()      -> "Hello, World!"
    add(a, b)         -> a + b
    timer(msec)       -> sends a ``timer`` event ``msec`` ms later, tied to the call
    returnComplex()   -> ["test", [1, 2, 3]]
    _requestedKey(*k) -> acknowledges a key pushed by the server
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any

from loguru import logger

from iotscape.core.definition import (
    EventDescription,
    MethodDescription,
    MethodParam,
    MethodReturns,
    ServiceDefinition,
    ServiceDescription,
    ServiceIdentity,
)
from iotscape.core.dispatch import current_request
from iotscape.core.errors import HandlerError, TransportError
from iotscape.service import AsyncService, ThreadedService

SERVICE_NAME = "ExampleService"
DEFAULT_DEVICE_ID = "py1"


def build_definition() -> ServiceDefinition:
    return ServiceDefinition(
        methods={
            "helloWorld": MethodDescription(
                documentation='Says "Hello, World!"',
                returns=MethodReturns(("string",), 'The text "Hello, World!"'),
            ),
            "add": MethodDescription(
                documentation="Adds two numbers",
                params=(
                    MethodParam("a", "number", "First number"),
                    MethodParam("b", "number", "Second number"),
                ),
                returns=MethodReturns(("number",), "The sum of a and b"),
            ),
            "timer": MethodDescription(
                documentation="Sends timer event on a delay",
                params=(MethodParam("msec", "number", "Amount of time to wait, in ms"),),
                returns=MethodReturns(("event timer",), "Response after delay"),
            ),
            "returnComplex": MethodDescription(
                documentation="Complex response to method",
                returns=MethodReturns(("string", "string"), "Complex object"),
            ),
        },
        events={"timer": EventDescription()},
        description=ServiceDescription(
            description="Example IoTScape service.",
            version="1",
        ),
    )


def build_identity(device_id: str = DEFAULT_DEVICE_ID) -> ServiceIdentity:
    return ServiceIdentity(SERVICE_NAME, device_id, build_definition())


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, int | float):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def hello_world() -> str:
    return "Hello, World!"


def add(*values: Any) -> float:
    """Sum every argument; values that are not numbers count as zero."""
    return sum(_number(value) for value in values)


def return_complex() -> list[Any]:
    return ["test", [1, 2, 3]]


def requested_key(*key: Any) -> None:
    logger.info("Received key: {}", list(key))


def _delay_seconds(args: tuple[Any, ...]) -> float:
    if not args:
        return 0.0
    delay = _number(args[0])
    if delay < 0:
        raise HandlerError("msec must not be negative", code=400)
    return delay / 1000


def register_example_handlers(service: ThreadedService | AsyncService) -> None:
    """Bind the ExampleService methods to ``service``."""
    service.register_handler("helloWorld", hello_world)
    service.register_handler("add", add)
    service.register_handler("returnComplex", return_complex)
    service.register_handler("_requestedKey", requested_key)

    if isinstance(service, AsyncService):
        background: set[asyncio.Task[None]] = set()

        async def fire_async(delay: float, request_id: str | None) -> None:
            await asyncio.sleep(delay)
            try:
                await service.send_event("timer", (), request_id)
            except TransportError as e:
                logger.warning("Could not send timer event: {}", e)

        def timer_async(*args: Any) -> None:
            request = current_request.get()
            request_id = request.id if request is not None else None
            task = asyncio.create_task(fire_async(_delay_seconds(args), request_id))
            background.add(task)
            task.add_done_callback(background.discard)

        service.register_handler("timer", timer_async)
        return

    def fire(request_id: str | None) -> None:
        try:
            service.send_event("timer", (), request_id)
        except TransportError as e:
            logger.warning("Could not send timer event: {}", e)

    def timer(*args: Any) -> None:
        request = current_request.get()
        request_id = request.id if request is not None else None
        delayed = threading.Timer(_delay_seconds(args), fire, args=(request_id,))
        delayed.daemon = True
        delayed.start()

    service.register_handler("timer", timer)
