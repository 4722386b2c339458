"""
IoTScape - device services for NetsBlox

A runtime that registers a device as a service with a NetsBlox server,
answers RPC requests arriving over UDP and publishes events back.

## Quick Start

```python
from iotscape import ServiceDefinition, ServiceIdentity, ThreadedService

identity = ServiceIdentity("TempSensor", "dev1", ServiceDefinition())
service = ThreadedService(identity, server_address="127.0.0.1:1978")
service.register_handler("getTemperature", lambda: 21.5)

with service:
    ...
```

``AsyncService`` offers the same surface for asyncio applications.
"""

from .core import (
    HandlerError,
    IoTScapeError,
    IoTScapeSettings,
    MethodDescription,
    MethodParam,
    MethodReturns,
    RegistrationStatus,
    RemoteError,
    RequestTimeout,
    ServiceDefinition,
    ServiceDescription,
    ServiceIdentity,
    configure_logging,
    current_request,
)
from .service import AsyncService, ThreadedService, create_service

__version__ = "0.1.0"

__all__ = [
    "AsyncService",
    "HandlerError",
    "IoTScapeError",
    "IoTScapeSettings",
    "MethodDescription",
    "MethodParam",
    "MethodReturns",
    "RegistrationStatus",
    "RemoteError",
    "RequestTimeout",
    "ServiceDefinition",
    "ServiceDescription",
    "ServiceIdentity",
    "ThreadedService",
    "__version__",
    "configure_logging",
    "create_service",
    "current_request",
]
