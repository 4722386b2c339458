"""
IoTScape Core Module

Wire codec, service definitions, connection state, transports, dispatch and
announcing: everything a service needs below the facade.
"""

from .announcer import (
    Announcer,
    AsyncAnnouncer,
    ConnectionRecord,
    RegistrationStatus,
    ThreadedAnnouncer,
)
from .codec import decode, encode, encode_announcement
from .config import IoTScapeSettings
from .definition import (
    EventDescription,
    MethodDescription,
    MethodParam,
    MethodReturns,
    ServiceDefinition,
    ServiceDescription,
    ServiceIdentity,
)
from .dispatch import (
    AsyncDispatchLoop,
    Dispatcher,
    DispatchState,
    DispatchStatistics,
    ThreadedDispatchLoop,
    current_request,
)
from .errors import (
    DecodeError,
    DispatchError,
    DuplicateHandler,
    HandlerError,
    IoTScapeError,
    LockOrderViolation,
    MalformedMessage,
    RegistrationError,
    RemoteError,
    RequestTimeout,
    SchemaMismatch,
    ServiceStartError,
    TransportBindError,
    TransportClosed,
    TransportError,
    TransportSendError,
    UnknownMessageKind,
    UnknownMethod,
    UnknownRequestId,
)
from .http_announce import HttpAnnouncer
from .logging import configure_from_settings, configure_logging
from .model import (
    AnnounceAckEnvelope,
    AnnounceEnvelope,
    Envelope,
    ErrorEnvelope,
    EventEnvelope,
    RequestEnvelope,
    ResponseEnvelope,
)
from .registry import Handler, HandlerRegistry
from .state import ClientHandle, ConnectionStateStore, InboundState

__all__ = [
    "AnnounceAckEnvelope",
    "AnnounceEnvelope",
    "Announcer",
    "AsyncAnnouncer",
    "AsyncDispatchLoop",
    "ClientHandle",
    "ConnectionRecord",
    "ConnectionStateStore",
    "DecodeError",
    "DispatchError",
    "DispatchState",
    "DispatchStatistics",
    "Dispatcher",
    "DuplicateHandler",
    "Envelope",
    "ErrorEnvelope",
    "EventDescription",
    "EventEnvelope",
    "Handler",
    "HandlerError",
    "HandlerRegistry",
    "HttpAnnouncer",
    "InboundState",
    "IoTScapeError",
    "IoTScapeSettings",
    "LockOrderViolation",
    "MalformedMessage",
    "MethodDescription",
    "MethodParam",
    "MethodReturns",
    "RegistrationError",
    "RegistrationStatus",
    "RemoteError",
    "RequestEnvelope",
    "RequestTimeout",
    "ResponseEnvelope",
    "SchemaMismatch",
    "ServiceDefinition",
    "ServiceDescription",
    "ServiceIdentity",
    "ServiceStartError",
    "ThreadedAnnouncer",
    "ThreadedDispatchLoop",
    "TransportBindError",
    "TransportClosed",
    "TransportError",
    "TransportSendError",
    "UnknownMessageKind",
    "UnknownMethod",
    "UnknownRequestId",
    "configure_from_settings",
    "configure_logging",
    "current_request",
    "decode",
    "encode",
    "encode_announcement",
]
