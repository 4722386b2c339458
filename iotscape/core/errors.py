"""
Exception hierarchy for the iotscape runtime.

Errors fall into two groups. Per-packet problems (``DecodeError``, late
responses, handler failures) are absorbed by the dispatch loop and logged.
Instance-wide problems (``TransportBindError`` at startup) are raised to the
caller of ``start()`` wrapped in ``ServiceStartError``.
"""

from __future__ import annotations

from typing import Any


class IoTScapeError(Exception):
    """Base exception for all iotscape errors."""

    pass


# Transport


class TransportError(IoTScapeError):
    """Base exception for transport-related errors."""

    pass


class TransportSendError(TransportError):
    """Raised when a datagram could not be handed to the socket."""

    pass


class TransportClosed(TransportError):
    """Raised by ``receive()`` once the adapter has been closed."""

    pass


class TransportBindError(TransportError):
    """Raised when the local socket cannot be bound."""

    pass


# Decoding


class DecodeError(IoTScapeError):
    """Base exception for inbound data that cannot be turned into an envelope."""

    pass


class MalformedMessage(DecodeError):
    """The payload is not a JSON object."""

    pass


class UnknownMessageKind(DecodeError):
    """The ``kind`` discriminator is missing or not recognised."""

    def __init__(self, kind: Any) -> None:
        super().__init__(f"Unknown message kind: {kind!r}")
        self.kind = kind


class SchemaMismatch(DecodeError):
    """Required fields for the given kind are absent or have the wrong type."""

    def __init__(self, kind: str, detail: str) -> None:
        super().__init__(f"Invalid {kind} envelope: {detail}")
        self.kind = kind
        self.detail = detail


# Dispatch


class DispatchError(IoTScapeError):
    """Base exception for routing problems."""

    pass


class UnknownMethod(DispatchError):
    """No handler is registered for the requested method."""

    def __init__(self, method: str) -> None:
        super().__init__(f"Unknown method: {method}")
        self.method = method


class DuplicateHandler(DispatchError):
    """A handler is already bound to the method name."""

    def __init__(self, method: str) -> None:
        super().__init__(f"Handler already registered for method: {method}")
        self.method = method


class UnknownRequestId(DispatchError):
    """The request id is not pending (never allocated, resolved, or expired)."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Unknown request id: {request_id}")
        self.request_id = request_id


# Caller-visible waits


class RequestTimeout(IoTScapeError, TimeoutError):
    """A local wait on a pending request expired.

    This says nothing about the peer; only that no answer arrived in time.
    """

    def __init__(self, request_id: str, timeout: float | None) -> None:
        super().__init__(f"Request {request_id} timed out after {timeout} seconds")
        self.request_id = request_id
        self.timeout = timeout


class RemoteError(IoTScapeError):
    """The peer answered an outbound request with an error envelope."""

    def __init__(self, request_id: str, message: str, code: int | None = None) -> None:
        super().__init__(f"Remote error for {request_id}: {message}")
        self.request_id = request_id
        self.message = message
        self.code = code


class HandlerError(IoTScapeError):
    """Raised by handlers to return a structured error to the requester."""

    def __init__(self, message: str, code: int = 500) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


# Lifecycle


class RegistrationError(IoTScapeError):
    """An announce attempt failed. The announcer retries on its next tick."""

    pass


class ServiceStartError(IoTScapeError):
    """Unrecoverable setup error raised from ``start()``."""

    pass


class LockOrderViolation(IoTScapeError):
    """A lock was acquired out of the documented order."""

    pass
