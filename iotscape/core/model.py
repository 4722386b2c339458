"""
Wire envelopes exchanged between a service and the NetsBlox server.

Every envelope is a JSON object with a ``kind`` discriminator, a correlation
``id`` and the ``service`` name. Arguments always travel as an ordered array.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class Envelope(BaseModel):
    """Fields shared by every envelope kind."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(description="Correlation identifier for this message.")
    service: str = Field(description="Service type name this message concerns.")
    device: str | None = Field(
        default=None, description="Instance id of the service, if addressed."
    )


class RequestEnvelope(Envelope):
    """An RPC request addressed to a service method."""

    kind: Literal["request"] = "request"
    client: str | None = Field(
        default=None, description="Identifier of the requesting peer, if known."
    )
    method: str = Field(description="Name of the method to invoke.")
    args: tuple[Any, ...] = Field(
        default_factory=tuple, description="Positional arguments for the method."
    )


class ResponseEnvelope(Envelope):
    """Successful result for the request whose id this envelope echoes."""

    kind: Literal["response"] = "response"
    response: Any = Field(default=None, description="The value returned.")


class EventEnvelope(Envelope):
    """An asynchronous event emitted by a service."""

    kind: Literal["event"] = "event"
    event: str = Field(description="Name of the event.")
    args: tuple[Any, ...] = Field(
        default_factory=tuple, description="Positional event arguments."
    )
    request: str | None = Field(
        default=None, description="Id of the request that caused this event."
    )


class AnnounceEnvelope(Envelope):
    """Registration/keepalive carrying the service definition."""

    kind: Literal["announce"] = "announce"
    definition: dict[str, Any] = Field(
        description="Serialized service definition (methods, events, metadata)."
    )


class AnnounceAckEnvelope(Envelope):
    """Server acknowledgement of an announce with the same id."""

    kind: Literal["announce-ack"] = "announce-ack"


class ErrorEnvelope(Envelope):
    """Failure result for the request whose id this envelope echoes."""

    kind: Literal["error"] = "error"
    error: str = Field(description="Human-readable error message.")
    code: int | None = Field(default=None, description="Optional numeric code.")


type AnyEnvelope = (
    RequestEnvelope
    | ResponseEnvelope
    | EventEnvelope
    | AnnounceEnvelope
    | AnnounceAckEnvelope
    | ErrorEnvelope
)

ENVELOPE_KINDS: dict[str, type[Envelope]] = {
    "request": RequestEnvelope,
    "response": ResponseEnvelope,
    "event": EventEnvelope,
    "announce": AnnounceEnvelope,
    "announce-ack": AnnounceAckEnvelope,
    "error": ErrorEnvelope,
}
