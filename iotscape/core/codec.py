"""Encoding and decoding of wire envelopes."""

from __future__ import annotations

from typing import Any

import orjson
from pydantic import ValidationError

from iotscape.core.definition import ServiceIdentity
from iotscape.core.errors import MalformedMessage, SchemaMismatch, UnknownMessageKind
from iotscape.core.model import ENVELOPE_KINDS, AnyEnvelope, Envelope
from iotscape.core.serialization import JsonSerializer

_serializer = JsonSerializer()


def envelope_to_dict(envelope: Envelope) -> dict[str, Any]:
    # python mode: handler results are left for the serializer to encode
    return envelope.model_dump()


def envelope_from_dict(payload: Any) -> AnyEnvelope:
    if not isinstance(payload, dict):
        raise MalformedMessage(
            f"Expected a JSON object, got {type(payload).__name__}"
        )
    kind = payload.get("kind")
    model = ENVELOPE_KINDS.get(kind) if isinstance(kind, str) else None
    if model is None:
        raise UnknownMessageKind(kind)
    try:
        return model.model_validate(payload)  # type: ignore[return-value]
    except ValidationError as e:
        problems = ", ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise SchemaMismatch(kind, problems) from e


def encode(envelope: Envelope) -> bytes:
    """Serialize an envelope to its JSON wire form."""
    return _serializer.serialize(envelope_to_dict(envelope))


def decode(data: bytes) -> AnyEnvelope:
    """Parse a datagram into an envelope.

    Raises:
        MalformedMessage: payload is not valid JSON or not an object
        UnknownMessageKind: ``kind`` missing or unrecognised
        SchemaMismatch: required fields for the kind are absent or mistyped
    """
    try:
        payload = _serializer.deserialize(data)
    except orjson.JSONDecodeError as e:
        raise MalformedMessage(f"Invalid JSON: {e}") from e
    return envelope_from_dict(payload)


def encode_announcement(identity: ServiceIdentity) -> bytes:
    """Legacy announcement datagram: ``{service name: definition}``."""
    return _serializer.serialize(identity.announcement())
