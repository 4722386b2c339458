import orjson
import pytest

from iotscape.core.codec import decode, encode, encode_announcement
from iotscape.core.definition import ServiceIdentity
from iotscape.core.errors import (
    DecodeError,
    MalformedMessage,
    SchemaMismatch,
    UnknownMessageKind,
)
from iotscape.core.model import (
    AnnounceAckEnvelope,
    AnnounceEnvelope,
    ErrorEnvelope,
    EventEnvelope,
    RequestEnvelope,
    ResponseEnvelope,
)


def test_request_round_trip() -> None:
    request = RequestEnvelope(
        id="r1",
        service="TempSensor",
        device="dev1",
        client="c9",
        method="setPoint",
        args=(21.5, "celsius", [1, 2]),
    )

    assert decode(encode(request)) == request


def test_request_wire_form() -> None:
    data = encode(RequestEnvelope(id="r1", service="S", method="m", args=(1, 2)))

    payload = orjson.loads(data)
    assert payload["kind"] == "request"
    assert payload["args"] == [1, 2]
    assert payload["device"] is None


def test_each_kind_decodes_to_its_model() -> None:
    envelopes = [
        ResponseEnvelope(id="1", service="S", response={"a": [1, 2]}),
        EventEnvelope(id="2", service="S", event="timer", request="r1"),
        AnnounceEnvelope(id="3", service="S", definition={"id": "dev1"}),
        AnnounceAckEnvelope(id="4", service="S"),
        ErrorEnvelope(id="5", service="S", error="nope", code=404),
    ]

    for envelope in envelopes:
        decoded = decode(encode(envelope))
        assert type(decoded) is type(envelope)
        assert decoded == envelope


def test_args_default_to_empty() -> None:
    request = decode(b'{"kind": "request", "id": "1", "service": "S", "method": "m"}')

    assert isinstance(request, RequestEnvelope)
    assert request.args == ()
    assert request.client is None


def test_unknown_fields_are_ignored() -> None:
    data = b'{"kind": "announce-ack", "id": "a1", "service": "S", "extra": {"x": 1}}'

    assert decode(data) == AnnounceAckEnvelope(id="a1", service="S")


@pytest.mark.parametrize(
    "data",
    [b"not json", b"", b"[1, 2, 3]", b'"request"', b"{"],
)
def test_malformed_payloads(data: bytes) -> None:
    with pytest.raises(MalformedMessage):
        decode(data)


@pytest.mark.parametrize(
    "data",
    [
        b'{"id": "1", "service": "S"}',
        b'{"kind": "bogus", "id": "1", "service": "S"}',
        b'{"kind": 7, "id": "1", "service": "S"}',
    ],
)
def test_unknown_kind(data: bytes) -> None:
    with pytest.raises(UnknownMessageKind):
        decode(data)


def test_missing_required_field_is_schema_mismatch() -> None:
    with pytest.raises(SchemaMismatch) as exc_info:
        decode(b'{"kind": "request", "id": "1", "service": "S"}')

    assert exc_info.value.kind == "request"
    assert "method" in exc_info.value.detail


def test_mistyped_field_is_schema_mismatch() -> None:
    with pytest.raises(SchemaMismatch):
        decode(b'{"kind": "error", "id": "1", "service": "S", "error": "x", "code": "high"}')


def test_decode_errors_share_a_base() -> None:
    for data in (b"{", b'{"kind": "x"}', b'{"kind": "event", "id": "1"}'):
        with pytest.raises(DecodeError):
            decode(data)


def test_legacy_announcement_body(identity: ServiceIdentity) -> None:
    body = orjson.loads(encode_announcement(identity))

    assert list(body) == ["TempSensor"]
    definition = body["TempSensor"]
    assert definition["id"] == "dev1"
    assert set(definition) == {"id", "methods", "events", "service"}
    assert definition["methods"]["getTemperature"]["returns"]["type"] == ["number"]
