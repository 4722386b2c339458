from collections.abc import Generator
from typing import Any

import orjson
import pytest

from iotscape.core.codec import encode
from iotscape.core.definition import ServiceIdentity
from iotscape.core.dispatch import (
    Delivery,
    Dispatcher,
    DispatchState,
    Invocation,
    Reply,
    ThreadedDispatchLoop,
    current_request,
)
from iotscape.core.errors import HandlerError, RemoteError
from iotscape.core.model import (
    AnnounceAckEnvelope,
    ErrorEnvelope,
    EventEnvelope,
    RequestEnvelope,
    ResponseEnvelope,
)
from iotscape.core.registry import HandlerRegistry
from iotscape.core.state import ConnectionStateStore
from iotscape.core.transport import MemoryNetwork, MemoryTransport
from tests.conftest import SERVICE_ADDRESS, FakeServer

PEER = ("127.0.0.1", 5000)


def request_bytes(
    method: str,
    *args: Any,
    request_id: str = "r1",
    service: str = "TempSensor",
    client: str | None = None,
) -> bytes:
    return encode(
        RequestEnvelope(
            id=request_id, service=service, client=client, method=method, args=args
        )
    )


@pytest.fixture
def dispatcher(identity: ServiceIdentity) -> Dispatcher:
    handlers = HandlerRegistry()
    handlers.register("getTemperature", lambda: 21.5)
    dispatcher = Dispatcher(identity, ConnectionStateStore(), handlers)
    dispatcher.begin()
    return dispatcher


def reply_payload(action: object) -> dict[str, Any]:
    assert isinstance(action, Reply)
    return orjson.loads(action.data)


class TestRouting:
    def test_request_becomes_invocation(self, dispatcher: Dispatcher) -> None:
        action = dispatcher.route(PEER, request_bytes("getTemperature", client="ui-1"))

        assert isinstance(action, Invocation)
        assert action.handler.name == "getTemperature"
        assert action.client.client_id == "ui-1"
        assert dispatcher.inflight == 1

        reply = dispatcher.complete(action, result=action.handler())

        assert reply.address == PEER
        assert reply_payload(reply) == {
            "kind": "response",
            "id": "r1",
            "service": "TempSensor",
            "device": "dev1",
            "response": 21.5,
        }
        assert dispatcher.inflight == 1
        dispatcher.end_invocation()
        assert dispatcher.inflight == 0
        assert dispatcher.stats.snapshot()["requests_dispatched"] == 1

    def test_unknown_method_answers_with_one_error(self, dispatcher: Dispatcher) -> None:
        reply = reply_payload(dispatcher.route(PEER, request_bytes("selfDestruct")))

        assert reply["kind"] == "error"
        assert reply["id"] == "r1"
        assert reply["code"] == 404
        assert dispatcher.stats.unknown_methods == 1

        # the dispatcher keeps going
        assert isinstance(
            dispatcher.route(PEER, request_bytes("getTemperature", request_id="r2")),
            Invocation,
        )

    def test_malformed_packet_is_counted_and_dropped(self, dispatcher: Dispatcher) -> None:
        assert dispatcher.route(PEER, b"\x00garbage") is None
        assert dispatcher.route(PEER, b'{"kind": "request"}') is None

        stats = dispatcher.stats.snapshot()
        assert stats["decode_failures"] == 2
        assert stats["packets_received"] == 2

    def test_wrong_service_is_rejected(self, dispatcher: Dispatcher) -> None:
        reply = reply_payload(
            dispatcher.route(PEER, request_bytes("getTemperature", service="Lamp"))
        )

        assert reply["kind"] == "error"
        assert reply["code"] == 400

    def test_heartbeat_is_answered_without_handler(self, dispatcher: Dispatcher) -> None:
        reply = reply_payload(dispatcher.route(PEER, request_bytes("heartbeat")))

        assert reply["kind"] == "response"
        assert reply["response"] is None
        assert dispatcher.stats.heartbeats == 1

    def test_registered_heartbeat_handler_wins(self, dispatcher: Dispatcher) -> None:
        dispatcher.handlers.register("heartbeat", lambda: "alive")

        action = dispatcher.route(PEER, request_bytes("heartbeat"))

        assert isinstance(action, Invocation)

    def test_in_flight_duplicate_is_dropped(self, dispatcher: Dispatcher) -> None:
        first = dispatcher.route(PEER, request_bytes("getTemperature"))

        assert isinstance(first, Invocation)
        assert dispatcher.route(PEER, request_bytes("getTemperature")) is None
        assert dispatcher.stats.duplicate_requests == 1

    def test_completed_duplicate_gets_cached_reply(self, dispatcher: Dispatcher) -> None:
        first = dispatcher.route(PEER, request_bytes("getTemperature"))
        assert isinstance(first, Invocation)
        original = dispatcher.complete(first, result=21.5)

        again = dispatcher.route(PEER, request_bytes("getTemperature"))

        assert again == original
        assert dispatcher.stats.requests_dispatched == 1

    def test_same_id_from_another_peer_is_dispatched(self, dispatcher: Dispatcher) -> None:
        dispatcher.route(PEER, request_bytes("getTemperature"))

        action = dispatcher.route(("127.0.0.1", 5001), request_bytes("getTemperature"))

        assert isinstance(action, Invocation)

    def test_clients_are_tracked(self, dispatcher: Dispatcher) -> None:
        dispatcher.route(PEER, request_bytes("getTemperature", request_id="a", client="ui"))
        dispatcher.route(PEER, request_bytes("getTemperature", request_id="b", client="ui"))

        (client,) = dispatcher.store.clients()
        assert client.key == (PEER, "ui")
        assert client.request_count == 2

    def test_requests_are_dropped_once_stopping(self, dispatcher: Dispatcher) -> None:
        assert dispatcher.begin_stop()
        assert not dispatcher.begin_stop()

        assert dispatcher.route(PEER, request_bytes("getTemperature")) is None
        assert dispatcher.stats.dropped_while_stopping == 1
        assert dispatcher.state is DispatchState.STOPPING


class TestCompletion:
    def test_exception_becomes_error_envelope(self, dispatcher: Dispatcher) -> None:
        action = dispatcher.route(PEER, request_bytes("getTemperature"))
        assert isinstance(action, Invocation)

        reply = reply_payload(dispatcher.complete(action, error=ValueError("sensor offline")))

        assert reply["kind"] == "error"
        assert reply["code"] == 500
        assert "sensor offline" in reply["error"]
        assert dispatcher.stats.handler_errors == 1

    def test_handler_error_keeps_its_code(self, dispatcher: Dispatcher) -> None:
        action = dispatcher.route(PEER, request_bytes("getTemperature"))
        assert isinstance(action, Invocation)

        reply = reply_payload(
            dispatcher.complete(action, error=HandlerError("out of range", code=422))
        )

        assert reply["error"] == "out of range"
        assert reply["code"] == 422

    def test_unserializable_result(self, dispatcher: Dispatcher) -> None:
        action = dispatcher.route(PEER, request_bytes("getTemperature"))
        assert isinstance(action, Invocation)

        reply = reply_payload(dispatcher.complete(action, result=object()))

        assert reply["kind"] == "error"

    def test_result_set_and_int_keys(self, dispatcher: Dispatcher) -> None:
        action = dispatcher.route(PEER, request_bytes("getTemperature"))
        assert isinstance(action, Invocation)

        reply = reply_payload(
            dispatcher.complete(action, result={"seen": {3, 1, 2}, "ports": {1978: "up"}})
        )

        assert reply["response"] == {"seen": [1, 2, 3], "ports": {"1978": "up"}}

    def test_stop_waits_until_reply_is_released(self, dispatcher: Dispatcher) -> None:
        action = dispatcher.route(PEER, request_bytes("getTemperature"))
        assert isinstance(action, Invocation)
        dispatcher.begin_stop()

        dispatcher.complete(action, result=21.5)
        assert not dispatcher.wait_idle(timeout=0.01)

        dispatcher.end_invocation()
        assert dispatcher.wait_idle(timeout=0.01)


class TestOutboundCorrelation:
    def test_response_resolves_pending_slot(self, dispatcher: Dispatcher) -> None:
        request_id = dispatcher.store.register_pending()

        dispatcher.route(
            PEER, encode(ResponseEnvelope(id=request_id, service="S", response=[1, 2]))
        )

        assert dispatcher.store.wait(request_id, timeout=1.0) == [1, 2]
        assert dispatcher.stats.responses_resolved == 1

    def test_duplicate_response_is_a_no_op(self, dispatcher: Dispatcher) -> None:
        request_id = dispatcher.store.register_pending()
        data = encode(ResponseEnvelope(id=request_id, service="S", response="first"))

        dispatcher.route(PEER, data)
        dispatcher.route(
            PEER, encode(ResponseEnvelope(id=request_id, service="S", response="second"))
        )

        assert dispatcher.store.wait(request_id, timeout=1.0) == "first"
        assert dispatcher.stats.late_responses == 1

    def test_unknown_response_is_dropped(self, dispatcher: Dispatcher) -> None:
        data = encode(ResponseEnvelope(id="nobody-asked", service="S"))

        assert dispatcher.route(PEER, data) is None
        assert dispatcher.stats.late_responses == 1

    def test_error_envelope_fails_pending_slot(self, dispatcher: Dispatcher) -> None:
        request_id = dispatcher.store.register_pending()

        dispatcher.route(
            PEER, encode(ErrorEnvelope(id=request_id, service="S", error="denied", code=403))
        )

        with pytest.raises(RemoteError) as exc_info:
            dispatcher.store.wait(request_id, timeout=1.0)
        assert exc_info.value.code == 403

    def test_announce_ack_resolves(self, dispatcher: Dispatcher) -> None:
        request_id = dispatcher.store.register_pending()

        dispatcher.route(PEER, encode(AnnounceAckEnvelope(id=request_id, service="S")))

        assert dispatcher.store.wait(request_id, timeout=1.0) is True


class TestEvents:
    def test_event_without_listener_is_ignored(self, dispatcher: Dispatcher) -> None:
        data = encode(EventEnvelope(id="e1", service="S", event="reset"))

        assert dispatcher.route(PEER, data) is None
        assert dispatcher.stats.events_received == 1

    def test_event_goes_to_listener(self, dispatcher: Dispatcher) -> None:
        dispatcher.event_listener = lambda address, event: None
        data = encode(EventEnvelope(id="e1", service="S", event="reset", args=(1,)))

        action = dispatcher.route(PEER, data)

        assert isinstance(action, Delivery)
        assert action.event.event == "reset"
        assert action.event.args == (1,)


class TestThreadedLoop:
    @pytest.fixture
    def running(
        self, dispatcher: Dispatcher, network: MemoryNetwork, fake_server: FakeServer
    ) -> Generator[ThreadedDispatchLoop, None, None]:
        transport = MemoryTransport(network, SERVICE_ADDRESS)
        transport.open()
        loop = ThreadedDispatchLoop(dispatcher, transport)
        loop.start()
        yield loop
        loop.stop(timeout=2.0)

    def test_end_to_end_request(
        self, running: ThreadedDispatchLoop, fake_server: FakeServer
    ) -> None:
        reply = fake_server.call(SERVICE_ADDRESS, "getTemperature")

        assert reply["kind"] == "response"
        assert reply["response"] == 21.5

    def test_unknown_method_then_loop_continues(
        self, running: ThreadedDispatchLoop, fake_server: FakeServer
    ) -> None:
        error = fake_server.call(SERVICE_ADDRESS, "selfDestruct", request_id="x")
        fake_server.send(SERVICE_ADDRESS, b"not json at all")
        ok = fake_server.call(SERVICE_ADDRESS, "getTemperature", request_id="y")

        assert error["kind"] == "error"
        assert ok["response"] == 21.5
        assert fake_server.receive(timeout=0.1) is None
        assert running.dispatcher.stats.decode_failures == 1

    def test_handler_exception_does_not_stop_loop(
        self, running: ThreadedDispatchLoop, fake_server: FakeServer
    ) -> None:
        def broken() -> None:
            raise RuntimeError("boom")

        running.dispatcher.handlers.register("broken", broken)

        error = fake_server.call(SERVICE_ADDRESS, "broken", request_id="b1")
        ok = fake_server.call(SERVICE_ADDRESS, "getTemperature", request_id="b2")

        assert error["code"] == 500
        assert ok["kind"] == "response"
        assert running.running

    def test_coroutine_handler_on_thread(
        self, running: ThreadedDispatchLoop, fake_server: FakeServer
    ) -> None:
        async def average(*values: float) -> float:
            return sum(values) / len(values)

        running.dispatcher.handlers.register("average", average)

        reply = fake_server.call(SERVICE_ADDRESS, "average", 1, 2, 3, request_id="c1")

        assert reply["response"] == 2.0

    def test_handler_sees_current_request(
        self, running: ThreadedDispatchLoop, fake_server: FakeServer
    ) -> None:
        def whoami() -> str | None:
            request = current_request.get()
            return request.id if request is not None else None

        running.dispatcher.handlers.register("whoami", whoami)

        reply = fake_server.call(SERVICE_ADDRESS, "whoami", request_id="abc")

        assert reply["response"] == "abc"
        assert current_request.get() is None

    def test_stop_closes_transport(self, running: ThreadedDispatchLoop) -> None:
        running.stop(timeout=2.0)

        assert not running.running
        assert running.transport.closed
        assert running.dispatcher.state is DispatchState.STOPPED
