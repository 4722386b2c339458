import sys
from collections.abc import Generator
from pathlib import Path

import orjson
import pytest
from loguru import logger

from iotscape.cli import IoTScapeCLI
from iotscape.core.transport import UdpTransport


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None, None, None]:
    monkeypatch.chdir(tmp_path)
    yield
    # configure_logging replaces every handler
    logger.remove()
    logger.add(sys.stderr)


def test_describe_lists_methods_and_events(capsys: pytest.CaptureFixture[str]) -> None:
    IoTScapeCLI().describe("bench1")

    out = capsys.readouterr().out
    for name in ("helloWorld", "add", "timer", "returnComplex", "bench1", "Events"):
        assert name in out


def test_announce_sends_one_datagram(capsys: pytest.CaptureFixture[str]) -> None:
    server = UdpTransport(("127.0.0.1", 0))
    host, port = server.open()
    try:
        IoTScapeCLI(server=f"{host}:{port}", log_level="WARNING").announce("cli1")
        received = server.receive()
    finally:
        server.close()

    announce = orjson.loads(received[1])
    assert announce["kind"] == "announce"
    assert announce["device"] == "cli1"
    assert "Announced" in capsys.readouterr().out


def test_serve_for_a_fixed_duration() -> None:
    IoTScapeCLI(server="127.0.0.1:9", log_level="WARNING").serve("srv1", duration=0.1)

