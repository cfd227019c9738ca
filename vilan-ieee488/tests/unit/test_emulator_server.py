"""Tests for the EmulatorServer TCP server."""

from __future__ import annotations

import socket
from collections.abc import Iterator

import pytest

from vilan_core.config import SessionConfig
from vilan_ieee488.emulator import GpibLanControllerEmulator, InstrumentEmulator
from vilan_ieee488.instrument import Ieee488Instrument
from vilan_ieee488.server import EmulatorServer

IDENTITY = "ACME,MODEL1,SN1,1.0"


def _send_query(sock: socket.socket, query: str) -> str:
    """Send a query over TCP and return the raw response line."""
    sock.sendall((query + "\n").encode("ascii"))
    data = b""
    while not data.endswith(b"\n"):
        chunk = sock.recv(4096)
        if not chunk:
            break
        data += chunk
    return data.decode("ascii")


@pytest.fixture
def instrument_server() -> Iterator[EmulatorServer]:
    server = EmulatorServer(InstrumentEmulator(), port=0)
    server.start()
    yield server
    server.stop()


class TestEmulatorServer:
    """Tests for serving emulators over TCP."""

    def test_query_round_trip(self, instrument_server: EmulatorServer) -> None:
        with socket.create_connection(instrument_server.address, timeout=5) as sock:
            assert _send_query(sock, "*IDN?") == f"{IDENTITY}\n"

    def test_command_then_query(self, instrument_server: EmulatorServer) -> None:
        with socket.create_connection(instrument_server.address, timeout=5) as sock:
            sock.sendall(b"*ESE 4\n")
            assert _send_query(sock, "*ESE?") == "4\n"

    def test_controller_replies(self) -> None:
        with EmulatorServer(GpibLanControllerEmulator(), port=0) as server:
            with socket.create_connection(server.address, timeout=5) as sock:
                assert _send_query(sock, "++auto") == "1\r\n"
                assert _send_query(sock, "*IDN?") == f"{IDENTITY}\n"

    def test_ephemeral_port(self, instrument_server: EmulatorServer) -> None:
        host, port = instrument_server.address
        assert host == "127.0.0.1"
        assert port > 0

    def test_context_exit_stops_and_propagates(self) -> None:
        server = EmulatorServer(InstrumentEmulator(), port=0)
        with pytest.raises(RuntimeError, match="inside"):
            with server:
                address = server.address
                raise RuntimeError("inside")
        with pytest.raises(OSError):
            socket.create_connection(address, timeout=1)


class TestDirectInstrumentOverTcp:
    """End-to-end tests through the full stack over pyvisa-py."""

    def test_identity(self, instrument_server: EmulatorServer) -> None:
        pytest.importorskip("pyvisa_py")
        host, port = instrument_server.address
        config = SessionConfig(host=host, port=port, read_after_write_delay_ms=0)
        with Ieee488Instrument.from_config(config) as instrument:
            assert instrument.connect()
            assert not instrument.using_gpib_lan_control
            assert instrument.identity == IDENTITY
            instrument.clear_execution_state()
            assert instrument.query_self_test() == 0
        assert not instrument.connected
