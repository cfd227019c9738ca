"""Tests for TcpSession with a mocked pyvisa module."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from vilan_core.connectable import ConnectionChangingEvent
from vilan_core.errors import (
    ReadTimeoutError,
    SendTimeoutError,
    SessionStateError,
    SessionTransportError,
)
from vilan_core.polling import CancellationToken
from vilan_core.tracer import RecordingExceptionTracer
from vilan_tcp.session import TcpSession, port_reachable, trim_termination

IDENTITY = "ACME,MODEL1,SN1,1.0"
HOST = "192.168.0.144"

# VISA status codes
VI_ERROR_TMO = -1073807339
VI_ERROR_CONN_LOST = -1073807194
VI_ERROR_RSRC_NFOUND = -1073807343


class _FakeVisaError(Exception):
    """Stands in for ``pyvisa.errors.Error``."""


class _FakeVisaIOError(_FakeVisaError):
    """Stands in for ``pyvisa.errors.VisaIOError``."""

    def __init__(self, error_code: int) -> None:
        super().__init__(f"VISA status {error_code}")
        self.error_code = error_code


class _FakeSocketResource:
    """Scripted ``TCPIP::SOCKET`` resource replying to known lines."""

    def __init__(self, replies: dict[str, str]) -> None:
        self.replies = replies
        self.incoming = bytearray()
        self.written: list[bytes] = []
        self.timeouts: list[int | None] = []
        self.read_error: int | None = None
        self.write_error: int | None = None
        self.closed = False

    @property
    def timeout(self) -> int | None:
        return self.timeouts[-1] if self.timeouts else None

    @timeout.setter
    def timeout(self, value: int | None) -> None:
        self.timeouts.append(value)

    def feed(self, text: str) -> None:
        self.incoming.extend(text.encode("ascii"))

    def write_raw(self, message: bytes) -> int:
        if self.write_error is not None:
            raise _FakeVisaIOError(self.write_error)
        self.written.append(message)
        reply = self.replies.get(message.decode("ascii").strip())
        if reply is not None:
            self.feed(reply)
        return len(message)

    def read_bytes(self, count: int) -> bytes:
        if self.read_error is not None:
            raise _FakeVisaIOError(self.read_error)
        if not self.incoming:
            raise _FakeVisaIOError(VI_ERROR_TMO)
        chunk = bytes(self.incoming[:count])
        del self.incoming[:count]
        return chunk

    def close(self) -> None:
        self.closed = True


def _make_mock_pyvisa(resource: _FakeSocketResource) -> MagicMock:
    """Create a mock pyvisa module whose ResourceManager opens ``resource``."""
    mock_pyvisa = MagicMock()
    mock_pyvisa.errors.Error = _FakeVisaError
    mock_pyvisa.errors.VisaIOError = _FakeVisaIOError
    mock_pyvisa.constants.StatusCode.error_timeout = VI_ERROR_TMO
    mock_pyvisa.ResourceManager.return_value.open_resource.return_value = resource
    return mock_pyvisa


@pytest.fixture
def resource() -> _FakeSocketResource:
    return _FakeSocketResource(
        {
            "*IDN?": f"{IDENTITY}\n",
            "BURST?": "first\nsecond\n",
            "LONG?": "0123456789\n",
        }
    )


@pytest.fixture
def mock_pyvisa(resource: _FakeSocketResource) -> MagicMock:
    return _make_mock_pyvisa(resource)


@pytest.fixture
def session(mock_pyvisa: MagicMock) -> Iterator[TcpSession]:
    tcp = TcpSession(HOST, 5025, receive_timeout_ms=200)
    with patch.dict(sys.modules, {"pyvisa": mock_pyvisa}):
        tcp.connect()
    yield tcp
    tcp.close()


# ---------------------------------------------------------------------------
# Trimming
# ---------------------------------------------------------------------------


class TestTrimTermination:
    def test_removes_termination_length(self) -> None:
        assert trim_termination("ACME\n", "\n") == "ACME"
        assert trim_termination("5 106\r\n", "\n") == "5 106\r"
        assert trim_termination("OK\r\n", "\r\n") == "OK"

    def test_never_underflows(self) -> None:
        assert trim_termination("\n", "\n") == ""
        assert trim_termination("", "\n") == ""
        assert trim_termination("x", "\r\n") == ""


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------


class TestConnection:
    """Tests for opening and closing the VISA resource."""

    def test_connect_opens_socket_resource(self, mock_pyvisa: MagicMock) -> None:
        tcp = TcpSession(HOST, 1234, connect_timeout_ms=750)
        with patch.dict(sys.modules, {"pyvisa": mock_pyvisa}):
            assert tcp.connect() is True
        assert tcp.connected
        mock_pyvisa.ResourceManager.assert_called_once_with("@py")
        mock_pyvisa.ResourceManager().open_resource.assert_called_once_with(
            f"TCPIP0::{HOST}::1234::SOCKET",
            read_termination="\n",
            write_termination="\n",
            open_timeout=750,
        )

    def test_events_in_order(self, mock_pyvisa: MagicMock) -> None:
        tcp = TcpSession(HOST)
        events: list[tuple[str, bool]] = []
        tcp.subscribe_changing(lambda _s, e: events.append(("changing", e.connected)))
        tcp.subscribe_changed(lambda _s, e: events.append(("changed", e.connected)))
        with patch.dict(sys.modules, {"pyvisa": mock_pyvisa}):
            tcp.connect()
        tcp.disconnect()
        assert events == [
            ("changing", False),
            ("changed", True),
            ("changing", True),
            ("changed", False),
        ]

    def test_cancelled_connect_opens_nothing(self, mock_pyvisa: MagicMock) -> None:
        tcp = TcpSession(HOST)

        def cancel(_source: Any, event: ConnectionChangingEvent) -> None:
            event.cancel = True

        tcp.subscribe_changing(cancel)
        with patch.dict(sys.modules, {"pyvisa": mock_pyvisa}):
            assert tcp.connect() is False
        assert tcp.connected is False
        mock_pyvisa.ResourceManager.assert_not_called()

    def test_open_failure_releases_manager(self, mock_pyvisa: MagicMock) -> None:
        mock_pyvisa.ResourceManager().open_resource.side_effect = _FakeVisaIOError(VI_ERROR_RSRC_NFOUND)
        tcp = TcpSession(HOST)
        with patch.dict(sys.modules, {"pyvisa": mock_pyvisa}):
            with pytest.raises(SessionTransportError, match="Unable to connect to 192.168.0.144:5025"):
                tcp.connect()
        assert tcp.connected is False
        mock_pyvisa.ResourceManager().close.assert_called_once_with()

    def test_missing_pyvisa(self) -> None:
        tcp = TcpSession(HOST)
        with patch.dict(sys.modules, {"pyvisa": None}):
            with pytest.raises(SessionTransportError, match="pyvisa library is not installed"):
                tcp.connect()
        assert tcp.connected is False

    def test_disconnect_closes_resource_and_manager(
        self, session: TcpSession, resource: _FakeSocketResource, mock_pyvisa: MagicMock
    ) -> None:
        assert session.disconnect() is True
        assert resource.closed
        mock_pyvisa.ResourceManager().close.assert_called_once_with()
        assert not session.connected

    def test_close_error_does_not_stop_disconnect(
        self, session: TcpSession, resource: _FakeSocketResource
    ) -> None:
        resource.close = MagicMock(side_effect=_FakeVisaError("socket already gone"))  # type: ignore[method-assign]
        assert session.disconnect() is True
        assert not session.connected

    def test_properties(self) -> None:
        tcp = TcpSession(HOST, 1234, tracer=RecordingExceptionTracer())
        assert tcp.port == 1234
        assert tcp.host == HOST
        assert tcp.socket_address == f"{HOST}:1234"
        assert tcp.resource_name == f"TCPIP0::{HOST}::1234::SOCKET"
        assert tcp.visa_library == "@py"
        assert "disconnected" in repr(tcp)

    def test_io_requires_connection(self) -> None:
        tcp = TcpSession(HOST, 5025)
        with pytest.raises(SessionStateError):
            tcp.write("*IDN?\n")
        with pytest.raises(SessionStateError):
            tcp.read()
        with pytest.raises(SessionStateError):
            tcp.data_available()

    def test_empty_terminations_rejected(self) -> None:
        with pytest.raises(ValueError):
            TcpSession(HOST, read_termination="")


# ---------------------------------------------------------------------------
# Line I/O
# ---------------------------------------------------------------------------


class TestLineIo:
    """Tests for framed reads and writes."""

    def test_query_line_trims_termination(self, session: TcpSession, resource: _FakeSocketResource) -> None:
        assert session.query_line("*IDN?") == IDENTITY
        assert resource.written == [b"*IDN?\n"]

    def test_query_line_without_trim(self, session: TcpSession) -> None:
        assert session.query_line("*IDN?", trim_end=False) == f"{IDENTITY}\n"

    def test_query_with_explicit_termination(self, session: TcpSession) -> None:
        assert session.query("*IDN?\n") == IDENTITY

    def test_write_returns_byte_count(self, session: TcpSession) -> None:
        assert session.write_line("SILENT?") == len("SILENT?\n")

    def test_write_applies_send_timeout(self, session: TcpSession, resource: _FakeSocketResource) -> None:
        session.send_timeout_ms = 250
        session.write_line("SILENT?")
        assert resource.timeout == 250

    def test_empty_message_sends_nothing(self, session: TcpSession, resource: _FakeSocketResource) -> None:
        assert session.write("") == 0
        assert session.write_line("") == 0
        assert session.query_line("") == ""
        assert resource.written == []

    def test_read_timeout_returns_empty(self, session: TcpSession, resource: _FakeSocketResource) -> None:
        session.write_line("SILENT?")
        assert session.read() == ""
        assert 1 <= resource.timeout <= 200

    def test_lines_in_one_burst_are_framed(self, session: TcpSession) -> None:
        assert session.query_line("BURST?") == "first"
        assert session.read() == "second"

    def test_partial_line_stays_buffered(self, session: TcpSession, resource: _FakeSocketResource) -> None:
        resource.feed("PART")
        assert session.read() == ""
        resource.feed("IAL\n")
        assert session.read() == "PARTIAL"

    def test_max_length_splits_long_line(self, session: TcpSession) -> None:
        session.write_line("LONG?")
        assert session.read(max_length=4, trim_end=False) == "0123"
        assert session.read() == "456789"

    @pytest.mark.parametrize("max_length", [0, -5])
    def test_max_length_below_one_rejected(self, session: TcpSession, max_length: int) -> None:
        with pytest.raises(ValueError, match="max_length"):
            session.read(max_length=max_length)

    def test_orphan_drained_before_write(self, session: TcpSession) -> None:
        assert session.query_line("BURST?") == "first"
        assert session.query_line("*IDN?") == IDENTITY
        assert session.orphan == "second\n"

    def test_no_orphan(self, session: TcpSession) -> None:
        session.query_line("*IDN?")
        assert session.orphan == ""

    def test_connection_lost_raises(self, session: TcpSession, resource: _FakeSocketResource) -> None:
        resource.read_error = VI_ERROR_CONN_LOST
        with pytest.raises(SessionTransportError, match="Error reading from"):
            session.read()

    def test_send_timeout_raises(self, session: TcpSession, resource: _FakeSocketResource) -> None:
        session.send_timeout_ms = 10
        resource.write_error = VI_ERROR_TMO
        with pytest.raises(SendTimeoutError, match="timed out after 10ms"):
            session.write_line("*IDN?")

    def test_write_failure_raises(self, session: TcpSession, resource: _FakeSocketResource) -> None:
        resource.write_error = VI_ERROR_CONN_LOST
        with pytest.raises(SessionTransportError, match="Error writing to"):
            session.write_line("*IDN?")

    def test_data_available(self, session: TcpSession, resource: _FakeSocketResource) -> None:
        assert session.data_available() is False
        resource.feed(f"{IDENTITY}\n")
        assert session.data_available() is True
        assert session.read() == IDENTITY
        assert session.wait_data_available(5) is False

    def test_wait_data_available_cancelled(self, session: TcpSession) -> None:
        token = CancellationToken()
        token.cancel()
        assert session.wait_data_available(1000, token) is False


# ---------------------------------------------------------------------------
# Connect-and-query and reachability
# ---------------------------------------------------------------------------


class TestConnectAndQuery:
    """Tests for connecting and reading the identity in one call."""

    def test_returns_identity(self, mock_pyvisa: MagicMock, resource: _FakeSocketResource) -> None:
        tcp = TcpSession(HOST)
        with patch.dict(sys.modules, {"pyvisa": mock_pyvisa}):
            assert tcp.connect_and_query() == IDENTITY
        assert tcp.connected
        assert resource.written == [b"*IDN?\n"]

    def test_untrimmed(self, mock_pyvisa: MagicMock) -> None:
        tcp = TcpSession(HOST)
        with patch.dict(sys.modules, {"pyvisa": mock_pyvisa}):
            assert tcp.connect_and_query("*IDN?", trim_end=False) == f"{IDENTITY}\n"

    def test_cancelled_connect_sends_nothing(self, mock_pyvisa: MagicMock, resource: _FakeSocketResource) -> None:
        tcp = TcpSession(HOST)
        tcp.subscribe_changing(lambda _s, e: setattr(e, "cancel", True))
        with patch.dict(sys.modules, {"pyvisa": mock_pyvisa}):
            assert tcp.connect_and_query() == ""
        assert resource.written == []


class TestPortReachable:
    """Tests for the connect-and-close reachability check."""

    def test_reachable(self, mock_pyvisa: MagicMock, resource: _FakeSocketResource) -> None:
        with patch.dict(sys.modules, {"pyvisa": mock_pyvisa}):
            assert port_reachable(HOST, 5025, timeout_ms=50) is True
        _, kwargs = mock_pyvisa.ResourceManager().open_resource.call_args
        assert kwargs["open_timeout"] == 50
        assert resource.closed

    def test_unreachable(self, mock_pyvisa: MagicMock) -> None:
        mock_pyvisa.ResourceManager().open_resource.side_effect = _FakeVisaIOError(VI_ERROR_RSRC_NFOUND)
        with patch.dict(sys.modules, {"pyvisa": mock_pyvisa}):
            assert port_reachable(HOST, 5025) is False

    def test_missing_pyvisa_is_not_unreachable(self) -> None:
        with patch.dict(sys.modules, {"pyvisa": None}):
            with pytest.raises(SessionTransportError, match="pyvisa library is not installed"):
                port_reachable(HOST)


# ---------------------------------------------------------------------------
# Async I/O
# ---------------------------------------------------------------------------


class TestAsyncIo:
    """Tests for the executor-backed entry points."""

    @pytest.mark.asyncio
    async def test_query_line_async(self, session: TcpSession) -> None:
        assert await session.query_line_async("*IDN?") == IDENTITY

    @pytest.mark.asyncio
    async def test_query_line_async_no_reply(self, session: TcpSession) -> None:
        with pytest.raises(ReadTimeoutError):
            await session.query_line_async("SILENT?", timeout_ms=50)

    @pytest.mark.asyncio
    async def test_write_async_cancelled_sends_nothing(
        self, session: TcpSession, resource: _FakeSocketResource
    ) -> None:
        token = CancellationToken()
        token.cancel()
        assert await session.write_async("*IDN?\n", cancel=token) == 0
        assert resource.written == []

    @pytest.mark.asyncio
    async def test_read_async_times_out_empty(self, session: TcpSession) -> None:
        assert await session.read_async(timeout_ms=20) == ""

    @pytest.mark.asyncio
    async def test_write_line_async_then_read(self, session: TcpSession) -> None:
        sent = await session.write_line_async("*IDN?")
        assert sent == len("*IDN?\n")
        assert await session.read_async(timeout_ms=1000) == IDENTITY
