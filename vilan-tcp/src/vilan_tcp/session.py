"""PyVISA transport session.

:class:`TcpSession` implements the :class:`~vilan_tcp.transport.TransportSession`
protocol over a VISA ``TCPIP0::host::port::SOCKET`` resource. The resource is
opened through PyVISA, by default with the pure Python ``pyvisa-py`` backend
(``"@py"``), so no vendor VISA installation is needed. ``pyvisa`` is imported
lazily on connect so the rest of vilan works without it installed.

Replies are framed by the read termination: one :meth:`TcpSession.read`
returns one line, or ``max_length`` characters when a line is longer than
that. Bytes received past the end of a frame stay buffered for the next read.

Typical usage::

    from vilan_tcp import TcpSession, port_reachable

    if port_reachable("192.168.0.144", 5025, timeout_ms=100):
        with TcpSession("192.168.0.144", 5025) as session:
            print(session.connect_and_query("*IDN?"))

The asynchronous entry points only move the blocking call off the event loop
thread and bound it with a timeout. Cancelling their token prevents work that
has not started yet; a VISA call already in progress runs to its own timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from vilan_core.connectable import ConnectableBase
from vilan_core.errors import (
    ReadTimeoutError,
    SendTimeoutError,
    SessionStateError,
    SessionTransportError,
)
from vilan_core.polling import CancellationToken, poll_until
from vilan_core.tracer import ExceptionTracer
from vilan_core.types import SCPI_RAW_PORT, Endpoint

from vilan_tcp.transport import DEFAULT_MAX_LENGTH

logger = logging.getLogger(__name__)

DEFAULT_VISA_LIBRARY = "@py"
"""PyVISA backend selector for ``pyvisa-py``."""

_SOCKET_RESOURCE = "TCPIP0::{host}::{port}::SOCKET"
_POLL_TIMEOUT_MS = 1
_DATA_AVAILABLE_POLL_MS = 1
_IDENTITY_MAX_LENGTH = 128


def _import_pyvisa() -> Any:
    try:
        import pyvisa  # type: ignore[import-not-found]  # pylint: disable=import-outside-toplevel
    except ImportError as exc:
        raise SessionTransportError(
            "pyvisa library is not installed. Install with: pip install pyvisa pyvisa-py"
        ) from exc
    return pyvisa


def trim_termination(reply: str, termination: str) -> str:
    """Remove the termination's length from the end of a reply.

    Args:
        reply: The reply as received.
        termination: The read termination.

    Returns:
        The reply without its last ``len(termination)`` characters, or an
        empty string if the reply is not longer than the termination.
    """
    length = len(reply) - len(termination)
    return reply[:length] if length > 0 else ""


def port_reachable(
    host: str,
    port: int = SCPI_RAW_PORT,
    timeout_ms: int = 10,
    *,
    visa_library: str = DEFAULT_VISA_LIBRARY,
) -> bool:
    """Return True if a connection to ``host:port`` opens within ``timeout_ms``.

    The connection is closed again straight away. Use this to check that an
    instrument or controller is listening before building a session stack.

    Args:
        host: Host name or IPv4 address.
        port: TCP port (default 5025).
        timeout_ms: Connect timeout in milliseconds.
        visa_library: PyVISA backend selector.

    Raises:
        SessionTransportError: If ``pyvisa`` is not installed.
    """
    _import_pyvisa()
    session = TcpSession(host, port, connect_timeout_ms=timeout_ms, visa_library=visa_library)
    try:
        session.connect()
    except SessionTransportError as exc:
        logger.debug("%s is not reachable: %s", session.socket_address, exc)
        return False
    session.close()
    return True


class TcpSession(ConnectableBase):
    """Line-oriented session to one instrument or controller endpoint.

    Args:
        host: Host name or IPv4 address.
        port: TCP port (default 5025).
        read_termination: Termination that ends each reply.
        write_termination: Termination appended by :meth:`write_line`.
        receive_timeout_ms: Time one :meth:`read` waits for a complete line.
        send_timeout_ms: VISA timeout applied to writes, or None to block.
        connect_timeout_ms: VISA open timeout.
        visa_library: PyVISA backend selector passed to ``ResourceManager``.
        tracer: Fault sink for contained event handler exceptions.
    """

    def __init__(
        self,
        host: str,
        port: int = SCPI_RAW_PORT,
        *,
        read_termination: str = "\n",
        write_termination: str = "\n",
        receive_timeout_ms: int = 500,
        send_timeout_ms: int | None = None,
        connect_timeout_ms: int = 3000,
        visa_library: str = DEFAULT_VISA_LIBRARY,
        tracer: ExceptionTracer | None = None,
    ) -> None:
        super().__init__(tracer)
        if not read_termination or not write_termination:
            raise ValueError("terminations must be non-empty")
        self._endpoint = Endpoint(host, port)
        self._read_termination = read_termination
        self._write_termination = write_termination
        self.receive_timeout_ms = receive_timeout_ms
        self.send_timeout_ms = send_timeout_ms
        self.connect_timeout_ms = connect_timeout_ms
        self._visa_library = visa_library
        self._pyvisa: Any = None
        self._rm: Any = None
        self._resource: Any = None
        self._received = bytearray()
        self._orphan = ""

    # -- Properties ----------------------------------------------------------

    @property
    def endpoint(self) -> Endpoint:
        """The bound endpoint."""
        return self._endpoint

    @property
    def host(self) -> str:
        """Host name or IPv4 address of the endpoint."""
        return self._endpoint.host

    @property
    def port(self) -> int:
        """TCP port of the endpoint."""
        return self._endpoint.port

    @property
    def socket_address(self) -> str:
        """The endpoint as ``host:port`` for diagnostics."""
        return self._endpoint.socket_address

    @property
    def resource_name(self) -> str:
        """The VISA resource string opened on connect."""
        return _SOCKET_RESOURCE.format(host=self.host, port=self.port)

    @property
    def visa_library(self) -> str:
        """The PyVISA backend selector."""
        return self._visa_library

    @property
    def read_termination(self) -> str:
        """Termination expected at the end of each reply."""
        return self._read_termination

    @property
    def write_termination(self) -> str:
        """Termination appended by :meth:`write_line`."""
        return self._write_termination

    @property
    def orphan(self) -> str:
        """Unread data drained from the resource before the last write."""
        return self._orphan

    @property
    def connected(self) -> bool:
        """Return True if the VISA resource is open."""
        return self._resource is not None

    # -- Connection primitives -----------------------------------------------

    def _open_connection(self) -> bool:
        pyvisa = _import_pyvisa()
        manager = None
        try:
            manager = pyvisa.ResourceManager(self._visa_library)
            resource = manager.open_resource(
                self.resource_name,
                read_termination=self._read_termination,
                write_termination=self._write_termination,
                open_timeout=self.connect_timeout_ms,
            )
        except Exception as exc:
            self._close_handle(manager)
            raise SessionTransportError(f"Unable to connect to {self.socket_address}: {exc}") from exc
        self._pyvisa, self._rm, self._resource = pyvisa, manager, resource
        self._received.clear()
        self._orphan = ""
        logger.info("Connected to %s", self.socket_address)
        return True

    def _close_connection(self) -> bool:
        resource, manager = self._resource, self._rm
        self._resource = self._rm = None
        self._received.clear()
        self._close_handle(resource)
        self._close_handle(manager)
        logger.info("Disconnected from %s", self.socket_address)
        return True

    def _close_handle(self, handle: Any) -> None:
        if handle is None:
            return
        try:
            handle.close()
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Error closing VISA handle for %s: %s", self.socket_address, exc)

    def close(self) -> None:
        """Disconnect if connected and drop all subscriptions."""
        if self.connected:
            self.disconnect()
        self._notifier.clear()

    def connect_and_query(self, query_message: str = "*IDN?", trim_end: bool = True) -> str:
        """Connect and return the reply to ``query_message``.

        Args:
            query_message: The query sent once connected, usually ``*IDN?``.
            trim_end: Remove the read termination from the reply.

        Returns:
            The reply, or an empty string if a subscriber cancelled the
            connect or no reply arrived within the receive timeout.
        """
        if not self.connect():
            return ""
        return self.query_line(query_message, _IDENTITY_MAX_LENGTH, trim_end)

    def _require_resource(self) -> Any:
        if self._resource is None:
            raise SessionStateError(f"Session to {self.socket_address} is not connected")
        return self._resource

    def _is_timeout(self, exc: Exception) -> bool:
        return getattr(exc, "error_code", None) == self._pyvisa.constants.StatusCode.error_timeout

    def _receive(self, timeout_ms: float) -> bytes:
        """Pull one byte, waiting up to ``timeout_ms``. Returns b"" on timeout."""
        resource = self._require_resource()
        resource.timeout = max(_POLL_TIMEOUT_MS, int(timeout_ms))
        try:
            return bytes(resource.read_bytes(1))
        except self._pyvisa.errors.VisaIOError as exc:
            if self._is_timeout(exc):
                return b""
            raise SessionTransportError(f"Error reading from {self.socket_address}: {exc}") from exc
        except OSError as exc:
            raise SessionTransportError(f"Error reading from {self.socket_address}: {exc}") from exc

    # -- Synchronous I/O -----------------------------------------------------

    def data_available(self) -> bool:
        """Return True if buffered or unread data is waiting."""
        self._require_resource()
        if self._received:
            return True
        chunk = self._receive(_POLL_TIMEOUT_MS)
        self._received.extend(chunk)
        return bool(chunk)

    def wait_data_available(self, timeout_ms: float, cancel: CancellationToken | None = None) -> bool:
        """Poll :meth:`data_available` until it is True or the timeout elapses.

        Args:
            timeout_ms: Maximum wait, in milliseconds.
            cancel: Stops the wait before its next poll when cancelled.

        Returns:
            True if data is waiting.
        """
        result = poll_until(
            self.data_available,
            bool,
            timeout_ms=timeout_ms,
            interval_ms=_DATA_AVAILABLE_POLL_MS,
            cancel=cancel,
        )
        return result.matched

    def write(self, message: str) -> int:
        """Send ``message`` as ASCII.

        Any unread data is first drained into :attr:`orphan`.

        Returns:
            The number of bytes sent; 0 for an empty message.

        Raises:
            SessionStateError: If not connected.
            SendTimeoutError: If the send timeout elapsed.
            SessionTransportError: If the VISA write failed.
        """
        if not message:
            return 0
        resource = self._require_resource()
        self._drain_orphan()
        payload = message.encode("ascii")
        resource.timeout = self.send_timeout_ms
        try:
            sent = resource.write_raw(payload)
        except self._pyvisa.errors.VisaIOError as exc:
            if self._is_timeout(exc):
                raise SendTimeoutError(self.socket_address, self.send_timeout_ms or 0) from exc
            raise SessionTransportError(f"Error writing to {self.socket_address}: {exc}") from exc
        except OSError as exc:
            raise SessionTransportError(f"Error writing to {self.socket_address}: {exc}") from exc
        logger.debug("%s <- %r", self.socket_address, message)
        return int(sent)

    def write_line(self, message: str) -> int:
        """Send ``message`` followed by the write termination.

        Returns:
            The number of bytes sent; 0 for an empty message.
        """
        return self.write(f"{message}{self._write_termination}") if message else 0

    def read(self, max_length: int = DEFAULT_MAX_LENGTH, trim_end: bool = True) -> str:
        """Read one line.

        Args:
            max_length: Maximum number of characters to return.
            trim_end: Remove the read termination from the reply.

        Returns:
            The line, or an empty string if no complete line arrived within
            the receive timeout. A partial line stays buffered.

        Raises:
            ValueError: If ``max_length`` is less than 1.
            SessionStateError: If not connected.
            SessionTransportError: If the VISA read failed.
        """
        if max_length < 1:
            raise ValueError(f"max_length must be at least 1, got {max_length}")
        self._require_resource()
        terminator = self._read_termination.encode("ascii")
        deadline = time.monotonic() + self.receive_timeout_ms / 1000.0
        frame = self._take_frame(terminator, max_length)
        while frame is None:
            remaining_ms = (deadline - time.monotonic()) * 1000.0
            chunk = self._receive(max(remaining_ms, _POLL_TIMEOUT_MS))
            if not chunk:
                return ""
            self._received.extend(chunk)
            frame = self._take_frame(terminator, max_length)
        reply = frame.decode("ascii", errors="replace")
        logger.debug("%s -> %r", self.socket_address, reply)
        return trim_termination(reply, self._read_termination) if trim_end else reply

    def query(self, message: str, max_length: int = DEFAULT_MAX_LENGTH, trim_end: bool = True) -> str:
        """Write ``message`` as is and read the reply. Empty messages return ""."""
        if not message:
            return ""
        self.write(message)
        return self.read(max_length, trim_end)

    def query_line(self, message: str, max_length: int = DEFAULT_MAX_LENGTH, trim_end: bool = True) -> str:
        """Write ``message`` with the write termination and read the reply."""
        if not message:
            return ""
        self.write_line(message)
        return self.read(max_length, trim_end)

    def _take_frame(self, terminator: bytes, max_length: int) -> bytes | None:
        index = self._received.find(terminator)
        if index >= 0 and index + len(terminator) <= max_length:
            end = index + len(terminator)
        elif len(self._received) >= max_length:
            end = max_length
        else:
            return None
        frame = bytes(self._received[:end])
        del self._received[:end]
        return frame

    def _drain_orphan(self) -> None:
        pending = bytearray(self._received)
        self._received.clear()
        while True:
            chunk = self._receive(_POLL_TIMEOUT_MS)
            if not chunk:
                break
            pending.extend(chunk)
        self._orphan = pending.decode("ascii", errors="replace")
        if self._orphan:
            logger.warning("Discarded unread data from %s: %r", self.socket_address, self._orphan)

    # -- Asynchronous I/O ----------------------------------------------------

    async def write_async(
        self,
        message: str,
        *,
        timeout_ms: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> int:
        """Send ``message`` from the default executor.

        Args:
            message: ASCII text to send.
            timeout_ms: Overall send timeout; defaults to :attr:`send_timeout_ms`.
            cancel: Per-call token. It is cancelled when the timeout elapses.

        Raises:
            SendTimeoutError: If the send did not complete in time.
        """
        token = cancel or CancellationToken()
        limit = self.send_timeout_ms if timeout_ms is None else timeout_ms
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._write_unless_cancelled, message, token)
        try:
            return await asyncio.wait_for(future, timeout=None if limit is None else limit / 1000.0)
        except asyncio.TimeoutError as exc:
            token.cancel()
            raise SendTimeoutError(self.socket_address, limit or 0) from exc

    async def write_line_async(
        self,
        message: str,
        *,
        timeout_ms: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> int:
        """Send ``message`` with the write termination from the default executor."""
        if not message:
            return 0
        return await self.write_async(
            f"{message}{self._write_termination}", timeout_ms=timeout_ms, cancel=cancel
        )

    async def read_async(
        self,
        max_length: int = DEFAULT_MAX_LENGTH,
        trim_end: bool = True,
        *,
        timeout_ms: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Wait for data and read one line from the default executor.

        Args:
            max_length: Maximum number of characters to return.
            trim_end: Remove the read termination.
            timeout_ms: Time to wait for data; defaults to the receive timeout.
            cancel: Per-call token checked between data-available polls.

        Returns:
            The line, or an empty string if nothing arrived.
        """
        token = cancel or CancellationToken()
        limit = self.receive_timeout_ms if timeout_ms is None else timeout_ms
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self._read_when_available, max_length, trim_end, limit, token
        )

    async def query_line_async(
        self,
        message: str,
        max_length: int = DEFAULT_MAX_LENGTH,
        trim_end: bool = True,
        *,
        timeout_ms: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Write a line and read its reply without blocking the event loop.

        Raises:
            SendTimeoutError: If the send did not complete in time.
            ReadTimeoutError: If no reply arrived within the read timeout.
        """
        if not message:
            return ""
        token = cancel or CancellationToken()
        await self.write_line_async(message, cancel=token)
        limit = self.receive_timeout_ms if timeout_ms is None else timeout_ms
        reply = await self.read_async(max_length, trim_end, timeout_ms=limit, cancel=token)
        if not reply:
            raise ReadTimeoutError(self.socket_address, limit)
        return reply

    def _write_unless_cancelled(self, message: str, token: CancellationToken) -> int:
        if token.cancelled:
            return 0
        return self.write(message)

    def _read_when_available(
        self, max_length: int, trim_end: bool, timeout_ms: int, token: CancellationToken
    ) -> str:
        if not self.wait_data_available(timeout_ms, token) or token.cancelled:
            return ""
        return self.read(max_length, trim_end)

    def __repr__(self) -> str:
        state = "connected" if self.connected else "disconnected"
        return f"TcpSession({self.socket_address!r}, {state})"
