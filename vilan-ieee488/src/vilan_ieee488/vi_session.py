"""VI session: the single I/O dispatch point of the stack.

The VI session decides, per connection, whether device I/O goes straight to
the transport (:class:`DirectMode`) or through the GPIB-LAN controller adapter
(:class:`ControllerMode`). The mode is recomputed from the transport's bound
port on every connection changing and changed notification and is the only
thing dispatch consults.

The session also owns the write termination, the read-after-write delay of
direct writes and the session read timeout. With a positive session read
timeout, :meth:`ViSession.read` keeps attempting reads until one returns data
or the timeout elapses.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Union

from vilan_core.connectable import ConnectableBase, ConnectionChangedEvent, ConnectionChangingEvent
from vilan_core.errors import ReadTimeoutError
from vilan_core.polling import DEFAULT_POLL_INTERVAL_MS, CancellationToken, PollResult, poll_until, sleep_ms
from vilan_core.tracer import ExceptionTracer
from vilan_core.types import GPIB_LAN_PORT
from vilan_tcp.transport import DEFAULT_MAX_LENGTH, TransportSession

from vilan_ieee488.gpib_lan import GpibLanController

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectMode:
    """Device I/O goes straight to the transport."""

    transport: TransportSession


@dataclass(frozen=True)
class ControllerMode:
    """Device I/O is relayed by a GPIB-LAN controller."""

    adapter: GpibLanController


TransportMode = Union[DirectMode, ControllerMode]


class ViSession(ConnectableBase):
    """Transport-agnostic write/read session to one instrument.

    The session owns the transport and the GPIB-LAN adapter built on it, and
    re-raises the connection events with itself as the source.

    Args:
        transport: The transport session; owned and closed by this session.
        tracer: Fault sink shared with the adapter.
        write_termination: Termination appended to device writes.
        read_after_write_delay_ms: Delay after each write, in milliseconds.
        session_read_timeout_ms: Session read timeout; 0 disables retries.
        disable_read_after_write_on_write: Controller RAW policy.
    """

    def __init__(
        self,
        transport: TransportSession,
        tracer: ExceptionTracer | None = None,
        *,
        write_termination: str = "\n",
        read_after_write_delay_ms: int = 5,
        session_read_timeout_ms: int = 3000,
        disable_read_after_write_on_write: bool = False,
    ) -> None:
        super().__init__(tracer)
        self._transport = transport
        self._write_termination = write_termination
        self._read_after_write_delay_ms = read_after_write_delay_ms
        self.session_read_timeout_ms = session_read_timeout_ms
        self._adapter = GpibLanController(
            transport,
            self.tracer,
            write_termination=write_termination,
            read_after_write_delay_ms=read_after_write_delay_ms,
            disable_read_after_write_on_write=disable_read_after_write_on_write,
        )
        self._mode: TransportMode = self._select_mode(transport.port)
        self._transport.subscribe_changing(self._on_transport_changing)
        self._transport.subscribe_changed(self._on_transport_changed)

    # -- Properties ----------------------------------------------------------

    @property
    def transport(self) -> TransportSession:
        return self._transport

    @property
    def gpib_lan(self) -> GpibLanController:
        """The GPIB-LAN controller adapter."""
        return self._adapter

    @property
    def mode(self) -> TransportMode:
        """The current dispatch mode."""
        return self._mode

    @property
    def using_gpib_lan_control(self) -> bool:
        """True when device I/O is relayed by the GPIB-LAN controller."""
        return isinstance(self._mode, ControllerMode)

    @property
    def socket_address(self) -> str:
        return self._transport.socket_address

    @property
    def connected(self) -> bool:
        return self._transport.connected

    @property
    def read_termination(self) -> str:
        return self._transport.read_termination

    @property
    def write_termination(self) -> str:
        return self._write_termination

    @write_termination.setter
    def write_termination(self, value: str) -> None:
        if not value:
            raise ValueError("write_termination must be non-empty")
        self._write_termination = value
        self._adapter.write_termination = value

    @property
    def read_after_write_delay_ms(self) -> int:
        return self._read_after_write_delay_ms

    @read_after_write_delay_ms.setter
    def read_after_write_delay_ms(self, value: int) -> None:
        self._read_after_write_delay_ms = value
        self._adapter.read_after_write_delay_ms = value

    @property
    def read_after_write_enabled(self) -> bool:
        """The adapter's cached read-after-write state (read only)."""
        return self._adapter.read_after_write_enabled

    # -- Device I/O ----------------------------------------------------------

    def write_line(self, message: str, append_termination: bool = True) -> int:
        """Write a message to the instrument.

        Returns:
            The number of bytes sent.
        """
        mode = self._mode
        if isinstance(mode, ControllerMode):
            return mode.adapter.send_to_device(message, append_termination)
        if append_termination:
            message += self._write_termination
        sent = mode.transport.write(message)
        sleep_ms(self._read_after_write_delay_ms)
        return sent

    def receive(self, max_length: int = DEFAULT_MAX_LENGTH, trim_end: bool = True) -> str:
        """Attempt one read, returning "" if nothing arrived."""
        mode = self._mode
        if isinstance(mode, ControllerMode):
            return mode.adapter.receive_from_device(max_length, trim_end)
        return mode.transport.read(max_length, trim_end)

    def poll_reading(
        self,
        timeout_ms: float,
        max_length: int = DEFAULT_MAX_LENGTH,
        trim_end: bool = True,
        on_iterate: Callable[[], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> PollResult[str]:
        """Attempt reads until one returns data or the timeout elapses.

        Cancellation stops further attempts; a read in progress runs to the
        transport's receive timeout.
        """
        return poll_until(
            lambda: self.receive(max_length, trim_end),
            bool,
            timeout_ms=timeout_ms,
            interval_ms=DEFAULT_POLL_INTERVAL_MS,
            on_iterate=on_iterate,
            cancel=cancel,
        )

    def await_reading(
        self,
        timeout_ms: float,
        max_length: int = DEFAULT_MAX_LENGTH,
        trim_end: bool = True,
        on_iterate: Callable[[], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Like :meth:`poll_reading` but return the reading, "" on timeout."""
        return self.poll_reading(timeout_ms, max_length, trim_end, on_iterate, cancel).value

    def read(
        self,
        max_length: int = DEFAULT_MAX_LENGTH,
        trim_end: bool = True,
        on_iterate: Callable[[], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Read a reply, honouring the session read timeout.

        Raises:
            ReadTimeoutError: If no data arrived.
        """
        if self.session_read_timeout_ms > 0:
            reply = self.await_reading(
                self.session_read_timeout_ms, max_length, trim_end, on_iterate, cancel
            )
        else:
            reply = self.receive(max_length, trim_end)
        if not reply:
            raise ReadTimeoutError(self.socket_address, self.session_read_timeout_ms)
        return reply

    def query_line(
        self,
        message: str,
        append_termination: bool = True,
        max_length: int = DEFAULT_MAX_LENGTH,
        trim_end: bool = True,
    ) -> str:
        """Write a message and read the reply. Returns "" if nothing was sent."""
        if self.write_line(message, append_termination) > 0:
            return self.read(max_length, trim_end)
        return ""

    # -- Connection ----------------------------------------------------------

    def _open_connection(self) -> bool:
        return self._transport.connect()

    def _close_connection(self) -> bool:
        return self._transport.disconnect()

    def _select_mode(self, port: int) -> TransportMode:
        if port == GPIB_LAN_PORT:
            return ControllerMode(self._adapter)
        return DirectMode(self._transport)

    def _on_transport_changing(self, source: Any, _event: ConnectionChangingEvent) -> None:
        self._mode = self._select_mode(source.port)

    def _on_transport_changed(self, source: Any, event: ConnectionChangedEvent) -> None:
        self._mode = self._select_mode(source.port)
        logger.debug(
            "%s %s in %s mode",
            self.socket_address,
            "connected" if event.connected else "disconnected",
            type(self._mode).__name__,
        )

    def close(self) -> None:
        """Disconnect, unsubscribe, then close the adapter and the transport."""
        if self.connected:
            self.disconnect()
        self._transport.unsubscribe_changing(self._on_transport_changing)
        self._transport.unsubscribe_changed(self._on_transport_changed)
        self._adapter.close()
        self._transport.close()
        self._notifier.clear()

    def __repr__(self) -> str:
        return f"ViSession({self.socket_address!r}, {type(self._mode).__name__})"
