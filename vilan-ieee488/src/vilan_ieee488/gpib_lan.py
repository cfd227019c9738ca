"""GPIB-LAN controller adapter.

A Prologix-style GPIB-LAN controller listens on TCP port 1234 and relays
instrument I/O over the GPIB bus. Lines starting with ``++`` are controller
commands; anything else is forwarded to the addressed instrument. Controller
replies end with CR+LF.

:class:`GpibLanController` speaks that protocol on behalf of the VI session.
Its main policy concern is read-after-write (RAW, ``++auto``): with RAW on,
the controller addresses the instrument to talk after every write, which
makes instruments such as the Keithley 2700 raise "Query Unterminated" when a
command has no reply. The adapter therefore turns RAW off whenever the
transport connects and pulls replies explicitly with ``++read eoi``.

Controller command summary::

    ++auto [0|1]           read-after-write
    ++addr [pad [sad+96]]  GPIB address of the instrument
    ++loc / ++llo / ++clr  go to local / local lockout / selective device clear
    ++read eoi             read from the instrument until EOI
    ++read_tmo_ms [1..3000] inter-character read timeout
    ++spoll [pad [sad+96]] serial poll
    ++srq                  SRQ line state
    ++status [0..255]      status byte in device mode
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from vilan_core.connectable import (
    FATAL_EXCEPTIONS,
    ConnectionChangedEvent,
    ConnectionChangingEvent,
)
from vilan_core.polling import DEFAULT_POLL_INTERVAL_MS, CancellationToken, PollResult, poll_until, sleep_ms
from vilan_core.tracer import ExceptionTracer, LoggingExceptionTracer
from vilan_core.types import GPIB_LAN_PORT
from vilan_tcp.transport import DEFAULT_MAX_LENGTH, TransportSession

from vilan_ieee488.status import is_service_request, parse_register

logger = logging.getLogger(__name__)

SECONDARY_ADDRESS_OFFSET = 96
MIN_GPIB_ADDRESS = 0
MAX_GPIB_ADDRESS = 30
MIN_READ_TIMEOUT_MS = 1
MAX_READ_TIMEOUT_MS = 3000

READ_EOI_COMMAND = "++read eoi"


def delimit(value: int, minimum: int, maximum: int) -> int:
    """Clamp ``value`` into ``[minimum, maximum]``."""
    return max(minimum, min(maximum, value))


@dataclass(frozen=True)
class GpibAddress:
    """GPIB address of an instrument behind the controller.

    Attributes:
        primary: Primary address, 0 to 30.
        secondary: Secondary address, 0 to 30, or -1 for none. On the wire
            the secondary address is offset by 96.
    """

    primary: int
    secondary: int = -1

    def __post_init__(self) -> None:
        if not MIN_GPIB_ADDRESS <= self.primary <= MAX_GPIB_ADDRESS:
            raise ValueError(f"primary address must be in [0, 30], got {self.primary}")
        if self.secondary != -1 and not MIN_GPIB_ADDRESS <= self.secondary <= MAX_GPIB_ADDRESS:
            raise ValueError(f"secondary address must be -1 or in [0, 30], got {self.secondary}")

    @classmethod
    def clamped(cls, primary: int, secondary: int = -1) -> GpibAddress:
        """Build an address, clamping out-of-range values into [0, 30].

        A negative secondary address means none.
        """
        primary = delimit(primary, MIN_GPIB_ADDRESS, MAX_GPIB_ADDRESS)
        if secondary < 0:
            return cls(primary)
        return cls(primary, delimit(secondary, MIN_GPIB_ADDRESS, MAX_GPIB_ADDRESS))

    @classmethod
    def from_reply(cls, reply: str) -> GpibAddress | None:
        """Decode a ``++addr`` reply such as ``"5"`` or ``"5 106"``.

        Returns:
            The decoded address, or None if the reply is not an address.
        """
        parts = reply.split()
        try:
            if len(parts) == 1:
                return cls(int(parts[0]))
            if len(parts) == 2:
                return cls(int(parts[0]), int(parts[1]) - SECONDARY_ADDRESS_OFFSET)
        except ValueError:
            logger.warning("Unexpected GPIB address reply: %r", reply)
        return None

    @property
    def has_secondary(self) -> bool:
        return self.secondary >= 0

    def to_wire(self) -> str:
        """Encode the address as ``++addr``/``++spoll`` arguments."""
        if self.has_secondary:
            return f"{self.primary} {self.secondary + SECONDARY_ADDRESS_OFFSET}"
        return str(self.primary)

    def __str__(self) -> str:
        return f"{self.primary}.{self.secondary}" if self.has_secondary else str(self.primary)


class GpibLanController:
    """Adapter translating device I/O into GPIB-LAN controller commands.

    The adapter subscribes to the transport's connection events. It is
    :attr:`enabled` only while the transport is bound to the controller port.
    Faults raised inside its own connection handlers go to the tracer and
    never reach the caller of ``connect()``/``disconnect()``.

    Args:
        transport: Transport session to the controller.
        tracer: Fault sink for connection handler faults.
        write_termination: Termination appended to device and controller
            messages.
        read_after_write_delay_ms: Delay after every write, in milliseconds.
        disable_read_after_write_on_write: Turn RAW off before device writes.
    """

    def __init__(
        self,
        transport: TransportSession,
        tracer: ExceptionTracer | None = None,
        *,
        write_termination: str = "\n",
        read_after_write_delay_ms: int = 5,
        disable_read_after_write_on_write: bool = False,
    ) -> None:
        self._transport = transport
        self._tracer: ExceptionTracer = tracer or LoggingExceptionTracer()
        self.write_termination = write_termination
        self.read_after_write_delay_ms = read_after_write_delay_ms
        self.disable_read_after_write_on_write = disable_read_after_write_on_write
        self.controller_mode = True
        self._enabled = transport.port == GPIB_LAN_PORT
        self._read_after_write_enabled = False
        self._read_timeout_ms = 0
        self._status_byte = 0
        self._transport.subscribe_changing(self._on_transport_changing)
        self._transport.subscribe_changed(self._on_transport_changed)

    # -- State ---------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        """True while the transport is bound to the controller port."""
        return self._enabled

    @property
    def read_after_write_enabled(self) -> bool:
        """The cached read-after-write state."""
        return self._read_after_write_enabled

    @property
    def read_timeout_ms(self) -> int:
        """The cached controller read timeout, 0 until first set or queried."""
        return self._read_timeout_ms

    @property
    def status_byte(self) -> int:
        """The cached device-mode status byte."""
        return self._status_byte

    @property
    def socket_address(self) -> str:
        return self._transport.socket_address

    # -- Read-after-write ----------------------------------------------------

    def set_read_after_write_enabled(self, enable: bool) -> None:
        """Turn RAW on or off. Nothing is sent if the cached state already matches."""
        if enable != self._read_after_write_enabled:
            self.send_to_controller(f"++auto {1 if enable else 0}")
            self._read_after_write_enabled = enable

    def query_read_after_write_enabled(self) -> bool:
        """Query ``++auto`` and refresh the cached RAW state."""
        self._read_after_write_enabled = self.query_controller("++auto") == "1"
        return self._read_after_write_enabled

    # -- Device I/O ----------------------------------------------------------

    def send_to_device(self, message: str, append_termination: bool = True) -> int:
        """Send a message to the addressed instrument.

        When RAW is on and :attr:`disable_read_after_write_on_write` is set,
        RAW is turned off first and stays off.

        Returns:
            The number of bytes sent.
        """
        if append_termination:
            message += self.write_termination
        if self._read_after_write_enabled and self.disable_read_after_write_on_write:
            self.set_read_after_write_enabled(False)
        sent = self._transport.write(message)
        sleep_ms(self.read_after_write_delay_ms)
        return sent

    def receive_from_device(self, max_length: int = DEFAULT_MAX_LENGTH, trim_end: bool = True) -> str:
        """Read a reply from the instrument.

        With RAW off the controller is first told to read from the instrument
        (``++read eoi``).
        """
        if not self._read_after_write_enabled:
            self.read_from_device_to_controller()
        return self._transport.read(max_length, trim_end)

    def query_device(
        self,
        message: str,
        append_termination: bool = True,
        max_length: int = DEFAULT_MAX_LENGTH,
        trim_end: bool = True,
    ) -> str:
        """Send to the instrument and read its reply. Returns "" if nothing was sent."""
        if self.send_to_device(message, append_termination) > 0:
            return self.receive_from_device(max_length, trim_end)
        return ""

    # -- Controller I/O ------------------------------------------------------

    def send_to_controller(self, message: str, append_termination: bool = True) -> int:
        """Send a controller command, bypassing the RAW policy."""
        if append_termination:
            message += self.write_termination
        sent = self._transport.write(message)
        sleep_ms(self.read_after_write_delay_ms)
        return sent

    def receive_from_controller(self, max_length: int = DEFAULT_MAX_LENGTH, trim_end: bool = True) -> str:
        """Read a controller reply, trimming its CR+LF when requested."""
        reply = self._transport.read(max_length, trim_end)
        if trim_end and reply:
            reply = reply.rstrip("\r").rstrip("\n")
        return reply

    def query_controller(self, message: str, append_termination: bool = True) -> str:
        """Send a controller command and read its reply."""
        if self.send_to_controller(message, append_termination) > 0:
            return self.receive_from_controller()
        return ""

    def read_from_device_to_controller(self) -> int:
        """Tell the controller to read from the instrument until EOI."""
        return self.send_to_controller(READ_EOI_COMMAND)

    # -- GPIB bus ------------------------------------------------------------

    def go_to_local(self) -> None:
        """Return the instrument to front panel control (``++loc``)."""
        self.send_to_controller("++loc")

    def local_lockout(self) -> None:
        """Disable the instrument's front panel (``++llo``)."""
        self.send_to_controller("++llo")

    def selective_device_clear(self) -> None:
        """Clear the addressed instrument (``++clr``)."""
        self.send_to_controller("++clr")

    def set_gpib_address(self, primary: int, secondary: int = -1) -> None:
        """Address an instrument, clamping both addresses into [0, 30].

        A negative primary address sends nothing.
        """
        if primary < 0:
            return
        address = GpibAddress.clamped(primary, secondary)
        self.send_to_controller(f"++addr {address.to_wire()}")

    def query_gpib_address(self) -> GpibAddress | None:
        """Query ``++addr`` and decode the reply."""
        return GpibAddress.from_reply(self.query_controller("++addr"))

    def set_read_timeout(self, timeout_ms: int) -> None:
        """Set the controller read timeout, clamped into [1, 3000] ms.

        This is the controller's inter-character timeout, independent of the
        session read timeout. Nothing is sent if the cached value matches.
        """
        timeout_ms = delimit(timeout_ms, MIN_READ_TIMEOUT_MS, MAX_READ_TIMEOUT_MS)
        if timeout_ms != self._read_timeout_ms:
            self.send_to_controller(f"++read_tmo_ms {timeout_ms}")
        self._read_timeout_ms = timeout_ms

    def query_read_timeout(self) -> int:
        """Query ``++read_tmo_ms`` and refresh the cached value."""
        reply = self.query_controller("++read_tmo_ms")
        try:
            self._read_timeout_ms = int(reply)
        except ValueError:
            logger.warning("Unexpected read timeout reply: %r", reply)
        return self._read_timeout_ms

    # -- Status --------------------------------------------------------------

    def serial_poll(self, primary: int = -1, secondary: int = -1) -> int:
        """Serial poll the addressed (or the given) instrument.

        Returns:
            The status byte, or 0 if the reply is not a number.
        """
        command = "++spoll"
        if primary >= 0:
            command = f"{command} {GpibAddress.clamped(primary, secondary).to_wire()}"
        return parse_register(self.query_controller(command))

    def service_requested(self) -> bool:
        """Return True if the SRQ line is asserted (``++srq`` replies 1)."""
        return parse_register(self.query_controller("++srq")) == 1

    def poll_status(
        self,
        timeout_ms: float,
        bit_mask: int,
        poll_interval_ms: float = DEFAULT_POLL_INTERVAL_MS,
        on_iterate: Callable[[], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> PollResult[int]:
        """Serial poll until every bit of ``bit_mask`` is set or the timeout elapses.

        Returns:
            A :class:`~vilan_core.polling.PollResult` whose ``matched`` tells
            a match apart from a timeout.
        """
        return poll_until(
            self.serial_poll,
            lambda status: is_service_request(status, bit_mask),
            timeout_ms=timeout_ms,
            interval_ms=poll_interval_ms,
            on_iterate=on_iterate,
            cancel=cancel,
        )

    def await_status(
        self,
        timeout_ms: float,
        bit_mask: int,
        poll_interval_ms: float = DEFAULT_POLL_INTERVAL_MS,
        on_iterate: Callable[[], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> int:
        """Serial poll until ``bit_mask`` is set or the timeout elapses.

        Returns:
            The last status byte read, whatever the outcome. Test it against
            the mask to tell a match from a timeout, or use
            :meth:`poll_status`.
        """
        return self.poll_status(timeout_ms, bit_mask, poll_interval_ms, on_iterate, cancel).value

    # -- Device mode ---------------------------------------------------------

    def set_status_byte(self, value: int) -> None:
        """Set the status byte the controller reports in device mode.

        The value is clamped into [0, 255] and sent only in device mode and
        only when it differs from the cached value.
        """
        value = delimit(value, 0, 255)
        if not self.controller_mode and value != self._status_byte:
            self.send_to_controller(f"++status {value}")
        self._status_byte = value

    def query_status_byte(self) -> int:
        """Query the device-mode status byte. Always 0 in controller mode."""
        if self.controller_mode:
            self._status_byte = 0
        else:
            reply = self.query_controller("++status")
            try:
                self._status_byte = int(reply)
            except ValueError:
                logger.warning("Unexpected status byte reply: %r", reply)
        return self._status_byte

    # -- Transport events ----------------------------------------------------

    def _on_transport_changing(self, source: Any, event: ConnectionChangingEvent) -> None:
        try:
            self._enabled = source.port == GPIB_LAN_PORT
            if self._enabled and event.connected:
                # leave the instrument with RAW off and back in local
                self.query_read_after_write_enabled()
                self.set_read_after_write_enabled(False)
                self.go_to_local()
        except FATAL_EXCEPTIONS:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("GPIB-LAN disconnect handling failed on %s: %r", self.socket_address, exc)
            self._tracer.trace(exc)

    def _on_transport_changed(self, source: Any, event: ConnectionChangedEvent) -> None:
        try:
            self._enabled = source.port == GPIB_LAN_PORT
            if self._enabled and event.connected:
                self.query_read_after_write_enabled()
                # force the command out even if the controller reported RAW off
                self._read_after_write_enabled = True
                self.set_read_after_write_enabled(False)
                logger.info("GPIB-LAN controller at %s: read-after-write off", self.socket_address)
        except FATAL_EXCEPTIONS:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("GPIB-LAN connect handling failed on %s: %r", self.socket_address, exc)
            self._tracer.trace(exc)

    # -- Lifecycle -----------------------------------------------------------

    def close(self) -> None:
        """Unsubscribe from the transport. The transport is left open."""
        self._transport.unsubscribe_changing(self._on_transport_changing)
        self._transport.unsubscribe_changed(self._on_transport_changed)
