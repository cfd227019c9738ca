"""IEEE-488.2 instrument and GPIB-LAN controller emulators.

Provides in-process emulators for exercising the session stack without
hardware:

- :class:`InstrumentEmulator`: an IEEE-488.2 instrument with the common
  commands, the status registers, an error queue and an output queue whose
  Message-Available bit can be delayed.
- :class:`GpibLanControllerEmulator`: a Prologix-style controller relaying
  lines to an :class:`InstrumentEmulator`, with ``++`` commands, the
  read-after-write policy and a log of every line it received.
- :class:`EmulatorTransport`: an in-memory transport session bound to
  either emulator and a port number, so that the VI session selects its
  dispatch mode exactly as it would on a socket.

Both emulators implement :class:`LineEmulator`, which is also what
:class:`~vilan_ieee488.server.EmulatorServer` serves over TCP.
"""

# pylint: disable=unnecessary-ellipsis  # Ellipsis required for Protocol method stubs

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Protocol, Union

from vilan_core.connectable import ConnectableBase
from vilan_core.errors import SessionStateError, SessionTransportError
from vilan_core.tracer import ExceptionTracer
from vilan_core.types import GPIB_LAN_PORT, SCPI_RAW_PORT
from vilan_tcp.session import trim_termination
from vilan_tcp.transport import DEFAULT_MAX_LENGTH

from vilan_ieee488.gpib_lan import (
    MAX_READ_TIMEOUT_MS,
    MIN_READ_TIMEOUT_MS,
    SECONDARY_ADDRESS_OFFSET,
    GpibAddress,
    delimit,
)
from vilan_ieee488.status import ServiceRequests, StandardEvents

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY = "ACME,MODEL1,SN1,1.0"
CONTROLLER_VERSION = "Prologix GPIB-ETHERNET Controller version 01.06.06.00"

QueryReply = Union[str, Callable[[], str]]

# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

_LONG_TO_SHORT: dict[str, str] = {
    "SYSTEM": "SYST",
    "ERROR": "ERR",
    "CLEAR": "CLE",
    "STATUS": "STAT",
    "QUEUE": "QUE",
    "PRESET": "PRES",
}


def _normalize_header(header: str) -> str:
    """Uppercase, strip the leading colon, and map long forms to short forms."""
    upper = header.strip().upper()
    if upper.startswith(":"):
        upper = upper[1:]
    is_query = upper.endswith("?")
    segments = upper.rstrip("?").split(":")
    normalized = ":".join(_LONG_TO_SHORT.get(seg, seg) for seg in segments)
    return f"{normalized}?" if is_query else normalized


def _split_unit(unit: str) -> tuple[str, str]:
    """Split a program message unit into (header, arguments)."""
    parts = unit.strip().split(None, 1)
    if not parts:
        return "", ""
    return parts[0], parts[1].strip() if len(parts) > 1 else ""


# ---------------------------------------------------------------------------
# Line emulator protocol
# ---------------------------------------------------------------------------


class LineEmulator(Protocol):
    """Something that answers one received line with raw reply text."""

    def respond(self, line: str) -> str:
        """Process one line and return the text to send back, "" for none."""
        ...


# ---------------------------------------------------------------------------
# Instrument
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InstrumentEmulatorConfig:
    """Configuration for an :class:`InstrumentEmulator`.

    Args:
        identity: ``*IDN?`` response string.
        options: ``*OPT?`` response string.
        language: Initial ``*LANG?`` response string.
        message_available_delay_ms: Delay between a query and its reply
            becoming available, in milliseconds (>= 0).
        self_test_result: ``*TST?`` response value.
    """

    identity: str = DEFAULT_IDENTITY
    options: str = "0"
    language: str = "SCPI"
    message_available_delay_ms: int = 0
    self_test_result: int = 0

    def __post_init__(self) -> None:
        if not self.identity:
            raise ValueError("identity must be non-empty")
        if self.message_available_delay_ms < 0:
            raise ValueError("message_available_delay_ms must be >= 0")


class InstrumentEmulator:
    """In-process IEEE-488.2 instrument.

    Lines may hold several program message units separated by ``;``. The
    replies of the queries on one line form one response message.

    Unknown headers push ``-113,"Undefined header"`` onto the error queue,
    which sets the Error-Available bit of the status byte.

    Args:
        config: Emulator configuration. Defaults to :class:`InstrumentEmulatorConfig`.
    """

    def __init__(self, config: InstrumentEmulatorConfig | None = None) -> None:
        self._config = config or InstrumentEmulatorConfig()
        self._lock = threading.RLock()
        self._output: deque[str] = deque()
        self._errors: deque[tuple[int, str]] = deque()
        self._ready_at = 0.0
        self._standard_event_enable = 0
        self._standard_event_status = 0
        self._service_request_enable = 0
        self._power_on_status_clear = 1
        self.language = self._config.language
        self.message_available_delay_ms = self._config.message_available_delay_ms
        self.trigger_count = 0
        self.reset_count = 0
        self.received: list[str] = []

        self._command_handlers: dict[str, Callable[[str], None]] = {
            "*CLS": self._clear_status,
            "*RST": self._reset,
            "*OPC": self._operation_complete,
            "*WAI": lambda _args: None,
            "*TRG": self._trigger,
            "*ESE": self._set_standard_event_enable,
            "*SRE": self._set_service_request_enable,
            "*PSC": self._set_power_on_status_clear,
            "*LANG": self._set_language,
            "SYST:CLE": self._clear_errors,
            "STAT:QUE:CLE": self._clear_errors,
            "SYST:PRES": lambda _args: None,
            "STAT:PRES": self._status_preset,
            "SYST:BEEP": lambda _args: None,
        }

        self._query_handlers: dict[str, Callable[[], str]] = {
            "*IDN?": lambda: self._config.identity,
            "*OPC?": lambda: "1",
            "*OPT?": lambda: self._config.options,
            "*ESE?": lambda: str(int(self._standard_event_enable)),
            "*ESR?": self._read_standard_event_status,
            "*SRE?": lambda: str(self._service_request_enable),
            "*STB?": lambda: str(self.status_byte),
            "*PSC?": lambda: str(self._power_on_status_clear),
            "*TST?": lambda: str(self._config.self_test_result),
            "*LANG?": lambda: self.language,
            "SYST:ERR?": self._pop_error,
            "SYST:ERR:NEXT?": self._pop_error,
            "STAT:QUE?": self._pop_error,
            "STAT:QUE:NEXT?": self._pop_error,
            "SYST:FRSW?": lambda: "1",
        }

    # -- Transport interface ------------------------------------------------

    def write(self, message: str) -> None:
        """Process one line of program message units."""
        line = message.strip()
        if not line:
            return
        with self._lock:
            self.received.append(line)
            replies: list[str] = []
            for unit in line.split(";"):
                header, args = _split_unit(unit)
                if not header:
                    continue
                reply = self._dispatch(header, args)
                if reply is not None:
                    replies.append(reply)
            if replies:
                self._output.append(";".join(replies))
                self._ready_at = time.monotonic() + self.message_available_delay_ms / 1000.0

    def read(self) -> str:
        """Return the next response message, or "" if none is available yet."""
        with self._lock:
            if not self.message_available:
                return ""
            return self._output.popleft()

    def respond(self, line: str) -> str:
        """Process a line and return its response, waiting out the MAV delay.

        Used for direct (raw socket) connections, where replies are sent as
        soon as they are ready.
        """
        self.write(line)
        replies: list[str] = []
        while self.output_pending:
            remaining = self._ready_at - time.monotonic()
            if remaining > 0:
                time.sleep(remaining)
            replies.append(f"{self.read()}\n")
        return "".join(replies)

    def device_clear(self) -> None:
        """Clear the input and output buffers (SDC/DCL)."""
        with self._lock:
            self._output.clear()

    # -- Status -------------------------------------------------------------

    @property
    def output_pending(self) -> bool:
        """True if a response is queued, whether or not it is available yet."""
        return bool(self._output)

    @property
    def message_available(self) -> bool:
        """True once a queued response is past its availability delay."""
        return bool(self._output) and time.monotonic() >= self._ready_at

    @property
    def error_available(self) -> bool:
        return bool(self._errors)

    @property
    def status_byte(self) -> int:
        """The Status Byte Register as a serial poll would report it."""
        status = ServiceRequests.NONE
        if self._errors:
            status |= ServiceRequests.ERROR_AVAILABLE
        if self.message_available:
            status |= ServiceRequests.MESSAGE_AVAILABLE
        if self._standard_event_status & self._standard_event_enable:
            status |= ServiceRequests.STANDARD_EVENT
        if status & self._service_request_enable & ~ServiceRequests.REQUESTING_SERVICE:
            status |= ServiceRequests.REQUESTING_SERVICE
        return int(status)

    @property
    def errors(self) -> tuple[tuple[int, str], ...]:
        """Snapshot of the error queue, oldest first."""
        return tuple(self._errors)

    # -- Test helpers -------------------------------------------------------

    def push_error(self, code: int, message: str) -> None:
        """Queue an error and set the matching standard event bit.

        Args:
            code: SCPI error code.
            message: Error description.
        """
        with self._lock:
            self._errors.append((code, message))
            if -199 <= code <= -100:
                self._standard_event_status |= StandardEvents.COMMAND_ERROR
            elif -299 <= code <= -200:
                self._standard_event_status |= StandardEvents.EXECUTION_ERROR
            elif -499 <= code <= -400:
                self._standard_event_status |= StandardEvents.QUERY_ERROR
            else:
                self._standard_event_status |= StandardEvents.DEVICE_DEPENDENT_ERROR

    def add_query(self, header: str, reply: QueryReply) -> None:
        """Register a device-specific query.

        Args:
            header: Query header such as ``"READ?"``.
            reply: Fixed reply, or a callable producing one.
        """
        handler = reply if callable(reply) else (lambda: reply)
        self._query_handlers[_normalize_header(header)] = handler

    def add_command(self, header: str, handler: Callable[[str], None]) -> None:
        """Register a device-specific command receiving its argument string."""
        self._command_handlers[_normalize_header(header)] = handler

    # -- Private helpers ----------------------------------------------------

    def _dispatch(self, header: str, args: str) -> str | None:
        key = _normalize_header(header)
        if key.endswith("?"):
            query = self._query_handlers.get(key)
            if query is not None:
                return query()
        else:
            command = self._command_handlers.get(key)
            if command is not None:
                command(args)
                return None
        logger.debug("Emulated instrument rejected header %r", header)
        self.push_error(-113, "Undefined header")
        return None

    def _pop_error(self) -> str:
        if self._errors:
            code, message = self._errors.popleft()
            return f'{code},"{message}"'
        return '0,"No error"'

    def _parse_register(self, args: str) -> int | None:
        try:
            value = int(args)
        except ValueError:
            self.push_error(-220, "Parameter error")
            return None
        if not 0 <= value <= 255:
            self.push_error(-222, "Data out of range")
            return None
        return value

    # -- Command handlers ---------------------------------------------------

    def _clear_status(self, _args: str) -> None:
        self._standard_event_status = 0
        self._errors.clear()

    def _reset(self, _args: str) -> None:
        self.reset_count += 1
        self.language = self._config.language

    def _operation_complete(self, _args: str) -> None:
        self._standard_event_status |= StandardEvents.OPERATION_COMPLETE

    def _trigger(self, _args: str) -> None:
        self.trigger_count += 1

    def _set_standard_event_enable(self, args: str) -> None:
        value = self._parse_register(args)
        if value is not None:
            self._standard_event_enable = value

    def _set_service_request_enable(self, args: str) -> None:
        value = self._parse_register(args)
        if value is not None:
            # bit 6 is ignored
            self._service_request_enable = value & ~int(ServiceRequests.REQUESTING_SERVICE)

    def _set_power_on_status_clear(self, args: str) -> None:
        value = self._parse_register(args)
        if value is not None:
            self._power_on_status_clear = 1 if value else 0

    def _set_language(self, args: str) -> None:
        language = args.strip().strip('"').upper()
        if not language:
            self.push_error(-109, "Missing parameter")
            return
        self.language = language

    def _clear_errors(self, _args: str) -> None:
        self._errors.clear()

    def _status_preset(self, _args: str) -> None:
        self._standard_event_enable = 0
        self._service_request_enable = 0

    def _read_standard_event_status(self) -> str:
        value = int(self._standard_event_status)
        self._standard_event_status = 0
        return str(value)


# ---------------------------------------------------------------------------
# GPIB-LAN controller
# ---------------------------------------------------------------------------


class GpibLanControllerEmulator:
    """In-process Prologix-style GPIB-LAN controller.

    Lines starting with ``++`` are controller commands answered with CR+LF
    terminated replies. Other lines go to the instrument; with read-after-write
    on, the instrument is then addressed to talk and its response returned.
    Addressing an instrument to talk with nothing queued makes it raise
    ``-420,"Query UNTERMINATED"``.

    Args:
        instrument: The instrument on the bus. Defaults to a new
            :class:`InstrumentEmulator`.
        read_after_write: Initial ``++auto`` state (on for a power-cycled
            controller).
        address: Initial ``++addr`` value.
    """

    def __init__(
        self,
        instrument: InstrumentEmulator | None = None,
        *,
        read_after_write: bool = True,
        address: GpibAddress | None = None,
    ) -> None:
        self.instrument = instrument or InstrumentEmulator()
        self.read_after_write = read_after_write
        self.address = address or GpibAddress(16)
        self.read_timeout_ms = 500
        self.status = 0
        self.remote = False
        self.locked_out = False
        self.clear_count = 0
        self.commands: list[str] = []
        self._lock = threading.RLock()

        self._handlers: dict[str, Callable[[str], str | None]] = {
            "++auto": self._auto,
            "++addr": self._addr,
            "++loc": self._loc,
            "++llo": self._llo,
            "++clr": self._clr,
            "++read": self._read,
            "++read_tmo_ms": self._read_tmo_ms,
            "++spoll": self._spoll,
            "++srq": self._srq,
            "++status": self._status,
            "++ver": lambda _args: CONTROLLER_VERSION,
            "++mode": lambda _args: "1",
        }

    @property
    def controller_commands(self) -> list[str]:
        """Received ``++`` commands, oldest first."""
        return [c for c in self.commands if c.startswith("++")]

    @property
    def device_messages(self) -> list[str]:
        """Received lines relayed to the instrument, oldest first."""
        return [c for c in self.commands if not c.startswith("++")]

    def clear_log(self) -> None:
        self.commands.clear()

    def respond(self, line: str) -> str:
        """Process one received line and return the reply text."""
        line = line.strip()
        if not line:
            return ""
        with self._lock:
            self.commands.append(line)
            if line.startswith("++"):
                return self._controller_command(line)
            self.remote = True
            self.instrument.write(line)
            if self.read_after_write:
                return self._talk()
            return ""

    # -- Private helpers ----------------------------------------------------

    def _controller_command(self, line: str) -> str:
        name, _, args = line.partition(" ")
        handler = self._handlers.get(name)
        if handler is None:
            logger.debug("Emulated controller ignored %r", line)
            return ""
        reply = handler(args.strip())
        if reply is None:
            return ""
        if name == "++read":
            return reply
        return f"{reply}\r\n"

    def _talk(self) -> str:
        """Address the instrument to talk and return its response."""
        instrument = self.instrument
        if not instrument.output_pending:
            instrument.push_error(-420, "Query UNTERMINATED")
            return ""
        deadline = time.monotonic() + self.read_timeout_ms / 1000.0
        while not instrument.message_available and time.monotonic() < deadline:
            time.sleep(0.001)
        reply = instrument.read()
        return f"{reply}\n" if reply else ""

    def _parse_int(self, args: str) -> int | None:
        try:
            return int(args)
        except ValueError:
            logger.debug("Emulated controller ignored argument %r", args)
            return None

    # -- Command handlers ---------------------------------------------------

    def _auto(self, args: str) -> str | None:
        if not args:
            return "1" if self.read_after_write else "0"
        value = self._parse_int(args)
        if value is not None:
            self.read_after_write = value != 0
        return None

    def _addr(self, args: str) -> str | None:
        if not args:
            return self.address.to_wire()
        parts = args.split()
        try:
            primary = int(parts[0])
            secondary = int(parts[1]) - SECONDARY_ADDRESS_OFFSET if len(parts) > 1 else -1
            self.address = GpibAddress(primary, secondary)
        except ValueError:
            logger.debug("Emulated controller ignored address %r", args)
        return None

    def _loc(self, _args: str) -> None:
        self.remote = False
        self.locked_out = False

    def _llo(self, _args: str) -> None:
        self.locked_out = True

    def _clr(self, _args: str) -> None:
        self.clear_count += 1
        self.instrument.device_clear()

    def _read(self, _args: str) -> str:
        return self._talk()

    def _read_tmo_ms(self, args: str) -> str | None:
        if not args:
            return str(self.read_timeout_ms)
        value = self._parse_int(args)
        if value is not None:
            self.read_timeout_ms = delimit(value, MIN_READ_TIMEOUT_MS, MAX_READ_TIMEOUT_MS)
        return None

    def _spoll(self, _args: str) -> str:
        return str(self.instrument.status_byte)

    def _srq(self, _args: str) -> str:
        return "1" if self.instrument.status_byte & ServiceRequests.REQUESTING_SERVICE else "0"

    def _status(self, args: str) -> str | None:
        if not args:
            return str(self.status)
        value = self._parse_int(args)
        if value is not None:
            self.status = delimit(value, 0, 255)
        return None


# ---------------------------------------------------------------------------
# In-memory transport
# ---------------------------------------------------------------------------


class EmulatorTransport(ConnectableBase):
    """In-memory transport session bound to a line emulator.

    Written lines are handed to the emulator as soon as their termination is
    seen; replies are buffered and framed by the read termination exactly
    like :class:`~vilan_tcp.session.TcpSession` frames socket data.

    Args:
        emulator: The emulator answering written lines.
        port: Port number the transport reports. Use 1234 to make the VI
            session relay through a GPIB-LAN controller.
        host: Host name the transport reports.
        read_termination: Read termination.
        write_termination: Write termination.
        tracer: Fault sink for contained handler exceptions.
        refuse_connection: Make :meth:`connect` fail like an unreachable host.
    """

    def __init__(
        self,
        emulator: LineEmulator,
        port: int = SCPI_RAW_PORT,
        host: str = "emulator",
        *,
        read_termination: str = "\n",
        write_termination: str = "\n",
        tracer: ExceptionTracer | None = None,
        refuse_connection: bool = False,
    ) -> None:
        super().__init__(tracer)
        self.emulator = emulator
        self._port = port
        self._host = host
        self._read_termination = read_termination
        self._write_termination = write_termination
        self.refuse_connection = refuse_connection
        self._connected = False
        self._inbound = ""
        self._received = ""
        self._orphan = ""

    @classmethod
    def for_controller(
        cls, controller: GpibLanControllerEmulator, tracer: ExceptionTracer | None = None
    ) -> EmulatorTransport:
        """Transport to a controller emulator on the GPIB-LAN port."""
        return cls(controller, GPIB_LAN_PORT, tracer=tracer)

    @property
    def port(self) -> int:
        return self._port

    @property
    def socket_address(self) -> str:
        return f"{self._host}:{self._port}"

    @property
    def read_termination(self) -> str:
        return self._read_termination

    @property
    def write_termination(self) -> str:
        return self._write_termination

    @property
    def orphan(self) -> str:
        """Unread data discarded before the last write."""
        return self._orphan

    @property
    def connected(self) -> bool:
        return self._connected

    def _open_connection(self) -> bool:
        if self.refuse_connection:
            raise SessionTransportError(f"Unable to connect to {self.socket_address}: refused")
        self._connected = True
        self._inbound = ""
        self._received = ""
        self._orphan = ""
        logger.info("Connected to emulator at %s", self.socket_address)
        return True

    def _close_connection(self) -> bool:
        self._connected = False
        self._received = ""
        logger.info("Disconnected from emulator at %s", self.socket_address)
        return True

    def close(self) -> None:
        if self.connected:
            self.disconnect()
        self._notifier.clear()

    def _require_connected(self) -> None:
        if not self._connected:
            raise SessionStateError(f"Session to {self.socket_address} is not connected")

    def data_available(self) -> bool:
        self._require_connected()
        return bool(self._received)

    def write(self, message: str) -> int:
        """Hand every complete line of ``message`` to the emulator.

        Returns:
            The number of characters written; 0 for an empty message.
        """
        if not message:
            return 0
        self._require_connected()
        self._orphan, self._received = self._received, ""
        if self._orphan:
            logger.warning("Discarded unread data from %s: %r", self.socket_address, self._orphan)
        self._inbound += message
        while "\n" in self._inbound:
            line, self._inbound = self._inbound.split("\n", 1)
            self._received += self.emulator.respond(line.rstrip("\r"))
        logger.debug("%s <- %r", self.socket_address, message)
        return len(message)

    def write_line(self, message: str) -> int:
        return self.write(f"{message}{self._write_termination}") if message else 0

    def read(self, max_length: int = DEFAULT_MAX_LENGTH, trim_end: bool = True) -> str:
        """Return one buffered frame, or "" if no complete frame is buffered."""
        if max_length < 1:
            raise ValueError(f"max_length must be at least 1, got {max_length}")
        self._require_connected()
        index = self._received.find(self._read_termination)
        if index >= 0 and index + len(self._read_termination) <= max_length:
            end = index + len(self._read_termination)
        elif len(self._received) >= max_length:
            end = max_length
        else:
            return ""
        reply, self._received = self._received[:end], self._received[end:]
        logger.debug("%s -> %r", self.socket_address, reply)
        return trim_termination(reply, self._read_termination) if trim_end else reply

    def __repr__(self) -> str:
        return f"EmulatorTransport({self.socket_address!r})"


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def make_controller_emulator(
    identity: str = DEFAULT_IDENTITY,
    message_available_delay_ms: int = 0,
    read_after_write: bool = True,
) -> GpibLanControllerEmulator:
    """Create a GPIB-LAN controller emulator with one instrument on the bus.

    Args:
        identity: ``*IDN?`` response of the instrument.
        message_available_delay_ms: Delay before a reply becomes available.
        read_after_write: Initial ``++auto`` state of the controller.

    Returns:
        Configured controller emulator; the instrument is its ``instrument``.
    """
    config = InstrumentEmulatorConfig(
        identity=identity,
        message_available_delay_ms=message_available_delay_ms,
    )
    return GpibLanControllerEmulator(InstrumentEmulator(config), read_after_write=read_after_write)
