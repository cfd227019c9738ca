"""SCPI convenience layer.

Thin SCPI system-subsystem wrappers built purely on the instrument's
``write_line``/``query_line``, plus error queue parsing. Nothing here adds
protocol logic; it only formats command strings and parses replies.

Typical usage::

    system = ScpiSystem(instrument)
    system.error_queue_clear()
    instrument.write_line(":SENS:FUNC 'VOLT:DC'")
    system.drain_errors()  # raises ScpiCommandError if the queue held errors
"""

# pylint: disable=unnecessary-ellipsis  # Ellipsis required for Protocol method stubs

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from vilan_core.errors import VilanError

INFINITY = 9.9e37
INFINITY_CAPTION = "9.90000E+37"
NEGATIVE_INFINITY = -9.91e37
NEGATIVE_INFINITY_CAPTION = "-9.91000E+37"
NOT_A_NUMBER = 9.91e37
NOT_A_NUMBER_CAPTION = "9.91000E+37"

NO_ERROR_MESSAGE = "No Error"
NO_ERROR_COMPOUND_MESSAGE = "0,No Error"

LAST_SYSTEM_ERROR_QUERY_COMMAND = ":SYST:ERR?"
CLEAR_SYSTEM_ERROR_QUEUE_COMMAND = ":SYST:CLE"
SYSTEM_PRESET_COMMAND = ":SYST:PRES"
STATUS_PRESET_COMMAND = ":STAT:PRES"
NEXT_ERROR_QUERY_COMMAND = ":STAT:QUE?"
CLEAR_ERROR_QUEUE_COMMAND = ":STAT:QUE:CLEAR"

# Upper bound on error queue reads per drain.
MAX_ERROR_QUEUE_READS = 100

# Matches SCPI error responses: optional +/- code, comma, optional quoted message.
_ERROR_RE = re.compile(r"^\s*([+-]?\d+)\s*,\s*\"?([^\"]*)\"?\s*$")


class ScpiInstrument(Protocol):
    """What the SCPI layer needs from an instrument."""

    def write_line(self, message: str, check_error_available: bool = True) -> int:
        """Send a command."""
        ...

    def query_line(self, message: str, check_error_available: bool = True) -> str:
        """Send a query and return the reply."""
        ...


@dataclass(frozen=True)
class ScpiInstrumentError:
    """Single entry of an instrument's error queue.

    Attributes:
        code: SCPI error code (negative for standard errors, positive for
            device-specific ones).
        message: Error description reported by the instrument.
    """

    code: int
    message: str

    def __str__(self) -> str:
        return f'{self.code},"{self.message}"'


class ScpiCommandError(VilanError):
    """Raised when the instrument's error queue held errors.

    Attributes:
        errors: The errors drained from the queue, oldest first.
    """

    def __init__(self, errors: tuple[ScpiInstrumentError, ...]) -> None:
        self.errors = errors
        messages = "; ".join(str(e) for e in errors)
        super().__init__(f"SCPI instrument error(s): {messages}")


def parse_scpi_error(reply: str) -> ScpiInstrumentError | None:
    """Parse a ``:SYST:ERR?`` reply.

    Returns:
        The error, or None when the reply reports no error (code 0) or is
        not an error reply.
    """
    match = _ERROR_RE.match(reply)
    if match is None:
        return None
    code = int(match.group(1))
    if code == 0:
        return None
    return ScpiInstrumentError(code=code, message=match.group(2).strip())


def parse_scpi_number(reply: str) -> float:
    """Parse a numeric reply, mapping the SCPI overflow sentinels to IEEE values.

    Raises:
        ValueError: If the reply is not a number.
    """
    try:
        value = float(reply.strip())
    except ValueError:
        raise ValueError(f"Invalid SCPI number: {reply!r}") from None
    if value == INFINITY:
        return float("inf")
    if value == NEGATIVE_INFINITY:
        return float("-inf")
    if value == NOT_A_NUMBER:
        return float("nan")
    return value


class ScpiSystem:
    """SCPI ``SYSTem`` subsystem of an instrument.

    Each command string is an attribute so that instruments with a different
    dialect can override it; an empty string disables the operation.

    Args:
        instrument: The IEEE-488.2 instrument to drive.
    """

    def __init__(self, instrument: ScpiInstrument) -> None:
        self.instrument = instrument
        self.beep_command = "SYST:BEEP"
        self.error_queue_query_command = LAST_SYSTEM_ERROR_QUERY_COMMAND
        self.error_queue_clear_command = CLEAR_SYSTEM_ERROR_QUEUE_COMMAND
        self.front_switch_query_command = ":SYST:FRSW?"
        self.preset_command = SYSTEM_PRESET_COMMAND

    def beep(self) -> None:
        if self.beep_command:
            self.instrument.write_line(self.beep_command)

    def error_dequeue(self) -> str:
        """Read the oldest entry of the error queue, "" when disabled."""
        if not self.error_queue_query_command:
            return ""
        return self.instrument.query_line(self.error_queue_query_command, False)

    def error_queue_clear(self) -> None:
        if self.error_queue_clear_command:
            self.instrument.write_line(self.error_queue_clear_command, False)

    def front_switch(self) -> bool:
        """Return True if the front inputs are selected."""
        if not self.front_switch_query_command:
            return False
        return self.instrument.query_line(self.front_switch_query_command).startswith("1")

    def preset(self) -> None:
        if self.preset_command:
            self.instrument.write_line(self.preset_command)

    def get_errors(self) -> tuple[ScpiInstrumentError, ...]:
        """Drain the error queue until it reports no error."""
        errors: list[ScpiInstrumentError] = []
        for _ in range(MAX_ERROR_QUEUE_READS):
            error = parse_scpi_error(self.error_dequeue())
            if error is None:
                break
            errors.append(error)
        return tuple(errors)

    def drain_errors(self) -> None:
        """Drain the error queue and raise if it held errors.

        Raises:
            ScpiCommandError: If any error was queued.
        """
        errors = self.get_errors()
        if errors:
            raise ScpiCommandError(errors)
