"""IEEE-488.2 status register model.

Bit-flag vocabularies for the Status Byte Register and the Standard Event
Status Register, and the mask predicate every status poll uses. Values are
snapshots taken at poll time; re-poll to observe new state.
"""

from __future__ import annotations

from enum import IntFlag


class ServiceRequests(IntFlag):
    """Bits of the Status Byte Register (serial poll / ``*STB?``)."""

    NONE = 0
    MEASUREMENT_EVENT = 0x01
    SYSTEM_EVENT = 0x02
    ERROR_AVAILABLE = 0x04
    QUESTIONABLE_EVENT = 0x08
    MESSAGE_AVAILABLE = 0x10
    STANDARD_EVENT = 0x20
    REQUESTING_SERVICE = 0x40
    OPERATION_EVENT = 0x80
    ALL = 0xFF


class StandardEvents(IntFlag):
    """Bits of the Standard Event Status Register (``*ESR?``)."""

    NONE = 0
    OPERATION_COMPLETE = 0x01
    REQUEST_CONTROL = 0x02
    QUERY_ERROR = 0x04
    DEVICE_DEPENDENT_ERROR = 0x08
    EXECUTION_ERROR = 0x10
    COMMAND_ERROR = 0x20
    USER_REQUEST = 0x40
    POWER_TOGGLED = 0x80
    ALL = 0xFF


def is_service_request(status: int, mask: int) -> bool:
    """Return True if every bit of ``mask`` is set in ``status``.

    An empty mask always matches.
    """
    return (status & mask) == mask


def parse_register(reply: str) -> int:
    """Parse a register reply such as ``"16"`` or ``"+48"``, defaulting to 0."""
    try:
        return int(reply.strip())
    except ValueError:
        return 0
