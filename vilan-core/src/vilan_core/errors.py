"""Exception types for vilan-core.

This module defines the exception hierarchy used throughout the vilan session
stack. All vilan exceptions inherit from VilanError, allowing consumers to
catch all stack-specific errors with a single except clause.

Exception hierarchy:
    VilanError (base)
    +-- SessionStateError: Operation invalid in the current connection state
    +-- SessionTransportError: Connection refused, reset or closed by the peer
    +-- SendTimeoutError: A send did not complete in time
    +-- ReadTimeoutError: No data arrived within the read timeout
    |   +-- MessageNotAvailableError: Message-Available was never set
    |   +-- DataNotReceivedError: Message-Available was set but no data arrived
    +-- DeviceReportedError: Error-Available was set after a write
"""

from __future__ import annotations


class VilanError(Exception):
    """Base exception for all vilan errors.

    This is the root of the vilan exception hierarchy. Catch this to handle
    any session-stack error.
    """


class SessionStateError(VilanError):
    """Raised when an operation is invalid in the current connection state.

    This occurs when connecting an already connected session, disconnecting
    a session that is not connected, or issuing I/O on a closed session.
    """


class SessionTransportError(VilanError):
    """Raised when the byte-stream transport fails.

    Connection refused, connection reset and connection closed by the peer
    all surface as this error. The core never retries; the originating
    ``OSError`` is chained as ``__cause__``.
    """


class SendTimeoutError(VilanError, TimeoutError):
    """Raised when a send exceeds its timeout.

    Attributes:
        socket_address: The ``host:port`` of the session.
        timeout_ms: The send timeout that elapsed, in milliseconds.
    """

    def __init__(self, socket_address: str, timeout_ms: int) -> None:
        self.socket_address = socket_address
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Sending to the instrument at {socket_address} timed out after {timeout_ms}ms."
        )


class ReadTimeoutError(VilanError, TimeoutError):
    """Raised when no data is received within the read timeout.

    Attributes:
        socket_address: The ``host:port`` of the session.
        timeout_ms: The read timeout that elapsed, in milliseconds.
        status_byte: The last status byte read while waiting, or 0 when the
            status byte was not polled.
    """

    def __init__(
        self,
        socket_address: str,
        timeout_ms: int,
        status_byte: int = 0,
        detail: str = "Data not received",
    ) -> None:
        self.socket_address = socket_address
        self.timeout_ms = timeout_ms
        self.status_byte = status_byte
        super().__init__(
            f"SRQ=0x{status_byte:02x}. {detail} reading the instrument at "
            f"{socket_address} with a timeout of {timeout_ms}ms."
        )


class MessageNotAvailableError(ReadTimeoutError):
    """Raised when the Message-Available bit never became set.

    The instrument had nothing queued to send within the read timeout.
    """

    def __init__(self, socket_address: str, timeout_ms: int, status_byte: int) -> None:
        super().__init__(
            socket_address,
            timeout_ms,
            status_byte,
            detail="No message available (0x10)",
        )


class DataNotReceivedError(ReadTimeoutError):
    """Raised when Message-Available was set but the read returned no data."""

    def __init__(self, socket_address: str, timeout_ms: int, status_byte: int) -> None:
        super().__init__(
            socket_address,
            timeout_ms,
            status_byte,
            detail="Data not received after message available (0x10)",
        )


class DeviceReportedError(VilanError):
    """Raised when the instrument flags Error-Available after a write.

    This is the instrument reporting a problem with the command it was sent,
    not a client-side fault.

    Attributes:
        status_byte: The serial poll status byte read after the write.
        bit_mask: The Error-Available bit mask that matched.
        command: The message that was sent to the instrument.
        socket_address: The ``host:port`` of the session.
    """

    def __init__(self, status_byte: int, bit_mask: int, command: str, socket_address: str) -> None:
        self.status_byte = status_byte
        self.bit_mask = bit_mask
        self.command = command
        self.socket_address = socket_address
        super().__init__(
            f"SRQ=0x{status_byte:02x}. Error Available (0x{bit_mask:02x}) after sending "
            f"{command!r} to the instrument at {socket_address}."
        )
