"""Transport session protocol definition.

This module defines the :class:`TransportSession` protocol: the byte-stream
interface the VI session and the GPIB-LAN controller adapter consume.
Transports handle the physical link to one TCP endpoint and know nothing
about IEEE-488.2.

Implementations include:
- :class:`vilan_tcp.TcpSession`: PyVISA-backed transport for real hardware
- :class:`vilan_ieee488.emulator.EmulatorTransport`: in-memory transport
  bound to an instrument or controller emulator
"""

# pylint: disable=unnecessary-ellipsis  # Ellipsis required for Protocol method stubs

from __future__ import annotations

from typing import Protocol

from vilan_core.connectable import ChangedHandler, ChangingHandler

DEFAULT_MAX_LENGTH = 0x7FFF
"""Default maximum number of characters returned by one read."""


class TransportSession(Protocol):
    """Protocol for a line-oriented duplex byte stream to one endpoint.

    This is a structural subtyping protocol. Any class providing the members
    below is a valid transport. Transports re-expose the two-phase connection
    events of :class:`~vilan_core.connectable.ConnectableBase`, with
    themselves as the event source.
    """

    @property
    def port(self) -> int:
        """The bound TCP port number."""
        ...

    @property
    def socket_address(self) -> str:
        """The endpoint as ``host:port`` for diagnostics."""
        ...

    @property
    def connected(self) -> bool:
        """Return True if connected."""
        ...

    @property
    def read_termination(self) -> str:
        """Termination expected at the end of each reply."""
        ...

    @property
    def write_termination(self) -> str:
        """Termination appended by :meth:`write_line`."""
        ...

    @property
    def orphan(self) -> str:
        """Unread data discovered and discarded before the last write."""
        ...

    def connect(self) -> bool:
        """Open the connection. Returns False if a subscriber cancelled."""
        ...

    def disconnect(self) -> bool:
        """Close the connection. Returns False if a subscriber cancelled."""
        ...

    def write(self, message: str) -> int:
        """Send a message as is.

        Args:
            message: ASCII text to send.

        Returns:
            The number of bytes sent; 0 for an empty message.
        """
        ...

    def write_line(self, message: str) -> int:
        """Send a message followed by the write termination."""
        ...

    def read(self, max_length: int = DEFAULT_MAX_LENGTH, trim_end: bool = True) -> str:
        """Read one reply.

        Args:
            max_length: Maximum number of characters to return.
            trim_end: Remove the read termination from the reply.

        Returns:
            The reply, or an empty string when nothing arrived within the
            receive timeout.
        """
        ...

    def data_available(self) -> bool:
        """Return True if unread data is waiting."""
        ...

    def subscribe_changing(self, handler: ChangingHandler) -> None:
        """Subscribe to ``ConnectionChanging``."""
        ...

    def unsubscribe_changing(self, handler: ChangingHandler) -> None:
        """Unsubscribe from ``ConnectionChanging``."""
        ...

    def subscribe_changed(self, handler: ChangedHandler) -> None:
        """Subscribe to ``ConnectionChanged``."""
        ...

    def unsubscribe_changed(self, handler: ChangedHandler) -> None:
        """Unsubscribe from ``ConnectionChanged``."""
        ...

    def close(self) -> None:
        """Disconnect if needed and release resources."""
        ...
