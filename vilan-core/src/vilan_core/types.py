"""Common types used across vilan modules.

Constants:
    GPIB_LAN_PORT: The well-known control port of a Prologix-style GPIB-LAN
        controller. A session bound to this port talks to the controller, which
        relays instrument I/O over the GPIB bus.
    SCPI_RAW_PORT: The conventional raw-socket SCPI port of LAN instruments.

Classes:
    Endpoint: Immutable host/port pair identifying one TCP endpoint.
"""

from __future__ import annotations

from dataclasses import dataclass

GPIB_LAN_PORT = 1234
"""Control port of the GPIB-LAN controller."""

SCPI_RAW_PORT = 5025
"""Raw-socket SCPI port of LAN instruments."""


@dataclass(frozen=True)
class Endpoint:
    """TCP endpoint of an instrument or a GPIB-LAN controller.

    The endpoint is fixed for the lifetime of a session; connecting to a
    different endpoint requires a new session.

    Attributes:
        host: Host name or IPv4 address.
        port: TCP port number.
    """

    host: str
    port: int = SCPI_RAW_PORT

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("host must be non-empty")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be in [0, 65535], got {self.port}")

    @property
    def socket_address(self) -> str:
        """The endpoint formatted as ``host:port`` for diagnostics."""
        return f"{self.host}:{self.port}"

    @property
    def uses_gpib_lan_controller(self) -> bool:
        """Return True if the endpoint is a GPIB-LAN controller port."""
        return self.port == GPIB_LAN_PORT

    def __str__(self) -> str:
        return self.socket_address
