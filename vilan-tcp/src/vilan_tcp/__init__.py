"""TCP transport for the vilan session stack.

This package provides the byte-stream layer: the :class:`TransportSession`
protocol consumed by the VI session and the GPIB-LAN controller adapter, and
:class:`TcpSession`, its line-framed implementation on a PyVISA
``TCPIP::host::port::SOCKET`` resource.

Example:
    >>> from vilan_tcp import TcpSession, port_reachable
    >>> port_reachable("192.168.0.144", 5025, timeout_ms=100)
    True
    >>> session = TcpSession("192.168.0.144", 5025)
    >>> session.connect_and_query("*IDN?")
    'KEITHLEY INSTRUMENTS INC.,MODEL 2450,...'
"""

from vilan_tcp.session import DEFAULT_VISA_LIBRARY, TcpSession, port_reachable, trim_termination
from vilan_tcp.transport import DEFAULT_MAX_LENGTH, TransportSession

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "DEFAULT_MAX_LENGTH",
    "DEFAULT_VISA_LIBRARY",
    "TcpSession",
    "TransportSession",
    "port_reachable",
    "trim_termination",
]
