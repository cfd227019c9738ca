"""Core library for the vilan instrument session stack.

This package provides the foundation shared by every session layer: the
error hierarchy, the endpoint type, the exception tracer contract, the
two-phase connectable lifecycle with its single notification channel, the
timeout-bounded poller and cancellation token, explicit outcome types and the
YAML session configuration.

Key components:
    - Errors: Hierarchy of exception types rooted at VilanError.
    - Lifecycle: ConnectableBase, ConnectionNotifier and the connection
      changing/changed event pair.
    - Polling: poll_until, PollResult and CancellationToken.
    - Config: SessionConfig and its YAML loader.

Example:
    >>> from vilan_core import CancellationToken, poll_until
    >>> result = poll_until(lambda: 1, lambda v: v == 1, timeout_ms=10)
    >>> result.matched
    True
"""

from vilan_core.config import SessionConfig, load_session_config, session_config_from_dict
from vilan_core.connectable import (
    FATAL_EXCEPTIONS,
    Connectable,
    ConnectableBase,
    ConnectionChangedEvent,
    ConnectionChangingEvent,
    ConnectionNotifier,
    ConnectionState,
)
from vilan_core.errors import (
    DataNotReceivedError,
    DeviceReportedError,
    MessageNotAvailableError,
    ReadTimeoutError,
    SendTimeoutError,
    SessionStateError,
    SessionTransportError,
    VilanError,
)
from vilan_core.outcome import DeviceError, Outcome, ReadTimeout, Reply, TransportFailure, capture
from vilan_core.polling import (
    DEFAULT_POLL_INTERVAL_MS,
    CancellationToken,
    PollResult,
    poll_until,
    sleep_ms,
)
from vilan_core.tracer import ExceptionTracer, LoggingExceptionTracer, RecordingExceptionTracer
from vilan_core.types import GPIB_LAN_PORT, SCPI_RAW_PORT, Endpoint

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Types
    "Endpoint",
    "GPIB_LAN_PORT",
    "SCPI_RAW_PORT",
    # Config
    "SessionConfig",
    "load_session_config",
    "session_config_from_dict",
    # Lifecycle
    "Connectable",
    "ConnectableBase",
    "ConnectionChangedEvent",
    "ConnectionChangingEvent",
    "ConnectionNotifier",
    "ConnectionState",
    "FATAL_EXCEPTIONS",
    # Tracers
    "ExceptionTracer",
    "LoggingExceptionTracer",
    "RecordingExceptionTracer",
    # Polling
    "CancellationToken",
    "DEFAULT_POLL_INTERVAL_MS",
    "PollResult",
    "poll_until",
    "sleep_ms",
    # Outcomes
    "DeviceError",
    "Outcome",
    "ReadTimeout",
    "Reply",
    "TransportFailure",
    "capture",
    # Errors
    "DataNotReceivedError",
    "DeviceReportedError",
    "MessageNotAvailableError",
    "ReadTimeoutError",
    "SendTimeoutError",
    "SessionStateError",
    "SessionTransportError",
    "VilanError",
]
