"""Exception tracer contract and implementations.

An exception tracer is the single fault sink of a session stack. Faults that
must not unwind through the caller, namely exceptions raised by connection
event subscribers and by the GPIB-LAN adapter's own connection handlers, are
delivered to it instead of being raised.
"""

# pylint: disable=unnecessary-ellipsis  # Ellipsis required for Protocol method stubs

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class ExceptionTracer(Protocol):
    """Protocol for receiving contained exceptions."""

    def trace(self, exception: BaseException) -> None:
        """Record an exception that was contained at its raising site.

        Args:
            exception: The contained exception.
        """
        ...


class LoggingExceptionTracer:
    """Tracer that logs contained exceptions with their traceback.

    Args:
        log: Logger to write to. Defaults to this module's logger.
    """

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def trace(self, exception: BaseException) -> None:
        """Log the exception at ERROR level."""
        self._log.error(
            "Contained exception: %s",
            exception,
            exc_info=(type(exception), exception, exception.__traceback__),
        )


class RecordingExceptionTracer:
    """Tracer that keeps contained exceptions for later inspection.

    Useful for front ends that display faults and for tests.

    Attributes:
        exceptions: Contained exceptions in the order they were traced.
    """

    def __init__(self) -> None:
        self.exceptions: list[BaseException] = []

    def trace(self, exception: BaseException) -> None:
        """Append the exception to :attr:`exceptions`."""
        logger.debug("Recording contained exception: %r", exception)
        self.exceptions.append(exception)

    @property
    def last(self) -> BaseException | None:
        """The most recently traced exception, or None."""
        return self.exceptions[-1] if self.exceptions else None

    def clear(self) -> None:
        """Forget all recorded exceptions."""
        self.exceptions.clear()
