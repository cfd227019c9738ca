"""Explicit outcome types for instrument queries.

Callers that prefer values to exceptions can run a query through
:func:`capture`, which maps the stack's error taxonomy onto one of four
outcomes:

- :class:`Reply`: the instrument answered.
- :class:`ReadTimeout`: no data within the read timeout.
- :class:`DeviceError`: the instrument flagged Error-Available.
- :class:`TransportFailure`: the connection failed or a send timed out.

Any other exception is a programming or state error and propagates.

Example:
    >>> outcome = capture(instrument.query_line, "*IDN?")
    >>> if isinstance(outcome, Reply):
    ...     print(outcome.text)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Union

from vilan_core.errors import (
    DeviceReportedError,
    ReadTimeoutError,
    SendTimeoutError,
    SessionTransportError,
)


@dataclass(frozen=True)
class Reply:
    """The instrument replied.

    Attributes:
        text: The reply with the termination trimmed as requested.
    """

    text: str

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ReadTimeout:
    """No data was received within the read timeout."""

    error: ReadTimeoutError

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class DeviceError:
    """The instrument reported Error-Available after the write."""

    error: DeviceReportedError

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class TransportFailure:
    """The byte-stream transport failed or could not send in time."""

    error: SessionTransportError | SendTimeoutError

    @property
    def ok(self) -> bool:
        return False


Outcome = Union[Reply, ReadTimeout, DeviceError, TransportFailure]


def capture(func: Callable[..., str], *args: object, **kwargs: object) -> Outcome:
    """Run a string-returning call and return its outcome.

    Args:
        func: The call to run, typically a ``query_line`` or ``read``.
        *args: Positional arguments for ``func``.
        **kwargs: Keyword arguments for ``func``.

    Returns:
        The :data:`Outcome` of the call.
    """
    try:
        return Reply(func(*args, **kwargs))
    except ReadTimeoutError as exc:
        return ReadTimeout(exc)
    except DeviceReportedError as exc:
        return DeviceError(exc)
    except (SessionTransportError, SendTimeoutError) as exc:
        return TransportFailure(exc)
