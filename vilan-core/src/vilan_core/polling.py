"""Timeout-bounded polling and per-operation cancellation.

The transports used here expose no native "wait for N bytes or timeout"
primitive, so every wait in the stack (status-byte polling, waiting for a
reading, waiting for data to become available) is a sleep loop with a fixed
poll interval. :func:`poll_until` implements that loop once.

Cancellation is cooperative. Cancelling a :class:`CancellationToken` only
prevents *future* iterations of a loop; a call that is already running, such
as a blocking socket read, is not interrupted and runs to its own timeout.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

DEFAULT_POLL_INTERVAL_MS = 5


class CancellationToken:
    """Cancellation signal for one operation.

    Create one token per operation and pass it explicitly; tokens are not
    meant to be shared between operations.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation. Idempotent and thread-safe."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return True if cancellation was requested."""
        return self._event.is_set()


@dataclass(frozen=True)
class PollResult(Generic[T]):
    """Outcome of a polling loop.

    Attributes:
        matched: True if the predicate matched before the loop ended.
        value: The last sampled value, whatever the outcome.
        elapsed: Seconds spent in the loop.
        cancelled: True if the loop ended because of a cancellation request.
    """

    matched: bool
    value: T
    elapsed: float
    cancelled: bool = False

    @property
    def timed_out(self) -> bool:
        """True if the loop ended without a match and without cancellation."""
        return not self.matched and not self.cancelled


def sleep_ms(milliseconds: float) -> None:
    """Block the calling thread for the given number of milliseconds."""
    if milliseconds > 0:
        time.sleep(milliseconds / 1000.0)


def poll_until(
    sample: Callable[[], T],
    predicate: Callable[[T], bool],
    *,
    timeout_ms: float,
    interval_ms: float = DEFAULT_POLL_INTERVAL_MS,
    on_iterate: Callable[[], None] | None = None,
    cancel: CancellationToken | None = None,
) -> PollResult[T]:
    """Sample repeatedly until the predicate matches or the timeout elapses.

    ``sample`` always runs at least once. With a non-positive timeout it runs
    exactly once.

    Args:
        sample: Produces the next value (e.g. a serial poll or a read attempt).
        predicate: Returns True when the sampled value ends the wait.
        timeout_ms: Maximum time to keep polling, in milliseconds.
        interval_ms: Sleep between samples, in milliseconds.
        on_iterate: Called once per iteration, after the sleep and before the
            sample. Front ends use it to keep a user interface responsive.
        cancel: Stops the loop before its next iteration when cancelled.

    Returns:
        A :class:`PollResult` holding the last sampled value.
    """
    started = time.monotonic()
    value = sample()
    matched = predicate(value)
    limit = timeout_ms / 1000.0
    while not matched and limit > 0 and time.monotonic() - started <= limit:
        if cancel is not None and cancel.cancelled:
            return PollResult(False, value, time.monotonic() - started, cancelled=True)
        sleep_ms(interval_ms)
        if on_iterate is not None:
            on_iterate()
        value = sample()
        matched = predicate(value)
    return PollResult(matched, value, time.monotonic() - started)
