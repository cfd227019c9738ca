"""Connection lifecycle shared by every layer of the session stack.

Each layer (transport session, VI session, IEEE-488.2 instrument) exposes the
same two-state machine and the same two-phase event pair:

1. ``ConnectionChanging`` is raised before the transition. Any subscriber may
   set ``event.cancel = True``, in which case the transition is abandoned and
   the underlying connect or disconnect is never attempted.
2. ``ConnectionChanged`` is raised after a successful transition.

Subscriber faults are contained by :class:`ConnectionNotifier`: they are
logged and delivered to exactly one fault sink (the injected
:class:`~vilan_core.tracer.ExceptionTracer`) and never abort a transition or
unwind through ``connect()``/``disconnect()``. A small set of fatal
conditions is exempt and always propagates.

Example:
    >>> def veto(source, event):
    ...     event.cancel = True
    >>> session.subscribe_changing(veto)
    >>> session.connect()
    False
    >>> session.connected
    False
"""

# pylint: disable=unnecessary-ellipsis  # Ellipsis required for Protocol method stubs

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from enum import Enum
from types import TracebackType
from typing import Any, Callable, Protocol

from vilan_core.errors import SessionStateError
from vilan_core.tracer import ExceptionTracer, LoggingExceptionTracer

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection state of a session layer.

    There is no observable intermediate state; the transition is atomic from
    the caller's point of view apart from the cancelable pre-event.
    """

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


@dataclass
class ConnectionChangingEvent:
    """Raised before a connection transition.

    Attributes:
        connected: The connection state *before* the transition.
        cancel: Set to True by a subscriber to abandon the transition.
    """

    connected: bool = False
    cancel: bool = False


@dataclass(frozen=True)
class ConnectionChangedEvent:
    """Raised after a connection transition.

    Attributes:
        connected: The connection state *after* the transition.
    """

    connected: bool = False


ChangingHandler = Callable[[Any, ConnectionChangingEvent], None]
ChangedHandler = Callable[[Any, ConnectionChangedEvent], None]

# Faults that are never contained: out of memory, stack overflow, invalid
# cast and missing native dependency.
FATAL_EXCEPTIONS: tuple[type[BaseException], ...] = (
    MemoryError,
    RecursionError,
    TypeError,
    ImportError,
)


class ConnectionNotifier:
    """Notification channel for the connection event pair.

    Handlers are invoked in subscription order with ``(source, event)``. A
    handler that raises does not prevent the remaining handlers from running.

    Args:
        tracer: Fault sink for contained handler exceptions. Defaults to a
            :class:`~vilan_core.tracer.LoggingExceptionTracer`.
    """

    def __init__(self, tracer: ExceptionTracer | None = None) -> None:
        self._tracer: ExceptionTracer = tracer or LoggingExceptionTracer()
        self._changing: list[ChangingHandler] = []
        self._changed: list[ChangedHandler] = []

    @property
    def tracer(self) -> ExceptionTracer:
        """The fault sink receiving contained handler exceptions."""
        return self._tracer

    @property
    def subscriber_count(self) -> int:
        """Total number of subscribed handlers for both events."""
        return len(self._changing) + len(self._changed)

    def subscribe_changing(self, handler: ChangingHandler) -> None:
        """Subscribe a handler to ``ConnectionChanging``."""
        self._changing.append(handler)

    def unsubscribe_changing(self, handler: ChangingHandler) -> None:
        """Unsubscribe a ``ConnectionChanging`` handler. Unknown handlers are ignored."""
        if handler in self._changing:
            self._changing.remove(handler)

    def subscribe_changed(self, handler: ChangedHandler) -> None:
        """Subscribe a handler to ``ConnectionChanged``."""
        self._changed.append(handler)

    def unsubscribe_changed(self, handler: ChangedHandler) -> None:
        """Unsubscribe a ``ConnectionChanged`` handler. Unknown handlers are ignored."""
        if handler in self._changed:
            self._changed.remove(handler)

    def clear(self) -> None:
        """Drop all subscriptions."""
        self._changing.clear()
        self._changed.clear()

    def notify_changing(self, source: Any, event: ConnectionChangingEvent) -> ConnectionChangingEvent:
        """Raise ``ConnectionChanging`` and return the (possibly cancelled) event."""
        for handler in list(self._changing):
            self._invoke(handler, source, event)
        return event

    def notify_changed(self, source: Any, event: ConnectionChangedEvent) -> None:
        """Raise ``ConnectionChanged``."""
        for handler in list(self._changed):
            self._invoke(handler, source, event)

    def _invoke(self, handler: Callable[[Any, Any], None], source: Any, event: Any) -> None:
        try:
            handler(source, event)
        except FATAL_EXCEPTIONS:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            name = getattr(handler, "__qualname__", repr(handler))
            logger.warning("Connection event handler %s raised %r", name, exc)
            exc.add_note(f"in connection event handler {name}")
            self._tracer.trace(exc)


class Connectable(Protocol):
    """Protocol for the connect/disconnect capability of a session layer."""

    @property
    def connected(self) -> bool:
        """Return True if connected."""
        ...

    @property
    def can_connect(self) -> bool:
        """Return True if :meth:`connect` is allowed."""
        ...

    @property
    def can_disconnect(self) -> bool:
        """Return True if :meth:`disconnect` is allowed."""
        ...

    def connect(self) -> bool:
        """Open the connection. Returns False if a subscriber cancelled."""
        ...

    def disconnect(self) -> bool:
        """Close the connection. Returns False if a subscriber cancelled."""
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
        """Release all resources held by the layer."""
        ...


class ConnectableBase(abc.ABC):
    """Two-phase connect/disconnect protocol implemented once for all layers.

    Subclasses provide :attr:`connected` and the two primitive operations
    :meth:`_open_connection` and :meth:`_close_connection`. A primitive returns
    False when the transition did not happen (for example, because the layer
    below was cancelled by one of its own subscribers); no Changed event is
    raised in that case.

    Args:
        tracer: Fault sink for contained handler exceptions.
    """

    def __init__(self, tracer: ExceptionTracer | None = None) -> None:
        self._notifier = ConnectionNotifier(tracer)

    # -- State ---------------------------------------------------------------

    @property
    @abc.abstractmethod
    def connected(self) -> bool:
        """Return True if the layer is connected."""

    @property
    def connection_state(self) -> ConnectionState:
        """The current :class:`ConnectionState`."""
        return ConnectionState.CONNECTED if self.connected else ConnectionState.DISCONNECTED

    @property
    def can_connect(self) -> bool:
        """True iff the layer is disconnected."""
        return not self.connected

    @property
    def can_disconnect(self) -> bool:
        """True iff the layer is connected."""
        return self.connected

    @property
    def tracer(self) -> ExceptionTracer:
        """The fault sink of this layer."""
        return self._notifier.tracer

    # -- Subscriptions -------------------------------------------------------

    def subscribe_changing(self, handler: ChangingHandler) -> None:
        """Subscribe a handler to ``ConnectionChanging``."""
        self._notifier.subscribe_changing(handler)

    def unsubscribe_changing(self, handler: ChangingHandler) -> None:
        """Unsubscribe a ``ConnectionChanging`` handler."""
        self._notifier.unsubscribe_changing(handler)

    def subscribe_changed(self, handler: ChangedHandler) -> None:
        """Subscribe a handler to ``ConnectionChanged``."""
        self._notifier.subscribe_changed(handler)

    def unsubscribe_changed(self, handler: ChangedHandler) -> None:
        """Unsubscribe a ``ConnectionChanged`` handler."""
        self._notifier.unsubscribe_changed(handler)

    # -- Transitions ---------------------------------------------------------

    def connect(self) -> bool:
        """Open the connection.

        Returns:
            True if the layer connected, False if the transition was
            cancelled here or in a layer below.

        Raises:
            SessionStateError: If the layer is already connected.
            SessionTransportError: If the transport cannot connect.
        """
        if not self.can_connect:
            raise SessionStateError(f"{type(self).__name__} is already connected")
        changing = self._notifier.notify_changing(self, ConnectionChangingEvent(connected=False))
        if changing.cancel:
            logger.info("%s connect cancelled by a subscriber", type(self).__name__)
            return False
        if not self._open_connection():
            return False
        self._notifier.notify_changed(self, ConnectionChangedEvent(connected=self.connected))
        return True

    def disconnect(self) -> bool:
        """Close the connection.

        Returns:
            True if the layer disconnected, False if the transition was
            cancelled here or in a layer below.

        Raises:
            SessionStateError: If the layer is not connected.
        """
        if not self.can_disconnect:
            raise SessionStateError(f"{type(self).__name__} is not connected")
        changing = self._notifier.notify_changing(self, ConnectionChangingEvent(connected=True))
        if changing.cancel:
            logger.info("%s disconnect cancelled by a subscriber", type(self).__name__)
            return False
        if not self._close_connection():
            return False
        self._notifier.notify_changed(self, ConnectionChangedEvent(connected=self.connected))
        return True

    @abc.abstractmethod
    def _open_connection(self) -> bool:
        """Perform the underlying connect. Return True if it happened."""

    @abc.abstractmethod
    def _close_connection(self) -> bool:
        """Perform the underlying disconnect. Return True if it happened."""

    # -- Lifecycle -----------------------------------------------------------

    @abc.abstractmethod
    def close(self) -> None:
        """Unsubscribe event links and release the layers below."""

    def __enter__(self) -> ConnectableBase:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
