"""IEEE-488.2 instrument layer.

:class:`Ieee488Instrument` adds the IEEE-488.2 common command vocabulary and
two protocol guards to the VI session:

- After a write relayed by a GPIB-LAN controller, the instrument is serial
  polled and a set Error-Available bit fails the write with
  :class:`~vilan_core.errors.DeviceReportedError`.
- Before a read relayed by a GPIB-LAN controller, the layer waits for the
  Message-Available bit. An empty reply then fails with
  :class:`~vilan_core.errors.MessageNotAvailableError` or
  :class:`~vilan_core.errors.DataNotReceivedError`, depending on whether the
  bit was ever set.

Typical usage::

    from vilan_core.config import SessionConfig
    from vilan_ieee488 import Ieee488Instrument

    config = SessionConfig(host="192.168.0.252", port=1234, gpib_primary_address=16)
    with Ieee488Instrument.from_config(config) as dmm:
        dmm.connect()
        print(dmm.identity)
        dmm.clear_execution_state()
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Callable

from vilan_core.config import SessionConfig
from vilan_core.connectable import ConnectableBase, ConnectionChangedEvent
from vilan_core.errors import (
    DataNotReceivedError,
    DeviceReportedError,
    MessageNotAvailableError,
    ReadTimeoutError,
)
from vilan_core.outcome import Outcome, capture
from vilan_core.polling import CancellationToken
from vilan_core.tracer import ExceptionTracer
from vilan_tcp.session import TcpSession
from vilan_tcp.transport import DEFAULT_MAX_LENGTH

from vilan_ieee488 import syntax
from vilan_ieee488.gpib_lan import GpibAddress
from vilan_ieee488.status import ServiceRequests, StandardEvents, is_service_request, parse_register
from vilan_ieee488.vi_session import ControllerMode, ViSession

logger = logging.getLogger(__name__)


class Ieee488Instrument(ConnectableBase):
    """IEEE-488.2 instrument on top of a :class:`ViSession`.

    Args:
        session: The VI session; owned and closed by the instrument.
        tracer: Fault sink. Defaults to the session's tracer.
        clear_identity_on_disconnect: Forget the cached identity when the
            session disconnects. By default the identity is kept for the
            lifetime of the instrument object.
        gpib_address: GPIB address applied after connecting through a
            GPIB-LAN controller.
        controller_read_timeout_ms: Controller read timeout applied after
            connecting through a GPIB-LAN controller.
    """

    def __init__(
        self,
        session: ViSession,
        tracer: ExceptionTracer | None = None,
        *,
        clear_identity_on_disconnect: bool = False,
        gpib_address: GpibAddress | None = None,
        controller_read_timeout_ms: int | None = None,
    ) -> None:
        super().__init__(tracer or session.tracer)
        self._session = session
        self._identity = ""
        self.clear_identity_on_disconnect = clear_identity_on_disconnect
        self.gpib_address = gpib_address
        self.controller_read_timeout_ms = controller_read_timeout_ms
        self._session.subscribe_changed(self._on_session_changed)

    @classmethod
    def from_config(cls, config: SessionConfig, tracer: ExceptionTracer | None = None) -> Ieee488Instrument:
        """Build the full stack (TCP session, VI session, instrument) from a config."""
        transport = TcpSession(
            config.host,
            config.port,
            read_termination=config.read_termination,
            write_termination=config.write_termination,
            receive_timeout_ms=config.receive_timeout_ms,
            send_timeout_ms=config.send_timeout_ms,
            connect_timeout_ms=config.connect_timeout_ms,
            tracer=tracer,
        )
        session = ViSession(
            transport,
            transport.tracer,
            write_termination=config.write_termination,
            read_after_write_delay_ms=config.read_after_write_delay_ms,
            session_read_timeout_ms=config.session_read_timeout_ms,
            disable_read_after_write_on_write=config.disable_read_after_write_on_write,
        )
        address = None
        if config.gpib_primary_address is not None:
            address = GpibAddress.clamped(config.gpib_primary_address, config.gpib_secondary_address)
        return cls(
            session,
            clear_identity_on_disconnect=config.clear_identity_on_disconnect,
            gpib_address=address,
            controller_read_timeout_ms=config.controller_read_timeout_ms,
        )

    # -- Properties ----------------------------------------------------------

    @property
    def session(self) -> ViSession:
        return self._session

    @property
    def connected(self) -> bool:
        return self._session.connected

    @property
    def socket_address(self) -> str:
        return self._session.socket_address

    @property
    def using_gpib_lan_control(self) -> bool:
        return self._session.using_gpib_lan_control

    # -- I/O -----------------------------------------------------------------

    def write_line(
        self,
        message: str,
        check_error_available: bool = True,
        append_termination: bool = True,
    ) -> int:
        """Write a message, optionally checking Error-Available afterwards.

        Raises:
            DeviceReportedError: If the serial poll after the write has the
                Error-Available bit set.
        """
        sent = self._session.write_line(message, append_termination)
        mode = self._session.mode
        if sent > 0 and check_error_available and isinstance(mode, ControllerMode):
            status = mode.adapter.serial_poll()
            if is_service_request(status, ServiceRequests.ERROR_AVAILABLE):
                raise DeviceReportedError(
                    status, int(ServiceRequests.ERROR_AVAILABLE), message, self.socket_address
                )
        return sent

    def read(
        self,
        await_message_available: bool = True,
        max_length: int = DEFAULT_MAX_LENGTH,
        trim_end: bool = True,
        on_iterate: Callable[[], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Read a reply, optionally waiting for Message-Available first.

        Raises:
            MessageNotAvailableError: Message-Available was never set.
            DataNotReceivedError: Message-Available was set but no data came.
            ReadTimeoutError: No data arrived on a direct connection.
        """
        session = self._session
        timeout_ms = session.session_read_timeout_ms
        mode = session.mode
        awaited = False
        status = 0
        if isinstance(mode, ControllerMode) and await_message_available:
            awaited = True
            status = mode.adapter.await_status(
                timeout_ms,
                ServiceRequests.MESSAGE_AVAILABLE,
                on_iterate=on_iterate,
                cancel=cancel,
            )
        if timeout_ms > 0:
            reply = session.await_reading(timeout_ms, max_length, trim_end, on_iterate, cancel)
        else:
            reply = session.receive(max_length, trim_end)
        if reply:
            return reply
        if not awaited:
            raise ReadTimeoutError(self.socket_address, timeout_ms)
        if is_service_request(status, ServiceRequests.MESSAGE_AVAILABLE):
            raise DataNotReceivedError(self.socket_address, timeout_ms, status)
        raise MessageNotAvailableError(self.socket_address, timeout_ms, status)

    def query_line(
        self,
        message: str,
        check_error_available: bool = True,
        await_message_available: bool = True,
        append_termination: bool = True,
        max_length: int = DEFAULT_MAX_LENGTH,
        trim_end: bool = True,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Write a message and read its reply. Returns "" if nothing was sent."""
        if self.write_line(message, check_error_available, append_termination) > 0:
            return self.read(await_message_available, max_length, trim_end, cancel=cancel)
        return ""

    def try_query_line(
        self,
        message: str,
        check_error_available: bool = True,
        await_message_available: bool = True,
    ) -> Outcome:
        """Like :meth:`query_line` but return an outcome instead of raising."""
        return capture(self.query_line, message, check_error_available, await_message_available)

    async def query_line_async(
        self,
        message: str,
        check_error_available: bool = True,
        await_message_available: bool = True,
        *,
        timeout_ms: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Run :meth:`query_line` in the default executor.

        Args:
            message: The query to send.
            check_error_available: Serial poll for Error-Available after the write.
            await_message_available: Wait for Message-Available before the read.
            timeout_ms: Overall timeout. When it elapses the token is cancelled
                and no further read attempts are made.
            cancel: Per-call cancellation token.

        Raises:
            ReadTimeoutError: If the query did not complete in time.
        """
        token = cancel or CancellationToken()
        loop = asyncio.get_running_loop()
        call = functools.partial(
            self.query_line,
            message,
            check_error_available,
            await_message_available,
            cancel=token,
        )
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, call),
                timeout=None if timeout_ms is None else timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError as exc:
            token.cancel()
            raise ReadTimeoutError(self.socket_address, timeout_ms or 0) from exc

    # -- Common commands -----------------------------------------------------

    def _execute(self, command: str, await_completion: bool, check_error_available: bool) -> None:
        if await_completion:
            self.query_line(syntax.with_completion_query(command), False, True)
        else:
            self.write_line(command, check_error_available)

    def clear_execution_state(self, await_completion: bool = True) -> None:
        """Clear the status registers and error queue (``*CLS``)."""
        self._execute(syntax.CLEAR_EXECUTION_STATE_COMMAND, await_completion, False)

    def reset_known_state(self, await_completion: bool = True) -> None:
        """Reset the instrument (``*RST``)."""
        self._execute(syntax.RESET_KNOWN_STATE_COMMAND, await_completion, False)

    def wait(self, await_completion: bool = True) -> None:
        """Wait for pending operations (``*WAI``)."""
        self._execute(syntax.WAIT_COMMAND, await_completion, True)

    def enable_standard_events(self, bit_mask: int, await_completion: bool = True) -> None:
        """Set the Standard Event Status Enable register (``*ESE``)."""
        self._execute(syntax.STANDARD_EVENT_ENABLE_COMMAND.format(int(bit_mask)), await_completion, True)

    def enable_service_request(self, bit_mask: int, await_completion: bool = True) -> None:
        """Set the Service Request Enable register (``*SRE``)."""
        self._execute(syntax.SERVICE_REQUEST_ENABLE_COMMAND.format(int(bit_mask)), await_completion, True)

    def enable_service_request_events(
        self, standard_mask: int, service_mask: int, signal_completion: bool = False
    ) -> int:
        """Clear status, then enable standard events and service requests.

        With ``signal_completion`` the line ends with ``*OPC`` so the
        Operation Complete event is raised once the line has executed.
        """
        template = (
            syntax.STANDARD_SERVICE_ENABLE_COMPLETE_COMMAND
            if signal_completion
            else syntax.STANDARD_SERVICE_ENABLE_COMMAND
        )
        return self.write_line(template.format(int(standard_mask), int(service_mask)))

    def enable_operation_complete_event(
        self, standard_mask: int = StandardEvents.OPERATION_COMPLETE
    ) -> int:
        """Clear status, enable ``standard_mask`` and request Operation Complete."""
        return self.write_line(syntax.OPERATION_COMPLETE_ENABLE_COMMAND.format(int(standard_mask)))

    def enable_power_on_status_clear(self, enabled: bool = True) -> int:
        """Clear the enable registers at power on (``*PSC``)."""
        return self.write_line(syntax.POWER_ON_STATUS_CLEAR_COMMAND.format(1 if enabled else 0))

    def operation_complete(self) -> int:
        """Set the Operation Complete bit when pending operations finish (``*OPC``)."""
        return self.write_line(syntax.OPERATION_COMPLETE_COMMAND)

    def trigger(self) -> int:
        """Send a bus trigger (``*TRG``)."""
        return self.write_line(syntax.TRIGGER_COMMAND)

    def select_language(self, language: str = syntax.LANGUAGE_SCPI) -> int:
        """Select the command language of a Keithley instrument (``*LANG``)."""
        return self.write_line(syntax.LANGUAGE_COMMAND.format(language))

    # -- Queries -------------------------------------------------------------

    @property
    def identity(self) -> str:
        """The ``*IDN?`` reply, queried once while connected and then cached."""
        if not self._identity and self.connected:
            self.query_identity()
        return self._identity

    def query_identity(self) -> str:
        self._identity = self.query_line(syntax.IDENTITY_QUERY_COMMAND)
        return self._identity

    def connect_and_identify(self) -> str:
        """Connect and return the identity.

        Returns:
            The ``*IDN?`` reply, or an empty string if a connection handler
            cancelled the connect.
        """
        if not self.connected and not self.connect():
            return ""
        return self.identity

    def clear_identity(self) -> None:
        """Forget the cached identity."""
        self._identity = ""

    def query_operation_completed(self) -> str:
        return self.query_line(syntax.OPERATION_COMPLETED_QUERY_COMMAND)

    def query_options(self) -> str:
        return self.query_line(syntax.OPTIONS_QUERY_COMMAND)

    def query_language(self) -> str:
        return self.query_line(syntax.LANGUAGE_QUERY_COMMAND)

    def query_power_on_status_clear(self) -> bool:
        return parse_register(self.query_line(syntax.POWER_ON_STATUS_CLEAR_QUERY_COMMAND)) != 0

    def query_self_test(self) -> int:
        """Run the self test (``*TST?``); 0 means passed."""
        return parse_register(self.query_line(syntax.SELF_TEST_QUERY_COMMAND))

    def query_standard_events_enable(self) -> int:
        return parse_register(self.query_line(syntax.STANDARD_EVENT_ENABLE_QUERY_COMMAND))

    def query_standard_events_status(self) -> int:
        return parse_register(self.query_line(syntax.STANDARD_EVENT_STATUS_QUERY_COMMAND))

    def query_service_request_enable(self) -> int:
        return parse_register(self.query_line(syntax.SERVICE_REQUEST_ENABLE_QUERY_COMMAND))

    def query_service_request_status(self) -> int:
        """Query the status byte with ``*STB?``."""
        return parse_register(self.query_line(syntax.SERVICE_REQUEST_QUERY_COMMAND))

    def read_status_byte(self, can_query: bool = False) -> int:
        """Return the status byte.

        Through a GPIB-LAN controller this is a serial poll. On a direct
        connection it is 0 unless ``can_query`` allows a ``*STB?`` query,
        which on some instruments causes Query Unterminated errors.
        """
        mode = self._session.mode
        if isinstance(mode, ControllerMode):
            return mode.adapter.serial_poll()
        return self.query_service_request_status() if can_query else 0

    def service_requested(self, can_query: bool = False) -> bool:
        """Return True if the instrument is requesting service."""
        mode = self._session.mode
        if isinstance(mode, ControllerMode):
            return mode.adapter.service_requested()
        return can_query and is_service_request(
            self.query_service_request_status(), ServiceRequests.REQUESTING_SERVICE
        )

    # -- Connection ----------------------------------------------------------

    def _open_connection(self) -> bool:
        if not self._session.connect():
            return False
        mode = self._session.mode
        if isinstance(mode, ControllerMode):
            if self.gpib_address is not None:
                mode.adapter.set_gpib_address(self.gpib_address.primary, self.gpib_address.secondary)
            if self.controller_read_timeout_ms is not None:
                mode.adapter.set_read_timeout(self.controller_read_timeout_ms)
        return True

    def _close_connection(self) -> bool:
        return self._session.disconnect()

    def _on_session_changed(self, _source: Any, event: ConnectionChangedEvent) -> None:
        if not event.connected and self.clear_identity_on_disconnect:
            logger.debug("Clearing cached identity of %s", self.socket_address)
            self.clear_identity()

    def close(self) -> None:
        """Disconnect if connected, unsubscribe, and close the VI session."""
        if self.connected:
            self.disconnect()
        self._session.unsubscribe_changed(self._on_session_changed)
        self._session.close()
        self._notifier.clear()

    def __repr__(self) -> str:
        return f"Ieee488Instrument({self.socket_address!r})"
