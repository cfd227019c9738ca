"""IEEE-488.2 instrument layer for the vilan session stack.

This package provides the upper layers of the stack: the GPIB-LAN controller
adapter, the VI session that dispatches device I/O either straight to the
transport or through the controller, and the IEEE-488.2 instrument with its
common command vocabulary and status checks. A thin SCPI layer and
in-process emulators round it out.

Modules:
    status: Status Byte and Standard Event register flags.
    syntax: IEEE-488.2 common command strings.
    gpib_lan: GPIB-LAN (Prologix-style) controller adapter.
    vi_session: VI session and its direct/controller dispatch modes.
    instrument: IEEE-488.2 instrument.
    scpi: SCPI system subsystem and error queue helpers.
    emulator: In-process instrument and controller emulators.
    server: TCP server for exposing emulators to socket clients.

Example:
    Connect through a GPIB-LAN controller::

        from vilan_core import SessionConfig
        from vilan_ieee488 import Ieee488Instrument

        config = SessionConfig(host="192.168.0.252", port=1234, gpib_primary_address=16)
        with Ieee488Instrument.from_config(config) as dmm:
            dmm.connect()
            print(dmm.identity)

    Use an emulator for testing::

        from vilan_ieee488 import EmulatorTransport, ViSession, make_controller_emulator

        controller = make_controller_emulator()
        session = ViSession(EmulatorTransport.for_controller(controller))
        session.connect()
        session.query_line("*IDN?")
"""

from vilan_ieee488.emulator import (
    EmulatorTransport,
    GpibLanControllerEmulator,
    InstrumentEmulator,
    InstrumentEmulatorConfig,
    LineEmulator,
    make_controller_emulator,
)
from vilan_ieee488.gpib_lan import GpibAddress, GpibLanController
from vilan_ieee488.instrument import Ieee488Instrument
from vilan_ieee488.scpi import (
    ScpiCommandError,
    ScpiInstrumentError,
    ScpiSystem,
    parse_scpi_error,
    parse_scpi_number,
)
from vilan_ieee488.server import EmulatorServer
from vilan_ieee488.status import ServiceRequests, StandardEvents, is_service_request, parse_register
from vilan_ieee488.vi_session import ControllerMode, DirectMode, TransportMode, ViSession

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Status
    "ServiceRequests",
    "StandardEvents",
    "is_service_request",
    "parse_register",
    # GPIB-LAN controller
    "GpibAddress",
    "GpibLanController",
    # VI session
    "ControllerMode",
    "DirectMode",
    "TransportMode",
    "ViSession",
    # Instrument
    "Ieee488Instrument",
    # SCPI
    "ScpiCommandError",
    "ScpiInstrumentError",
    "ScpiSystem",
    "parse_scpi_error",
    "parse_scpi_number",
    # Emulators
    "EmulatorTransport",
    "GpibLanControllerEmulator",
    "InstrumentEmulator",
    "InstrumentEmulatorConfig",
    "LineEmulator",
    "make_controller_emulator",
    # Server
    "EmulatorServer",
]
