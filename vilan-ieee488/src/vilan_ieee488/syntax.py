"""IEEE-488.2 common command syntax."""

from __future__ import annotations

CLEAR_EXECUTION_STATE_COMMAND = "*CLS"
IDENTITY_QUERY_COMMAND = "*IDN?"
OPERATION_COMPLETE_COMMAND = "*OPC"
OPERATION_COMPLETED_QUERY_COMMAND = "*OPC?"
OPTIONS_QUERY_COMMAND = "*OPT?"
POWER_ON_STATUS_CLEAR_COMMAND = "*PSC {0:d}"
POWER_ON_STATUS_CLEAR_QUERY_COMMAND = "*PSC?"
WAIT_COMMAND = "*WAI"
STANDARD_EVENT_ENABLE_COMMAND = "*ESE {0:d}"
STANDARD_EVENT_ENABLE_QUERY_COMMAND = "*ESE?"
STANDARD_EVENT_STATUS_QUERY_COMMAND = "*ESR?"
SERVICE_REQUEST_ENABLE_COMMAND = "*SRE {0:d}"
SERVICE_REQUEST_ENABLE_QUERY_COMMAND = "*SRE?"
STANDARD_SERVICE_ENABLE_COMMAND = "*CLS; *ESE {0:d}; *SRE {1:d}"
STANDARD_SERVICE_ENABLE_COMPLETE_COMMAND = "*CLS; *ESE {0:d}; *SRE {1:d}; *OPC"
OPERATION_COMPLETE_ENABLE_COMMAND = "*CLS; *ESE {0:d}; *OPC"
SERVICE_REQUEST_QUERY_COMMAND = "*STB?"
RESET_KNOWN_STATE_COMMAND = "*RST"
TRIGGER_COMMAND = "*TRG"
SELF_TEST_QUERY_COMMAND = "*TST?"

# Keithley instruments
LANGUAGE_QUERY_COMMAND = "*LANG?"
LANGUAGE_COMMAND = "*LANG {0}"
LANGUAGE_SCPI = "SCPI"
LANGUAGE_TSP = "TSP"


def with_completion_query(command: str) -> str:
    """Append ``*OPC?`` to a command so completion is reported on the same line."""
    return f"{command};{OPERATION_COMPLETED_QUERY_COMMAND}"

