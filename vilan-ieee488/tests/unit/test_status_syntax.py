"""Tests for the status register model and the IEEE-488.2 command syntax."""

from __future__ import annotations

import pytest

from vilan_ieee488 import syntax
from vilan_ieee488.status import ServiceRequests, StandardEvents, is_service_request, parse_register


# ---------------------------------------------------------------------------
# Status registers
# ---------------------------------------------------------------------------


class TestServiceRequests:
    """Tests for the status byte flags."""

    def test_bit_values(self) -> None:
        assert ServiceRequests.ERROR_AVAILABLE == 0x04
        assert ServiceRequests.MESSAGE_AVAILABLE == 0x10
        assert ServiceRequests.REQUESTING_SERVICE == 0x40
        assert ServiceRequests.ALL == 0xFF

    def test_standard_event_bits(self) -> None:
        assert StandardEvents.OPERATION_COMPLETE == 0x01
        assert StandardEvents.COMMAND_ERROR == 0x20
        assert StandardEvents.POWER_TOGGLED == 0x80


class TestIsServiceRequest:
    """Tests for the mask predicate."""

    def test_all_mask_bits_set(self) -> None:
        assert is_service_request(0x54, 0x14)

    def test_partial_mask_does_not_match(self) -> None:
        assert not is_service_request(0x10, 0x14)

    def test_empty_mask_always_matches(self) -> None:
        assert is_service_request(0, 0)
        assert is_service_request(0xFF, ServiceRequests.NONE)

    def test_accepts_flags(self) -> None:
        assert is_service_request(0x10, ServiceRequests.MESSAGE_AVAILABLE)


class TestParseRegister:
    """Tests for register reply parsing."""

    @pytest.mark.parametrize(
        ("reply", "expected"),
        [("16", 16), ("+48", 48), (" 4\r", 4), ("", 0), ("garbage", 0)],
    )
    def test_parse(self, reply: str, expected: int) -> None:
        assert parse_register(reply) == expected


# ---------------------------------------------------------------------------
# Command syntax
# ---------------------------------------------------------------------------


class TestCommandSyntax:
    """Tests for the common command strings."""

    def test_register_commands_format(self) -> None:
        assert syntax.STANDARD_EVENT_ENABLE_COMMAND.format(1) == "*ESE 1"
        assert syntax.SERVICE_REQUEST_ENABLE_COMMAND.format(16) == "*SRE 16"

    def test_standard_service_enable(self) -> None:
        command = syntax.STANDARD_SERVICE_ENABLE_COMMAND.format(1, 32)
        assert command == "*CLS; *ESE 1; *SRE 32"

    def test_completion_variants(self) -> None:
        assert syntax.STANDARD_SERVICE_ENABLE_COMPLETE_COMMAND.format(1, 32) == "*CLS; *ESE 1; *SRE 32; *OPC"
        assert syntax.OPERATION_COMPLETE_ENABLE_COMMAND.format(1) == "*CLS; *ESE 1; *OPC"
        assert syntax.POWER_ON_STATUS_CLEAR_COMMAND.format(0) == "*PSC 0"

    def test_with_completion_query(self) -> None:
        assert syntax.with_completion_query("*RST") == "*RST;*OPC?"

    def test_language_command(self) -> None:
        assert syntax.LANGUAGE_COMMAND.format(syntax.LANGUAGE_TSP) == "*LANG TSP"

