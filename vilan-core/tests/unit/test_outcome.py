"""Tests for outcome capture."""

import pytest

from vilan_core.errors import (
    DeviceReportedError,
    MessageNotAvailableError,
    SendTimeoutError,
    SessionStateError,
    SessionTransportError,
)
from vilan_core.outcome import DeviceError, ReadTimeout, Reply, TransportFailure, capture


class TestCapture:
    def test_reply(self) -> None:
        outcome = capture(lambda command: f"echo {command}", "*IDN?")
        assert outcome == Reply("echo *IDN?")
        assert outcome.ok is True

    def test_kwargs_forwarded(self) -> None:
        outcome = capture(lambda *, text: text, text="1")
        assert outcome == Reply("1")

    def test_read_timeout(self) -> None:
        error = MessageNotAvailableError("h:1234", 100, 0)

        def fail() -> str:
            raise error

        outcome = capture(fail)
        assert isinstance(outcome, ReadTimeout)
        assert outcome.error is error
        assert outcome.ok is False

    def test_device_error(self) -> None:
        def fail() -> str:
            raise DeviceReportedError(0x04, 0x04, "BAD", "h:1234")

        outcome = capture(fail)
        assert isinstance(outcome, DeviceError)
        assert outcome.error.command == "BAD"

    def test_transport_failure(self) -> None:
        def fail() -> str:
            raise SessionTransportError("reset")

        outcome = capture(fail)
        assert isinstance(outcome, TransportFailure)
        assert not outcome.ok

    def test_send_timeout_is_transport_failure(self) -> None:
        error = SendTimeoutError("h:5025", 10)

        def fail() -> str:
            raise error

        outcome = capture(fail)
        assert isinstance(outcome, TransportFailure)
        assert outcome.error is error

    def test_other_errors_propagate(self) -> None:
        def fail() -> str:
            raise SessionStateError("closed")

        with pytest.raises(SessionStateError):
            capture(fail)
