"""Unit tests for session configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from vilan_core.config import SessionConfig, load_session_config, session_config_from_dict
from vilan_core.types import Endpoint


class TestSessionConfig:
    def test_defaults(self) -> None:
        config = SessionConfig(host="192.168.0.144")
        assert config.port == 5025
        assert config.read_termination == "\n"
        assert config.write_termination == "\n"
        assert config.read_after_write_delay_ms == 5
        assert config.session_read_timeout_ms == 3000
        assert config.receive_timeout_ms == 500
        assert config.send_timeout_ms is None
        assert config.gpib_primary_address is None
        assert config.gpib_secondary_address == -1
        assert config.controller_read_timeout_ms is None
        assert config.disable_read_after_write_on_write is False
        assert config.clear_identity_on_disconnect is False

    def test_endpoint(self) -> None:
        config = SessionConfig(host="192.168.0.252", port=1234)
        assert config.endpoint == Endpoint("192.168.0.252", 1234)
        assert config.endpoint.uses_gpib_lan_controller is True

    def test_frozen(self) -> None:
        config = SessionConfig(host="localhost")
        with pytest.raises(AttributeError):
            config.port = 1234  # type: ignore[misc]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"host": ""},
            {"host": "h", "port": 70000},
            {"host": "h", "read_termination": ""},
            {"host": "h", "write_termination": ""},
            {"host": "h", "read_after_write_delay_ms": -1},
            {"host": "h", "session_read_timeout_ms": -1},
            {"host": "h", "receive_timeout_ms": 0},
            {"host": "h", "send_timeout_ms": 0},
            {"host": "h", "connect_timeout_ms": 0},
        ],
    )
    def test_invalid_values(self, kwargs: dict[str, object]) -> None:
        with pytest.raises(ValueError):
            SessionConfig(**kwargs)  # type: ignore[arg-type]


class TestSessionConfigFromDict:
    def test_flat_mapping(self) -> None:
        config = session_config_from_dict({"host": "10.0.0.5", "port": 1234})
        assert config.host == "10.0.0.5"
        assert config.port == 1234

    def test_nested_mapping(self) -> None:
        config = session_config_from_dict(
            {"session": {"host": "10.0.0.5", "gpib_primary_address": 16}}
        )
        assert config.gpib_primary_address == 16

    def test_missing_host(self) -> None:
        with pytest.raises(ValueError, match="session.host"):
            session_config_from_dict({"port": 5025})

    def test_unknown_field(self) -> None:
        with pytest.raises(ValueError, match="baud_rate"):
            session_config_from_dict({"host": "h", "baud_rate": 9600})

    def test_wrong_type(self) -> None:
        with pytest.raises(ValueError, match="port"):
            session_config_from_dict({"host": "h", "port": "5025"})

    def test_bool_is_not_an_int(self) -> None:
        with pytest.raises(ValueError, match="port"):
            session_config_from_dict({"host": "h", "port": True})

    def test_optional_int_accepts_none(self) -> None:
        config = session_config_from_dict({"host": "h", "send_timeout_ms": None})
        assert config.send_timeout_ms is None

    def test_not_a_mapping(self) -> None:
        with pytest.raises(ValueError):
            session_config_from_dict(["host"])  # type: ignore[arg-type]


class TestLoadSessionConfig:
    def test_load_valid_config(self, tmp_path: Path) -> None:
        path = tmp_path / "bench.yaml"
        path.write_text(
            """
session:
  host: 192.168.0.252
  port: 1234
  session_read_timeout_ms: 2000
  gpib_primary_address: 16
  gpib_secondary_address: 3
  controller_read_timeout_ms: 500
  disable_read_after_write_on_write: true
  clear_identity_on_disconnect: true
""",
            encoding="utf-8",
        )

        config = load_session_config(path)

        assert config.host == "192.168.0.252"
        assert config.port == 1234
        assert config.session_read_timeout_ms == 2000
        assert config.gpib_primary_address == 16
        assert config.gpib_secondary_address == 3
        assert config.controller_read_timeout_ms == 500
        assert config.disable_read_after_write_on_write is True
        assert config.clear_identity_on_disconnect is True

    def test_file_not_found(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_session_config(tmp_path / "missing.yaml")

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- host\n- port\n", encoding="utf-8")
        with pytest.raises(ValueError, match="YAML mapping"):
            load_session_config(path)
