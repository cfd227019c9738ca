"""Session configuration loaded from YAML.

A session configuration describes one instrument endpoint and the I/O policy
of the stack built on top of it: termination characters, read-after-write
timing, the layered timeouts and, for endpoints on the GPIB-LAN controller
port, the GPIB address of the instrument behind the controller.

Example YAML::

    session:
      host: 192.168.0.252
      port: 1234
      read_termination: "\\n"
      session_read_timeout_ms: 2000
      gpib_primary_address: 16
      controller_read_timeout_ms: 500
      disable_read_after_write_on_write: true

Usage::

    from vilan_core.config import load_session_config

    config = load_session_config("bench.yaml")
    print(config.endpoint.socket_address)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from vilan_core.types import SCPI_RAW_PORT, Endpoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionConfig:
    """Configuration of one instrument session.

    Attributes:
        host: Host name or IPv4 address of the instrument or controller.
        port: TCP port. Port 1234 selects the GPIB-LAN controller path.
        read_termination: Termination expected at the end of each reply.
        write_termination: Termination appended to each line written.
        read_after_write_delay_ms: Delay after each write, in milliseconds.
        session_read_timeout_ms: Session-wide read timeout. When positive,
            reads are retried until data arrives or the timeout elapses.
        receive_timeout_ms: Per-call receive timeout.
        send_timeout_ms: Timeout of asynchronous sends, or None for no limit.
        connect_timeout_ms: Connect (VISA open) timeout.
        gpib_primary_address: GPIB primary address applied on connect, or
            None to leave the controller's address unchanged.
        gpib_secondary_address: GPIB secondary address, -1 for none.
        controller_read_timeout_ms: Controller inter-character timeout
            (``++read_tmo_ms``) applied on connect, or None to leave it.
        disable_read_after_write_on_write: Turn controller read-after-write
            off before every device write.
        clear_identity_on_disconnect: Forget the cached ``*IDN?`` reply
            when the session disconnects.
    """

    host: str
    port: int = SCPI_RAW_PORT
    read_termination: str = "\n"
    write_termination: str = "\n"
    read_after_write_delay_ms: int = 5
    session_read_timeout_ms: int = 3000
    receive_timeout_ms: int = 500
    send_timeout_ms: int | None = None
    connect_timeout_ms: int = 3000
    gpib_primary_address: int | None = None
    gpib_secondary_address: int = -1
    controller_read_timeout_ms: int | None = None
    disable_read_after_write_on_write: bool = False
    clear_identity_on_disconnect: bool = False

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("host must be non-empty")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be in [0, 65535], got {self.port}")
        if not self.read_termination:
            raise ValueError("read_termination must be non-empty")
        if not self.write_termination:
            raise ValueError("write_termination must be non-empty")
        if self.read_after_write_delay_ms < 0:
            raise ValueError("read_after_write_delay_ms must be >= 0")
        if self.session_read_timeout_ms < 0:
            raise ValueError("session_read_timeout_ms must be >= 0")
        if self.receive_timeout_ms <= 0:
            raise ValueError("receive_timeout_ms must be > 0")
        if self.send_timeout_ms is not None and self.send_timeout_ms <= 0:
            raise ValueError("send_timeout_ms must be > 0 when set")
        if self.connect_timeout_ms <= 0:
            raise ValueError("connect_timeout_ms must be > 0")

    @property
    def endpoint(self) -> Endpoint:
        """The configured :class:`~vilan_core.types.Endpoint`."""
        return Endpoint(self.host, self.port)


_INT_FIELDS = frozenset(
    {
        "port",
        "read_after_write_delay_ms",
        "session_read_timeout_ms",
        "receive_timeout_ms",
        "connect_timeout_ms",
        "gpib_secondary_address",
    }
)
_OPTIONAL_INT_FIELDS = frozenset(
    {"send_timeout_ms", "gpib_primary_address", "controller_read_timeout_ms"}
)
_BOOL_FIELDS = frozenset({"disable_read_after_write_on_write", "clear_identity_on_disconnect"})


def _coerce(name: str, value: Any) -> Any:
    if name in _OPTIONAL_INT_FIELDS and value is None:
        return None
    if name in _INT_FIELDS or name in _OPTIONAL_INT_FIELDS:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{name} must be an integer, got {value!r}")
        return value
    if name in _BOOL_FIELDS:
        if not isinstance(value, bool):
            raise ValueError(f"{name} must be a boolean, got {value!r}")
        return value
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {value!r}")
    return value


def session_config_from_dict(data: dict[str, Any]) -> SessionConfig:
    """Build a :class:`SessionConfig` from a mapping.

    The mapping may hold the fields directly or nest them under a
    ``session`` key.

    Args:
        data: Parsed configuration mapping.

    Returns:
        The validated session configuration.

    Raises:
        ValueError: If the mapping is malformed, has unknown keys, or holds
            invalid values.
    """
    if not isinstance(data, dict):
        raise ValueError("Config must be a mapping")
    section = data.get("session", data)
    if not isinstance(section, dict):
        raise ValueError("session must be a mapping")

    known = {f.name for f in fields(SessionConfig)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise ValueError(f"Unknown session config field(s): {', '.join(unknown)}")
    if not section.get("host"):
        raise ValueError("Missing required field: session.host")

    values = {name: _coerce(name, value) for name, value in section.items()}
    return SessionConfig(**values)


def load_session_config(path: str | Path) -> SessionConfig:
    """Load a session configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Parsed session configuration.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ValueError: If the config is invalid or missing required fields.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise ValueError("Config must be a YAML mapping")

    config = session_config_from_dict(data)
    logger.debug("Loaded session config for %s from %s", config.endpoint, path)
    return config
