"""TCP server exposing a line emulator to socket clients.

Wraps any :class:`~vilan_ieee488.emulator.LineEmulator` and serves it over
TCP, so that :class:`~vilan_tcp.TcpSession` (or telnet, netcat) can talk to
an emulated instrument or an emulated GPIB-LAN controller.

Example:
    Serve an emulated instrument on an ephemeral port::

        from vilan_ieee488 import EmulatorServer, InstrumentEmulator

        server = EmulatorServer(InstrumentEmulator(), port=0)
        server.start()

        print(server.address)  # then: nc 127.0.0.1 <port>, send *IDN?

        server.stop()

Only the emulator's replies decide which port a client should believe it
talks to: serve a :class:`~vilan_ieee488.emulator.GpibLanControllerEmulator`
on port 1234 to exercise controller mode end to end.
"""

from __future__ import annotations

import logging
import socketserver
import threading
from typing import Any

from vilan_ieee488.emulator import LineEmulator

logger = logging.getLogger(__name__)


class _LineRequestHandler(socketserver.StreamRequestHandler):
    """Relays the lines of one client connection to the shared emulator."""

    server: _LineTcpServer

    def handle(self) -> None:
        """Answer each non-blank line until the client closes the connection."""
        logger.debug("Emulator client connected from %s", self.client_address)
        for data in self.rfile:
            line = data.decode("ascii", errors="replace").strip()
            if not line:
                continue
            with self.server.lock:
                reply = self.server.emulator.respond(line)
            if reply:
                self.wfile.write(reply.encode("ascii"))
                self.wfile.flush()
        logger.debug("Emulator client %s disconnected", self.client_address)


class _LineTcpServer(socketserver.ThreadingTCPServer):
    """Threading TCP server holding the emulator shared by all connections."""

    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        server_address: tuple[str, int],
        emulator: LineEmulator,
        **kwargs: Any,
    ) -> None:
        """Bind the server.

        Args:
            server_address: The (host, port) to bind.
            emulator: The emulator answering every connection.
            **kwargs: Passed to :class:`socketserver.ThreadingTCPServer`.
        """
        self.emulator = emulator
        self.lock = threading.Lock()
        super().__init__(server_address, _LineRequestHandler, **kwargs)


class EmulatorServer:
    """TCP server wrapping a line emulator for socket access.

    Runs the server in a background daemon thread. Connections are served
    concurrently, one line at a time against the shared emulator.

    Args:
        emulator: The emulator to serve.
        host: Bind address (default ``"127.0.0.1"``).
        port: Listening port (default ``5025``); ``0`` picks a free one.
    """

    def __init__(
        self,
        emulator: LineEmulator,
        host: str = "127.0.0.1",
        port: int = 5025,
    ) -> None:
        self._server = _LineTcpServer((host, port), emulator)
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start serving in a daemon thread.

        Returns immediately; the listening socket is already bound, so
        clients may connect as soon as this returns.
        """
        thread = threading.Thread(target=self._server.serve_forever, name="vilan-emulator", daemon=True)
        thread.start()
        self._thread = thread
        logger.info("Emulator server listening on %s:%d", *self.address)

    def stop(self) -> None:
        """Shut down the server and wait for the thread to exit.

        Closes the listening socket. Client threads are daemons and end with
        their connections.
        """
        self._server.shutdown()
        if self._thread is not None:
            self._thread.join()
        self._server.server_close()

    @property
    def address(self) -> tuple[str, int]:
        """Bound listening address.

        Returns:
            The ``(host, port)`` pair; reports the real port after binding
            port 0.
        """
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    def __enter__(self) -> EmulatorServer:
        """Start the server.

        Returns:
            This server, already listening.
        """
        self.start()
        return self

    def __exit__(self, *_exc: Any) -> None:
        """Stop the server.

        Args:
            *_exc: Exception details from the ``with`` block; ignored, any
                exception propagates.
        """
        self.stop()
