from __future__ import annotations

import logging
import socketserver
import threading

from swaprelay.admission import AdmissionController
from swaprelay.common import ConfigurationError, SocketAddress
from swaprelay.config import RelayConfig
from swaprelay.control import ControlListener
from swaprelay.listeners import DataListener
from swaprelay.registry import BackendRegistry

logger = logging.getLogger(__name__)


def _bound_address(server: socketserver.TCPServer) -> SocketAddress:
    host, port = server.server_address[:2]
    return SocketAddress(host, port)


class Relay:
    """The data and control listeners sharing one registry and one admission controller.

    Both sockets are bound in the constructor, so a bad listen address fails
    before anything is served.
    """

    def __init__(self, config: RelayConfig) -> None:
        self.config = config
        self.registry = BackendRegistry(config.backend)
        self.admission = AdmissionController(config.max_conns)
        self._threads: list[threading.Thread] = []
        self._serving: list[socketserver.BaseServer] = []

        try:
            self.data_listener = DataListener(
                config.listen, self.registry, self.admission, dial_timeout=config.dial_timeout
            )
        except OSError as exc:
            raise ConfigurationError(f"could not open the client listener on {config.listen}: {exc}") from exc

        try:
            self.control_listener = ControlListener(
                config.control, self.registry, read_timeout=config.control_timeout
            )
        except OSError as exc:
            self.data_listener.server_close()
            raise ConfigurationError(f"could not open the control listener on {config.control}: {exc}") from exc

    @property
    def data_address(self) -> SocketAddress:
        return _bound_address(self.data_listener)

    @property
    def control_address(self) -> SocketAddress:
        return _bound_address(self.control_listener)

    def _spawn(self, server: socketserver.BaseServer, name: str) -> None:
        thread = threading.Thread(target=server.serve_forever, name=name, daemon=True)
        self._serving.append(server)
        thread.start()
        self._threads.append(thread)

    def start(self) -> None:
        """Serve both listeners on background threads."""
        self._log_startup()
        self._spawn(self.control_listener, "control-listener")
        self._spawn(self.data_listener, "data-listener")

    def serve_forever(self) -> None:
        """Serve control in the background and data on the calling thread."""
        self._log_startup()
        self._spawn(self.control_listener, "control-listener")
        self._serving.append(self.data_listener)
        self.data_listener.serve_forever()

    def shutdown(self) -> None:
        """Stop accepting and close both listening sockets.

        Sessions already relaying keep running until their sockets close.
        """
        # shutdown() blocks until serve_forever() returns, so only ask servers
        # that were actually started.
        for server in self._serving:
            server.shutdown()
        self._serving.clear()
        for server in (self.data_listener, self.control_listener):
            server.server_close()
        for thread in self._threads:
            thread.join()
        self._threads.clear()

    def _log_startup(self) -> None:
        limit = "unbounded" if self.admission.unbounded else str(self.admission.limit)
        logger.info("== listener started on %s (max connections: %s) ==", self.data_address, limit)
        logger.info("== addr listener started on %s ==", self.control_address)
        logger.info("relaying to %s", self.registry.current())

    def __enter__(self) -> Relay:
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()


def run_relay(config: RelayConfig) -> None:
    with Relay(config) as relay:
        relay.serve_forever()
