from __future__ import annotations

import logging
import socketserver

from swaprelay.admission import AdmissionController
from swaprelay.common import SocketAddress
from swaprelay.registry import BackendRegistry
from swaprelay.session import DIAL_TIMEOUT, CompletionSignal, RelaySession

logger = logging.getLogger(__name__)


class _RelayHandler(socketserver.BaseRequestHandler):
    """Runs one admitted client connection as a :class:`RelaySession`.

    The session reads the backend once, when it dials. A later backend update
    only affects sessions started after it.
    """

    def handle(self) -> None:  # type: ignore[override]
        server: DataListener = self.server  # type: ignore[assignment]
        session = RelaySession(
            self.request,
            self.client_address,
            server.registry.current,
            on_complete=server.session_finished,
            dial_timeout=server.dial_timeout,
        )
        session.run()


class DataListener(socketserver.ThreadingTCPServer):
    """Client-facing listener.

    Admission is decided in ``verify_request``: a denied connection is closed
    by socketserver right away and never gets a handler thread.
    """

    allow_reuse_address = True
    daemon_threads = True
    request_queue_size = 128

    def __init__(
        self,
        bind: SocketAddress,
        registry: BackendRegistry,
        admission: AdmissionController,
        dial_timeout: float = DIAL_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.admission = admission
        self.dial_timeout = dial_timeout
        super().__init__(bind.bind_tuple(), _RelayHandler)

    def verify_request(self, request, client_address) -> bool:  # type: ignore[override]
        if not self.admission.try_admit():
            logger.info("ended connection with %s since the connection limit has been reached", client_address)
            return False
        logger.info("[%d] connection established with %s", self.admission.active, client_address)
        return True

    def process_request(self, request, client_address) -> None:  # type: ignore[override]
        try:
            super().process_request(request, client_address)
        except Exception:
            # No thread, no session: the slot would never be released otherwise.
            self.admission.release()
            raise

    def session_finished(self, signal: CompletionSignal) -> None:
        remaining = self.admission.release()
        logger.info(
            "[%d] connection ended with %s (%s, backend %s, %d bytes up, %d bytes down, %.1fs)",
            remaining,
            signal.remote_addr,
            signal.state.value,
            signal.backend,
            signal.bytes_up,
            signal.bytes_down,
            signal.duration,
        )

    def handle_error(self, request, client_address) -> None:  # type: ignore[override]
        logger.exception("unexpected error while relaying %s", client_address)
