from __future__ import annotations

import logging
import socket
import socketserver

from swaprelay.common import ControlInputError, SocketAddress
from swaprelay.registry import BackendRegistry

logger = logging.getLogger(__name__)

# An IPv6 literal with a zone id fits in well under this.
MAX_CONTROL_PAYLOAD = 1024
CONTROL_TIMEOUT = 10.0


def _read_payload(conn: socket.socket, limit: int = MAX_CONTROL_PAYLOAD) -> bytes:
    chunks: list[bytes] = []
    size = 0
    while True:
        data = conn.recv(4096)
        if not data:
            return b"".join(chunks)
        size += len(data)
        if size > limit:
            raise ControlInputError(f"control payload exceeds {limit} bytes")
        chunks.append(data)


class _ControlHandler(socketserver.BaseRequestHandler):
    def handle(self) -> None:  # type: ignore[override]
        server: ControlListener = self.server  # type: ignore[assignment]
        self.request.settimeout(server.read_timeout)

        try:
            payload = _read_payload(self.request)
            candidate = payload.decode("utf-8").strip()
            old, new = server.registry.update(candidate)
        except (ControlInputError, UnicodeDecodeError) as exc:
            logger.warning("rejected backend update from %s: %s", self.client_address, exc)
            return
        except OSError as exc:
            logger.warning("error reading from %s on the control endpoint: %s", self.client_address, exc)
            return

        logger.info("[!] remote IP update %s => %s (from %s)", old, new, self.client_address)


class ControlListener(socketserver.TCPServer):
    """Sequential listener that swaps the backend IP.

    One connection at a time: accept, read until close, validate, close. A slow
    control client delays later updates but never the data listener.
    """

    allow_reuse_address = True

    def __init__(
        self,
        bind: SocketAddress,
        registry: BackendRegistry,
        read_timeout: float = CONTROL_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.read_timeout = read_timeout
        super().__init__(bind.bind_tuple(), _ControlHandler)

    def handle_error(self, request, client_address) -> None:  # type: ignore[override]
        logger.exception("unexpected error on the control endpoint from %s", client_address)


def send_backend_update(control: SocketAddress, ip: str, timeout: float = 5.0) -> None:
    """Tell a running relay to dial ``ip`` from now on. There is no reply."""
    with socket.create_connection(control.dial_tuple(), timeout=timeout) as s:
        s.sendall(f"{ip}\n".encode("utf-8"))
