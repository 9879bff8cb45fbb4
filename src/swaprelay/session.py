from __future__ import annotations

import enum
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from swaprelay.common import SocketAddress
from swaprelay.pump import shutdown_socket, splice

logger = logging.getLogger(__name__)

DIAL_TIMEOUT = 10.0


class SessionState(enum.Enum):
    DIALING = "dialing"
    RELAYING = "relaying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class CompletionSignal:
    remote_addr: Any
    backend: SocketAddress | None
    state: SessionState
    bytes_up: int
    bytes_down: int
    duration: float
    error: BaseException | None = None


class RelaySession:
    """One client connection, from dial to teardown.

    ``resolve`` is called exactly once, at dial time, to pick the destination.
    The relay passes ``BackendRegistry.current``; the HTTP proxy passes the
    CONNECT target. ``on_complete`` receives the :class:`CompletionSignal`
    exactly once, after both sockets are closed.

    ``run`` drives the whole lifecycle. Callers that need to act between the
    dial and the byte stream (the CONNECT handshake) use ``dial``, ``relay``
    and ``finish`` directly and must call ``finish`` on every path.
    """

    def __init__(
        self,
        client: socket.socket,
        remote_addr: Any,
        resolve: Callable[[], SocketAddress],
        on_complete: Callable[[CompletionSignal], None] | None = None,
        dial_timeout: float = DIAL_TIMEOUT,
    ) -> None:
        self.client = client
        self.remote_addr = remote_addr
        self.backend: socket.socket | None = None
        self.target: SocketAddress | None = None
        self.state = SessionState.DIALING
        self.started_at = time.monotonic()

        self._resolve = resolve
        self._on_complete = on_complete
        self._dial_timeout = dial_timeout
        self._bytes_up = 0
        self._bytes_down = 0
        self._error: BaseException | None = None
        self._finish_lock = threading.Lock()
        self._signal: CompletionSignal | None = None

    def dial(self) -> bool:
        """Connect to the resolved target. Returns False (state FAILED) on error."""
        self.target = self._resolve()
        try:
            backend = socket.create_connection(self.target.dial_tuple(), timeout=self._dial_timeout)
        except OSError as exc:
            logger.warning("dial to %s for %s failed: %s", self.target, self.remote_addr, exc)
            self._error = exc
            self.state = SessionState.FAILED
            return False

        # The timeout only bounds the dial; the relay phase may idle forever.
        backend.settimeout(None)
        self.backend = backend
        self.state = SessionState.RELAYING
        return True

    def relay(self) -> None:
        """Pump both directions until both have stopped."""
        if self.backend is None:
            raise RuntimeError("relay() called before a successful dial()")
        upstream, downstream = splice(self.client, self.backend)
        self._bytes_up = upstream.transferred
        self._bytes_down = downstream.transferred
        self._error = upstream.error or downstream.error
        if self._error is not None:
            logger.debug("stream error on session %s: %s", self.remote_addr, self._error)
        self.state = SessionState.COMPLETED

    def finish(self) -> CompletionSignal:
        """Close both sockets and emit the completion signal. Idempotent."""
        with self._finish_lock:
            if self._signal is not None:
                return self._signal

            for sock in (self.client, self.backend):
                if sock is not None:
                    shutdown_socket(sock)
                    sock.close()

            if self.state in (SessionState.DIALING, SessionState.RELAYING):
                # Torn down before finishing its lifecycle.
                self.state = SessionState.FAILED

            self._signal = CompletionSignal(
                remote_addr=self.remote_addr,
                backend=self.target,
                state=self.state,
                bytes_up=self._bytes_up,
                bytes_down=self._bytes_down,
                duration=time.monotonic() - self.started_at,
                error=self._error,
            )

        if self._on_complete is not None:
            self._on_complete(self._signal)
        return self._signal

    def run(self) -> CompletionSignal:
        try:
            if self.dial():
                self.relay()
        finally:
            completion = self.finish()
        return completion
