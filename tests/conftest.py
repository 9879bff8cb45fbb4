from __future__ import annotations

import socket
import socketserver
import threading
import time
from typing import Callable, Iterator

import pytest

from swaprelay.common import SocketAddress
from swaprelay.config import RelayConfig
from swaprelay.relay import Relay


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def recv_exactly(sock: socket.socket, size: int) -> bytes:
    chunks: list[bytes] = []
    remaining = size
    while remaining:
        data = sock.recv(min(remaining, 65536))
        if not data:
            break
        chunks.append(data)
        remaining -= len(data)
    return b"".join(chunks)


def recv_until_closed(sock: socket.socket) -> bytes:
    chunks: list[bytes] = []
    while True:
        try:
            data = sock.recv(65536)
        except ConnectionResetError:
            break
        if not data:
            break
        chunks.append(data)
    return b"".join(chunks)


def unused_port(host: str = "127.0.0.1") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


class Backend(socketserver.ThreadingTCPServer):
    """Echo server that optionally greets with a tag and records closed connections."""

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, host: str = "127.0.0.1", port: int = 0, tag: bytes = b"", hang_up: bool = False) -> None:
        self.tag = tag
        self.hang_up = hang_up
        self.accepted = 0
        self.closed = 0
        self._lock = threading.Lock()
        super().__init__((host, port), _BackendHandler)

    @property
    def address(self) -> SocketAddress:
        host, port = self.server_address[:2]
        return SocketAddress(host, port)


class _BackendHandler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        server: Backend = self.server  # type: ignore[assignment]
        with server._lock:
            server.accepted += 1
        try:
            if server.hang_up:
                return
            if server.tag:
                self.request.sendall(server.tag)
            while True:
                data = self.request.recv(65536)
                if not data:
                    return
                self.request.sendall(data)
        except OSError:
            return
        finally:
            with server._lock:
                server.closed += 1


@pytest.fixture
def start_backend() -> Iterator[Callable[..., Backend]]:
    started: list[Backend] = []

    def _start(**kwargs) -> Backend:
        backend = Backend(**kwargs)
        threading.Thread(target=backend.serve_forever, daemon=True).start()
        started.append(backend)
        return backend

    yield _start

    for backend in started:
        backend.shutdown()
        backend.server_close()


@pytest.fixture
def echo_backend(start_backend) -> Backend:
    return start_backend()


@pytest.fixture
def start_relay() -> Iterator[Callable[..., Relay]]:
    started: list[Relay] = []

    def _start(backend: SocketAddress, max_conns: int = 0, dial_timeout: float = 2.0) -> Relay:
        config = RelayConfig(
            listen=SocketAddress("127.0.0.1", 0),
            backend=backend,
            control=SocketAddress("127.0.0.1", 0),
            max_conns=max_conns,
            dial_timeout=dial_timeout,
            control_timeout=2.0,
        )
        relay = Relay(config)
        relay.start()
        started.append(relay)
        return relay

    yield _start

    for relay in started:
        relay.shutdown()


def connect(address: SocketAddress, timeout: float = 5.0) -> socket.socket:
    return socket.create_connection(address.dial_tuple(), timeout=timeout)
