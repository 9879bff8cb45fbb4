from __future__ import annotations

import socket
import threading
from dataclasses import dataclass

CHUNK_SIZE = 32 * 1024


@dataclass
class PumpResult:
    direction: str
    transferred: int = 0
    error: OSError | None = None


def pump(source: socket.socket, dest: socket.socket, chunk_size: int = CHUNK_SIZE) -> int:
    """Copy bytes from ``source`` to ``dest`` until EOF.

    Returns the number of bytes copied. Read errors, write errors and resets
    propagate as :class:`OSError`.
    """
    total = 0
    while True:
        data = source.recv(chunk_size)
        if not data:
            return total
        dest.sendall(data)
        total += len(data)


def shutdown_socket(sock: socket.socket) -> None:
    """Shut down both halves of ``sock``, waking any thread blocked on it."""
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # Already closed, or the peer reset first.
        pass


def _run_direction(
    source: socket.socket,
    dest: socket.socket,
    result: PumpResult,
    pair: tuple[socket.socket, socket.socket],
) -> None:
    try:
        result.transferred = pump(source, dest)
    except OSError as exc:
        result.error = exc
    finally:
        # Whichever direction stops first tears the pair down, so the other
        # direction sees EOF (or an error) and stops too.
        for sock in pair:
            shutdown_socket(sock)


def splice(client: socket.socket, backend: socket.socket) -> tuple[PumpResult, PumpResult]:
    """Relay ``client`` <-> ``backend`` until both directions have stopped.

    client->backend runs on the calling thread, backend->client on a helper
    thread that is always joined before returning. The sockets are shut down
    but not closed; closing them is the caller's job.
    """
    pair = (client, backend)
    upstream = PumpResult("client->backend")
    downstream = PumpResult("backend->client")

    helper = threading.Thread(
        target=_run_direction,
        args=(backend, client, downstream, pair),
        name="pump-downstream",
        daemon=True,
    )
    helper.start()
    _run_direction(client, backend, upstream, pair)
    helper.join()
    return upstream, downstream
