import os
import socket
import threading

from conftest import recv_exactly, recv_until_closed, unused_port, wait_for
from swaprelay.common import SocketAddress
from swaprelay.session import RelaySession, SessionState


class Completions:
    def __init__(self):
        self.signals = []
        self._lock = threading.Lock()

    def __call__(self, signal):
        with self._lock:
            self.signals.append(signal)


def _start(session):
    thread = threading.Thread(target=session.run, daemon=True)
    thread.start()
    return thread


def test_session_relays_and_completes_once(echo_backend):
    client_outer, client_inner = socket.socketpair()
    done = Completions()
    session = RelaySession(client_inner, "test-client", lambda: echo_backend.address, on_complete=done)
    thread = _start(session)

    payload = os.urandom(200_000)
    sender = threading.Thread(target=client_outer.sendall, args=(payload,))
    sender.start()
    assert recv_exactly(client_outer, len(payload)) == payload
    sender.join()
    assert session.state is SessionState.RELAYING

    client_outer.close()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert len(done.signals) == 1
    signal = done.signals[0]
    assert signal.state is SessionState.COMPLETED
    assert signal.remote_addr == "test-client"
    assert signal.backend == echo_backend.address
    assert signal.bytes_up == len(payload)
    assert wait_for(lambda: echo_backend.closed == 1)


def test_session_reads_target_once(echo_backend):
    calls = []

    def resolve():
        calls.append(1)
        return echo_backend.address

    client_outer, client_inner = socket.socketpair()
    session = RelaySession(client_inner, "c", resolve)
    thread = _start(session)
    client_outer.sendall(b"ping")
    assert recv_exactly(client_outer, 4) == b"ping"
    client_outer.close()
    thread.join(timeout=5)
    assert calls == [1]


def test_dial_failure_closes_client_and_completes_once():
    client_outer, client_inner = socket.socketpair()
    done = Completions()
    target = SocketAddress("127.0.0.1", unused_port())
    session = RelaySession(client_inner, "c", lambda: target, on_complete=done)

    completion = session.run()

    assert completion.state is SessionState.FAILED
    assert isinstance(completion.error, OSError)
    assert done.signals == [completion]
    assert session.backend is None
    assert recv_until_closed(client_outer) == b""
    client_outer.close()


def test_dial_timeout_fails_session(monkeypatch):
    seen = {}

    def timeout(address, timeout=None):
        seen["timeout"] = timeout
        raise socket.timeout("timed out")

    monkeypatch.setattr("swaprelay.session.socket.create_connection", timeout)
    client_outer, client_inner = socket.socketpair()
    done = Completions()
    session = RelaySession(client_inner, "c", lambda: SocketAddress("10.255.255.1", 22), on_complete=done, dial_timeout=0.1)

    completion = session.run()

    assert completion.state is SessionState.FAILED
    assert len(done.signals) == 1
    assert seen["timeout"] == 0.1
    client_outer.close()


def test_backend_hang_up_completes_session(start_backend):
    backend = start_backend(hang_up=True)
    client_outer, client_inner = socket.socketpair()
    done = Completions()
    session = RelaySession(client_inner, "c", lambda: backend.address, on_complete=done)

    completion = session.run()

    assert completion.state is SessionState.COMPLETED
    assert len(done.signals) == 1
    assert recv_until_closed(client_outer) == b""
    client_outer.close()


def test_client_gone_before_dial_still_completes_once(echo_backend):
    client_outer, client_inner = socket.socketpair()
    client_outer.close()
    done = Completions()
    session = RelaySession(client_inner, "c", lambda: echo_backend.address, on_complete=done)

    session.run()

    assert len(done.signals) == 1
    assert wait_for(lambda: echo_backend.closed == 1)


def test_finish_is_idempotent(echo_backend):
    client_outer, client_inner = socket.socketpair()
    done = Completions()
    session = RelaySession(client_inner, "c", lambda: echo_backend.address, on_complete=done)
    assert session.dial()

    first = session.finish()
    second = session.finish()

    assert first is second
    assert first.state is SessionState.FAILED
    assert len(done.signals) == 1
    client_outer.close()
