from __future__ import annotations

import ipaddress
import threading

from swaprelay.common import ControlInputError, SocketAddress


def parse_backend_ip(candidate: str) -> str:
    """Validate an IPv4/IPv6 literal and return its canonical form."""
    if not candidate:
        raise ControlInputError("empty backend address")
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError as exc:
        raise ControlInputError(f"invalid backend IP {candidate!r}") from exc


class BackendRegistry:
    """Holds the address every new relay session dials.

    Reads return the stored value itself; :class:`SocketAddress` is immutable, so
    a session's snapshot never changes under it when the backend is swapped.
    """

    def __init__(self, initial: SocketAddress) -> None:
        self._lock = threading.Lock()
        self._target = initial

    def current(self) -> SocketAddress:
        with self._lock:
            return self._target

    def update(self, candidate: str) -> tuple[SocketAddress, SocketAddress]:
        """Replace the backend host with the IP literal ``candidate``.

        The port is kept. Returns ``(old, new)``. Raises
        :class:`ControlInputError` and leaves the registry untouched when
        ``candidate`` is not an IPv4/IPv6 address.
        """
        host = parse_backend_ip(candidate)
        with self._lock:
            old = self._target
            self._target = old.with_host(host)
            return old, self._target
