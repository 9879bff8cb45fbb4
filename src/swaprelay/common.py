from __future__ import annotations

from dataclasses import dataclass, replace


class ConfigurationError(ValueError):
    """Invalid startup configuration. Fatal: the relay does not start."""


class ControlInputError(ValueError):
    """A control-channel payload that is not a usable backend IP."""


@dataclass(frozen=True)
class SocketAddress:
    """A host/port pair.

    ``host`` may be a literal IP, an unresolved DNS name or empty. An empty host
    means "all interfaces" when listening and "this machine" when dialing.
    """

    host: str
    port: int

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 0xFFFF:
            raise ConfigurationError(f"port {self.port} is out of range")

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    def bind_tuple(self) -> tuple[str, int]:
        return (self.host, self.port)

    def dial_tuple(self) -> tuple[str, int]:
        return (self.host or "localhost", self.port)

    def with_host(self, host: str) -> SocketAddress:
        return replace(self, host=host)


def parse_socket(sock: str) -> SocketAddress:
    """Parse ``host:port`` (or ``[v6]:port``) into a :class:`SocketAddress`."""
    sock = sock.strip()
    if not sock:
        raise ConfigurationError("socket address not passed")

    if sock.startswith("["):
        host, sep, rest = sock[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ConfigurationError(f"malformed IPv6 socket address {sock!r}")
        port = rest[1:]
    else:
        parts = sock.split(":")
        if len(parts) == 1:
            raise ConfigurationError(f"port not passed in {sock!r}")
        if len(parts) > 2:
            raise ConfigurationError(f"expected 1 or 2 parts (ip and port), got {len(parts)}")
        host, port = parts

    if not (port.isascii() and port.isdigit()):
        raise ConfigurationError(f"port {port!r} isn't a number")

    return SocketAddress(host, int(port))
