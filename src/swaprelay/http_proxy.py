from __future__ import annotations

import http.server
import logging
from typing import Iterable
from urllib.parse import urlsplit

import requests

from swaprelay.common import ConfigurationError, SocketAddress, parse_socket
from swaprelay.pump import CHUNK_SIZE
from swaprelay.session import DIAL_TIMEOUT, RelaySession

logger = logging.getLogger(__name__)

UPSTREAM_TIMEOUT = 30.0

# Hop-by-hop headers, removed in both directions (RFC 2616 section 13.5.1).
HOP_HEADERS = (
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
)


def strip_hop_headers(items: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """Drop hop-by-hop headers, including any named in ``Connection``."""
    items = list(items)
    hop = set(HOP_HEADERS)
    for name, value in items:
        if name.lower() == "connection":
            hop.update(token.strip().lower() for token in value.split(",") if token.strip())
    return [(name, value) for name, value in items if name.lower() not in hop]


def append_forwarded_for(items: Iterable[tuple[str, str]], client_ip: str) -> list[tuple[str, str]]:
    """Fold prior ``X-Forwarded-For`` values into one header ending in ``client_ip``."""
    prior: list[str] = []
    rest: list[tuple[str, str]] = []
    for name, value in items:
        if name.lower() == "x-forwarded-for":
            prior.append(value)
        else:
            rest.append((name, value))
    rest.append(("X-Forwarded-For", ", ".join(prior + [client_ip])))
    return rest


def _fold(items: Iterable[tuple[str, str]]) -> dict[str, str]:
    folded: dict[str, str] = {}
    for name, value in items:
        folded[name] = f"{folded[name]}, {value}" if name in folded else value
    return folded


class _ProxyHandler(http.server.BaseHTTPRequestHandler):
    """Forwarding proxy: plain requests are re-issued upstream, CONNECT is tunnelled."""

    server: HttpProxyServer

    # Unbuffered so header parsing stops at the blank line; bytes a client
    # sends right behind CONNECT stay in the socket for the tunnel.
    rbufsize = 0

    def do_CONNECT(self) -> None:  # noqa: N802
        try:
            target = parse_socket(self.path)
        except ConfigurationError as exc:
            self.send_error(400, f"bad CONNECT target: {exc}")
            return
        if not target.host:
            self.send_error(400, "bad CONNECT target: host missing")
            return

        self.close_connection = True
        session = RelaySession(
            self.connection,
            self.client_address,
            lambda: target,
            dial_timeout=self.server.dial_timeout,
        )
        try:
            if not session.dial():
                self.send_error(503, "Service Unavailable")
                return
            self.send_response(200, "Connection Established")
            self.end_headers()
            session.relay()
        finally:
            completion = session.finish()
            logger.info(
                "tunnel %s -> %s closed (%s, %d bytes up, %d bytes down)",
                self.client_address[0],
                target,
                completion.state.value,
                completion.bytes_up,
                completion.bytes_down,
            )

    def _read_body(self, length: int) -> bytes:
        chunks: list[bytes] = []
        remaining = length
        while remaining:
            data = self.rfile.read(remaining)
            if not data:
                break
            chunks.append(data)
            remaining -= len(data)
        return b"".join(chunks)

    def _forward(self) -> None:
        url = urlsplit(self.path)
        if url.scheme not in ("http", "https"):
            msg = f"unsupported protocol scheme {url.scheme}"
            logger.warning("%s", msg)
            self.send_error(400, msg)
            return

        if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
            self.send_error(411, "chunked request bodies are not supported")
            return
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            self.send_error(400, "malformed Content-Length")
            return
        body = self._read_body(length) if length else None

        items = strip_hop_headers(self.headers.items())
        items = append_forwarded_for(items, self.client_address[0])

        with requests.Session() as upstream:
            # Forward exactly the client's headers, and never through an
            # environment-configured proxy (that may well be us).
            upstream.headers.clear()
            upstream.trust_env = False
            try:
                resp = upstream.request(
                    self.command,
                    self.path,
                    headers=_fold(items),
                    data=body,
                    stream=True,
                    allow_redirects=False,
                    timeout=self.server.upstream_timeout,
                )
            except requests.RequestException as exc:
                logger.error("ServeHTTP error: %s", exc)
                self.send_error(500, "Server Error")
                return

            with resp:
                logger.info("%s %s %s -> %d", self.client_address[0], self.command, self.path, resp.status_code)
                # Server and Date come from upstream along with the rest.
                self.log_request(resp.status_code)
                self.send_response_only(resp.status_code, resp.reason)
                for name, value in strip_hop_headers(resp.raw.headers.items()):
                    self.send_header(name, value)
                self.end_headers()

                if self.command == "HEAD":
                    return
                try:
                    for chunk in resp.raw.stream(CHUNK_SIZE, decode_content=False):
                        self.wfile.write(chunk)
                except OSError as exc:
                    logger.debug("client %s went away mid-response: %s", self.client_address[0], exc)

    do_GET = _forward
    do_HEAD = _forward
    do_POST = _forward
    do_PUT = _forward
    do_PATCH = _forward
    do_DELETE = _forward
    do_OPTIONS = _forward

    def log_message(self, fmt: str, *args) -> None:  # noqa: D401
        logger.debug("%s %s", self.address_string(), fmt % args)


class HttpProxyServer(http.server.ThreadingHTTPServer):
    def __init__(
        self,
        bind: SocketAddress,
        dial_timeout: float = DIAL_TIMEOUT,
        upstream_timeout: float = UPSTREAM_TIMEOUT,
    ) -> None:
        self.dial_timeout = dial_timeout
        self.upstream_timeout = upstream_timeout
        super().__init__(bind.bind_tuple(), _ProxyHandler)


def run_http_proxy(bind: SocketAddress, upstream_timeout: float = UPSTREAM_TIMEOUT) -> None:
    """Run the forwarding proxy until interrupted."""
    try:
        server = HttpProxyServer(bind, upstream_timeout=upstream_timeout)
    except OSError as exc:
        raise ConfigurationError(f"could not listen on {bind}: {exc}") from exc

    with server:
        logger.info("starting proxy server on %s", bind)
        server.serve_forever()
