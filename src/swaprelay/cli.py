from __future__ import annotations

import argparse
import sys

from swaprelay.common import ConfigurationError, ControlInputError, parse_socket
from swaprelay.config import RelayConfig, load_config
from swaprelay.control import send_backend_update
from swaprelay.http_proxy import UPSTREAM_TIMEOUT, run_http_proxy
from swaprelay.logging_config import init_logging
from swaprelay.registry import parse_backend_ip
from swaprelay.relay import run_relay


def _add_relay(sub: argparse._SubParsersAction) -> None:
    relay = sub.add_parser("relay", help="Relay TCP clients to a backend whose IP can be swapped at runtime")
    relay.add_argument("--config", help="YAML file with relay settings (flags override it)")
    relay.add_argument(
        "-c",
        "--listen",
        help="Socket on which this machine listens for incoming connections, format address:port (default :3110)",
    )
    relay.add_argument("-r", "--remote", help="Initial address of the backend server (default :22)")
    relay.add_argument(
        "-u",
        "--control",
        help="Socket which listens for updates of the backend IP (default :3111)",
    )
    relay.add_argument(
        "--max-conns",
        type=int,
        help="Max number of concurrent client connections, 0 or less means no restriction (default 0)",
    )
    relay.add_argument("--dial-timeout", type=float, help="Seconds to wait when dialing the backend (default 10)")
    relay.add_argument("--log-level", help="Logging level (default INFO)")
    relay.add_argument("--log-file", help="Also write logs to this file")


def _add_control(sub: argparse._SubParsersAction) -> None:
    update = sub.add_parser("set-backend", help="Point a running relay at a new backend IP")
    update.add_argument("ip", help="New backend IP; the port is kept")
    update.add_argument("-u", "--control", default="127.0.0.1:3111", help="Relay control socket")


def _add_http(sub: argparse._SubParsersAction) -> None:
    proxy = sub.add_parser("http-proxy", help="Run an HTTP forwarding proxy with CONNECT tunnelling")
    proxy.add_argument("--addr", default=":3128", help="The addr of the application (default :3128)")
    proxy.add_argument(
        "--timeout",
        type=float,
        default=UPSTREAM_TIMEOUT,
        help=f"Seconds to wait on the upstream server (default {UPSTREAM_TIMEOUT:g})",
    )
    proxy.add_argument("--log-level", default="INFO")


def _relay_config(args: argparse.Namespace) -> RelayConfig:
    config = load_config(args.config) if args.config else RelayConfig()
    return config.merged(
        {
            "listen": args.listen,
            "backend": args.remote,
            "control": args.control,
            "max_conns": args.max_conns,
            "dial_timeout": args.dial_timeout,
            "log_level": args.log_level,
            "log_file": args.log_file,
        }
    )


def _set_backend(control: str, ip: str) -> int:
    # Validate locally; the relay only reports rejections in its log.
    try:
        parse_backend_ip(ip)
    except ControlInputError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2

    try:
        send_backend_update(parse_socket(control), ip)
    except OSError as exc:
        print(f"ERROR: could not reach the control endpoint {control}: {exc}", file=sys.stderr)
        return 1
    print(f"sent backend update {ip} to {control}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="swaprelay",
        description=(
            "TCP relay with a hot-swappable backend. Clients connect to the listen socket and are "
            "forwarded byte-for-byte to the backend; writing a new IP to the control socket "
            "redirects every connection made after it."
        ),
    )
    sub = parser.add_subparsers(dest="cmd", required=True)
    _add_relay(sub)
    _add_control(sub)
    _add_http(sub)

    args = parser.parse_args(argv)

    try:
        if args.cmd == "relay":
            config = _relay_config(args)
            init_logging(config.log_level, config.log_file)
            run_relay(config)
            return 0

        if args.cmd == "set-backend":
            return _set_backend(args.control, args.ip)

        if args.cmd == "http-proxy":
            init_logging(args.log_level)
            run_http_proxy(parse_socket(args.addr), upstream_timeout=args.timeout)
            return 0
    except ConfigurationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 0

    print(f"Unknown command: {args.cmd}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
