from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any

import yaml

from swaprelay.admission import UNBOUNDED
from swaprelay.common import ConfigurationError, SocketAddress, parse_socket
from swaprelay.control import CONTROL_TIMEOUT
from swaprelay.session import DIAL_TIMEOUT

_ADDRESS_KEYS = ("listen", "backend", "control")


@dataclass(frozen=True)
class RelayConfig:
    """Startup configuration of the relay.

    ``max_conns`` <= 0 means no ceiling.
    """

    listen: SocketAddress = field(default_factory=lambda: parse_socket(":3110"))
    backend: SocketAddress = field(default_factory=lambda: parse_socket(":22"))
    control: SocketAddress = field(default_factory=lambda: parse_socket(":3111"))
    max_conns: int = UNBOUNDED
    dial_timeout: float = DIAL_TIMEOUT
    control_timeout: float = CONTROL_TIMEOUT
    log_level: str = "INFO"
    log_file: str | None = None

    def merged(self, overrides: dict[str, Any]) -> RelayConfig:
        """Return a copy with ``overrides`` applied; ``None`` values are ignored.

        Address values may be given as ``host:port`` strings.
        """
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration key(s): {', '.join(unknown)}")

        values: dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key in _ADDRESS_KEYS and not isinstance(value, SocketAddress):
                value = parse_socket(str(value))
            values[key] = value

        return replace(self, **values).validated()

    def validated(self) -> RelayConfig:
        if isinstance(self.max_conns, bool) or not isinstance(self.max_conns, int):
            raise ConfigurationError(f"max_conns must be an integer, got {self.max_conns!r}")
        for name in ("dial_timeout", "control_timeout"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive number, got {value!r}")
        if not isinstance(self.log_level, str):
            raise ConfigurationError(f"log_level must be a string, got {self.log_level!r}")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigurationError(f"unknown log_level {self.log_level!r}")
        return self


def load_config(path: str, base: RelayConfig | None = None) -> RelayConfig:
    """Load a YAML config file on top of ``base`` (defaults when omitted)."""
    base = base or RelayConfig()
    try:
        with open(path, "r", encoding="utf-8") as file:
            data = yaml.safe_load(file)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file '{path}' not found")
    except OSError as e:
        raise ConfigurationError(f"Could not read configuration file '{path}': {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML configuration: {e}")

    if data is None:
        return base
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping")
    return base.merged(data)
