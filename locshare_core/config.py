"""Client configuration loaded from YAML.

Example ``locshare.yaml``::

    relay_host: relay.example.net
    relay_port: 3000
    publish_interval: 5
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import SharingConfigError
from .publisher import DEFAULT_PUBLISH_INTERVAL


@dataclass(frozen=True)
class SharingConfig:
    """Connection and publishing settings for one sharing client.

    Attributes:
        relay_host: Relay hostname or IP.
        relay_port: Relay port.
        relay_path: WebSocket path on the relay.
        ping_interval: Keepalive ping interval (seconds).
        connect_timeout: WebSocket connect timeout (seconds).
        publish_interval: Location publish period (seconds).
        retry_base_delay: Base reconnect delay (seconds).
        retry_max_delay: Maximum reconnect delay (seconds).
    """

    relay_host: str
    relay_port: int = 3000
    relay_path: str = "/ws"
    ping_interval: int = 20
    connect_timeout: float = 15.0
    publish_interval: float = DEFAULT_PUBLISH_INTERVAL
    retry_base_delay: int = 5
    retry_max_delay: int = 60


_INT_FIELDS = ("relay_port", "ping_interval", "retry_base_delay", "retry_max_delay")
_FLOAT_FIELDS = ("connect_timeout", "publish_interval")


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with error handling."""
    if not path.exists():
        raise SharingConfigError(f"File not found: {path}")
    with path.open() as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as err:
            raise SharingConfigError(f"Invalid YAML in {path}: {err}") from err
    if not isinstance(data, dict):
        raise SharingConfigError(f"Expected a mapping in {path}")
    return data


def parse_config(data: dict[str, Any]) -> SharingConfig:
    """Validate a raw mapping and build a SharingConfig.

    Unknown keys are ignored.

    Raises:
        SharingConfigError: If relay_host is missing or a value is invalid
    """
    known = {f.name for f in fields(SharingConfig)}
    values = {k: v for k, v in data.items() if k in known}

    host = values.get("relay_host")
    if not isinstance(host, str) or not host:
        raise SharingConfigError("relay_host is required")

    for name in _INT_FIELDS:
        if name not in values:
            continue
        value = values[name]
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise SharingConfigError(f"{name} must be a positive integer")

    for name in _FLOAT_FIELDS:
        if name not in values:
            continue
        value = values[name]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise SharingConfigError(f"{name} must be a positive number")
        values[name] = float(value)

    if "relay_path" in values and not isinstance(values["relay_path"], str):
        raise SharingConfigError("relay_path must be a string")

    config = SharingConfig(**values)
    if config.retry_max_delay < config.retry_base_delay:
        raise SharingConfigError("retry_max_delay must not be below retry_base_delay")
    return config


def load_config(path: Path | str) -> SharingConfig:
    """Load client configuration from a YAML file."""
    return parse_config(_load_yaml(Path(path)))
