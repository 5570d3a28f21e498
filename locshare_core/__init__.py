"""Relay-brokered peer-to-peer location sharing client."""

__version__ = "0.1.0"

from .config import SharingConfig, load_config
from .device import (
    LocationSource,
    PermissionGate,
    StaticLocationSource,
    StaticPermissionGate,
)
from .errors import (
    LocationError,
    LocationShareError,
    LocationUnavailableError,
    PermissionDeniedError,
    ProtocolError,
    RelayConnectionError,
    RelayHandshakeError,
    RelayTimeout,
    SharingConfigError,
)
from .protocol import LocationSample, build_frame, parse_frame
from .publisher import DEFAULT_PUBLISH_INTERVAL, LocationPublisher
from .session import SharingSession
from .state import (
    ConnectionState,
    ConnectionStateMachine,
    SharingState,
    transition,
)

__all__ = [
    "DEFAULT_PUBLISH_INTERVAL",
    "ConnectionState",
    "ConnectionStateMachine",
    "LocationError",
    "LocationPublisher",
    "LocationSample",
    "LocationShareError",
    "LocationSource",
    "LocationUnavailableError",
    "PermissionDeniedError",
    "PermissionGate",
    "ProtocolError",
    "RelayConnectionError",
    "RelayHandshakeError",
    "RelayTimeout",
    "SharingConfig",
    "SharingConfigError",
    "SharingSession",
    "SharingState",
    "StaticLocationSource",
    "StaticPermissionGate",
    "__version__",
    "build_frame",
    "load_config",
    "parse_frame",
    "transition",
]
