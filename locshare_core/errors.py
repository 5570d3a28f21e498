"""Error types for relay-brokered location sharing.

Exceptions are raised by the transport and device helpers only. The state
machine and publisher turn failures into state; see ``SharingState.error``.
"""

from __future__ import annotations

ERROR_PERMISSION_REQUIRED = "permission required"
ERROR_TARGET_REQUIRED = "target id required"
ERROR_SELF_TARGET = "cannot share with yourself"
ERROR_CONNECTION_REJECTED = "connection rejected"
ERROR_DISCONNECTED = "disconnected from relay"


class LocationShareError(Exception):
    """Base error for location sharing client failures."""


class RelayTimeout(LocationShareError):
    """Timeout while communicating with the relay."""


class RelayConnectionError(LocationShareError):
    """Network connection to the relay failed."""


class RelayHandshakeError(LocationShareError):
    """WebSocket handshake with the relay failed."""


class ProtocolError(LocationShareError):
    """Inbound frame or payload does not match the wire contract."""


class LocationError(LocationShareError):
    """Device location could not be read."""


class LocationUnavailableError(LocationError):
    """No position fix could be obtained."""


class PermissionDeniedError(LocationError):
    """Location authorization was revoked or refused."""


class SharingConfigError(LocationShareError, ValueError):
    """Configuration file is missing or invalid."""
