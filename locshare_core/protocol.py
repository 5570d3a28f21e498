"""Wire contract between a sharing client and the relay.

Every named event travels as one JSON text frame::

    {"event": "createConnection", "data": {"id": "<session id>"}}

Payloads are plain dicts. Unknown optional fields MUST be ignored.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from .errors import ProtocolError

# Client -> relay
EVENT_CREATE_CONNECTION = "createConnection"
EVENT_ACCEPT_CONNECTION = "acceptConnection"
EVENT_REJECT_CONNECTION = "rejectConnection"

# Relay -> client
EVENT_CONNECTION_REQUESTED = "connectionRequested"
EVENT_CONNECTION_REQUEST = "connectionRequest"
EVENT_CONNECTION_CREATED = "connectionCreated"
EVENT_CONNECTION_REJECTED = "connectionRejected"

# Both directions
EVENT_LOCATION = "location"

# Transport lifecycle
EVENT_CONNECT = "connect"
EVENT_DISCONNECT = "disconnect"


@dataclass(frozen=True)
class LocationSample:
    """Device coordinate pair with the epoch-millisecond time it was taken."""

    latitude: float
    longitude: float
    timestamp: int

    @classmethod
    def now(cls, latitude: float, longitude: float) -> LocationSample:
        """Create a sample stamped with the current time."""
        return cls(
            latitude=latitude,
            longitude=longitude,
            timestamp=int(time.time() * 1000),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire ``location`` object."""
        return {
            "coords": {"latitude": self.latitude, "longitude": self.longitude},
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Any) -> LocationSample:
        """Parse a wire ``location`` object.

        Raises:
            ProtocolError: If coordinates are missing or not numeric
        """
        if not isinstance(data, dict):
            raise ProtocolError("location must be an object")
        coords = data.get("coords")
        if not isinstance(coords, dict):
            raise ProtocolError("location.coords must be an object")

        latitude = coords.get("latitude")
        longitude = coords.get("longitude")
        for name, value in (("latitude", latitude), ("longitude", longitude)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ProtocolError(f"location.coords.{name} must be a number")

        timestamp = data.get("timestamp", 0)
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ProtocolError("location.timestamp must be a number")

        return cls(
            latitude=float(latitude),
            longitude=float(longitude),
            timestamp=int(timestamp),
        )


def build_frame(event: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build the envelope for one named event."""
    return {"event": event, "data": data if data is not None else {}}


def parse_frame(frame: Any) -> tuple[str, dict[str, Any]]:
    """Split a decoded frame into its event name and payload.

    Raises:
        ProtocolError: If the frame has no event name or a non-object payload
    """
    if not isinstance(frame, dict):
        raise ProtocolError("Frame must be a JSON object")
    event = frame.get("event")
    if not isinstance(event, str) or not event:
        raise ProtocolError("Frame has no event name")
    data = frame.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ProtocolError(f"Payload of {event!r} must be an object")
    return event, data


def build_id_payload(session_id: str) -> dict[str, Any]:
    """Payload for createConnection / acceptConnection / rejectConnection."""
    if not session_id:
        raise ValueError("session_id is required")
    return {"id": session_id}


def build_location_payload(peer_id: str, sample: LocationSample) -> dict[str, Any]:
    """Payload forwarding a location sample to the bound peer."""
    return {"id": peer_id, "location": sample.to_dict()}


def parse_session_id(data: dict[str, Any]) -> str | None:
    """Extract the ``id`` field, returning None when absent or empty."""
    session_id = data.get("id")
    if session_id is None or session_id == "":
        return None
    if not isinstance(session_id, str):
        raise ProtocolError("id must be a string")
    return session_id


def parse_rejection(data: dict[str, Any]) -> str | None:
    """Extract the human-readable reason from a connectionRejected payload."""
    message = data.get("message")
    if message is None or message == "":
        return None
    return str(message)


def parse_location_payload(data: dict[str, Any]) -> tuple[str | None, LocationSample]:
    """Split an inbound location payload into sender id and sample."""
    return parse_session_id(data), LocationSample.from_dict(data.get("location"))
