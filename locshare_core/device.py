"""Device-side collaborators: location permission and position source.

Real clients plug in platform implementations. The static variants serve
headless clients and tests.
"""

from __future__ import annotations

from typing import Protocol

from .protocol import LocationSample


class PermissionGate(Protocol):
    """Queries or requests location authorization."""

    async def request_location_permission(self) -> bool:
        """Return True when the device may share its location."""
        ...


class LocationSource(Protocol):
    """Reads device position.

    Implementations raise ``LocationError`` subclasses on failure.
    """

    async def last_known(self) -> LocationSample | None:
        """Return the most recent cached position, if any."""
        ...

    async def current(self) -> LocationSample:
        """Actively sample the current position."""
        ...


class StaticPermissionGate:
    """Permission gate with a fixed outcome."""

    def __init__(self, granted: bool = True) -> None:
        self.granted = granted
        self.requests = 0

    async def request_location_permission(self) -> bool:
        self.requests += 1
        return self.granted


class StaticLocationSource:
    """Location source reporting a fixed coordinate, stamped at read time."""

    def __init__(self, latitude: float, longitude: float, *, cached: bool = False) -> None:
        self.latitude = latitude
        self.longitude = longitude
        self._cached = cached

    async def last_known(self) -> LocationSample | None:
        if not self._cached:
            return None
        return LocationSample.now(self.latitude, self.longitude)

    async def current(self) -> LocationSample:
        return LocationSample.now(self.latitude, self.longitude)
