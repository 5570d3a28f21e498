"""Periodic location publisher for an active sharing session.

The publisher is driven by ``StartPublishing`` / ``StopPublishing`` commands
from the state machine. While active it samples the device position every
``interval`` seconds and forwards it to the bound peer. It also keeps the
latest location received from that peer.

Critical invariants:
- Never emits while inactive
- ``stop()`` cancels the pending tick synchronously
- Sampling failures are reported, never raised
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .device import LocationSource
from .errors import LocationError
from .protocol import EVENT_LOCATION, LocationSample, build_location_payload

_LOGGER = logging.getLogger(__name__)

DEFAULT_PUBLISH_INTERVAL = 5.0

SendFn = Callable[[str, dict[str, Any]], Awaitable[bool]]
ErrorCallback = Callable[[str], Awaitable[None] | None]


class LocationPublisher:
    """Streams device location to one peer while a session is connected.

    Usage:
        publisher = LocationPublisher(session.send_event, source)
        publisher.start("peer-id")
        ...
        publisher.stop()
    """

    def __init__(
        self,
        send: SendFn,
        source: LocationSource,
        *,
        interval: float = DEFAULT_PUBLISH_INTERVAL,
        on_error: ErrorCallback | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._send = send
        self._source = source
        self._interval = interval
        self._on_error = on_error

        self._peer_id: str | None = None
        self._task: asyncio.Task[None] | None = None
        self._remote_location: LocationSample | None = None
        self._sent_count = 0

    @property
    def active(self) -> bool:
        return self._peer_id is not None

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def remote_location(self) -> LocationSample | None:
        """Latest location received from the bound peer."""
        return self._remote_location

    @property
    def sent_count(self) -> int:
        """Number of location messages sent since creation."""
        return self._sent_count

    def start(self, peer_id: str) -> None:
        """Begin publishing to ``peer_id``; restarts if bound to another peer."""
        if self._peer_id == peer_id and self._task is not None:
            return
        self.stop()
        self._peer_id = peer_id
        self._task = asyncio.create_task(self._run(peer_id))
        _LOGGER.info(
            "Publishing location to %s every %.1fs", peer_id, self._interval
        )

    def stop(self) -> None:
        """Stop publishing and forget the remote location."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._peer_id is not None:
            _LOGGER.info("Stopped publishing location to %s", self._peer_id)
        self._peer_id = None
        self._remote_location = None

    async def close(self) -> None:
        """Stop publishing and wait for the cancelled tick to unwind."""
        task = self._task
        self.stop()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def observe_remote(self, sender_id: str | None, sample: LocationSample) -> bool:
        """Record a location received from the peer.

        Returns:
            True if the sample was accepted as the new remote location
        """
        if self._peer_id is None:
            _LOGGER.debug("Dropped location from %s: not sharing", sender_id)
            return False
        if sender_id is not None and sender_id != self._peer_id:
            _LOGGER.debug(
                "Dropped location from %s: bound to %s", sender_id, self._peer_id
            )
            return False
        self._remote_location = sample
        return True

    async def _run(self, peer_id: str) -> None:
        try:
            while True:
                await self._tick(peer_id)
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            _LOGGER.debug("Publisher for %s cancelled", peer_id)
            raise

    async def _tick(self, peer_id: str) -> bool:
        """Sample once and forward to ``peer_id``."""
        try:
            sample = await self._sample()
        except LocationError as err:
            _LOGGER.warning("Location sampling failed: %s", err)
            await self._report(str(err) or type(err).__name__)
            return False
        except Exception as err:
            _LOGGER.exception("Location source error: %s", err)
            await self._report(str(err) or type(err).__name__)
            return False

        if self._peer_id != peer_id:
            return False

        sent = await self._send(EVENT_LOCATION, build_location_payload(peer_id, sample))
        if sent:
            self._sent_count += 1
        return sent

    async def _sample(self) -> LocationSample:
        sample = await self._source.last_known()
        if sample is None:
            sample = await self._source.current()
        return sample

    async def _report(self, message: str) -> None:
        if self._on_error is None:
            return
        try:
            result = self._on_error(message)
            if inspect.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as err:
            _LOGGER.exception("Publisher error callback failed: %s", err)
