"""Pytest configuration and fixtures for locshare_core tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from locshare_core.errors import LocationUnavailableError, RelayConnectionError
from locshare_core.protocol import (
    EVENT_ACCEPT_CONNECTION,
    EVENT_CONNECT,
    EVENT_CONNECTION_CREATED,
    EVENT_CONNECTION_REJECTED,
    EVENT_CONNECTION_REQUEST,
    EVENT_CONNECTION_REQUESTED,
    EVENT_CREATE_CONNECTION,
    EVENT_LOCATION,
    EVENT_REJECT_CONNECTION,
    LocationSample,
    build_frame,
)
from locshare_core.transport.ws_client import (
    RelayChannel,
    RelayMessage,
    RelayMessageType,
)


class FakeRelayChannel(RelayChannel):
    """In-memory relay channel fed by SimulatedRelay."""

    def __init__(self, relay: SimulatedRelay) -> None:
        super().__init__()
        self.relay = relay
        self.session_id: str | None = None
        self.inbox: asyncio.Queue[RelayMessage] = asyncio.Queue()
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    @property
    def connected(self) -> bool:
        return self.session_id is not None and not self.closed

    async def connect(self, url: str, **kwargs: Any) -> None:
        self.relay.register(self)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(RelayMessage(type=RelayMessageType.CLOSED))

    async def emit(self, event: str, data: dict[str, Any] | None = None) -> None:
        if self.closed:
            raise RelayConnectionError("WebSocket is not connected")
        payload = data or {}
        self.sent.append((event, payload))
        self.relay.receive(self, event, payload)

    def __aiter__(self):
        return self._iter_inbox()

    async def _iter_inbox(self):
        while True:
            msg = await self.inbox.get()
            yield msg
            if msg.type is not RelayMessageType.TEXT:
                return

    def deliver(self, event: str, data: dict[str, Any] | None = None) -> None:
        frame = json.dumps(build_frame(event, data))
        self.inbox.put_nowait(RelayMessage(type=RelayMessageType.TEXT, data=frame))


class SimulatedRelay:
    """Routes handshake and location events between fake channels.

    Session ids are handed out in the order clients connect.
    """

    def __init__(self, ids: list[str]) -> None:
        self._ids = list(ids)
        self.channels: dict[str, FakeRelayChannel] = {}
        self.log: list[tuple[str, str, dict[str, Any]]] = []

    def new_channel(self) -> FakeRelayChannel:
        return FakeRelayChannel(self)

    def register(self, channel: FakeRelayChannel) -> None:
        session_id = self._ids.pop(0)
        channel.session_id = session_id
        self.channels[session_id] = channel
        channel.deliver(EVENT_CONNECT, {"id": session_id})

    def drop(self, session_id: str) -> None:
        """Simulate the socket going away."""
        channel = self.channels.pop(session_id)
        channel.closed = True
        channel.inbox.put_nowait(RelayMessage(type=RelayMessageType.CLOSED))

    def sent_by(self, session_id: str, event: str) -> list[dict[str, Any]]:
        return [data for sender, ev, data in self.log if sender == session_id and ev == event]

    def _send_to(self, session_id: str, event: str, data: dict[str, Any]) -> bool:
        channel = self.channels.get(session_id)
        if channel is None or channel.closed:
            return False
        channel.deliver(event, data)
        return True

    def receive(self, channel: FakeRelayChannel, event: str, data: dict[str, Any]) -> None:
        sender = channel.session_id
        assert sender is not None
        self.log.append((sender, event, data))
        target = data.get("id")

        if event == EVENT_CREATE_CONNECTION:
            if target not in self.channels:
                self._send_to(sender, EVENT_CONNECTION_REJECTED, {"message": "Client not found"})
                return
            self._send_to(sender, EVENT_CONNECTION_REQUESTED, {"id": target})
            self._send_to(target, EVENT_CONNECTION_REQUEST, {"id": sender})
        elif event == EVENT_ACCEPT_CONNECTION:
            self._send_to(target, EVENT_CONNECTION_CREATED, {"id": sender})
            self._send_to(sender, EVENT_CONNECTION_CREATED, {"id": target})
        elif event == EVENT_REJECT_CONNECTION:
            self._send_to(target, EVENT_CONNECTION_REJECTED, {"message": "Connection rejected"})
        elif event == EVENT_LOCATION:
            self._send_to(target, EVENT_LOCATION, {"id": sender, "location": data["location"]})


class FakeLocationSource:
    """Location source with scripted failures."""

    def __init__(self, latitude: float = 52.52, longitude: float = 13.405) -> None:
        self.latitude = latitude
        self.longitude = longitude
        self.cached: LocationSample | None = None
        self.fail_with: Exception | None = None
        self.current_calls = 0

    async def last_known(self) -> LocationSample | None:
        if self.fail_with is not None:
            raise self.fail_with
        return self.cached

    async def current(self) -> LocationSample:
        self.current_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return LocationSample(self.latitude, self.longitude, 1_700_000_000_000)


async def settle(rounds: int = 50) -> None:
    """Let queued relay frames propagate through listeners."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def location_source() -> FakeLocationSource:
    return FakeLocationSource()


@pytest.fixture
def unavailable_error() -> LocationUnavailableError:
    return LocationUnavailableError("No position fix")
