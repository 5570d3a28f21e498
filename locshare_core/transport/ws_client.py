"""Named-event channel to the relay over one WebSocket."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    ConnectionClosed,
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from ..errors import (
    LocationShareError,
    ProtocolError,
    RelayConnectionError,
    RelayHandshakeError,
    RelayTimeout,
)
from ..protocol import build_frame, parse_frame

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_LOGGER = logging.getLogger(__name__)

# Relay frames are small JSON objects; anything bigger is not ours.
MAX_FRAME_SIZE = 64 * 1024
CLOSE_TIMEOUT = 5


def relay_url(host: str, port: int, path: str = "/ws") -> str:
    """Build the relay websocket URL."""
    if not path.startswith("/"):
        path = f"/{path}"
    return f"ws://{host}:{port}{path}"


class RelayMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class RelayMessage:
    """Normalized WebSocket message payload."""

    type: RelayMessageType
    data: str | dict[str, Any] | None = None


class RelayChannel:
    """Wrapper around the websockets library speaking relay event frames."""

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(
        self,
        url: str,
        *,
        ping_interval: int | None = 20,
        timeout: float = 15.0,
    ) -> None:
        """Open the websocket to the relay.

        Args:
            url: Relay websocket URL, see ``relay_url``
            ping_interval: Keepalive ping interval (seconds), None disables pings
            timeout: Seconds to wait for the opening handshake

        Raises:
            RelayTimeout: The relay did not answer within ``timeout``
            RelayHandshakeError: The relay refused the upgrade or the URL is invalid
            RelayConnectionError: The socket could not be opened
        """
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(
                    url,
                    ping_interval=ping_interval,
                    close_timeout=CLOSE_TIMEOUT,
                    max_size=MAX_FRAME_SIZE,
                ),
                timeout=timeout,
            )
        except TimeoutError as err:
            raise RelayTimeout(f"No answer from {url} within {timeout:g}s") from err
        except InvalidURI as err:
            raise RelayHandshakeError(f"Invalid relay URL: {url}") from err
        except InvalidHandshake as err:
            raise RelayHandshakeError(f"Relay refused websocket upgrade: {err}") from err
        except (OSError, WebSocketException) as err:
            raise RelayConnectionError(f"Cannot reach relay at {url}: {err}") from err
        _LOGGER.debug("Relay channel open: %s", url)

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            ws = self._ws
            self._ws = None
            await ws.close()

    async def send_json(self, payload: dict[str, Any]) -> None:
        """Send a JSON payload to the websocket."""
        if self._ws is None:
            raise RelayConnectionError("WebSocket is not connected")
        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as err:
            raise RelayConnectionError("WebSocket closed while sending") from err

    async def emit(self, event: str, data: dict[str, Any] | None = None) -> None:
        """Send one named event."""
        await self.send_json(build_frame(event, data))

    def __aiter__(self) -> AsyncIterator[RelayMessage]:
        if self._ws is None:
            raise RelayConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[RelayMessage]:
        if self._ws is None:
            raise RelayConnectionError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                normalized: RelayMessage | None = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
        except ConnectionClosed:
            yield RelayMessage(type=RelayMessageType.CLOSED)
        except Exception:
            yield RelayMessage(type=RelayMessageType.ERROR)
        else:
            # Normal iteration completion means the relay closed gracefully.
            yield RelayMessage(type=RelayMessageType.CLOSED)

    @staticmethod
    def _normalize_message(msg: Any) -> RelayMessage | None:
        """Normalize a websockets frame into RelayMessage.

        Binary frames are not part of the relay protocol and are skipped.
        """
        if isinstance(msg, bytes):
            return None
        return RelayMessage(RelayMessageType.TEXT, str(msg))

    @staticmethod
    def decode_json(message: RelayMessage) -> dict[str, Any]:
        """Decode a TEXT message payload into JSON."""
        if message.type is not RelayMessageType.TEXT:
            raise LocationShareError("Only TEXT messages can be decoded")
        if not isinstance(message.data, str):
            raise LocationShareError("Message data is not a string")
        try:
            result = json.loads(message.data)
        except json.JSONDecodeError as err:
            raise ProtocolError(f"Invalid JSON frame: {err}") from err
        if not isinstance(result, dict):
            raise ProtocolError("Frame must be a JSON object")
        return result

    @classmethod
    def decode_event(cls, message: RelayMessage) -> tuple[str, dict[str, Any]]:
        """Decode a TEXT message into its event name and payload."""
        return parse_frame(cls.decode_json(message))
