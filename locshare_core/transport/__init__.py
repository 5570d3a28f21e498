"""Transport layer for the sharing client.

All websocket IO lives in ws_client: connecting to the relay, named-event
frames and message iteration.
"""

from .ws_client import RelayChannel, RelayMessage, RelayMessageType, relay_url

__all__ = [
    "RelayChannel",
    "RelayMessage",
    "RelayMessageType",
    "relay_url",
]
