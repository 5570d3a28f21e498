"""High-level sharing session against a relay.

This module is the effect runner around the pure connection state machine.
It handles:
- Relay connection management and reconnect with backoff
- Translating inbound relay events into state machine triggers
- Permission checks ahead of local intents
- Executing commands (sends, publisher start/stop)
- Presentation callbacks

Presentation layers MUST drive sharing through this API and MUST NOT write
the connection state themselves.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any

from .config import SharingConfig
from .device import LocationSource, PermissionGate
from .errors import (
    LocationShareError,
    ProtocolError,
    RelayConnectionError,
    RelayHandshakeError,
    RelayTimeout,
)
from .protocol import (
    EVENT_CONNECT,
    EVENT_CONNECTION_CREATED,
    EVENT_CONNECTION_REJECTED,
    EVENT_CONNECTION_REQUEST,
    EVENT_CONNECTION_REQUESTED,
    EVENT_DISCONNECT,
    EVENT_LOCATION,
    LocationSample,
    parse_location_payload,
    parse_rejection,
    parse_session_id,
)
from .publisher import DEFAULT_PUBLISH_INTERVAL, LocationPublisher
from .state import (
    IDLE_STATE,
    AcceptRequest,
    CancelSharing,
    Command,
    ConnectionCreated,
    ConnectionRejected,
    ConnectionRequest,
    ConnectionRequested,
    ConnectionState,
    ConnectionStateMachine,
    RejectRequest,
    SamplingFailed,
    SendEvent,
    SharingState,
    StartPublishing,
    StartSharing,
    StopPublishing,
    TransportDisconnected,
    Trigger,
)
from .transport.ws_client import RelayChannel, RelayMessageType, relay_url

_LOGGER = logging.getLogger(__name__)

TRANSPORT_DISCONNECTED = "disconnected"
TRANSPORT_CONNECTING = "connecting"
TRANSPORT_CONNECTED = "connected"
TRANSPORT_FAILED = "failed"


class SharingSession:
    """Peer-to-peer location sharing through a relay.

    Usage:
        session = SharingSession("relay.local", 3000, gate, source)
        session.on_state_changed(render_state)
        session.on_remote_location(render_location)
        await session.connect()
        await session.start_sharing("peer-session-id")
        await session.close()
    """

    def __init__(
        self,
        host: str,
        port: int,
        permission_gate: PermissionGate,
        location_source: LocationSource,
        *,
        path: str = "/ws",
        publish_interval: float = DEFAULT_PUBLISH_INTERVAL,
        ping_interval: int = 20,
        connect_timeout: float = 15.0,
        retry_base_delay: int = 5,
        retry_max_delay: int = 60,
    ):
        """Initialize session.

        Args:
            host: Relay hostname or IP
            port: Relay port
            permission_gate: Location authorization gate
            location_source: Device position source
            path: WebSocket path on the relay
            publish_interval: Location publish period (seconds)
            ping_interval: Keepalive ping interval (seconds)
            connect_timeout: WebSocket connect timeout (seconds)
            retry_base_delay: Base retry delay (seconds)
            retry_max_delay: Maximum retry delay (seconds)
        """
        self.host = host
        self.port = port
        self.path = path
        self.url = relay_url(host, port, path)

        self._permission_gate = permission_gate
        self._ping_interval = ping_interval
        self._connect_timeout = connect_timeout
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay

        # Transport state
        self._channel: RelayChannel | None = None
        self._transport_state: str = TRANSPORT_DISCONNECTED
        self._listen_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._retry_attempts = 0
        self._shutdown_requested = False

        # Peer slot. The machine only exists while the relay has assigned us
        # an identity; _last_state is shown in between.
        self._machine: ConnectionStateMachine | None = None
        self._last_state: SharingState = IDLE_STATE
        self._lock = asyncio.Lock()

        self._publisher = LocationPublisher(
            self.send_event,
            location_source,
            interval=publish_interval,
            on_error=self._on_sampling_error,
        )

        # Callbacks
        self._state_callback: Callable[[SharingState], None] | None = None
        self._remote_location_callback: Callable[[LocationSample], None] | None = None
        self._transport_state_callback: Callable[[str], None] | None = None
        self._connection_request_callback: Callable[[str], None] | None = None

    @classmethod
    def from_config(
        cls,
        config: SharingConfig,
        permission_gate: PermissionGate,
        location_source: LocationSource,
    ) -> SharingSession:
        """Build a session from loaded configuration."""
        return cls(
            config.relay_host,
            config.relay_port,
            permission_gate,
            location_source,
            path=config.relay_path,
            publish_interval=config.publish_interval,
            ping_interval=config.ping_interval,
            connect_timeout=config.connect_timeout,
            retry_base_delay=config.retry_base_delay,
            retry_max_delay=config.retry_max_delay,
        )

    # -------------------------------------------------------------------------
    # Public API: Relay Connection
    # -------------------------------------------------------------------------

    async def connect(self) -> bool:
        """Open the relay channel and start listening.

        The session identity arrives with the relay's ``connect`` event.

        Returns:
            True if the socket opened, False otherwise
        """
        if self._shutdown_requested:
            _LOGGER.debug("[%s] Connection aborted: shutdown requested", self._label)
            return False

        self._set_transport_state(TRANSPORT_CONNECTING)

        try:
            _LOGGER.info(
                "Connecting to relay %s (attempt #%d)",
                self.url,
                self._retry_attempts + 1,
            )

            if self._channel:
                try:
                    await asyncio.wait_for(self._channel.close(), timeout=2.0)
                except TimeoutError:
                    _LOGGER.warning("Previous relay channel close timed out")
                self._channel = None

            channel = RelayChannel()
            await channel.connect(
                self.url,
                ping_interval=self._ping_interval,
                timeout=self._connect_timeout,
            )
            self._channel = channel

            _LOGGER.info("Relay socket open, waiting for session id")
            self._listen_task = asyncio.create_task(self._listen(channel))
            self._retry_attempts = 0
            return True

        except RelayTimeout:
            _LOGGER.warning("Relay connection timeout - relay unreachable")
        except RelayConnectionError as err:
            _LOGGER.warning("Relay connection failed: %s", err)
        except RelayHandshakeError as err:
            _LOGGER.error("Relay handshake failed: %s", err)

        self._set_transport_state(TRANSPORT_FAILED)
        self._handle_connection_failure()
        return False

    async def close(self) -> None:
        """Gracefully close the session and release the peer slot."""
        _LOGGER.info("[%s] Closing session", self._label)
        self._shutdown_requested = True

        for task in (self._reconnect_task, self._listen_task):
            if task is None or task is asyncio.current_task():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None
        self._listen_task = None

        await self._publisher.close()

        previous = self.state
        self._machine = None
        self._last_state = IDLE_STATE
        if previous != IDLE_STATE:
            self._notify_state(IDLE_STATE)

        if self._channel:
            try:
                await asyncio.wait_for(self._channel.close(), timeout=2.0)
            except TimeoutError:
                _LOGGER.warning("Relay channel close timed out")
            self._channel = None

        self._set_transport_state(TRANSPORT_DISCONNECTED)

    @property
    def is_connected(self) -> bool:
        """True once the relay has assigned a session id."""
        return self._transport_state == TRANSPORT_CONNECTED and self._machine is not None

    @property
    def transport_state(self) -> str:
        """Relay connection state."""
        return self._transport_state

    @property
    def session_id(self) -> str | None:
        """Identity assigned by the relay for the current connection."""
        return self._machine.session_id if self._machine else None

    @property
    def state(self) -> SharingState:
        """Current peer slot snapshot."""
        return self._machine.state if self._machine else self._last_state

    @property
    def remote_location(self) -> LocationSample | None:
        """Latest location received from the connected peer."""
        return self._publisher.remote_location

    @property
    def publisher(self) -> LocationPublisher:
        return self._publisher

    # -------------------------------------------------------------------------
    # Public API: Callbacks
    # -------------------------------------------------------------------------

    def on_state_changed(self, callback: Callable[[SharingState], None]) -> None:
        """Register callback for peer slot changes (state, peer, error)."""
        self._state_callback = callback

    def on_remote_location(self, callback: Callable[[LocationSample], None]) -> None:
        """Register callback for locations received from the peer."""
        self._remote_location_callback = callback

    def on_transport_state_changed(self, callback: Callable[[str], None]) -> None:
        """Register callback for relay connection changes.

        Callback receives state: "connecting", "connected", "failed", "disconnected"
        """
        self._transport_state_callback = callback

    def on_connection_request(self, callback: Callable[[str], None]) -> None:
        """Register callback for incoming requests that need accept/reject.

        Callback receives the requester's session id.
        """
        self._connection_request_callback = callback

    # -------------------------------------------------------------------------
    # Public API: User Intents
    # -------------------------------------------------------------------------

    async def start_sharing(self, target_id: str) -> bool:
        """Ask ``target_id`` to start a sharing session.

        Returns:
            True if the request was sent or the error changed
        """
        async with self._lock:
            machine = self._machine
            if machine is None:
                _LOGGER.warning("Cannot start sharing: relay session not ready")
                return False
            permitted = False
            current = machine.state
            if current.is_idle and target_id and target_id != machine.session_id:
                permitted = await self._check_permission()
            return await self._apply(StartSharing(target_id, permitted))

    async def accept(self) -> bool:
        """Accept the pending incoming request."""
        async with self._lock:
            machine = self._machine
            if machine is None:
                return False
            permitted = False
            current = machine.state
            if current.state is ConnectionState.REQUESTED and not current.accepted:
                permitted = await self._check_permission()
            return await self._apply(AcceptRequest(permitted))

    async def reject(self) -> bool:
        """Reject the pending incoming request."""
        return await self._dispatch(RejectRequest())

    async def cancel(self) -> bool:
        """Cancel an outgoing request or stop an active session."""
        return await self._dispatch(CancelSharing())

    async def send_event(self, event: str, payload: dict[str, Any]) -> bool:
        """Send one named event to the relay.

        Returns:
            True if sent successfully, False otherwise
        """
        channel = self._channel
        if channel is None or not self.is_connected:
            _LOGGER.debug("[%s] Dropped %s: relay not connected", self._label, event)
            return False
        try:
            await channel.emit(event, payload)
            return True
        except LocationShareError as err:
            _LOGGER.error("[%s] Failed to send %s: %s", self._label, event, err)
            return False

    # -------------------------------------------------------------------------
    # Internal: Dispatch
    # -------------------------------------------------------------------------

    @property
    def _label(self) -> str:
        return self.session_id or "-"

    async def _dispatch(self, trigger: Trigger) -> bool:
        async with self._lock:
            return await self._apply(trigger)

    async def _apply(self, trigger: Trigger) -> bool:
        """Apply one trigger and run its commands. Caller holds the lock."""
        machine = self._machine
        if machine is None:
            _LOGGER.debug("Ignored %s: no relay session", type(trigger).__name__)
            return False

        before = machine.state
        commands = machine.handle(trigger)
        after = machine.state

        await self._run_commands(commands)
        if after != before:
            self._notify_state(after)
        return after != before or bool(commands)

    async def _run_commands(self, commands: Iterable[Command]) -> None:
        for command in commands:
            if isinstance(command, SendEvent):
                await self.send_event(command.event, command.payload)
            elif isinstance(command, StartPublishing):
                self._publisher.start(command.peer_id)
            elif isinstance(command, StopPublishing):
                self._publisher.stop()

    async def _check_permission(self) -> bool:
        try:
            granted = await self._permission_gate.request_location_permission()
        except Exception as err:
            _LOGGER.exception("[%s] Permission query failed: %s", self._label, err)
            return False
        if not granted:
            _LOGGER.info("[%s] Location permission denied", self._label)
        return bool(granted)

    async def _on_sampling_error(self, message: str) -> None:
        await self._dispatch(SamplingFailed(message))

    # -------------------------------------------------------------------------
    # Internal: Relay Listener
    # -------------------------------------------------------------------------

    async def _listen(self, channel: RelayChannel) -> None:
        """Listen for events from the relay."""
        message_count = 0
        reconnect_required = False

        try:
            async for msg in channel:
                message_count += 1

                if msg.type == RelayMessageType.TEXT:
                    try:
                        event, data = channel.decode_event(msg)
                        if event == EVENT_DISCONNECT:
                            _LOGGER.info("[%s] Relay ended the session", self._label)
                            reconnect_required = True
                            break
                        await self._handle_event(event, data)
                    except (ProtocolError, ValueError, KeyError) as err:
                        _LOGGER.warning("[%s] Invalid frame: %s", self._label, err)

                elif msg.type == RelayMessageType.CLOSED:
                    _LOGGER.info("[%s] WebSocket closed by relay", self._label)
                    reconnect_required = True
                    break

                elif msg.type == RelayMessageType.ERROR:
                    _LOGGER.error("[%s] WebSocket error", self._label)
                    reconnect_required = True
                    break

        except asyncio.CancelledError:
            _LOGGER.debug(
                "[%s] Listener cancelled (%d messages)", self._label, message_count
            )
            raise
        except LocationShareError as err:
            _LOGGER.warning("[%s] Client error: %s", self._label, err)
            reconnect_required = True
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected error: %s", self._label, err)
            reconnect_required = True

        if reconnect_required and not self._shutdown_requested:
            await self._handle_transport_lost()
            self._set_transport_state(TRANSPORT_FAILED)
            self._handle_connection_failure()

    async def _handle_event(self, event: str, data: dict[str, Any]) -> None:
        """Route one relay event."""
        if event == EVENT_CONNECT:
            await self._handle_connect(data)
        elif event == EVENT_LOCATION:
            self._handle_location(data)
        elif event == EVENT_CONNECTION_REQUESTED:
            await self._dispatch(ConnectionRequested())
        elif event == EVENT_CONNECTION_CREATED:
            await self._dispatch(ConnectionCreated(parse_session_id(data)))
        elif event == EVENT_CONNECTION_REJECTED:
            await self._dispatch(ConnectionRejected(parse_rejection(data)))
        elif event == EVENT_CONNECTION_REQUEST:
            await self._handle_connection_request(data)
        else:
            _LOGGER.debug("[%s] Unknown event: %s", self._label, event)

    async def _handle_connect(self, data: dict[str, Any]) -> None:
        session_id = parse_session_id(data)
        if session_id is None:
            raise ProtocolError("connect event carries no session id")

        async with self._lock:
            if self._machine is not None:
                _LOGGER.debug("[%s] Duplicate connect event ignored", self._label)
                return
            # Fresh slot for the new identity; keep the last error visible.
            self._machine = ConnectionStateMachine(
                session_id, SharingState(error=self._last_state.error)
            )
        _LOGGER.info("[%s] Relay session established", session_id)
        self._set_transport_state(TRANSPORT_CONNECTED)

    async def _handle_connection_request(self, data: dict[str, Any]) -> None:
        requester_id = parse_session_id(data)
        if requester_id is None:
            raise ProtocolError("connectionRequest carries no requester id")

        async with self._lock:
            before = self.state
            await self._apply(ConnectionRequest(requester_id))
            after = self.state

        if after.state is ConnectionState.REQUESTED and before != after:
            _LOGGER.info("[%s] Connection request from %s", self._label, requester_id)
            self._invoke(self._connection_request_callback, requester_id)

    def _handle_location(self, data: dict[str, Any]) -> None:
        if not self.state.is_connected:
            _LOGGER.debug("[%s] Location ignored: not connected", self._label)
            return
        sender_id, sample = parse_location_payload(data)
        if self._publisher.observe_remote(sender_id, sample):
            self._invoke(self._remote_location_callback, sample)

    async def _handle_transport_lost(self) -> None:
        """Reset the peer slot after the relay channel went away."""
        async with self._lock:
            machine = self._machine
            if machine is not None:
                await self._apply(TransportDisconnected())
                self._last_state = machine.state
            self._machine = None
        self._publisher.stop()

        channel = self._channel
        self._channel = None
        if channel is not None:
            try:
                await asyncio.wait_for(channel.close(), timeout=2.0)
            except TimeoutError:
                _LOGGER.warning("Relay channel close timed out")
            except LocationShareError as err:
                _LOGGER.debug("Relay channel close failed: %s", err)

    # -------------------------------------------------------------------------
    # Internal: Connection State
    # -------------------------------------------------------------------------

    def _set_transport_state(self, state: str) -> None:
        """Update relay connection state and notify callback."""
        if self._transport_state != state:
            _LOGGER.debug(
                "[%s] Transport: %s → %s", self._label, self._transport_state, state
            )
            self._transport_state = state
            self._invoke(self._transport_state_callback, state)

    def _notify_state(self, state: SharingState) -> None:
        self._invoke(self._state_callback, state)

    def _invoke(self, callback: Callable[[Any], Any] | None, value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception as err:
            _LOGGER.exception("[%s] Callback error: %s", self._label, err)

    def _handle_connection_failure(self) -> None:
        """Schedule reconnection attempt with exponential backoff."""
        if self._shutdown_requested or self._reconnect_task:
            return

        delay = min(
            self._retry_base_delay * (2**self._retry_attempts),
            self._retry_max_delay,
        )
        self._retry_attempts += 1

        _LOGGER.info(
            "Reconnecting to relay in %ds (attempt %d)", delay, self._retry_attempts
        )

        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay(delay))

    async def _reconnect_after_delay(self, delay: float) -> None:
        """Reconnect after delay."""
        try:
            await asyncio.sleep(delay)
            self._reconnect_task = None
            await self.connect()
        except asyncio.CancelledError:
            _LOGGER.debug("Reconnect cancelled")
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None
