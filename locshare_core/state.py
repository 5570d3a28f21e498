"""Connection state machine for the single peer slot of a sharing client.

The machine is split in two:

- ``transition()`` is a pure function. Given the current ``SharingState`` and
  one trigger it returns the next state and the commands to execute. It
  never sends, sleeps, or checks permissions itself.
- ``ConnectionStateMachine`` owns the current state for one client identity
  and is the only writer of it.

Commands are executed by an effect runner (``SharingSession``).

Invariants:
- ``peer_id`` is set iff ``state`` is not IDLE
- ``accepted`` is only ever True in REQUESTED
- Entering CONNECTED yields StartPublishing, leaving it yields StopPublishing
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from .errors import (
    ERROR_CONNECTION_REJECTED,
    ERROR_DISCONNECTED,
    ERROR_PERMISSION_REQUIRED,
    ERROR_SELF_TARGET,
    ERROR_TARGET_REQUIRED,
)
from .protocol import (
    EVENT_ACCEPT_CONNECTION,
    EVENT_CREATE_CONNECTION,
    EVENT_REJECT_CONNECTION,
    build_id_payload,
)

_LOGGER = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Handshake state of the peer slot."""

    IDLE = "idle"
    REQUESTING = "requesting"  # we asked the peer, relay has not acknowledged
    AWAITING = "awaiting"  # relay acknowledged, waiting for the peer's decision
    REQUESTED = "requested"  # the peer asked us, decision pending locally
    CONNECTED = "connected"


@dataclass(frozen=True)
class SharingState:
    """Snapshot of the peer slot as seen by the presentation layer."""

    state: ConnectionState = ConnectionState.IDLE
    peer_id: str | None = None
    error: str | None = None
    accepted: bool = False

    @property
    def is_idle(self) -> bool:
        return self.state is ConnectionState.IDLE

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED


# --------------------------------------------------------------------------
# Triggers: local intents
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class StartSharing:
    """User asked to share with ``target_id``; ``permitted`` is the gate outcome."""

    target_id: str
    permitted: bool


@dataclass(frozen=True)
class AcceptRequest:
    """User accepted the pending incoming request."""

    permitted: bool


@dataclass(frozen=True)
class RejectRequest:
    """User rejected the pending incoming request."""


@dataclass(frozen=True)
class CancelSharing:
    """User cancelled an outgoing request or stopped an active session."""


# --------------------------------------------------------------------------
# Triggers: inbound events
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionRequested:
    """Relay acknowledged our request; the target is deciding."""


@dataclass(frozen=True)
class ConnectionCreated:
    """Handshake completed. ``peer_id`` is None when the descriptor lacked an id."""

    peer_id: str | None = None


@dataclass(frozen=True)
class ConnectionRejected:
    """Handshake failed or was cancelled by the other side."""

    message: str | None = None


@dataclass(frozen=True)
class ConnectionRequest:
    """Another client asked to share with us."""

    requester_id: str


@dataclass(frozen=True)
class TransportDisconnected:
    """Channel to the relay was lost."""


@dataclass(frozen=True)
class SamplingFailed:
    """Publisher could not read the device position."""

    message: str


Trigger = (
    StartSharing
    | AcceptRequest
    | RejectRequest
    | CancelSharing
    | ConnectionRequested
    | ConnectionCreated
    | ConnectionRejected
    | ConnectionRequest
    | TransportDisconnected
    | SamplingFailed
)


# --------------------------------------------------------------------------
# Commands
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class SendEvent:
    """Emit a named event over the transport channel."""

    event: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class StartPublishing:
    """Activate the location publisher for ``peer_id``."""

    peer_id: str


@dataclass(frozen=True)
class StopPublishing:
    """Deactivate the location publisher."""


Command = SendEvent | StartPublishing | StopPublishing


@dataclass(frozen=True)
class Transition:
    """Result of applying one trigger."""

    state: SharingState
    commands: tuple[Command, ...] = ()


IDLE_STATE = SharingState()


def _send(event: str, session_id: str) -> SendEvent:
    return SendEvent(event=event, payload=build_id_payload(session_id))


def _with_error(current: SharingState, message: str) -> Transition:
    return Transition(replace(current, error=message))


def _to_idle(error: str | None = None) -> SharingState:
    return SharingState(error=error)


def _on_start_sharing(
    current: SharingState, trigger: StartSharing, session_id: str
) -> Transition:
    if not current.is_idle:
        return Transition(current)
    if not trigger.target_id:
        return _with_error(current, ERROR_TARGET_REQUIRED)
    if trigger.target_id == session_id:
        return _with_error(current, ERROR_SELF_TARGET)
    if not trigger.permitted:
        return _with_error(current, ERROR_PERMISSION_REQUIRED)
    return Transition(
        SharingState(state=ConnectionState.REQUESTING, peer_id=trigger.target_id),
        (_send(EVENT_CREATE_CONNECTION, trigger.target_id),),
    )


def _on_accept(current: SharingState, trigger: AcceptRequest) -> Transition:
    if current.state is not ConnectionState.REQUESTED or current.accepted:
        return Transition(current)
    if not trigger.permitted:
        return _with_error(current, ERROR_PERMISSION_REQUIRED)
    peer_id = current.peer_id
    if peer_id is None:
        return Transition(current)
    return Transition(
        replace(current, accepted=True, error=None),
        (_send(EVENT_ACCEPT_CONNECTION, peer_id),),
    )


def _on_reject(current: SharingState) -> Transition:
    peer_id = current.peer_id
    if current.state is not ConnectionState.REQUESTED or peer_id is None:
        return Transition(current)
    return Transition(_to_idle(), (_send(EVENT_REJECT_CONNECTION, peer_id),))


def _on_cancel(current: SharingState) -> Transition:
    peer_id = current.peer_id
    if current.is_idle or peer_id is None:
        return Transition(current)
    return Transition(_to_idle(), (_send(EVENT_REJECT_CONNECTION, peer_id),))


def _on_connection_requested(current: SharingState) -> Transition:
    if current.state is not ConnectionState.REQUESTING:
        return Transition(current)
    return Transition(replace(current, state=ConnectionState.AWAITING, error=None))


def _on_connection_created(
    current: SharingState, trigger: ConnectionCreated
) -> Transition:
    pending = current.state in (ConnectionState.REQUESTING, ConnectionState.AWAITING)
    accepted = current.state is ConnectionState.REQUESTED and current.accepted
    if not (pending or accepted):
        return Transition(current)
    peer_id = trigger.peer_id or current.peer_id
    return Transition(SharingState(state=ConnectionState.CONNECTED, peer_id=peer_id))


def _on_connection_rejected(
    current: SharingState, trigger: ConnectionRejected
) -> Transition:
    if current.is_idle:
        return Transition(current)
    return Transition(_to_idle(trigger.message or ERROR_CONNECTION_REJECTED))


def _on_connection_request(
    current: SharingState, trigger: ConnectionRequest
) -> Transition:
    requester_id = trigger.requester_id
    if not requester_id:
        return Transition(current)
    if current.is_idle:
        return Transition(
            SharingState(state=ConnectionState.REQUESTED, peer_id=requester_id)
        )
    if current.state is ConnectionState.REQUESTED and current.peer_id == requester_id:
        return Transition(current)
    # Slot occupied: turn the newcomer away without touching the current peer.
    return Transition(current, (_send(EVENT_REJECT_CONNECTION, requester_id),))


def _on_sampling_failed(current: SharingState, trigger: SamplingFailed) -> Transition:
    if not current.is_connected:
        return Transition(current)
    return _with_error(current, trigger.message)


def transition(
    current: SharingState, trigger: Trigger, *, session_id: str
) -> Transition:
    """Compute the next state and the commands for one trigger.

    Args:
        current: State before the trigger
        trigger: Local intent or inbound event
        session_id: Identity of this client, used to refuse self-targeting

    Returns:
        Transition with the next state and the commands to run, in order
    """
    if isinstance(trigger, StartSharing):
        result = _on_start_sharing(current, trigger, session_id)
    elif isinstance(trigger, AcceptRequest):
        result = _on_accept(current, trigger)
    elif isinstance(trigger, RejectRequest):
        result = _on_reject(current)
    elif isinstance(trigger, CancelSharing):
        result = _on_cancel(current)
    elif isinstance(trigger, ConnectionRequested):
        result = _on_connection_requested(current)
    elif isinstance(trigger, ConnectionCreated):
        result = _on_connection_created(current, trigger)
    elif isinstance(trigger, ConnectionRejected):
        result = _on_connection_rejected(current, trigger)
    elif isinstance(trigger, ConnectionRequest):
        result = _on_connection_request(current, trigger)
    elif isinstance(trigger, TransportDisconnected):
        result = Transition(_to_idle(ERROR_DISCONNECTED))
    elif isinstance(trigger, SamplingFailed):
        result = _on_sampling_failed(current, trigger)
    else:
        raise TypeError(f"Unknown trigger: {trigger!r}")

    was_connected = current.is_connected
    now_connected = result.state.is_connected
    peer_id = result.state.peer_id
    if now_connected and not was_connected and peer_id is not None:
        return Transition(result.state, result.commands + (StartPublishing(peer_id),))
    if was_connected and not now_connected:
        return Transition(result.state, result.commands + (StopPublishing(),))
    return result


class ConnectionStateMachine:
    """Holds the peer slot for one client identity.

    Usage:
        machine = ConnectionStateMachine(session_id="abc")
        commands = machine.handle(StartSharing("def", permitted=True))
    """

    def __init__(self, session_id: str, initial: SharingState = IDLE_STATE) -> None:
        if not session_id:
            raise ValueError("session_id is required")
        self.session_id = session_id
        self._state = initial

    @property
    def state(self) -> SharingState:
        """Current state snapshot."""
        return self._state

    def handle(self, trigger: Trigger) -> tuple[Command, ...]:
        """Apply ``trigger`` and return the commands to execute."""
        result = transition(self._state, trigger, session_id=self.session_id)
        previous = self._state
        self._state = result.state

        if previous.state is not result.state.state:
            _LOGGER.debug(
                "[%s] State: %s → %s (peer=%s)",
                self.session_id,
                previous.state.value,
                result.state.state.value,
                result.state.peer_id,
            )
        elif previous == result.state and not result.commands:
            _LOGGER.debug(
                "[%s] Ignored %s in %s",
                self.session_id,
                type(trigger).__name__,
                previous.state.value,
            )
        if result.state.error and result.state.error != previous.error:
            _LOGGER.info("[%s] Error: %s", self.session_id, result.state.error)

        return result.commands
