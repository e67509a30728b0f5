"""
gateway/state.py — Gateway Session State Machine

The session's lifecycle as data: a SessionState, the inputs that can move
it, and a pure transition() that returns the next state plus the effects
the session must carry out (open/close the transport, send the handshake,
start/cancel the reconnect timer, notify observers).

    DISCONNECTED ──connect──▶ CONNECTING ──open──▶ AWAITING_CHALLENGE
         ▲                        │                       │ challenge
         │ failed/closed/         ▼ failed                ▼
         │ rejected          DISCONNECTED           AUTHENTICATING
         │                                                │ hello-ok
         └──────────────── closed ◀── CONNECTED ◀─────────┘

Inputs that are not valid in the current state yield None: the session
ignores them and nothing changes.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional


class SessionState(str, Enum):
    DISCONNECTED       = "disconnected"
    CONNECTING         = "connecting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AUTHENTICATING     = "authenticating"
    CONNECTED          = "connected"


class SessionInput(str, Enum):
    CONNECT_REQUESTED    = "connect_requested"
    TRANSPORT_OPENED     = "transport_opened"
    TRANSPORT_FAILED     = "transport_failed"
    CHALLENGE_RECEIVED   = "challenge_received"
    HELLO_OK             = "hello_ok"
    HELLO_REJECTED       = "hello_rejected"
    TRANSPORT_CLOSED     = "transport_closed"
    DISCONNECT_REQUESTED = "disconnect_requested"


class Effect(str, Enum):
    OPEN_TRANSPORT     = "open_transport"
    SEND_HANDSHAKE     = "send_handshake"
    MARK_CONNECTED     = "mark_connected"
    CANCEL_PENDING     = "cancel_pending"
    CLOSE_TRANSPORT    = "close_transport"
    SCHEDULE_RECONNECT = "schedule_reconnect"
    CANCEL_RECONNECT   = "cancel_reconnect"
    NOTIFY_CONNECT     = "notify_connect"
    NOTIFY_DISCONNECT  = "notify_disconnect"


@dataclass(frozen=True)
class Transition:
    next_state: SessionState
    effects: tuple[Effect, ...] = ()


_LIVE_STATES = frozenset({
    SessionState.CONNECTING,
    SessionState.AWAITING_CHALLENGE,
    SessionState.AUTHENTICATING,
    SessionState.CONNECTED,
})

_LOST = (
    Effect.CANCEL_PENDING,
    Effect.CLOSE_TRANSPORT,
    Effect.NOTIFY_DISCONNECT,
    Effect.SCHEDULE_RECONNECT,
)

_TABLE: dict[tuple[SessionState, SessionInput], Transition] = {
    (SessionState.DISCONNECTED, SessionInput.CONNECT_REQUESTED):
        Transition(SessionState.CONNECTING, (Effect.CANCEL_RECONNECT, Effect.OPEN_TRANSPORT)),
    (SessionState.CONNECTING, SessionInput.TRANSPORT_OPENED):
        Transition(SessionState.AWAITING_CHALLENGE),
    (SessionState.CONNECTING, SessionInput.TRANSPORT_FAILED):
        Transition(SessionState.DISCONNECTED, (Effect.NOTIFY_DISCONNECT, Effect.SCHEDULE_RECONNECT)),
    (SessionState.AWAITING_CHALLENGE, SessionInput.CHALLENGE_RECEIVED):
        Transition(SessionState.AUTHENTICATING, (Effect.SEND_HANDSHAKE,)),
    (SessionState.AUTHENTICATING, SessionInput.HELLO_OK):
        Transition(SessionState.CONNECTED, (Effect.MARK_CONNECTED, Effect.NOTIFY_CONNECT)),
    (SessionState.AUTHENTICATING, SessionInput.HELLO_REJECTED):
        Transition(SessionState.DISCONNECTED, _LOST),
}


def transition(state: SessionState, event: SessionInput) -> Optional[Transition]:
    """Return the transition for (state, event), or None if event is ignored there."""
    found = _TABLE.get((state, event))
    if found is not None:
        return found

    if event in (SessionInput.TRANSPORT_CLOSED, SessionInput.TRANSPORT_FAILED) and state in _LIVE_STATES:
        return Transition(SessionState.DISCONNECTED, _LOST)

    if event is SessionInput.DISCONNECT_REQUESTED:
        if state in _LIVE_STATES:
            return Transition(
                SessionState.DISCONNECTED,
                (Effect.CANCEL_RECONNECT, Effect.CANCEL_PENDING, Effect.CLOSE_TRANSPORT, Effect.NOTIFY_DISCONNECT),
            )
        return Transition(SessionState.DISCONNECTED, (Effect.CANCEL_RECONNECT, Effect.CANCEL_PENDING))

    return None


# ─────────────────────────────────────────────────────────────────────────────
# Observable snapshot
# ─────────────────────────────────────────────────────────────────────────────

class ConnectionStatus(str, Enum):
    CONNECTED    = "connected"
    CONNECTING   = "connecting"
    DISCONNECTED = "disconnected"


def status_for(state: SessionState) -> ConnectionStatus:
    if state is SessionState.CONNECTED:
        return ConnectionStatus.CONNECTED
    if state is SessionState.DISCONNECTED:
        return ConnectionStatus.DISCONNECTED
    return ConnectionStatus.CONNECTING


@dataclass(frozen=True)
class ConnectionState:
    """Read-only snapshot handed to callers; the session keeps the only live copy."""
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_error: Optional[str] = None
    last_connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None

    def evolve(self, **changes) -> "ConnectionState":
        return replace(self, **changes)
