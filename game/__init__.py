"""
Game connection core — one live session to the game server, kept alive.

The state machine, its session/cleanup primitives, the window interaction
sequencer and the liveness monitor. No Discord imports.
"""

from game.backoff import BackoffPolicy, backoff_delay
from game.config import GameConfig
from game.connection import (
    ConnectionListener,
    ConnectionState,
    ConnectionStateMachine,
    DisconnectCause,
)
from game.errors import (
    GameError,
    SessionCreationError,
    TransportClosedError,
    TransportError,
    TransportTimeoutError,
)
from game.monitor import LivenessMonitor, MonitorAction
from game.sequencer import InteractionSequencer, SequenceKind, SequenceOutcome, SequenceResult
from game.session import Session
from game.transport import GameTransport, Item, TransportEvent, Window

__all__ = [
    "BackoffPolicy",
    "backoff_delay",
    "GameConfig",
    "ConnectionListener",
    "ConnectionState",
    "ConnectionStateMachine",
    "DisconnectCause",
    "GameError",
    "SessionCreationError",
    "TransportClosedError",
    "TransportError",
    "TransportTimeoutError",
    "LivenessMonitor",
    "MonitorAction",
    "InteractionSequencer",
    "SequenceKind",
    "SequenceOutcome",
    "SequenceResult",
    "Session",
    "GameTransport",
    "Item",
    "TransportEvent",
    "Window",
]
