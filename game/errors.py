"""
Game Connection Error Types — Structured exception hierarchy.

Lets the connection state machine tell a handshake that never completed
(fixed retry) apart from a transport that dropped mid-session (backoff),
and lets outbound actions fail loudly when the session is already gone.
"""


class GameError(Exception):
    """Base class for all game connection errors."""
    pass


class TransportError(GameError):
    """Relay is unreachable or the socket failed mid-session. Retryable."""
    pass


class TransportClosedError(TransportError):
    """An action was attempted on a transport that is already closed. Retryable on a new session."""
    pass


class TransportTimeoutError(TransportError):
    """The relay did not answer a request in time. Retryable."""
    pass


class SessionCreationError(GameError):
    """The transport could not be created or the handshake failed. Retried on a fixed delay."""
    pass
