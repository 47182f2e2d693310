"""
Connection State Machine — keeps exactly one live game session.

States:

    IDLE ──request_connect──▶ CONNECTING ──spawn──▶ ONLINE
                                 │                    │
                 kicked/error/end│  creation failure  │kicked/error/end
                                 ▼                    ▼   liveness / fault
                              CLEANING_UP ◀───────────┘
                                 │ cleanup awaited
                                 ▼
                              BACKOFF ──timer──▶ CONNECTING
                                 │
                    manual stop  ▼
                               IDLE

The state tag is the only serialization: every handler checks it (and
that the event came from the current Session) before acting. Terminal
events consume the expected-transfer flag synchronously, then hand the
teardown to a machine-owned transition task that awaits the Cleanup
Routine before any new Session can be created.

Usage:
    machine = ConnectionStateMachine(config, RelayTransport.factory, listener=bridge)
    machine.request_connect()
    ...
    await machine.request_manual_stop()
"""

import asyncio
import logging
import random
import time
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, Optional, Set

from game.background import BackgroundTasks
from game.backoff import backoff_delay
from game.chat_parser import clean_chat_line, describe_reason, is_server_confirmation, parse_payment
from game.cleanup import cleanup_session
from game.config import GameConfig
from game.errors import GameError
from game.sequencer import InteractionSequencer, SequenceKind, SequenceOutcome, SequenceResult
from game.session import Session
from game.transport import GameTransport, TransportEvent
from tools.rate_limiter import RateLimiter

logger = logging.getLogger("ConnectionStateMachine")

TransportFactory = Callable[[GameConfig], GameTransport]


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ONLINE = "online"
    CLEANING_UP = "cleaning_up"
    BACKOFF = "backoff"


class DisconnectCause(str, Enum):
    KICKED = "kicked"
    ERROR = "error"
    ENDED = "ended"


_TERMINAL_EVENTS = {
    TransportEvent.KICKED: DisconnectCause.KICKED,
    TransportEvent.ERROR: DisconnectCause.ERROR,
    TransportEvent.END: DisconnectCause.ENDED,
}


class ConnectionListener:
    """Notification surface for the chat/economy layer. Override what you need."""

    async def on_chat_line(self, text: str) -> None:
        pass

    async def on_payment_detected(self, sender: str, amount: float) -> None:
        pass

    async def on_server_confirmed(self) -> None:
        pass

    async def on_connection_state_changed(self, state: ConnectionState) -> None:
        pass

    async def on_auth_required(self, uri: str, code: str) -> None:
        pass


class ConnectionStateMachine:
    """Owns the connection lifecycle. One instance per process."""

    def __init__(
        self,
        config: GameConfig,
        transport_factory: TransportFactory,
        listener: Optional[ConnectionListener] = None,
        sequencer: Optional[InteractionSequencer] = None,
        clock: Callable[[], float] = time.monotonic,
        chat_limiter: Optional[RateLimiter] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self._factory = transport_factory
        self.listener = listener or ConnectionListener()
        self.sequencer = sequencer or InteractionSequencer(config, self.mark_transfer_expected)
        self._clock = clock
        self.chat_limiter = chat_limiter or RateLimiter(max_tokens=4, refill_rate=1.0, name="game-chat")
        self._rng = rng or random.Random()

        self.state = ConnectionState.IDLE
        self.session: Optional[Session] = None
        self.expected_disconnect = False
        self.attempts = 0
        self.manual_stop = False
        self.last_success: Optional[float] = None
        self.last_delay: Optional[float] = None
        self.last_disconnect: Optional[str] = None
        self.sessions_created = 0
        self.started_at = clock()

        self._backoff_timer: Optional[asyncio.TimerHandle] = None
        self._transition: Optional[asyncio.Task] = None
        self._notify_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State plumbing
    # ------------------------------------------------------------------

    def _set_state(self, new_state: ConnectionState):
        self._cancel_backoff()
        if new_state == self.state:
            return
        old_state = self.state
        self.state = new_state
        logger.info(f"{old_state.value} → {new_state.value}")
        self._notify(self.listener.on_connection_state_changed(new_state))

    def _cancel_backoff(self):
        if self._backoff_timer is not None:
            self._backoff_timer.cancel()
            self._backoff_timer = None

    def _notify(self, coro: Coroutine):
        """Run a listener callback as a machine-owned task."""
        task = asyncio.get_running_loop().create_task(coro)
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_done)

    def _notify_done(self, task: asyncio.Task):
        self._notify_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Listener notification failed: {exc}", exc_info=exc)

    def _start_transition(self, coro: Coroutine):
        task = asyncio.get_running_loop().create_task(coro, name="connection-transition")
        self._transition = task
        task.add_done_callback(self._transition_done)

    def _transition_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Transition failed: {exc}", exc_info=exc)

    async def wait_for_transition(self):
        """Wait until no cleanup transition is in flight."""
        while self._transition is not None and not self._transition.done():
            await asyncio.wait({self._transition})

    def _is_current(self, session: Optional[Session]) -> bool:
        return session is not None and session is self.session and not session.destroyed

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------

    def request_connect(self, manual: bool = False) -> bool:
        """Start a session if none is live.

        A manual request clears a previous manual stop and cuts a pending
        backoff short. Returns True if a connect was started.
        """
        if manual:
            self.manual_stop = False
        elif self.manual_stop:
            logger.debug("Connect ignored: manually stopped")
            return False

        if self.state == ConnectionState.BACKOFF and manual:
            logger.info("Manual connect, skipping remaining backoff")
            self._connect()
            return True

        if self.state != ConnectionState.IDLE or self.session is not None:
            logger.debug(f"Connect ignored in state {self.state.value}")
            return False

        self._connect()
        return True

    def _connect(self):
        if self.session is not None and not self.session.destroyed:
            logger.error(f"Refusing to create a session while #{self.session.session_id} is live")
            return

        self._set_state(ConnectionState.CONNECTING)
        try:
            transport = self._factory(self.config)
        except Exception as e:
            self._creation_failed(None, e)
            return

        session = Session(transport, on_task_error=lambda exc: self._on_session_fault(session, exc))
        self.session = session
        self.sessions_created += 1
        logger.info(f"Connecting (session #{session.session_id}, attempt {self.attempts})")

        session.subscribe(TransportEvent.SPAWN, lambda reason=None: self._on_spawn(session, reason))
        for event, cause in _TERMINAL_EVENTS.items():
            session.subscribe(event, self._terminal_handler(session, cause))
        session.subscribe(TransportEvent.MESSAGE, lambda text: self._on_message(session, text))
        session.subscribe(TransportEvent.LOGIN, lambda *_: logger.info(f"Logged in (session #{session.session_id})"))
        session.subscribe(TransportEvent.AUTH_CODE, lambda uri, code: self._on_auth_code(session, uri, code))

        session.spawn_task(self._open(session), name=f"open-{session.session_id}")

    def _terminal_handler(self, session: Session, cause: DisconnectCause):
        def handler(detail=None):
            self._on_terminal(session, cause, detail)
        return handler

    async def _open(self, session: Session):
        try:
            await session.transport.open()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._is_current(session) and self.state == ConnectionState.CONNECTING:
                self._creation_failed(session, e)

    def _creation_failed(self, session: Optional[Session], exc: BaseException):
        logger.error(f"Session creation failed: {exc}")
        self._set_state(ConnectionState.CLEANING_UP)
        self._start_transition(self._teardown_and_retry(
            session, "creation failed", delay=self.config.creation_retry_delay,
        ))

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    def notify_spawned(self, reason: Optional[str] = None):
        self._on_spawn(self.session, reason)

    def notify_disconnected(self, cause: DisconnectCause, detail: Any = None):
        self._on_terminal(self.session, DisconnectCause(cause), detail)

    def _on_spawn(self, session: Optional[Session], reason=None):
        if not self._is_current(session):
            logger.debug("Ignoring spawn from stale session")
            return
        if self.state == ConnectionState.ONLINE:
            logger.info(f"Respawned ({reason or 'respawn'}), staying online")
            return
        if self.state != ConnectionState.CONNECTING:
            logger.debug(f"Ignoring spawn in state {self.state.value}")
            return

        self._set_state(ConnectionState.ONLINE)
        self.attempts = 0
        self.last_success = self._clock()
        session.ready = True
        self.chat_limiter.reset()
        logger.info(f"Spawned as {session.transport.username or self.config.username}")

        if self.config.spawn_sequence:
            session.call_later(self.config.sequence_delay, self._start_spawn_sequence, session)
        session.call_later(self.config.settle_delay, self._initialize_tasks, session)

    def _start_spawn_sequence(self, session: Session):
        if not self._is_current(session):
            return
        kind = SequenceKind(self.config.spawn_sequence)
        session.spawn_task(self.sequencer.run(session, kind), name=f"{kind.value}-sequence")

    def _initialize_tasks(self, session: Session):
        if not self._is_current(session) or session.tasks_initialized:
            return
        if not session.transport.has_player:
            logger.warning("Player not available, background tasks not started")
            return
        session.tasks_initialized = True
        session.background = BackgroundTasks(session, self.config)
        session.background.start()

    def _on_terminal(self, session: Optional[Session], cause: DisconnectCause, detail=None):
        if not self._is_current(session):
            logger.debug(f"Ignoring {cause.value} from stale session")
            return
        if self.state not in (ConnectionState.CONNECTING, ConnectionState.ONLINE):
            logger.debug(f"Ignoring {cause.value} in state {self.state.value}")
            return

        expected = self.expected_disconnect
        self.expected_disconnect = False
        reason = describe_reason(detail)
        self.last_disconnect = f"{cause.value}: {reason}" if reason else cause.value

        if expected:
            logger.info(f"Disconnected ({self.last_disconnect}), expected server transfer")
        else:
            logger.warning(f"Disconnected ({self.last_disconnect})")

        self._set_state(ConnectionState.CLEANING_UP)
        self._start_transition(self._teardown_and_retry(session, cause.value, expected=expected))

    def _on_message(self, session: Session, text):
        if not self._is_current(session):
            return
        message = str(text)

        payment = parse_payment(message)
        if payment is not None and payment.amount > 0:
            logger.info(f"Payment detected from {payment.sender}: {payment.amount}")
            self._notify(self.listener.on_payment_detected(payment.sender, payment.amount))

        if session.tasks_initialized:
            cleaned = clean_chat_line(message)
            if cleaned:
                self._notify(self.listener.on_chat_line(cleaned))
            return

        if is_server_confirmation(message, self.config.target_server):
            logger.info(f"Confirmed arrival on {self.config.target_server}, initializing tasks")
            self.expected_disconnect = False
            self._notify(self.listener.on_server_confirmed())
            session.call_later(self.config.confirm_delay, self._initialize_tasks, session)

    def _on_auth_code(self, session: Session, uri: str, code: str):
        if not self._is_current(session):
            return
        logger.warning(f"Authentication required: {uri} code {code}")
        self._notify(self.listener.on_auth_required(uri, code))

    def mark_transfer_expected(self):
        """Flag the next terminal event as a deliberate server transfer."""
        self.expected_disconnect = True
        logger.info("Expecting server transfer")

    # ------------------------------------------------------------------
    # Teardown & retry
    # ------------------------------------------------------------------

    async def _teardown_and_retry(
        self,
        session: Optional[Session],
        reason: str,
        expected: bool = False,
        delay: Optional[float] = None,
    ):
        await cleanup_session(session, reason, self.config.quit_timeout)
        if self.session is session:
            self.session = None

        if self.state != ConnectionState.CLEANING_UP:
            logger.debug(f"State moved to {self.state.value} during cleanup")
            return
        if self.manual_stop:
            self._set_state(ConnectionState.IDLE)
            return

        if delay is None:
            delay = self._disconnect_delay(expected)
        self._schedule_reconnect(delay)

    def _disconnect_delay(self, expected: bool) -> float:
        if expected:
            low, high = self.config.expected_delay_min, self.config.expected_delay_max
            return low + self._rng.random() * (high - low)
        delay, self.attempts = backoff_delay(self.attempts, self.config.backoff)
        return delay

    def _schedule_reconnect(self, delay: float):
        self._set_state(ConnectionState.BACKOFF)
        self.last_delay = delay
        logger.info(f"Reconnecting in {delay:.1f}s (attempt {self.attempts})")
        self._backoff_timer = asyncio.get_running_loop().call_later(delay, self._on_backoff_elapsed)

    def _on_backoff_elapsed(self):
        self._backoff_timer = None
        if self.state != ConnectionState.BACKOFF:
            return
        if self.manual_stop:
            self._set_state(ConnectionState.IDLE)
            return
        self._connect()

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def request_manual_stop(self) -> bool:
        """Disconnect and stay idle until a manual connect. Safe to call repeatedly."""
        self.manual_stop = True
        self._cancel_backoff()

        if self.state == ConnectionState.CLEANING_UP:
            await self.wait_for_transition()
            return True
        if self.state == ConnectionState.IDLE and self.session is None:
            return False

        logger.info("Manual stop requested")
        session = self.session
        self.expected_disconnect = False
        self._set_state(ConnectionState.CLEANING_UP)
        self._start_transition(self._teardown_and_retry(session, "manual stop"))
        await self.wait_for_transition()
        return True

    def force_reconnect(self, reason: str = "liveness check failed") -> bool:
        """Tear the current session down and reconnect after a fixed delay."""
        if self.manual_stop or self.state == ConnectionState.CLEANING_UP:
            return False
        logger.warning(f"Forcing reconnect: {reason}")
        session = self.session
        self.expected_disconnect = False
        self._set_state(ConnectionState.CLEANING_UP)
        self._start_transition(self._teardown_and_retry(
            session, reason, delay=self.config.liveness_retry_delay,
        ))
        return True

    def _on_session_fault(self, session: Session, exc: BaseException):
        if self._is_current(session):
            self.recover_from_fault(exc)

    def recover_from_fault(self, exc: Optional[BaseException] = None) -> bool:
        """Forced cleanup plus a fixed-delay reconnect after an uncaught fault."""
        if self.manual_stop:
            logger.error(f"Fault while stopped, not recovering: {exc}")
            return False
        if self.state == ConnectionState.CLEANING_UP:
            logger.debug(f"Fault during cleanup, transition already in flight: {exc}")
            return False
        logger.error(f"Uncaught fault, recovering in {self.config.fault_retry_delay}s: {exc}")
        session = self.session
        self.expected_disconnect = False
        self._set_state(ConnectionState.CLEANING_UP)
        self._start_transition(self._teardown_and_retry(
            session, "fault recovery", delay=self.config.fault_retry_delay,
        ))
        return True

    def handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]):
        """asyncio exception handler: log, then recover the connection."""
        exc = context.get("exception")
        if exc is None or isinstance(exc, asyncio.CancelledError):
            loop.default_exception_handler(context)
            return
        logger.error(context.get("message", "Unhandled exception in event loop"), exc_info=exc)
        self.recover_from_fault(exc)

    def is_online_and_ready(self) -> bool:
        session = self.session
        return (
            self.state == ConnectionState.ONLINE
            and self._is_current(session)
            and session.ready
            and session.transport.is_alive
            and session.transport.has_player
        )

    def has_live_player(self) -> bool:
        session = self.session
        return (
            self._is_current(session)
            and session.transport.is_alive
            and session.transport.has_player
        )

    async def run_interaction_sequence(self, kind) -> SequenceResult:
        """Run a sequence on the live session and wait for its result."""
        kind = SequenceKind(kind)
        if not self.is_online_and_ready():
            return SequenceResult(kind, SequenceOutcome.UNAVAILABLE)

        session = self.session
        task = session.spawn_task(self.sequencer.run(session, kind), name=f"{kind.value}-command")
        await asyncio.wait({task})
        if task.cancelled():
            return SequenceResult(kind, SequenceOutcome.ABORTED, detail="session ended")
        if task.exception() is not None:
            return SequenceResult(kind, SequenceOutcome.FAILED, detail=str(task.exception()))
        return task.result()

    async def send_chat(self, text: str) -> bool:
        """Throttled chat on the live session. False if not ready or the send failed."""
        if not self.is_online_and_ready():
            return False
        await self.chat_limiter.acquire()
        session = self.session
        if not self.is_online_and_ready():
            return False
        try:
            await session.transport.chat(text)
        except GameError as e:
            logger.warning(f"Chat send failed: {e}")
            return False
        return True

    @property
    def online_for(self) -> Optional[float]:
        """Seconds since the last successful spawn while online."""
        if self.state != ConnectionState.ONLINE or self.last_success is None:
            return None
        return self._clock() - self.last_success

    def get_status(self) -> Dict[str, Any]:
        session = self.session
        return {
            "state": self.state.value,
            "ready": self.is_online_and_ready(),
            "attempts": self.attempts,
            "manual_stop": self.manual_stop,
            "expected_disconnect": self.expected_disconnect,
            "session_id": session.session_id if session else None,
            "tasks_initialized": bool(session and session.tasks_initialized),
            "username": session.transport.username if session else None,
            "last_delay": self.last_delay,
            "last_disconnect": self.last_disconnect,
            "online_for": self.online_for,
            "sessions_created": self.sessions_created,
            "process_uptime": self._clock() - self.started_at,
        }

    async def shutdown(self):
        """Stop the connection and let pending notifications finish."""
        await self.request_manual_stop()
        if self._notify_tasks:
            await asyncio.wait(set(self._notify_tasks), timeout=self.config.quit_timeout)
