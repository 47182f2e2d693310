"""
Session — one attempt at holding a live connection.

A Session owns its transport, every listener subscription registered on
that transport, and every timer and task scheduled on its behalf. When
the Cleanup Routine tears it down, everything it owns goes with it; no
resource is ever handed over to the next Session.
"""

import asyncio
import itertools
import logging
from typing import Any, Callable, Coroutine, List, Optional, Set

from game.transport import GameTransport, Subscription, TransportEvent

logger = logging.getLogger("Session")

_session_ids = itertools.count(1)


class Session:
    """Owned state for one connection attempt.

    Usage:
        session = Session(transport)
        session.subscribe(TransportEvent.SPAWN, on_spawn)
        session.call_later(2.0, run_sequence)
        session.spawn_task(transport.open())
        ...
        await cleanup_session(session)   # see game/cleanup.py
    """

    def __init__(
        self,
        transport: GameTransport,
        on_task_error: Optional[Callable[[BaseException], None]] = None,
    ):
        self.session_id: int = next(_session_ids)
        self.transport = transport
        self.ready: bool = False
        self.tasks_initialized: bool = False
        self.destroyed: bool = False
        self.background: Any = None  # BackgroundTasks, set once tasks initialize
        self._subscriptions: List[Subscription] = []
        self._timers: Set[asyncio.TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._on_task_error = on_task_error

    def __repr__(self) -> str:
        return (
            f"<Session #{self.session_id} ready={self.ready} "
            f"tasks={self.tasks_initialized} destroyed={self.destroyed}>"
        )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, event: TransportEvent, handler: Callable) -> Subscription:
        sub = self.transport.events.subscribe(event, handler)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe_all(self) -> int:
        """Detach every listener this session registered. Returns the count removed."""
        removed = 0
        for sub in self._subscriptions:
            if sub.unsubscribe():
                removed += 1
        self._subscriptions.clear()
        return removed

    @property
    def listener_count(self) -> int:
        return sum(1 for sub in self._subscriptions if sub.active)

    # ------------------------------------------------------------------
    # Timers & tasks
    # ------------------------------------------------------------------

    def call_later(self, delay: float, callback: Callable, *args) -> asyncio.TimerHandle:
        """Schedule a callback owned by this session."""
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def _fire():
            self._timers.discard(handle)
            callback(*args)

        handle = loop.call_later(delay, _fire)
        self._timers.add(handle)
        return handle

    def cancel_timer(self, handle: Optional[asyncio.TimerHandle]) -> None:
        if handle is None:
            return
        handle.cancel()
        self._timers.discard(handle)

    def spawn_task(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """Run a coroutine as a task owned by this session."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Session #{self.session_id} task {task.get_name()} failed: {exc}", exc_info=exc)
            if self._on_task_error and not self.destroyed:
                self._on_task_error(exc)

    def cancel_timers(self) -> int:
        """Cancel every pending timer and running task. Returns the count cancelled."""
        cancelled = 0
        for handle in list(self._timers):
            handle.cancel()
            cancelled += 1
        self._timers.clear()

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is current:
                continue
            if not task.done():
                task.cancel()
                cancelled += 1
            self._tasks.discard(task)
        return cancelled

    @property
    def timer_count(self) -> int:
        return len(self._timers) + sum(1 for t in self._tasks if not t.done())
