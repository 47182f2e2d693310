"""
Liveness Monitor — reconciles what the state machine believes with what
the transport reports.

Catches two failure shapes that produce no terminal event:
  - a socket that half-closed silently while we think we are ONLINE
  - an initial connect that never happened (IDLE, no session, no attempts)
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Optional

from game.connection import ConnectionState, ConnectionStateMachine

logger = logging.getLogger("LivenessMonitor")


class MonitorAction(str, Enum):
    NONE = "none"
    RECONNECT = "reconnect"
    CONNECT = "connect"


_TRANSITIONING = (
    ConnectionState.CONNECTING,
    ConnectionState.CLEANING_UP,
    ConnectionState.BACKOFF,
)


class LivenessMonitor:
    """Periodic health check for a ConnectionStateMachine.

    Args:
        machine: The state machine to watch and correct.
        interval: Seconds between checks.
        grace: Seconds after a successful spawn during which checks are skipped.
        clock: Monotonic time source, shared with the machine.
    """

    def __init__(
        self,
        machine: ConnectionStateMachine,
        interval: float = 120.0,
        grace: float = 180.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.machine = machine
        self.interval = interval
        self.grace = grace
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self.checks_run = 0

    def check(self) -> MonitorAction:
        """One reconciliation pass."""
        self.checks_run += 1
        machine = self.machine

        if machine.manual_stop:
            return MonitorAction.NONE
        if machine.state in _TRANSITIONING:
            return MonitorAction.NONE
        if machine.last_success is not None and self._clock() - machine.last_success < self.grace:
            return MonitorAction.NONE

        session = machine.session
        if machine.state == ConnectionState.ONLINE and session is not None and session.tasks_initialized:
            if not session.transport.is_alive or not session.transport.has_player:
                logger.warning("Online but transport is dead, forcing reconnect")
                machine.force_reconnect("transport dead")
                return MonitorAction.RECONNECT
            return MonitorAction.NONE

        if session is None and machine.state == ConnectionState.IDLE and machine.attempts == 0:
            logger.warning("No session and nothing scheduled, connecting")
            if machine.request_connect():
                return MonitorAction.CONNECT

        return MonitorAction.NONE

    def start(self):
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="liveness-monitor")
        logger.info(f"Liveness monitor running every {self.interval:.0f}s")

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                action = self.check()
            except Exception as e:
                logger.error(f"Liveness check failed: {e}", exc_info=True)
                continue
            if action != MonitorAction.NONE:
                logger.info(f"Liveness check took action: {action.value}")
