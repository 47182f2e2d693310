"""
Background task set — anti-idle nudges and periodic view capture.

Started once per session after the settle delay, torn down by the Cleanup
Routine. Both loops run as session-owned tasks, so cancelling the session's
tasks stops them even if stop() is never called.
"""

import asyncio
import logging
import random
from pathlib import Path
from typing import Optional

from game.config import GameConfig
from game.session import Session

logger = logging.getLogger("BackgroundTasks")

NUDGE_PROBABILITY = 0.3
SNEAK_PROBABILITY = 0.1
SNEAK_HOLD = 0.05
LOOK_YAW_JITTER = 0.01
LOOK_PITCH_JITTER = 0.005


class BackgroundTasks:
    """Anti-idle loop plus optional capture loop for one session."""

    def __init__(self, session: Session, config: GameConfig, rng: Optional[random.Random] = None):
        self.session = session
        self.config = config
        self.rng = rng or random.Random()
        self._action_index = 0
        self._tasks = []
        self.started = False

    def start(self):
        if self.started:
            return
        self.started = True
        self._tasks.append(self.session.spawn_task(self._anti_idle_loop(), name="anti-idle"))
        if self.config.capture_path:
            self._tasks.append(self.session.spawn_task(self._capture_loop(), name="capture"))
        logger.info(f"Background tasks started for session #{self.session.session_id}")

    def stop(self):
        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()
        if self.started:
            logger.info(f"Background tasks stopped for session #{self.session.session_id}")
        self.started = False

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def _usable(self) -> bool:
        return (
            not self.session.destroyed
            and self.session.tasks_initialized
            and self.session.transport.has_player
        )

    # ------------------------------------------------------------------
    # Anti-idle
    # ------------------------------------------------------------------

    async def _anti_idle_loop(self):
        while True:
            await asyncio.sleep(self.config.anti_idle_interval)
            if not self._usable():
                logger.info("Anti-idle: session not ready, stopping")
                return
            if self.rng.random() < NUDGE_PROBABILITY:
                await self.nudge()

    async def nudge(self):
        """Run the next of the two alternating nudges."""
        action = self._look if self._action_index % 2 == 0 else self._sneak
        self._action_index += 1
        try:
            await action()
        except Exception as e:
            logger.warning(f"Anti-idle {action.__name__.strip('_')} failed: {e}")

    async def _look(self):
        yaw = self.rng.random() * 2 * LOOK_YAW_JITTER - LOOK_YAW_JITTER
        pitch = self.rng.random() * 2 * LOOK_PITCH_JITTER - LOOK_PITCH_JITTER
        await self.session.transport.look(yaw, pitch)

    async def _sneak(self):
        if self.rng.random() >= SNEAK_PROBABILITY:
            return
        transport = self.session.transport
        await transport.set_control_state("sneak", True)
        await asyncio.sleep(SNEAK_HOLD)
        if transport.has_player:
            await transport.set_control_state("sneak", False)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def _capture_loop(self):
        path = Path(self.config.capture_path)
        while True:
            await asyncio.sleep(self.config.capture_interval)
            if not self._usable():
                continue
            await self.capture_once(path)

    async def capture_once(self, path: Path) -> bool:
        try:
            data = await self.session.transport.capture()
        except Exception as e:
            logger.warning(f"Capture failed: {e}")
            return False
        if not data:
            return False
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            logger.warning(f"Could not write capture to {path}: {e}")
            return False
        logger.debug(f"Capture saved to {path}")
        return True
