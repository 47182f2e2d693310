"""
Cleanup Routine — idempotent teardown of one Session.

Every step is best-effort and isolated: a failure in one step is logged
and the next step still runs. The session is marked destroyed on entry,
so a second call (even one that starts while the first is still awaiting
the graceful quit) is a no-op.
"""

import asyncio
import logging
from typing import Optional

from game.session import Session

logger = logging.getLogger("Cleanup")

DEFAULT_QUIT_TIMEOUT = 2.0


async def cleanup_session(
    session: Optional[Session],
    reason: str = "cleanup",
    quit_timeout: float = DEFAULT_QUIT_TIMEOUT,
) -> bool:
    """Tear down a session and everything it owns.

    Returns True if this call did the teardown, False if there was nothing
    to do (None or already destroyed).
    """
    if session is None or session.destroyed:
        return False
    session.destroyed = True
    logger.info(f"Cleaning up session #{session.session_id} ({reason})")

    try:
        if session.background is not None:
            session.background.stop()
    except Exception as e:
        logger.warning(f"Stopping background tasks failed: {e}")

    session.tasks_initialized = False
    session.ready = False

    try:
        cancelled = session.cancel_timers()
        if cancelled:
            logger.debug(f"Cancelled {cancelled} timers/tasks")
    except Exception as e:
        logger.warning(f"Cancelling timers failed: {e}")

    try:
        removed = session.unsubscribe_all()
        logger.debug(f"Removed {removed} listeners")
    except Exception as e:
        logger.warning(f"Removing listeners failed: {e}")

    transport = session.transport
    try:
        if transport.is_alive:
            transport.force_close()
    except Exception as e:
        logger.warning(f"Force-closing transport failed: {e}")

    try:
        await asyncio.wait_for(transport.quit(reason), timeout=quit_timeout)
    except asyncio.TimeoutError:
        logger.debug("Graceful quit timed out")
    except Exception as e:
        # Peer usually dropped already
        logger.debug(f"Graceful quit failed: {e}")

    return True
