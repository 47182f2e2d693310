"""
Interaction Sequencer — open a server-side window, find a marker, click it.

Two flows share one protocol:

  EMERALD  select hotbar slot 4, activate the held item (the server
           selector compass), click the emerald in the menu that opens.
  ACCEPT   send /tpaaccept, click the lime glass pane in the confirm menu.

Both clicks make the proxy move us to another backend server, which looks
like a disconnect from here. The sequencer raises the expected-transfer
signal *before* the click so the terminal-event handler, which may run
synchronously inside the click, already sees it.

The "window opened" listener is a one-shot WindowWait:

    Armed ──window_open──▶ Fired
      │  └──timeout──────▶ TimedOut
      └────cancel()──────▶ Cancelled

All three paths resolve the same future; whichever arrives first wins and
the others are no-ops. Every exit path deregisters the listener and the
timer.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from game.config import GameConfig
from game.session import Session
from game.transport import Item, TransportEvent, Window

logger = logging.getLogger("InteractionSequencer")


class SequenceKind(str, Enum):
    EMERALD = "emerald"
    ACCEPT = "accept"


class SequenceOutcome(str, Enum):
    CLICKED = "clicked"
    MARKER_NOT_FOUND = "marker_not_found"
    TIMED_OUT = "timed_out"
    UNAVAILABLE = "unavailable"
    CLICK_FAILED = "click_failed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class SequenceResult:
    kind: SequenceKind
    outcome: SequenceOutcome
    slot: Optional[int] = None
    detail: str = ""

    @property
    def clicked(self) -> bool:
        return self.outcome == SequenceOutcome.CLICKED


@dataclass(frozen=True)
class MarkerSpec:
    """Case-sensitive substrings matched against an item's name / display name."""

    name_substrings: Tuple[str, ...]
    display_substrings: Tuple[str, ...]
    expects_transfer: bool = True

    def matches(self, item: Optional[Item]) -> bool:
        if item is None:
            return False
        name = item.name or ""
        display = item.display_name or ""
        return (
            any(s in name for s in self.name_substrings)
            or any(s in display for s in self.display_substrings)
        )


MARKERS: Dict[SequenceKind, MarkerSpec] = {
    SequenceKind.EMERALD: MarkerSpec(("emerald",), ("Emerald",)),
    # lime_dye, lime_stained_glass_pane, "Lime Stained Glass"
    SequenceKind.ACCEPT: MarkerSpec(("lime",), ("Lime",)),
}


def find_marker_slot(slots: List[Optional[Item]], spec: MarkerSpec) -> Optional[int]:
    """Index of the first slot holding a marker item, or None."""
    for index, item in enumerate(slots or []):
        if spec.matches(item):
            return index
    return None


class WaitState(str, Enum):
    ARMED = "armed"
    FIRED = "fired"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class WindowWait:
    """One-shot wait for the next window_open on a session."""

    def __init__(self, session: Session, timeout: float):
        self.state = WaitState.ARMED
        self._session = session
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._subscription = session.subscribe(TransportEvent.WINDOW_OPEN, self._on_window_open)
        self._timer = session.call_later(timeout, self._on_timeout)

    @property
    def armed(self) -> bool:
        return self.state == WaitState.ARMED

    def _on_window_open(self, window: Window):
        if not self.armed:
            return
        self.state = WaitState.FIRED
        self._finish(window)

    def _on_timeout(self):
        if not self.armed:
            return
        self.state = WaitState.TIMED_OUT
        self._finish(None)

    def cancel(self):
        if not self.armed:
            return
        self.state = WaitState.CANCELLED
        self._finish(None)

    def _finish(self, window: Optional[Window]):
        self._subscription.unsubscribe()
        self._session.cancel_timer(self._timer)
        if not self._future.done():
            self._future.set_result(window)

    async def wait(self) -> Optional[Window]:
        """The opened window, or None on timeout/cancel."""
        try:
            return await self._future
        finally:
            self.cancel()


class InteractionSequencer:
    """Runs the scripted window interactions against a live session.

    Args:
        config: Timings and the hotbar slot to select.
        on_transfer_expected: Called right before a marker click that the
            server answers with a transfer.
    """

    def __init__(self, config: GameConfig, on_transfer_expected: Callable[[], None]):
        self.config = config
        self._on_transfer_expected = on_transfer_expected

    async def run(self, session: Session, kind) -> SequenceResult:
        """Run one sequence. Never raises except on task cancellation."""
        kind = SequenceKind(kind)
        tag = kind.value.upper()
        transport = session.transport

        if session.destroyed or not transport.is_alive or not transport.has_player:
            logger.info(f"[{tag}] Player not available, skipping")
            return SequenceResult(kind, SequenceOutcome.UNAVAILABLE)

        wait: Optional[WindowWait] = None
        try:
            if kind == SequenceKind.EMERALD:
                await transport.select_hotbar_slot(self.config.hotbar_slot)
                logger.info(f"[{tag}] Hotbar slot {self.config.hotbar_slot} selected")

            wait = WindowWait(session, self.config.window_timeout)

            if kind == SequenceKind.EMERALD:
                await asyncio.sleep(self.config.activate_delay)
                await transport.activate_item()
            else:
                await transport.chat("/tpaaccept")
            logger.info(f"[{tag}] Trigger sent, waiting for window")

            window = await wait.wait()
            if window is None:
                logger.warning(f"[{tag}] No window opened within {self.config.window_timeout}s")
                return SequenceResult(kind, SequenceOutcome.TIMED_OUT)

            logger.info(f"[{tag}] Window opened: type={window.type} title={window.title or 'N/A'} slots={len(window.slots)}")
            await asyncio.sleep(self.config.window_settle)

            slot = find_marker_slot(window.slots, MARKERS[kind])
            if slot is None:
                logger.warning(f"[{tag}] No marker item in window")
                return SequenceResult(kind, SequenceOutcome.MARKER_NOT_FOUND)

            if MARKERS[kind].expects_transfer:
                self._on_transfer_expected()

            logger.info(f"[{tag}] Clicking marker in slot {slot}")
            try:
                await transport.click_window(slot, 0, 0)
            except Exception as e:
                logger.warning(f"[{tag}] Click failed: {e}")
                return SequenceResult(kind, SequenceOutcome.CLICK_FAILED, slot, str(e))

            # A transfer ends the session right after the click; the close
            # is a session timer so that teardown cancels it.
            if transport.is_alive and not session.destroyed:
                session.call_later(self.config.close_delay, self._close_after_click, session, tag)
            return SequenceResult(kind, SequenceOutcome.CLICKED, slot)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{tag}] Sequence failed: {e}", exc_info=True)
            return SequenceResult(kind, SequenceOutcome.FAILED, detail=str(e))
        finally:
            if wait is not None:
                wait.cancel()

    def _close_after_click(self, session: Session, tag: str):
        transport = session.transport
        current = transport.current_window
        if session.destroyed or not transport.is_alive or not transport.has_player or current is None:
            return
        session.spawn_task(self._close_window(transport, current, tag), name=f"{tag.lower()}-close")

    async def _close_window(self, transport, window, tag: str):
        logger.info(f"[{tag}] Closing window")
        try:
            await transport.close_window(window)
        except Exception as e:
            logger.debug(f"[{tag}] Close after click failed: {e}")
