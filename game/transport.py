"""
Game Transport — the event surface and action set the connection core needs.

The core never talks to the game protocol directly. A transport owns one
connection to the server (through the relay) and exposes:

  Events:  login, spawn(reason), kicked(reason), error(err), end(reason),
           message(text), window_open(window), auth_code(uri, code)
  Actions: chat, select_hotbar_slot, activate_item, click_window,
           close_window, look, set_control_state, capture

Listeners are registered with subscribe(), which returns a Subscription.
Whoever subscribes owns the handle and must unsubscribe it; there is no
blanket "remove all listeners" call.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("Transport")


class TransportEvent(str, Enum):
    LOGIN = "login"
    SPAWN = "spawn"
    KICKED = "kicked"
    ERROR = "error"
    END = "end"
    MESSAGE = "message"
    WINDOW_OPEN = "window_open"
    AUTH_CODE = "auth_code"


@dataclass
class Item:
    """One stack in a window slot."""

    name: str
    display_name: str = ""
    count: int = 1


@dataclass
class Window:
    """A server-side container UI the client currently has open."""

    window_id: int
    type: str = ""
    title: Optional[str] = None
    slots: List[Optional[Item]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Window":
        slots: List[Optional[Item]] = []
        for raw in data.get("slots") or []:
            if not raw:
                slots.append(None)
                continue
            slots.append(Item(
                name=raw.get("name") or "",
                display_name=raw.get("displayName") or raw.get("display_name") or "",
                count=raw.get("count", 1),
            ))
        return cls(
            window_id=data.get("id", data.get("window_id", 0)),
            type=data.get("type", ""),
            title=data.get("title"),
            slots=slots,
        )


class Subscription:
    """Handle for one registered listener. unsubscribe() is idempotent."""

    def __init__(self, emitter: "EventEmitter", event: TransportEvent, handler: Callable):
        self._emitter = emitter
        self.event = event
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> bool:
        """Detach the handler. Returns False if it was already detached."""
        if not self._active:
            return False
        self._active = False
        self._emitter._remove(self)
        return True


class EventEmitter:
    """Synchronous event fan-out with explicit subscription handles.

    Handlers run in registration order. A handler that raises is logged
    and does not stop the others. Unsubscribing from inside a handler is
    safe because emit() iterates over a snapshot.
    """

    def __init__(self):
        self._subscriptions: Dict[TransportEvent, List[Subscription]] = {}

    def subscribe(self, event: TransportEvent, handler: Callable) -> Subscription:
        sub = Subscription(self, TransportEvent(event), handler)
        self._subscriptions.setdefault(sub.event, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.event, [])
        if sub in subs:
            subs.remove(sub)

    def emit(self, event: TransportEvent, *args) -> int:
        """Call every active handler for `event`. Returns how many ran."""
        called = 0
        for sub in list(self._subscriptions.get(TransportEvent(event), [])):
            if not sub.active:
                continue
            called += 1
            try:
                sub.handler(*args)
            except Exception as e:
                logger.error(f"Listener for '{sub.event.value}' raised: {e}", exc_info=True)
        return called

    def listener_count(self, event: Optional[TransportEvent] = None) -> int:
        if event is not None:
            return len(self._subscriptions.get(TransportEvent(event), []))
        return sum(len(subs) for subs in self._subscriptions.values())


class GameTransport(ABC):
    """One connection to the game server. Never shared between sessions."""

    def __init__(self):
        self.events = EventEmitter()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def open(self) -> None:
        """Start the connection. Raises SessionCreationError on handshake failure."""

    @abstractmethod
    def force_close(self) -> None:
        """Drop the connection immediately, without a protocol goodbye."""

    @abstractmethod
    async def quit(self, reason: str = "") -> None:
        """Graceful protocol-level disconnect and resource release."""

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """True while the underlying socket is open."""

    @property
    @abstractmethod
    def has_player(self) -> bool:
        """True once the server has given us a playable entity."""

    @property
    def username(self) -> Optional[str]:
        return None

    @property
    def current_window(self) -> Optional[Window]:
        return None

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    @abstractmethod
    async def chat(self, text: str) -> None: ...

    @abstractmethod
    async def select_hotbar_slot(self, slot: int) -> None: ...

    @abstractmethod
    async def activate_item(self) -> None: ...

    @abstractmethod
    async def click_window(self, slot: int, button: int = 0, mode: int = 0) -> None: ...

    @abstractmethod
    async def close_window(self, window: Window) -> None: ...

    async def look(self, yaw_delta: float, pitch_delta: float) -> None:
        """Nudge the view direction. Optional; default does nothing."""

    async def set_control_state(self, control: str, state: bool) -> None:
        """Press or release a movement control. Optional; default does nothing."""

    async def capture(self) -> Optional[bytes]:
        """Rendered view of the client as PNG bytes, or None if unsupported."""
        return None
