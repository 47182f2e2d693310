"""
Shared pytest fixtures for the game bridge test suite.

FakeTransport stands in for the relay: it records every call in an ordered
log and lets tests fire transport events by hand. Timings are shrunk through
GameConfig so lifecycle tests run in milliseconds.
"""

import asyncio
from typing import List, Optional

import pytest

from game.backoff import BackoffPolicy
from game.config import GameConfig
from game.connection import ConnectionListener
from game.errors import TransportClosedError
from game.transport import GameTransport, Item, TransportEvent, Window


# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------

class FakeTransport(GameTransport):
    """Scriptable in-memory transport.

    Knobs:
        open_error:        raised from open()
        window_on_activate / window_on_chat: emitted as window_open when the
                           sequencer triggers it
        kick_on_click:     emit kicked synchronously inside click_window
        click_error / quit_error: raised from those calls
        on_click:          callback(slot) run before the click is recorded
    """

    def __init__(self, log: Optional[list] = None):
        super().__init__()
        self.calls: list = log if log is not None else []
        self.alive = True
        self.player = False
        self.window: Optional[Window] = None
        self.open_error: Optional[Exception] = None
        self.click_error: Optional[Exception] = None
        self.quit_error: Optional[Exception] = None
        self.quit_hangs = False
        self.window_on_activate: Optional[Window] = None
        self.window_on_chat: Optional[Window] = None
        self.kick_on_click = False
        self.on_click = None
        self.capture_data: Optional[bytes] = None

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    # --- lifecycle ---

    async def open(self):
        self.calls.append(("open",))
        if self.open_error:
            raise self.open_error

    def force_close(self):
        self.calls.append(("force_close",))
        self.alive = False
        self.player = False

    async def quit(self, reason=""):
        self.calls.append(("quit", reason))
        if self.quit_hangs:
            await asyncio.sleep(3600)
        if self.quit_error:
            raise self.quit_error
        self.alive = False

    @property
    def is_alive(self):
        return self.alive

    @property
    def has_player(self):
        return self.alive and self.player

    @property
    def username(self):
        return "TestBot"

    @property
    def current_window(self):
        return self.window

    # --- actions ---

    def _require_alive(self, action):
        if not self.alive:
            raise TransportClosedError(f"{action} on closed transport")

    async def chat(self, text):
        self._require_alive("chat")
        self.calls.append(("chat", text))
        if self.window_on_chat is not None:
            self.open_window(self.window_on_chat)

    async def select_hotbar_slot(self, slot):
        self._require_alive("select_hotbar_slot")
        self.calls.append(("select_hotbar_slot", slot))

    async def activate_item(self):
        self._require_alive("activate_item")
        self.calls.append(("activate_item",))
        if self.window_on_activate is not None:
            self.open_window(self.window_on_activate)

    async def click_window(self, slot, button=0, mode=0):
        if self.on_click:
            self.on_click(slot)
        if self.click_error:
            raise self.click_error
        self.calls.append(("click_window", slot, button, mode))
        if self.kick_on_click:
            self.kick("transferring")

    async def close_window(self, window):
        self.calls.append(("close_window", window.window_id))
        self.window = None

    async def look(self, yaw_delta, pitch_delta):
        self.calls.append(("look", yaw_delta, pitch_delta))

    async def set_control_state(self, control, state):
        self.calls.append(("set_control_state", control, state))

    async def capture(self):
        self.calls.append(("capture",))
        return self.capture_data

    # --- event helpers ---

    def spawn(self, reason="initial"):
        self.player = True
        self.events.emit(TransportEvent.SPAWN, reason)

    def kick(self, reason="kicked"):
        self.alive = False
        self.player = False
        self.events.emit(TransportEvent.KICKED, reason)

    def end(self, reason="socket closed"):
        self.alive = False
        self.player = False
        self.events.emit(TransportEvent.END, reason)

    def error(self, exc=None):
        self.alive = False
        self.player = False
        self.events.emit(TransportEvent.ERROR, exc or RuntimeError("socket error"))

    def message(self, text):
        self.events.emit(TransportEvent.MESSAGE, text)

    def open_window(self, window):
        self.window = window
        self.events.emit(TransportEvent.WINDOW_OPEN, window)


class FakeTransportFactory:
    """Transport factory that remembers what it built.

    `before_create(config)` runs first on every call (assert invariants there);
    `fail_next` makes the next N calls raise.
    """

    def __init__(self, configure=None, before_create=None):
        self.created: List[FakeTransport] = []
        self.configure = configure
        self.before_create = before_create
        self.fail_next = 0

    def __call__(self, config):
        if self.before_create:
            self.before_create(config)
        if self.fail_next:
            self.fail_next -= 1
            raise RuntimeError("handshake failed")
        transport = FakeTransport()
        if self.configure:
            self.configure(transport)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class RecordingListener(ConnectionListener):
    """ConnectionListener that writes every notification to `events`."""

    def __init__(self):
        self.events = []

    async def on_chat_line(self, text):
        self.events.append(("chat", text))

    async def on_payment_detected(self, sender, amount):
        self.events.append(("payment", sender, amount))

    async def on_server_confirmed(self):
        self.events.append(("confirmed",))

    async def on_connection_state_changed(self, state):
        self.events.append(("state", state))

    async def on_auth_required(self, uri, code):
        self.events.append(("auth", uri, code))

    def of(self, kind):
        return [e for e in self.events if e[0] == kind]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


async def drain(rounds: int = 5):
    """Let scheduled callbacks and freshly created tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 1.0, step: float = 0.005) -> bool:
    """Poll `predicate` until it holds or `timeout` seconds pass."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(step)
    return True


def make_window(*items, window_id=1) -> Window:
    return Window(window_id=window_id, type="minecraft:generic_9x3", title="Menu", slots=list(items))


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fast_config():
    """GameConfig with every lifecycle timing shrunk to milliseconds."""
    return GameConfig(
        username="TestBot",
        spawn_sequence=None,
        sequence_delay=0.01,
        settle_delay=0.05,
        confirm_delay=0.01,
        expected_delay_min=0.05,
        expected_delay_max=0.08,
        creation_retry_delay=0.03,
        fault_retry_delay=0.03,
        liveness_retry_delay=0.03,
        backoff=BackoffPolicy(base=0.02, growth=1.1, cap=0.1, jitter_max=0.01),
        activate_delay=0.0,
        window_timeout=0.1,
        window_settle=0.0,
        close_delay=0.0,
        anti_idle_interval=0.01,
        capture_interval=0.01,
        quit_timeout=0.05,
    )


@pytest.fixture
def real_timing_config(fast_config):
    """fast_config but with production reconnect delays (never actually waited on)."""
    return fast_config.model_copy(update={
        "expected_delay_min": 5.0,
        "expected_delay_max": 8.0,
        "backoff": BackoffPolicy(),
    })


@pytest.fixture
def emerald_window():
    return make_window(None, Item("stone"), Item("emerald_block", "Block of Emerald"), Item("dirt"))


@pytest.fixture
def fake_clock():
    return FakeClock()
