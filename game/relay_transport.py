"""
Relay Transport — GameTransport over a WebSocket to a headless game client.

The relay process owns the game protocol (login, Microsoft auth, keepalive,
window tracking). We speak small JSON frames to it:

  Architecture:
    ConnectionStateMachine --(events/actions)--> RelayTransport
        --(WebSocket JSON)--> relay --(game protocol)--> server

  Outbound:  {"action": "connect", "options": {host, port, username, auth, version}}
             {"action": "chat", "text": ...}
             {"action": "click_window", "slot": 13, "button": 0, "mode": 0}
             {"action": "capture", "id": 7}
             ...
  Inbound:   {"event": "spawn", "data": {"reason": "initial"}}
             {"event": "message", "data": {"text": ...}}
             {"event": "window_open", "data": {"id", "type", "title", "slots": [...]}}
             {"event": "response", "data": {"id": 7, "ok": true, "result": ...}}

Each RelayTransport is single-use: one WebSocket, one aiohttp session,
opened once and closed once.
"""

import asyncio
import base64
import itertools
import logging
from typing import Any, Dict, Optional

import aiohttp

from game.config import GameConfig
from game.errors import (
    SessionCreationError,
    TransportClosedError,
    TransportError,
    TransportTimeoutError,
)
from game.transport import GameTransport, TransportEvent, Window

logger = logging.getLogger("RelayTransport")

HEARTBEAT_INTERVAL = 30.0


class RelayTransport(GameTransport):
    """One relay-backed game connection.

    Usage:
        transport = RelayTransport(config)
        transport.events.subscribe(TransportEvent.SPAWN, on_spawn)
        await transport.open()
        await transport.chat("hello")
        await transport.quit("done")
    """

    def __init__(self, config: GameConfig):
        super().__init__()
        self.config = config
        self._http: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._request_ids = itertools.count(1)
        self._closed = False
        self._terminated = False
        self._has_player = False
        self._username: Optional[str] = None
        self._window: Optional[Window] = None

    @classmethod
    def factory(cls, config: GameConfig) -> "RelayTransport":
        return cls(config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.config.relay_token:
            headers["Authorization"] = f"Bearer {self.config.relay_token}"
        return headers

    async def open(self) -> None:
        if self._ws is not None or self._closed:
            raise SessionCreationError("Transport is single-use")

        timeout = aiohttp.ClientTimeout(total=None, connect=self.config.request_timeout)
        self._http = aiohttp.ClientSession(timeout=timeout)
        try:
            self._ws = await self._http.ws_connect(
                self.config.relay_url,
                headers=self._headers(),
                heartbeat=HEARTBEAT_INTERVAL,
            )
            await self._ws.send_json({"action": "connect", "options": self.config.connect_options()})
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await self._http.close()
            self._http = None
            self._ws = None
            self._closed = True
            raise SessionCreationError(f"Relay handshake failed: {e}") from e

        logger.info(f"Connected to relay at {self.config.relay_url}")
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(), name="relay-reader")

    def force_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._has_player = False
        self._window = None
        if self._reader is not None and not self._reader.done():
            if self._reader is not asyncio.current_task():
                self._reader.cancel()
        self._fail_pending(TransportClosedError("Transport force-closed"))
        logger.debug("Transport force-closed")

    async def quit(self, reason: str = "") -> None:
        ws, http = self._ws, self._http
        try:
            if ws is not None and not ws.closed:
                if not self._closed:
                    await ws.send_json({"action": "quit", "reason": reason})
                await ws.close()
        finally:
            self.force_close()
            self._ws = None
            self._http = None
            if http is not None and not http.closed:
                await http.close()

    @property
    def is_alive(self) -> bool:
        return not self._closed and self._ws is not None and not self._ws.closed

    @property
    def has_player(self) -> bool:
        return self._has_player and self.is_alive

    @property
    def username(self) -> Optional[str]:
        return self._username or self.config.username or None

    @property
    def current_window(self) -> Optional[Window]:
        return self._window

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _read_loop(self):
        ws = self._ws
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("Invalid JSON frame from relay")
                        continue
                    self._dispatch(frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self._terminate(TransportEvent.ERROR, TransportError(f"WebSocket error: {ws.exception()}"))
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._terminate(TransportEvent.ERROR, TransportError(str(e)))
            return
        self._terminate(TransportEvent.END, "relay closed the connection")

    def _terminate(self, event: TransportEvent, detail: Any):
        """Emit the single terminal event for this transport."""
        if self._terminated:
            return
        self._terminated = True
        self._has_player = False
        self._window = None
        self._fail_pending(TransportClosedError("Transport closed"))
        if not self._closed:
            self.events.emit(event, detail)
        self._closed = True

    def _dispatch(self, frame: Dict[str, Any]):
        event = frame.get("event")
        data = frame.get("data") or {}

        if event == "response":
            self._resolve(data)
        elif event == "login":
            self._username = data.get("username") or self._username
            self.events.emit(TransportEvent.LOGIN)
        elif event == "spawn":
            self._has_player = True
            self.events.emit(TransportEvent.SPAWN, data.get("reason", "initial"))
        elif event == "message":
            self.events.emit(TransportEvent.MESSAGE, data.get("text", ""))
        elif event == "window_open":
            self._window = Window.from_payload(data)
            self.events.emit(TransportEvent.WINDOW_OPEN, self._window)
        elif event == "window_close":
            self._window = None
        elif event == "auth_code":
            self.events.emit(TransportEvent.AUTH_CODE, data.get("uri", ""), data.get("code", ""))
        elif event == "kicked":
            self._terminate(TransportEvent.KICKED, data.get("reason", ""))
        elif event == "end":
            self._terminate(TransportEvent.END, data.get("reason", ""))
        elif event == "error":
            self._terminate(TransportEvent.ERROR, TransportError(data.get("message", "relay error")))
        else:
            logger.debug(f"Unhandled relay event: {event}")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send(self, payload: Dict[str, Any]):
        if not self.is_alive:
            raise TransportClosedError(f"Cannot send '{payload.get('action')}': transport closed")
        try:
            await self._ws.send_json(payload)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise TransportError(f"Send failed: {e}") from e

    async def _request(self, action: str, **fields) -> Any:
        """Send an action that the relay answers with a response frame."""
        request_id = next(self._request_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"action": action, "id": request_id, **fields})
            return await asyncio.wait_for(future, timeout=self.config.request_timeout)
        except asyncio.TimeoutError:
            raise TransportTimeoutError(f"Relay did not answer '{action}' in {self.config.request_timeout}s")
        finally:
            self._pending.pop(request_id, None)

    def _resolve(self, data: Dict[str, Any]):
        future = self._pending.get(data.get("id"))
        if future is None or future.done():
            return
        if data.get("ok", True):
            future.set_result(data.get("result"))
        else:
            future.set_exception(TransportError(data.get("error", "request failed")))

    def _fail_pending(self, exc: Exception):
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    async def chat(self, text: str) -> None:
        await self._send({"action": "chat", "text": text})

    async def select_hotbar_slot(self, slot: int) -> None:
        await self._send({"action": "select_hotbar_slot", "slot": slot})

    async def activate_item(self) -> None:
        await self._send({"action": "activate_item"})

    async def click_window(self, slot: int, button: int = 0, mode: int = 0) -> None:
        # Not a request: a transfer click ends the session before the relay could answer.
        await self._send({"action": "click_window", "slot": slot, "button": button, "mode": mode})

    async def close_window(self, window: Window) -> None:
        await self._send({"action": "close_window", "window_id": window.window_id})
        if self._window is window:
            self._window = None

    async def look(self, yaw_delta: float, pitch_delta: float) -> None:
        await self._send({"action": "look", "yaw_delta": yaw_delta, "pitch_delta": pitch_delta})

    async def set_control_state(self, control: str, state: bool) -> None:
        await self._send({"action": "set_control_state", "control": control, "state": state})

    async def capture(self) -> Optional[bytes]:
        result = await self._request("capture")
        if not result:
            return None
        return base64.b64decode(result.get("png", "")) or None
