"""
Tests for game/connection.py — the connection lifecycle state machine.

Lifecycle tests drive a FakeTransport by hand (spawn/kick/end) and shrink
every delay through fast_config so real timers fire within milliseconds.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from conftest import FakeTransportFactory, RecordingListener, drain, make_window, wait_until
from game.cleanup import cleanup_session
from game.connection import ConnectionState, ConnectionStateMachine, DisconnectCause
from game.errors import TransportClosedError
from game.relay_transport import RelayTransport
from game.sequencer import SequenceKind, SequenceOutcome
from game.transport import Item, TransportEvent


def make_machine(config, factory=None, **kwargs):
    factory = factory or FakeTransportFactory()
    listener = RecordingListener()
    machine = ConnectionStateMachine(config, factory, listener=listener, **kwargs)
    return machine, factory, listener


async def bring_online(machine, factory):
    assert machine.request_connect() is True
    await drain()
    factory.last.spawn()
    await drain()
    assert machine.state == ConnectionState.ONLINE


class TestConnect:
    """IDLE → CONNECTING → ONLINE."""

    def test_connect_then_spawn_goes_online(self, fast_config):
        async def run():
            machine, factory, listener = make_machine(fast_config)
            assert machine.state == ConnectionState.IDLE

            assert machine.request_connect() is True
            assert machine.state == ConnectionState.CONNECTING
            await drain()
            assert factory.last.names() == ["open"]

            machine.attempts = 2
            factory.last.player = True
            machine.notify_spawned()
            assert machine.state == ConnectionState.ONLINE
            assert machine.attempts == 0
            assert machine.session.ready
            assert not machine.session.tasks_initialized

            assert await wait_until(lambda: machine.session.tasks_initialized)
            await drain()
            assert listener.of("state") == [
                ("state", ConnectionState.CONNECTING),
                ("state", ConnectionState.ONLINE),
            ]
            await machine.shutdown()

        asyncio.run(run())

    def test_tasks_wait_for_settle_window(self, fast_config):
        async def run():
            config = fast_config.model_copy(update={"settle_delay": 0.2})
            machine, factory, _ = make_machine(config)
            await bring_online(machine, factory)
            await asyncio.sleep(0.1)
            assert not machine.session.tasks_initialized
            assert await wait_until(lambda: machine.session.tasks_initialized)
            assert machine.session.background.running
            await machine.shutdown()

        asyncio.run(run())

    def test_connect_ignored_when_not_idle(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            assert machine.request_connect() is False
            assert machine.request_connect(manual=True) is False
            assert len(factory.created) == 1
            await machine.shutdown()

        asyncio.run(run())

    def test_respawn_while_online_keeps_state(self, fast_config, fake_clock):
        async def run():
            machine, factory, listener = make_machine(fast_config, clock=fake_clock)
            await bring_online(machine, factory)
            first_success = machine.last_success

            fake_clock.advance(30)
            factory.last.spawn("respawn")
            await drain()
            assert machine.state == ConnectionState.ONLINE
            assert machine.last_success == first_success
            assert machine.online_for == pytest.approx(30)
            assert len(listener.of("state")) == 2
            await machine.shutdown()

        asyncio.run(run())


class TestDisconnect:
    """Terminal events, the expected-transfer flag and reconnect delays."""

    def test_expected_disconnect_uses_transfer_delay(self, real_timing_config):
        async def run():
            spy = AsyncMock(side_effect=cleanup_session)
            with patch("game.connection.cleanup_session", new=spy):
                machine, factory, _ = make_machine(real_timing_config)
                await bring_online(machine, factory)
                transport = factory.last

                machine.mark_transfer_expected()
                transport.kick("x")
                assert machine.expected_disconnect is False
                assert machine.state == ConnectionState.CLEANING_UP

                await machine.wait_for_transition()
                assert spy.await_count == 1
                assert transport.count("quit") == 1
                assert machine.state == ConnectionState.BACKOFF
                assert 5.0 <= machine.last_delay < 8.0
                assert machine.attempts == 0
                assert machine.session is None
                await machine.shutdown()

        asyncio.run(run())

    def test_unexpected_disconnect_uses_backoff(self, real_timing_config):
        async def run():
            machine, factory, _ = make_machine(real_timing_config)
            await bring_online(machine, factory)

            machine.attempts = 3
            factory.last.kick("x")
            await machine.wait_for_transition()

            base = min(5.0 * 1.1 ** 3, 300.0)
            assert machine.state == ConnectionState.BACKOFF
            assert base <= machine.last_delay < base + 2.0
            assert machine.attempts == 4
            assert machine.last_disconnect == "kicked: x"
            await machine.shutdown()

        asyncio.run(run())

    def test_flag_consumed_by_first_terminal_event(self, real_timing_config):
        async def run():
            machine, factory, _ = make_machine(real_timing_config)
            await bring_online(machine, factory)
            transport = factory.last

            machine.mark_transfer_expected()
            transport.kick("transferring")
            transport.end("socket closed")
            await machine.wait_for_transition()
            assert machine.expected_disconnect is False
            assert 5.0 <= machine.last_delay < 8.0
            assert machine.last_disconnect == "kicked: transferring"
            await machine.shutdown()

        asyncio.run(run())

    def test_chat_component_reason_is_flattened(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            machine.notify_disconnected(
                DisconnectCause.KICKED,
                {"text": "Server ", "extra": [{"text": "restarting"}]},
            )
            assert machine.last_disconnect == "kicked: Server restarting"
            await machine.wait_for_transition()
            await machine.shutdown()

        asyncio.run(run())

    def test_attempts_grow_until_next_spawn(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)

            factory.last.kick()
            await machine.wait_for_transition()
            assert machine.attempts == 1

            assert await wait_until(lambda: len(factory.created) == 2)
            await drain()
            factory.last.end()
            await machine.wait_for_transition()
            assert machine.attempts == 2

            assert await wait_until(lambda: len(factory.created) == 3)
            await drain()
            factory.last.spawn()
            assert machine.attempts == 0
            await machine.shutdown()

        asyncio.run(run())

    def test_error_event_disconnects(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            factory.last.error(ConnectionResetError("reset by peer"))
            assert machine.state == ConnectionState.CLEANING_UP
            assert machine.last_disconnect == "error: reset by peer"
            await machine.wait_for_transition()
            assert machine.state == ConnectionState.BACKOFF
            await machine.shutdown()

        asyncio.run(run())


class TestReconnect:
    """Session replacement after a disconnect."""

    def test_new_session_only_after_old_one_is_gone(self, fast_config):
        async def run():
            violations = []
            factory = FakeTransportFactory()
            machine, _, _ = make_machine(fast_config, factory)

            def check(config):
                current = machine.session
                if current is not None and not current.destroyed:
                    violations.append(f"session #{current.session_id} still live")
                for old in factory.created:
                    if old.events.listener_count():
                        violations.append("old transport still has listeners")

            factory.before_create = check

            await bring_online(machine, factory)
            factory.last.kick()
            assert await wait_until(lambda: len(factory.created) == 2)
            await drain()
            factory.last.spawn()
            assert machine.state == ConnectionState.ONLINE
            factory.last.end()
            assert await wait_until(lambda: len(factory.created) == 3)

            assert violations == []
            assert machine.sessions_created == 3
            await machine.shutdown()

        asyncio.run(run())

    def test_stale_session_events_ignored(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            old = factory.last

            old.kick()
            assert await wait_until(lambda: len(factory.created) == 2)
            assert machine.state == ConnectionState.CONNECTING
            assert old.events.listener_count() == 0

            old.spawn()
            old.kick("late kick")
            old.message("Steve has sent you $500")
            await drain()
            assert machine.state == ConnectionState.CONNECTING
            assert machine.session.transport is factory.last
            await machine.shutdown()

        asyncio.run(run())

    def test_manual_connect_skips_backoff(self, real_timing_config):
        async def run():
            machine, factory, _ = make_machine(real_timing_config)
            await bring_online(machine, factory)
            factory.last.kick()
            await machine.wait_for_transition()
            assert machine.state == ConnectionState.BACKOFF

            assert machine.request_connect() is False
            assert machine.request_connect(manual=True) is True
            assert machine.state == ConnectionState.CONNECTING
            assert len(factory.created) == 2
            await machine.shutdown()

        asyncio.run(run())


class TestManualStop:
    """request_manual_stop() and its interaction with reconnects."""

    def test_stop_while_online(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            transport = factory.last

            assert await machine.request_manual_stop() is True
            assert machine.state == ConnectionState.IDLE
            assert machine.session is None
            assert transport.names()[-2:] == ["force_close", "quit"]
            assert transport.calls[-1] == ("quit", "manual stop")

            await asyncio.sleep(0.15)
            assert len(factory.created) == 1
            assert machine.state == ConnectionState.IDLE

        asyncio.run(run())

    def test_stop_when_idle_is_noop(self, fast_config):
        async def run():
            machine, _, _ = make_machine(fast_config)
            assert await machine.request_manual_stop() is False
            assert machine.manual_stop is True
            assert machine.state == ConnectionState.IDLE

        asyncio.run(run())

    def test_stop_is_repeatable(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            first, second = await asyncio.gather(
                machine.request_manual_stop(), machine.request_manual_stop(),
            )
            assert first is True
            assert machine.state == ConnectionState.IDLE
            assert factory.last.count("quit") == 1

        asyncio.run(run())

    def test_stop_during_backoff_cancels_reconnect(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            factory.last.kick()
            await machine.wait_for_transition()
            assert machine.state == ConnectionState.BACKOFF

            await machine.request_manual_stop()
            assert machine.state == ConnectionState.IDLE
            await asyncio.sleep(0.15)
            assert len(factory.created) == 1

        asyncio.run(run())

    def test_stop_while_connecting(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            machine.request_connect()
            await drain()
            await machine.request_manual_stop()
            assert machine.state == ConnectionState.IDLE
            factory.last.spawn()
            assert machine.state == ConnectionState.IDLE

        asyncio.run(run())

    def test_stop_blocks_automatic_connect_until_manual(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            await machine.request_manual_stop()

            assert machine.request_connect() is False
            assert machine.request_connect(manual=True) is True
            assert machine.manual_stop is False
            assert len(factory.created) == 2
            await machine.shutdown()

        asyncio.run(run())


class TestCreationFailure:
    """Factory and open() failures retry on the fixed creation delay."""

    def test_factory_failure_retries(self, fast_config):
        async def run():
            factory = FakeTransportFactory()
            factory.fail_next = 1
            machine, _, _ = make_machine(fast_config, factory)

            machine.request_connect()
            assert machine.state == ConnectionState.CLEANING_UP
            await machine.wait_for_transition()
            assert machine.state == ConnectionState.BACKOFF
            assert machine.last_delay == pytest.approx(fast_config.creation_retry_delay)
            assert machine.attempts == 0

            assert await wait_until(lambda: len(factory.created) == 1)
            assert machine.state == ConnectionState.CONNECTING
            await machine.shutdown()

        asyncio.run(run())

    def test_open_failure_cleans_up_transport(self, fast_config):
        async def run():
            factory = FakeTransportFactory()

            def configure(transport):
                if not factory.created:
                    transport.open_error = OSError("connection refused")

            factory.configure = configure
            machine, _, _ = make_machine(fast_config, factory)

            machine.request_connect()
            await drain()
            assert machine.state == ConnectionState.CLEANING_UP
            await machine.wait_for_transition()
            first = factory.created[0]
            assert first.count("quit") == 1
            assert first.events.listener_count() == 0

            assert await wait_until(lambda: len(factory.created) == 2)
            await drain()
            factory.last.spawn()
            assert machine.state == ConnectionState.ONLINE
            await machine.shutdown()

        asyncio.run(run())


class TestFaultRecovery:
    """Uncaught task errors and loop-level exceptions."""

    def test_session_task_error_recovers(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)

            async def broken():
                raise RuntimeError("handler bug")

            machine.session.spawn_task(broken(), name="broken")
            await drain()
            await machine.wait_for_transition()
            assert machine.state == ConnectionState.BACKOFF
            assert machine.last_delay == pytest.approx(fast_config.fault_retry_delay)
            assert machine.attempts == 0
            assert factory.created[0].count("quit") == 1
            await machine.shutdown()

        asyncio.run(run())

    def test_loop_handler_defers_without_exception(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            loop = MagicMock()

            machine.handle_loop_exception(loop, {"message": "socket warning"})
            machine.handle_loop_exception(loop, {"exception": asyncio.CancelledError()})
            assert loop.default_exception_handler.call_count == 2
            assert machine.state == ConnectionState.ONLINE
            await machine.shutdown()

        asyncio.run(run())

    def test_loop_handler_recovers_on_exception(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            loop = MagicMock()

            machine.handle_loop_exception(loop, {
                "message": "Task exception was never retrieved",
                "exception": ValueError("boom"),
            })
            loop.default_exception_handler.assert_not_called()
            assert machine.state == ConnectionState.CLEANING_UP
            await machine.wait_for_transition()
            assert machine.state == ConnectionState.BACKOFF
            await machine.shutdown()

        asyncio.run(run())

    def test_no_recovery_when_stopped(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            await machine.request_manual_stop()
            assert machine.recover_from_fault(RuntimeError("late")) is False
            assert machine.state == ConnectionState.IDLE

        asyncio.run(run())


class TestChatEvents:
    """Payments, server confirmation and the chat relay."""

    def test_payment_detected(self, fast_config):
        async def run():
            machine, factory, listener = make_machine(fast_config)
            await bring_online(machine, factory)
            factory.last.message("Steve has sent you $1.5k")
            factory.last.message("You received $250 from Alex_99")
            await drain()
            assert listener.of("payment") == [
                ("payment", "Steve", 1500.0),
                ("payment", "Alex_99", 250.0),
            ]
            await machine.shutdown()

        asyncio.run(run())

    def test_server_confirmation_initializes_early(self, fast_config):
        async def run():
            config = fast_config.model_copy(update={"settle_delay": 5.0})
            machine, factory, listener = make_machine(config)
            await bring_online(machine, factory)

            machine.mark_transfer_expected()
            factory.last.message("Sending you to economy-euc")
            assert machine.expected_disconnect is False
            assert await wait_until(lambda: machine.session.tasks_initialized, timeout=0.5)
            await drain()
            assert listener.of("confirmed") == [("confirmed",)]
            await machine.shutdown()

        asyncio.run(run())

    def test_chat_relayed_only_after_initialization(self, fast_config):
        async def run():
            machine, factory, listener = make_machine(fast_config)
            await bring_online(machine, factory)
            factory.last.message("<Alex> too early")
            await drain()
            assert listener.of("chat") == []

            assert await wait_until(lambda: machine.session.tasks_initialized)
            factory.last.message("§aTrySmp » <Alex> hello there")
            factory.last.message("Your balance is $10")
            await drain()
            assert listener.of("chat") == [("chat", "<Alex> hello there")]
            await machine.shutdown()

        asyncio.run(run())

    def test_auth_code_forwarded(self, fast_config):
        async def run():
            machine, factory, listener = make_machine(fast_config)
            machine.request_connect()
            factory.last.events.emit(TransportEvent.AUTH_CODE, "https://microsoft.com/link", "ABCD1234")
            await drain()
            assert listener.of("auth") == [("auth", "https://microsoft.com/link", "ABCD1234")]
            await machine.shutdown()

        asyncio.run(run())

    def test_listener_failure_does_not_break_machine(self, fast_config):
        async def run():
            machine, factory, listener = make_machine(fast_config)
            listener.on_payment_detected = AsyncMock(side_effect=RuntimeError("discord down"))
            await bring_online(machine, factory)
            factory.last.message("Steve has sent you 100")
            await drain()
            assert machine.state == ConnectionState.ONLINE
            await machine.shutdown()

        asyncio.run(run())


class TestActions:
    """Chat, sequences and status on the live session."""

    def test_send_chat(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            assert await machine.send_chat("hello") is False

            await bring_online(machine, factory)
            assert await machine.send_chat("hello") is True
            assert ("chat", "hello") in factory.last.calls
            await machine.shutdown()

        asyncio.run(run())

    def test_send_chat_refused_on_dead_transport(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            factory.last.alive = False
            assert await machine.send_chat("hello") is False
            await machine.shutdown()

        asyncio.run(run())

    def test_send_chat_failure_reported(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            factory.last.chat = AsyncMock(side_effect=TransportClosedError("gone"))
            assert await machine.send_chat("hello") is False
            assert machine.state == ConnectionState.ONLINE
            await machine.shutdown()

        asyncio.run(run())

    def test_sequence_unavailable_when_offline(self, fast_config):
        async def run():
            machine, _, _ = make_machine(fast_config)
            result = await machine.run_interaction_sequence("emerald")
            assert result.outcome == SequenceOutcome.UNAVAILABLE

        asyncio.run(run())

    def test_accept_sequence_sets_flag(self, fast_config):
        async def run():
            machine, factory, _ = make_machine(fast_config)
            await bring_online(machine, factory)
            factory.last.window_on_chat = make_window(Item("stone"), Item("lime_stained_glass_pane"))

            result = await machine.run_interaction_sequence(SequenceKind.ACCEPT)
            assert result.clicked
            assert result.slot == 1
            assert machine.expected_disconnect is True
            await machine.shutdown()

        asyncio.run(run())

    def test_spawn_sequence_transfer_is_expected(self, fast_config, emerald_window):
        async def run():
            config = fast_config.model_copy(update={"spawn_sequence": "emerald"})
            flag_at_click = []
            factory = FakeTransportFactory()
            machine, _, _ = make_machine(config, factory)

            def configure(transport):
                transport.window_on_activate = emerald_window
                transport.kick_on_click = True
                transport.on_click = lambda slot: flag_at_click.append(machine.expected_disconnect)

            factory.configure = configure
            await bring_online(machine, factory)
            transport = factory.last

            assert await wait_until(lambda: machine.state != ConnectionState.ONLINE)
            await machine.wait_for_transition()
            assert flag_at_click == [True]
            assert ("click_window", 2, 0, 0) in transport.calls
            assert machine.expected_disconnect is False
            assert machine.state == ConnectionState.BACKOFF
            assert config.expected_delay_min <= machine.last_delay < config.expected_delay_max
            assert machine.attempts == 0
            await machine.shutdown()

        asyncio.run(run())

    def test_status_snapshot(self, fast_config, fake_clock):
        async def run():
            machine, factory, _ = make_machine(fast_config, clock=fake_clock)
            status = machine.get_status()
            assert status["state"] == "idle"
            assert status["session_id"] is None
            assert status["online_for"] is None

            await bring_online(machine, factory)
            fake_clock.advance(12)
            status = machine.get_status()
            assert status["state"] == "online"
            assert status["ready"] is True
            assert status["username"] == "TestBot"
            assert status["online_for"] == pytest.approx(12)
            assert status["process_uptime"] == pytest.approx(12)
            assert status["sessions_created"] == 1
            await machine.shutdown()

        asyncio.run(run())


class RelaySocket:
    """Scripted relay WebSocket: frames are queued for the read loop, and
    on_send can answer an outbound action."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self.on_send = None
        self._frames = asyncio.Queue()

    def push(self, frame):
        self._frames.put_nowait(frame)

    async def send_json(self, data):
        self.sent.append(data)
        if self.on_send is not None:
            self.on_send(data)

    async def close(self):
        self.closed = True
        self._frames.put_nowait(None)

    def exception(self):
        return None

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            frame = await self._frames.get()
            if frame is None:
                return
            yield SimpleNamespace(type=aiohttp.WSMsgType.TEXT, json=lambda frame=frame: frame)


class TestRelayTransfer:
    """The marker click over a real RelayTransport, answered by a kick."""

    def test_transfer_click_reports_clicked(self, real_timing_config):
        async def run():
            ws = RelaySocket()
            http = MagicMock(closed=False)
            http.ws_connect = AsyncMock(return_value=ws)
            http.close = AsyncMock()

            with patch("game.relay_transport.aiohttp.ClientSession", return_value=http):
                machine = ConnectionStateMachine(real_timing_config, RelayTransport.factory)
                assert machine.request_connect() is True
                assert await wait_until(lambda: ws.sent)
                ws.push({"event": "spawn", "data": {"reason": "initial"}})
                assert await wait_until(machine.is_online_and_ready)
                transport = machine.session.transport
                machine.attempts = 3

                def relay(data):
                    if data["action"] == "activate_item":
                        ws.push({"event": "window_open", "data": {
                            "id": 5, "type": "minecraft:generic_9x3", "title": "Servers",
                            "slots": [None, {"name": "stone"}, {"name": "emerald_block", "displayName": "Economy"}],
                        }})
                    elif data["action"] == "click_window":
                        transport._dispatch({"event": "kicked", "data": {"reason": "Sending you to economy-euc"}})

                ws.on_send = relay
                result = await machine.run_interaction_sequence("emerald")

                assert result.outcome == SequenceOutcome.CLICKED
                assert result.slot == 2
                assert {"action": "click_window", "slot": 2, "button": 0, "mode": 0} in ws.sent

                await machine.wait_for_transition()
                assert machine.state == ConnectionState.BACKOFF
                assert 5.0 <= machine.last_delay < 8.0
                assert machine.attempts == 3
                assert machine.expected_disconnect is False
                assert ws.closed
                await machine.shutdown()

        asyncio.run(run())
