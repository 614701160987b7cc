"""
Tests for the session store.

Covers:
- Create, reuse and list sessions
- Output fan-out, replay buffer and mode events
- Exit and kill semantics (one exit event, state cleaned up)
- Cold-start launch of the assistant CLI
"""

import asyncio

import pytest

from remote_bridge.errors import SpawnError
from remote_bridge.terminal.broadcast import Subscriber


def _drain(subscriber):
    messages = []
    while not subscriber.queue.empty():
        messages.append(subscriber.queue.get_nowait())
    return messages


def _attach(store, broadcaster, session_id="default"):
    store.get_or_create(session_id)
    subscriber = Subscriber(f"client-{session_id}")
    broadcaster.subscribe(session_id, subscriber)
    return subscriber


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_create_uses_config_defaults(self, store, spawner, config):
        session = store.get_or_create("default")
        process = spawner.last
        assert session.cols == config.default_cols
        assert session.rows == config.default_rows
        assert process.command == config.shell
        assert process.args == config.shell_args
        assert process.cwd == str(config.session_cwd())
        assert process.env["TERM"] == "xterm-256color"

    def test_reuse_ignores_dimensions(self, store, spawner):
        first = store.get_or_create("default", 80, 24)
        second = store.get_or_create("default", 200, 60)
        assert first is second
        assert (second.cols, second.rows) == (80, 24)
        assert len(spawner.processes) == 1

    def test_distinct_ids_are_distinct_sessions(self, store, spawner):
        store.get_or_create("a")
        store.get_or_create("b")
        assert len(store) == 2
        assert len(spawner.processes) == 2

    def test_spawn_error_propagates(self, store, spawner):
        spawner.fail = True
        with pytest.raises(SpawnError):
            store.get_or_create("default")
        assert "default" not in store

    def test_info_and_list(self, store, broadcaster, spawner):
        subscriber = _attach(store, broadcaster)
        spawner.last.emit("hi")

        info = store.info("default")
        assert info["id"] == "default"
        assert info["pid"] == spawner.last.pid
        assert info["clientCount"] == 1
        assert info["bufferSize"] == 1
        assert info["assistantDetected"] is False
        assert "createdAt" in info and "lastActivity" in info
        assert "process" not in info
        assert store.list() == [info]
        assert _drain(subscriber)

    def test_info_unknown_session(self, store):
        assert store.info("missing") is None
        assert store.list() == []


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

class TestOutput:
    def test_output_published_in_order(self, store, broadcaster, spawner, clock):
        a = _attach(store, broadcaster)
        b = Subscriber("b")
        broadcaster.subscribe("default", b)

        for i, text in enumerate(["one", "two", "three"]):
            clock.now = 100 + i
            spawner.last.emit(text)

        for subscriber in (a, b):
            messages = _drain(subscriber)
            assert [m["data"] for m in messages] == ["one", "two", "three"]
            assert [m["timestamp"] for m in messages] == [100, 101, 102]
            assert all(m["type"] == "output" and m["sessionId"] == "default" for m in messages)

    def test_output_buffered_with_clock_timestamp(self, store, spawner, clock):
        store.get_or_create("default")
        clock.now = 100
        spawner.last.emit("foo")
        clock.now = 200
        spawner.last.emit("bar")
        assert store.buffer.since("default", 150) == "bar"

    def test_output_does_not_leak_across_sessions(self, store, broadcaster, spawner):
        a = _attach(store, broadcaster, "a")
        b = _attach(store, broadcaster, "b")
        spawner.processes[0].emit("for a")
        assert [m["data"] for m in _drain(a)] == ["for a"]
        assert _drain(b) == []

    def test_assistant_detected(self, store, spawner):
        session = store.get_or_create("default")
        spawner.last.emit("$ ls\n")
        assert session.assistant_detected is False
        spawner.last.emit("Welcome to Claude Code!")
        assert session.assistant_detected is True
        spawner.last.emit("$ ")
        assert session.assistant_detected is True

    def test_mode_change_follows_output(self, store, broadcaster, spawner, state_store):
        subscriber = _attach(store, broadcaster)
        spawner.last.emit("entering plan mode")
        spawner.last.emit("still plan mode")

        messages = _drain(subscriber)
        assert [m["type"] for m in messages] == ["output", "modeChange", "output"]
        assert messages[1]["mode"] == "plan"
        assert state_store.read()["modes"] == {"plan": True, "autoAccept": False}


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------

class TestInput:
    def test_write_resize_key(self, store, spawner):
        store.get_or_create("default")
        process = spawner.last
        assert store.write("default", "ls\r") is True
        assert store.resize("default", 100, 40) is True
        assert store.send_key("default", "ctrl+c") is True
        assert process.written == ["ls\r", "\x03"]
        assert process.resizes == [(100, 40)]
        assert (store.get("default").cols, store.get("default").rows) == (100, 40)

    def test_unknown_key_writes_nothing(self, store, spawner):
        store.get_or_create("default")
        assert store.send_key("default", "hyper+q") is False
        assert spawner.last.written == []

    def test_toggle_mode_sends_shift_tab(self, store, spawner):
        store.get_or_create("default")
        assert store.toggle_mode("default") is True
        assert spawner.last.written == ["\x1b[Z"]

    def test_unknown_session(self, store):
        assert store.write("missing", "x") is False
        assert store.resize("missing", 10, 10) is False
        assert store.send_key("missing", "enter") is False
        assert store.toggle_mode("missing") is False


# ---------------------------------------------------------------------------
# Exit and kill
# ---------------------------------------------------------------------------

class TestExit:
    def test_exit_removes_session_and_buffer(self, store, broadcaster, spawner):
        subscriber = _attach(store, broadcaster)
        spawner.last.emit("bye")
        spawner.last.exit(0)

        assert "default" not in store
        assert "default" not in store.buffer
        assert broadcaster.count("default") == 0
        messages = _drain(subscriber)
        assert messages[-1]["type"] == "exit"
        assert messages[-1]["exitCode"] == 0
        assert messages[-1]["signal"] is None

    def test_next_attach_creates_fresh_session(self, store, spawner):
        first = store.get_or_create("default")
        spawner.last.exit(0)
        second = store.get_or_create("default")
        assert second is not first
        assert len(spawner.processes) == 2

    def test_kill_publishes_exit_once(self, store, broadcaster, spawner):
        subscriber = _attach(store, broadcaster)
        process = spawner.last

        assert store.kill("default") is True
        assert process.kill_signals
        # The real process exit arrives afterwards and must be ignored
        process.exit(129, 1)

        exits = [m for m in _drain(subscriber) if m["type"] == "exit"]
        assert len(exits) == 1
        assert exits[0]["signal"] == 1

    def test_kill_is_idempotent(self, store):
        store.get_or_create("default")
        assert store.kill("default") is True
        assert store.kill("default") is False
        assert store.kill("never-existed") is False

    def test_output_after_kill_is_dropped(self, store, spawner):
        store.get_or_create("default")
        process = spawner.last
        store.kill("default")
        process.emit("late")
        assert "default" not in store.buffer

    def test_kill_all(self, store):
        store.get_or_create("a")
        store.get_or_create("b")
        store.kill_all()
        assert len(store) == 0


# ---------------------------------------------------------------------------
# Cold start
# ---------------------------------------------------------------------------

class TestColdStart:
    @pytest.mark.asyncio
    async def test_launch_command_typed_after_delay(self, store, spawner, config):
        config.auto_launch = True
        config.launch_delay_ms = 0
        store.get_or_create("default")
        assert spawner.last.written == []
        await asyncio.sleep(0.05)
        assert spawner.last.written == ["claude\r"]

    @pytest.mark.asyncio
    async def test_launch_command_override(self, store, spawner, config):
        config.auto_launch = True
        config.launch_delay_ms = 0
        config.launch_command = "claude --continue"
        store.get_or_create("default")
        await asyncio.sleep(0.05)
        assert spawner.last.written == ["claude --continue\r"]

    @pytest.mark.asyncio
    async def test_launch_only_once_per_session(self, store, spawner, config):
        config.auto_launch = True
        config.launch_delay_ms = 0
        store.get_or_create("default")
        store.get_or_create("default")
        await asyncio.sleep(0.05)
        assert spawner.last.written == ["claude\r"]

    @pytest.mark.asyncio
    async def test_killed_before_launch(self, store, spawner, config):
        config.auto_launch = True
        config.launch_delay_ms = 20
        store.get_or_create("default")
        store.kill("default")
        await asyncio.sleep(0.05)
        assert spawner.last.written == []

    @pytest.mark.asyncio
    async def test_launch_failure_is_logged(self, store, spawner, config, caplog):
        config.auto_launch = True
        config.launch_delay_ms = 0
        store.get_or_create("default")

        def broken_write(data):
            raise OSError("pty gone")

        spawner.last.write = broken_write
        await asyncio.sleep(0.05)
        assert "default" in store
        assert "Failed to launch" in caplog.text

    @pytest.mark.asyncio
    async def test_generic_driver_launches_nothing(self, config, broadcaster, state_store, spawner, clock):
        from remote_bridge.drivers import get_driver
        from remote_bridge.terminal.modes import ModeDetector
        from remote_bridge.terminal.sessions import SessionStore

        config.auto_launch = True
        config.launch_delay_ms = 0
        driver = get_driver("generic")
        store = SessionStore(
            config, broadcaster, ModeDetector(state_store, driver.mode_markers()), driver,
            spawner=spawner, clock=clock,
        )
        store.get_or_create("default")
        await asyncio.sleep(0.05)
        assert spawner.last.written == []


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_kills_every_session(self, store, broadcaster, spawner):
        a = _attach(store, broadcaster, "a")
        b = _attach(store, broadcaster, "b")

        await store.shutdown()

        assert len(store) == 0
        assert all(p.kill_signals for p in spawner.processes)
        for subscriber in (a, b):
            assert [m["type"] for m in _drain(subscriber)] == ["exit"]

    @pytest.mark.asyncio
    async def test_shutdown_without_sessions(self, store):
        await store.shutdown()
        assert len(store) == 0
