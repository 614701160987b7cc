"""Shared fixtures: a fake PTY spawner, in-memory state and a controllable clock."""

import signal

import pytest
from fastapi.testclient import TestClient

from remote_bridge.config import Config
from remote_bridge.drivers import get_driver
from remote_bridge.errors import SpawnError
from remote_bridge.server import create_app
from remote_bridge.state import MemoryStateStore
from remote_bridge.terminal.broadcast import Broadcaster
from remote_bridge.terminal.keys import key_sequence
from remote_bridge.terminal.modes import ModeDetector
from remote_bridge.terminal.sessions import SessionStore


class FakeProcess:
    """
    Stand-in for PtyProcess.

    Behaves like a terminal in cooked mode: every write is echoed back as
    output, and writing "exit" ends the process with code 0.
    """

    _next_pid = 4000

    def __init__(self, command, args, cols, rows, cwd, env):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.command = command
        self.args = args
        self.cols = cols
        self.rows = rows
        self.cwd = cwd
        self.env = env
        self.written = []
        self.resizes = []
        self.kill_signals = []
        self.alive = True
        self.echo = True
        self._data_callbacks = []
        self._exit_callbacks = []

    def on_data(self, callback):
        self._data_callbacks.append(callback)

    def on_exit(self, callback):
        self._exit_callbacks.append(callback)

    def emit(self, data):
        if not self.alive:
            return
        for callback in list(self._data_callbacks):
            callback(data)

    def exit(self, code=0, sig=None):
        if not self.alive:
            return
        self.alive = False
        for callback in list(self._exit_callbacks):
            callback(code, sig)

    def write(self, data):
        if not self.alive:
            return
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        self.written.append(data)
        if data.strip() == "exit":
            self.exit(0)
        elif self.echo:
            self.emit(data)

    def resize(self, cols, rows):
        if not self.alive:
            return
        self.cols = cols
        self.rows = rows
        self.resizes.append((cols, rows))

    def send_key(self, name):
        sequence = key_sequence(name)
        if sequence is None:
            return False
        self.write(sequence)
        return True

    def kill(self, sig=signal.SIGHUP):
        # A real PTY reports the exit later, from the event loop; tests call
        # exit() themselves to simulate that.
        self.kill_signals.append(sig)

    async def wait_closed(self):
        return None


class FakeSpawner:
    """Callable matching remote_bridge.terminal.pty.spawn."""

    def __init__(self):
        self.processes = []
        self.fail = False

    def __call__(self, command, args=(), cols=80, rows=24, cwd=None, env=None):
        if self.fail:
            raise SpawnError(f"Command not found: {command}")
        process = FakeProcess(command, list(args), cols, rows, cwd, env)
        self.processes.append(process)
        return process

    @property
    def last(self):
        return self.processes[-1]


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now=100):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def state_store():
    return MemoryStateStore()


@pytest.fixture
def config(tmp_path):
    return Config(
        auto_launch=False,
        cwd=tmp_path,
        state_file=tmp_path / "state.json",
    )


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def store(config, broadcaster, state_store, spawner, clock):
    driver = get_driver(config.agent_type)
    detector = ModeDetector(state_store, driver.mode_markers())
    return SessionStore(config, broadcaster, detector, driver, spawner=spawner, clock=clock)


@pytest.fixture
def app(config, state_store, spawner, clock):
    return create_app(config, state_store=state_store, spawner=spawner, clock=clock)


@pytest.fixture
def client(app):
    # Entering the client runs startup/shutdown and shares one event loop
    # between HTTP calls and WebSocket sessions.
    with TestClient(app) as test_client:
        yield test_client
