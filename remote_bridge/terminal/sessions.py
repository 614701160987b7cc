"""
Session store: named PTY sessions, their replay buffers and event fan-out.

Every mutation of a session (buffer append, mode write, publish) happens
synchronously inside a single PTY callback, so subscribers observe output in
exactly the order it was produced.
"""

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..config import Config
from ..drivers import BaseAgentDriver
from .broadcast import Broadcaster
from .buffer import OutputRingBuffer, now_ms
from .keys import MODE_TOGGLE_KEY
from .modes import ModeDetector
from .pty import KILL_TIMEOUT, spawn

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Session:
    """One interactive terminal."""
    id: str
    process: Any  # PtyProcess, or a test double with the same interface
    cols: int
    rows: int
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    assistant_detected: bool = False
    launch_handle: Optional[asyncio.TimerHandle] = None

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    def touch(self) -> None:
        self.last_activity_at = time.time()


class SessionStore:
    """
    Registry of live sessions keyed by id.

    Args:
        config: Shell, launch and terminal defaults.
        broadcaster: Fan-out for output, exit and mode events.
        detector: Mode detector fed with every output chunk.
        driver: Assistant driver (launch command, detection marker).
        buffer: Replay buffer; created from config if omitted.
        spawner: PTY spawn function, ``spawn(command, args, cols=, rows=, cwd=, env=)``.
        clock: Millisecond clock used to timestamp output chunks.
    """

    def __init__(
        self,
        config: Config,
        broadcaster: Broadcaster,
        detector: ModeDetector,
        driver: BaseAgentDriver,
        buffer: Optional[OutputRingBuffer] = None,
        spawner: Callable[..., Any] = spawn,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config
        self.broadcaster = broadcaster
        self.detector = detector
        self.driver = driver
        self.buffer = buffer or OutputRingBuffer(max_bytes=config.buffer_max_bytes)
        self._spawner = spawner
        self._clock = clock
        self._sessions: Dict[str, Session] = {}

    # -- Lookup ------------------------------------------------------------

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def info(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Session summary without the process handle."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return {
            "id": session.id,
            "pid": session.pid,
            "cols": session.cols,
            "rows": session.rows,
            "createdAt": _iso(session.created_at),
            "lastActivity": _iso(session.last_activity_at),
            "assistantDetected": session.assistant_detected,
            "clientCount": self.broadcaster.count(session.id),
            "bufferSize": self.buffer.size_of(session.id),
        }

    def list(self) -> List[Dict[str, Any]]:
        return [self.info(session_id) for session_id in list(self._sessions)]

    # -- Lifecycle ---------------------------------------------------------

    def get_or_create(
        self,
        session_id: str = DEFAULT_SESSION_ID,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
    ) -> Session:
        """
        Return the live session for ``session_id``, spawning it if needed.

        An existing session is returned unchanged: the requested dimensions
        only apply to new sessions, resuming takes precedence over size.

        Raises:
            SpawnError: the shell could not be started.
        """
        session = self._sessions.get(session_id)
        if session is not None:
            logger.info(f"Resuming existing PTY session: {session_id}")
            return session

        cols = cols or self.config.default_cols
        rows = rows or self.config.default_rows
        logger.info(f"Creating new PTY session: {session_id} ({cols}x{rows})")

        process = self._spawner(
            self.config.shell,
            list(self.config.shell_args),
            cols=cols,
            rows=rows,
            cwd=str(self.config.session_cwd()),
            env=self._session_env(),
        )
        session = Session(id=session_id, process=process, cols=cols, rows=rows)
        self._sessions[session_id] = session

        process.on_data(lambda data: self._on_data(session, data))
        process.on_exit(lambda code, sig: self._on_exit(session, code, sig))

        self._schedule_launch(session)
        return session

    def kill(self, session_id: str) -> bool:
        """Terminate and remove a session. False if it does not exist."""
        session = self._sessions.get(session_id)
        if session is None:
            return False

        logger.info(f"Killing session {session_id}")
        session.process.kill()
        self._finish(session, exit_code=None, sig=int(signal.SIGHUP))
        return True

    def kill_all(self) -> None:
        logger.info(f"Killing all PTY sessions ({len(self._sessions)} active)")
        for session_id in list(self._sessions):
            self.kill(session_id)

    async def shutdown(self, timeout: float = KILL_TIMEOUT + 1) -> None:
        """Kill every session and wait for the processes to be reaped."""
        processes = [session.process for session in self._sessions.values()]
        self.kill_all()
        if not processes:
            return
        waiters = [asyncio.ensure_future(process.wait_closed()) for process in processes]
        _, pending = await asyncio.wait(waiters, timeout=timeout)
        for waiter in pending:
            waiter.cancel()
        if pending:
            logger.warning(f"{len(pending)} PTY process(es) did not exit within {timeout}s")

    def _finish(self, session: Session, exit_code: Optional[int], sig: Optional[int]) -> None:
        if self._sessions.get(session.id) is not session:
            return
        del self._sessions[session.id]
        if session.launch_handle is not None:
            session.launch_handle.cancel()
        self.buffer.discard(session.id)
        self.detector.forget(session.id)

        self.broadcaster.publish(session.id, {
            "type": "exit",
            "sessionId": session.id,
            "exitCode": exit_code,
            "signal": sig,
        })
        self.broadcaster.drop(session.id)

    # -- PTY events --------------------------------------------------------

    def _on_data(self, session: Session, data: str) -> None:
        if self._sessions.get(session.id) is not session:
            return

        session.touch()
        chunk = self.buffer.append(session.id, data, self._clock())

        if not session.assistant_detected and self.driver.detects(data):
            session.assistant_detected = True
            logger.info(f"{self.driver.display_name()} CLI detected in session {session.id}")

        mode = self.detector.observe(session.id, data)

        self.broadcaster.publish(session.id, {
            "type": "output",
            "sessionId": session.id,
            "data": data,
            "timestamp": chunk.timestamp,
        })
        if mode is not None:
            self.broadcaster.publish(session.id, {
                "type": "modeChange",
                "sessionId": session.id,
                "mode": mode,
            })

    def _on_exit(self, session: Session, exit_code: Optional[int], sig: Optional[int]) -> None:
        logger.info(f"PTY session {session.id} exited: code={exit_code}, signal={sig}")
        self._finish(session, exit_code, sig)

    # -- Input -------------------------------------------------------------

    def write(self, session_id: str, data) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning(f"Cannot write to non-existent session: {session_id}")
            return False
        session.touch()
        session.process.write(data)
        return True

    def resize(self, session_id: str, cols: int, rows: int) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        logger.debug(f"Resizing session {session_id} to {cols}x{rows}")
        session.process.resize(cols, rows)
        session.cols = cols
        session.rows = rows
        return True

    def send_key(self, session_id: str, key: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        sent = session.process.send_key(key)
        if sent:
            session.touch()
            logger.debug(f"Sent key '{key}' to session {session_id}")
        return sent

    def toggle_mode(self, session_id: str) -> bool:
        """Cycle the assistant's mode (Shift+Tab)."""
        return self.send_key(session_id, MODE_TOGGLE_KEY)

    # -- Cold start --------------------------------------------------------

    def _session_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update({
            "TERM": "xterm-256color",
            "COLORTERM": "truecolor",
            "LANG": "en_US.UTF-8",
            "PATH": f"{os.environ.get('PATH', '')}:/usr/local/bin:/opt/homebrew/bin",
        })
        return env

    def _schedule_launch(self, session: Session) -> None:
        if not self.config.auto_launch:
            return
        command = self.driver.start_command(self.config.launch_command)
        if not command:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, not launching {command} in session {session.id}")
            return
        session.launch_handle = loop.call_later(
            self.config.launch_delay_ms / 1000, self._launch, session, command
        )

    def _launch(self, session: Session, command: str) -> None:
        session.launch_handle = None
        if self._sessions.get(session.id) is not session:
            return
        logger.info(f"Starting {self.driver.display_name()} CLI in session {session.id}")
        try:
            session.process.write(command + "\r")
        except Exception:
            logger.exception(f"Failed to launch {command} in session {session.id}")
